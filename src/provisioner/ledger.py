"""Local ledger of compound assistants.

The ledger is the only authoritative record that a compound assistant exists
and how its parts map to remote resource names.  It is backed by a swappable
:class:`LedgerStore` that loads and saves the whole collection; every mutation
is a full read-modify-write with no per-row locking, so concurrent writers
race with last-write-wins semantics.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import ValidationError

from provisioner.models import CompoundAssistant

logger = logging.getLogger(__name__)

LedgerEventKind = Literal["upserted", "removed"]


class LedgerCorruptError(Exception):
    """Raised when the persisted ledger cannot be decoded into assistant records."""

    def __init__(self, location: str, reason: str) -> None:
        self.location = location
        self.reason = reason
        super().__init__(f"Ledger at {location} is unreadable: {reason}")


class LedgerStore(Protocol):
    """Protocol for ledger persistence backends."""

    @property
    def location(self) -> str:
        """Human-readable place the records live, used in error messages."""
        ...

    def load(self) -> list[dict[str, Any]]:
        """Return every persisted record (empty list when nothing is stored)."""
        ...

    def save(self, records: list[dict[str, Any]]) -> None:
        """Replace the persisted collection with *records*."""
        ...


class InMemoryLedgerStore:
    """Process-local store, used in tests and when embedding the saga."""

    def __init__(self, records: list[dict[str, Any]] | None = None) -> None:
        self._records: list[dict[str, Any]] = [dict(r) for r in records or []]

    @property
    def location(self) -> str:
        return "<memory>"

    def load(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self._records]

    def save(self, records: list[dict[str, Any]]) -> None:
        self._records = [dict(r) for r in records]


class JsonFileLedgerStore:
    """Single JSON file holding an array of assistant records.

    The file is opened per call.  Writes go to a temporary sibling that is
    atomically renamed over the target, so readers never observe a partially
    written ledger.

    Args:
        path: Location of the ledger file; parent directories are created on
            first save.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @property
    def location(self) -> str:
        return str(self.path)

    def load(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LedgerCorruptError(self.location, exc.msg) from exc
        if not isinstance(data, list):
            raise LedgerCorruptError(self.location, "expected a JSON array")
        return [item for item in data if isinstance(item, dict)]

    def save(self, records: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(records, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


@dataclass(frozen=True)
class LedgerEvent:
    """Notification emitted after a successful ledger mutation."""

    kind: LedgerEventKind
    slug: str
    entity: CompoundAssistant | None = None


LedgerListener = Callable[[LedgerEvent], None]


class Ledger:
    """Keyed collection of :class:`CompoundAssistant` records (key = ``slug``)."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store
        self._listeners: list[LedgerListener] = []

    def list(self) -> list[CompoundAssistant]:
        return [self._decode(record) for record in self._store.load()]

    def get(self, slug: str) -> CompoundAssistant | None:
        for record in self._store.load():
            if record.get("name") == slug:
                return self._decode(record)
        return None

    def _decode(self, record: dict[str, Any]) -> CompoundAssistant:
        try:
            return CompoundAssistant.from_record(record)
        except ValidationError as exc:
            reason = f"record {record.get('name')!r} is invalid ({exc.error_count()} error(s))"
            raise LedgerCorruptError(self._store.location, reason) from exc

    def upsert(self, entity: CompoundAssistant) -> None:
        """Replace the row for ``entity.slug`` or append a new one."""
        records = [r for r in self._store.load() if r.get("name") != entity.slug]
        records.append(entity.to_record())
        self._store.save(records)
        logger.debug("Ledger upserted assistant %s", entity.slug)
        self._emit(LedgerEvent(kind="upserted", slug=entity.slug, entity=entity))

    def remove(self, slug: str) -> None:
        """Drop the row for *slug*; no-op when absent."""
        records = self._store.load()
        remaining = [r for r in records if r.get("name") != slug]
        if len(remaining) == len(records):
            return
        self._store.save(remaining)
        logger.debug("Ledger removed assistant %s", slug)
        self._emit(LedgerEvent(kind="removed", slug=slug))

    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        """Register *listener* for change events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: LedgerEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Ledger listener failed for %s event on %s", event.kind, event.slug)
