"""Classification of Resource API failures.

Every failed remote call is reduced to an :class:`ErrorResponse` before the
saga reacts to it.  :class:`ErrorClassifier` decides whether the failure is a
tolerated duplicate (``ALREADY_EXISTS``) or fatal, independent of the
transport that produced it.
"""

from __future__ import annotations

import enum
import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

DEFAULT_CONFLICT_STATUSES: frozenset[int] = frozenset({409, 422})
DEFAULT_ALREADY_EXISTS_MARKERS: tuple[str, ...] = ("already exists",)

# Structured body fields consulted for a human-readable message, in order.
_MESSAGE_FIELDS = ("message", "detail", "title")


class ErrorKind(enum.StrEnum):
    """How the saga should treat a failed remote call."""

    ALREADY_EXISTS = "already_exists"
    REMOTE_FATAL = "remote_fatal"
    TRANSPORT_FATAL = "transport_fatal"


@dataclass(frozen=True)
class ErrorResponse:
    """Transport-independent view of a failed remote call.

    Attributes
    ----------
    status_code:
        HTTP status of the response, or ``None`` when no response was
        received (connection refused, timeout, ...).
    body:
        Decoded JSON body when the response carried one, the raw text
        otherwise, or ``None``.
    raw_message:
        The underlying exception's own message.
    """

    status_code: int | None = None
    body: Any = None
    raw_message: str | None = None

    def body_field(self, key: str) -> str | None:
        """Return a non-empty string field of a JSON object body, if present."""
        if not isinstance(self.body, dict):
            return None
        value = self.body.get(key)
        if isinstance(value, str) and value.strip():
            return value
        return None


class ErrorClassifier:
    """Status-code and message based classification strategy.

    Parameters
    ----------
    conflict_statuses:
        HTTP statuses that mean "the resource is already there".
    already_exists_markers:
        Case-insensitive substrings that mark a duplicate when found in the
        structured ``message`` field (or the raw message when the body has
        none).
    """

    def __init__(
        self,
        *,
        conflict_statuses: Iterable[int] = DEFAULT_CONFLICT_STATUSES,
        already_exists_markers: Iterable[str] = DEFAULT_ALREADY_EXISTS_MARKERS,
    ) -> None:
        self.conflict_statuses = frozenset(conflict_statuses)
        self.already_exists_markers = tuple(m.lower() for m in already_exists_markers if m)

    def classify(self, error: ErrorResponse) -> ErrorKind:
        if error.status_code is None:
            return ErrorKind.TRANSPORT_FATAL
        if error.status_code in self.conflict_statuses:
            return ErrorKind.ALREADY_EXISTS

        message = (error.body_field("message") or error.raw_message or "").lower()
        if any(marker in message for marker in self.already_exists_markers):
            return ErrorKind.ALREADY_EXISTS
        return ErrorKind.REMOTE_FATAL

    def is_already_exists(self, error: ErrorResponse) -> bool:
        return self.classify(error) is ErrorKind.ALREADY_EXISTS


def extract_error_message(error: ErrorResponse) -> str:
    """Pick the most descriptive message available for *error*.

    Precedence: body ``message``, ``detail``, ``title``, the raw exception
    message, and finally a JSON dump of the body.
    """
    for key in _MESSAGE_FIELDS:
        value = error.body_field(key)
        if value is not None:
            return value
    if error.raw_message:
        return error.raw_message
    if isinstance(error.body, str):
        return error.body or "unknown error"
    try:
        return json.dumps(error.body)
    except (TypeError, ValueError):
        return str(error.body)
