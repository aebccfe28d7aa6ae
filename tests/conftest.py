"""Shared test doubles for the provisioner test suite."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import pytest

from provisioner.ledger import InMemoryLedgerStore, Ledger
from provisioner.models import (
    Chatbot,
    Document,
    DocumentPool,
    Promptlet,
    SearchIndex,
    UploadFile,
)
from provisioner.orchestrator import ProvisioningOrchestrator
from provisioner.resource_api import ResourceAPI, ResourceRequestError


def conflict(path: str = "/", status_code: int = 409) -> ResourceRequestError:
    return ResourceRequestError(
        method="POST",
        path=path,
        status_code=status_code,
        body={"message": "Resource already exists"},
    )


def server_error(path: str = "/", message: str = "boom") -> ResourceRequestError:
    return ResourceRequestError(
        method="POST", path=path, status_code=500, body={"message": message}
    )


class FakeResourceAPI(ResourceAPI):
    """In-memory Resource API that records calls and can be told to fail.

    ``failures`` maps a method name to the error that method raises on every
    call.  Creating a resource whose name is already known raises a 409
    conflict, mirroring the real service.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.failures: dict[str, Exception] = {}
        self.pools: dict[str, DocumentPool] = {}
        self.indices: dict[str, SearchIndex] = {}
        self.promptlets: dict[str, Promptlet] = {}
        self.chatbots: dict[str, Chatbot] = {}
        self.documents: dict[str, Document] = {}
        self.rebuilds: list[str] = []
        self.closed = False

    def _record(self, method: str, arg: Any = None) -> None:
        self.calls.append((method, arg))
        error = self.failures.get(method)
        if error is not None:
            raise error

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    @staticmethod
    def _create(store: dict[str, Any], item: Any, path: str) -> Any:
        if item.name in store:
            raise conflict(path)
        store[item.name] = item
        return item

    # ---- document pools ----

    async def create_document_pool(self, name: str) -> DocumentPool:
        self._record("create_document_pool", name)
        return self._create(self.pools, DocumentPool(name=name), "/documentpools")

    async def delete_document_pool(self, name: str) -> None:
        self._record("delete_document_pool", name)
        self.pools.pop(name, None)

    # ---- search indices ----

    async def create_search_index(self, index: SearchIndex) -> SearchIndex:
        self._record("create_search_index", index)
        return self._create(self.indices, index, "/searchindices")

    async def get_search_index(self, name: str) -> SearchIndex:
        self._record("get_search_index", name)
        return self.indices[name].model_copy(update={"status": "READY", "health": "GREEN"})

    async def rebuild_search_index(self, name: str) -> None:
        self._record("rebuild_search_index", name)
        self.rebuilds.append(name)

    async def delete_search_index(self, name: str) -> None:
        self._record("delete_search_index", name)
        self.indices.pop(name, None)

    # ---- promptlets ----

    async def create_promptlet(self, promptlet: Promptlet) -> Promptlet:
        self._record("create_promptlet", promptlet)
        return self._create(self.promptlets, promptlet, "/promptlets")

    async def update_promptlet(self, name: str, promptlet: Promptlet) -> Promptlet:
        self._record("update_promptlet", (name, promptlet))
        self.promptlets[name] = promptlet
        return promptlet

    async def delete_promptlet(self, name: str) -> None:
        self._record("delete_promptlet", name)
        self.promptlets.pop(name, None)

    # ---- chatbots ----

    async def create_chatbot(self, chatbot: Chatbot) -> Chatbot:
        self._record("create_chatbot", chatbot)
        return self._create(self.chatbots, chatbot, "/chatbots")

    async def delete_chatbot(self, name: str) -> None:
        self._record("delete_chatbot", name)
        self.chatbots.pop(name, None)

    # ---- documents ----

    async def list_documents(self, document_pool: str | None = None) -> list[Document]:
        self._record("list_documents", document_pool)
        return [
            doc
            for doc in self.documents.values()
            if document_pool is None or doc.document_pool == document_pool
        ]

    async def upload_documents(self, document_pool: str, files: Sequence[UploadFile]) -> None:
        self._record("upload_documents", (document_pool, [f.filename for f in files]))
        for upload in files:
            self.documents[upload.filename] = Document(
                name=upload.filename, document_pool=document_pool, size=len(upload.content)
            )

    async def delete_document(self, name: str) -> None:
        self._record("delete_document", name)
        self.documents.pop(name, None)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_api() -> FakeResourceAPI:
    return FakeResourceAPI()


@pytest.fixture
def ledger() -> Ledger:
    return Ledger(InMemoryLedgerStore())


@pytest.fixture
def orchestrator(fake_api: FakeResourceAPI, ledger: Ledger) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(fake_api, ledger, embedding_model="test-embedding")
