"""Tests for the create saga."""

from __future__ import annotations

import json

import httpx
import pytest

from provisioner.classification import ErrorKind
from provisioner.models import AssistantSpec, UploadFile
from provisioner.orchestrator import (
    ProvisioningError,
    ProvisioningOrchestrator,
    ProvisioningStep,
)
from provisioner.resource_api import (
    HttpResourceAPI,
    ResourceRequestError,
    ResourceTransportError,
)

pytestmark = pytest.mark.unit

CREATE_CALLS = [
    "create_document_pool",
    "create_search_index",
    "create_promptlet",
    "create_chatbot",
]


def _spec(**overrides) -> AssistantSpec:
    fields = {
        "display_name": "Sales Helper",
        "system_prompt": "Be concise.",
        "language": "en",
    }
    fields.update(overrides)
    return AssistantSpec(**fields)


def _fatal(status_code: int = 500, body: dict | None = None) -> ResourceRequestError:
    return ResourceRequestError(
        method="POST", path="/x", status_code=status_code, body=body or {"message": "boom"}
    )


class TestCreateHappyPath:
    async def test_end_to_end_sales_helper(self, orchestrator, fake_api, ledger):
        entity = await orchestrator.create(_spec())

        assert entity.slug == "sales_helper"
        assert entity.document_pool_name == "pool_sales_helper"
        assert entity.search_index_name == "index_sales_helper"
        assert entity.promptlet_name == "prompt_sales_helper"
        assert entity.chatbot_name == "bot_sales_helper"
        assert entity.documents_count == 0
        assert entity.conversations_count == 0
        assert ledger.get("sales_helper") == entity

        await orchestrator.delete(entity)
        assert "sales_helper" not in [a.slug for a in ledger.list()]

    async def test_steps_run_in_dependency_order(self, orchestrator, fake_api):
        await orchestrator.create(_spec())
        assert fake_api.call_names() == CREATE_CALLS

    async def test_remote_payloads_reference_earlier_resources(self, orchestrator, fake_api):
        await orchestrator.create(_spec(language="fr"))

        index = fake_api.indices["index_sales_helper"]
        assert index.document_pool == "pool_sales_helper"
        assert index.language_tags == ["fr"]
        assert index.embedding_model == "test-embedding"
        assert index.type == "vector"

        promptlet = fake_api.promptlets["prompt_sales_helper"]
        assert promptlet.role == "SYSTEM"
        assert len(promptlet.languages) == 1
        assert promptlet.languages[0].language_tag == "fr"
        assert promptlet.languages[0].default_language is True
        assert promptlet.languages[0].prompt == "Be concise."

        chatbot = fake_api.chatbots["bot_sales_helper"]
        assert chatbot.document_pool == "pool_sales_helper"
        assert chatbot.promptlet_names == ["prompt_sales_helper"]
        assert chatbot.tool_providers_enabled == ["semantic_search"]

    async def test_caller_metadata_recorded(self, orchestrator):
        entity = await orchestrator.create(
            _spec(description="Hilft dem Vertrieb", icon="📊", color="#d1fae5", visibility="team")
        )
        assert entity.description == "Hilft dem Vertrieb"
        assert entity.icon == "📊"
        assert entity.color == "#d1fae5"
        assert entity.visibility == "team"
        assert entity.display_name == "Sales Helper"
        assert entity.creation_date.tzinfo is not None


class TestIdempotentReuse:
    async def test_second_create_reattaches_to_existing_resources(self, orchestrator, fake_api):
        first = await orchestrator.create(_spec())
        second = await orchestrator.create(_spec(description="again"))

        assert second.slug == first.slug
        assert (
            second.document_pool_name,
            second.search_index_name,
            second.promptlet_name,
            second.chatbot_name,
        ) == (
            first.document_pool_name,
            first.search_index_name,
            first.promptlet_name,
            first.chatbot_name,
        )
        assert fake_api.call_names() == CREATE_CALLS * 2
        assert len(orchestrator.list_assistants()) == 1
        assert orchestrator.get("sales_helper").description == "again"

    @pytest.mark.parametrize("status_code", [409, 422])
    async def test_conflict_status_is_tolerated(self, orchestrator, fake_api, status_code):
        fake_api.failures["create_search_index"] = ResourceRequestError(
            method="POST", path="/searchindices", status_code=status_code, body=None
        )
        entity = await orchestrator.create(_spec())
        assert entity.search_index_name == "index_sales_helper"
        assert fake_api.call_names() == CREATE_CALLS

    async def test_already_exists_message_is_tolerated(self, orchestrator, fake_api):
        fake_api.failures["create_chatbot"] = _fatal(400, {"message": "Chatbot already exists"})
        entity = await orchestrator.create(_spec())
        assert orchestrator.get(entity.slug) is not None

    async def test_retry_after_partial_failure_reattaches(self, orchestrator, fake_api, ledger):
        fake_api.failures["create_chatbot"] = _fatal()
        with pytest.raises(ProvisioningError):
            await orchestrator.create(_spec())

        del fake_api.failures["create_chatbot"]
        entity = await orchestrator.create(_spec())

        assert entity.chatbot_name == "bot_sales_helper"
        assert ledger.get("sales_helper") is not None


class TestFatalFailures:
    @pytest.mark.parametrize(
        ("method", "step", "label"),
        [
            ("create_document_pool", ProvisioningStep.POOL, "create document pool"),
            ("create_search_index", ProvisioningStep.INDEX, "create search index"),
            ("create_promptlet", ProvisioningStep.TEMPLATE, "create promptlet"),
            ("create_chatbot", ProvisioningStep.AGENT, "create chatbot"),
        ],
    )
    async def test_failure_aborts_without_ledger_row(
        self, orchestrator, fake_api, ledger, method, step, label
    ):
        fake_api.failures[method] = _fatal(500, {"detail": "quota exceeded"})

        with pytest.raises(ProvisioningError) as exc_info:
            await orchestrator.create(_spec())

        error = exc_info.value
        assert error.step is step
        assert error.message == "quota exceeded"
        assert error.status_code == 500
        assert error.kind is ErrorKind.REMOTE_FATAL
        assert str(error) == f"Failed to {label}: quota exceeded"
        assert ledger.get("sales_helper") is None
        # Aborts immediately: nothing after the failing step is attempted.
        assert fake_api.call_names() == CREATE_CALLS[: CREATE_CALLS.index(method) + 1]

    async def test_agent_failure_leaves_earlier_resources_in_place(self, orchestrator, fake_api):
        fake_api.failures["create_chatbot"] = _fatal()

        with pytest.raises(ProvisioningError):
            await orchestrator.create(_spec())

        assert "pool_sales_helper" in fake_api.pools
        assert "index_sales_helper" in fake_api.indices
        assert "prompt_sales_helper" in fake_api.promptlets
        assert not any(name.startswith("delete_") for name in fake_api.call_names())

    async def test_transport_failure_is_fatal(self, orchestrator, fake_api, ledger):
        fake_api.failures["create_document_pool"] = ResourceTransportError(
            method="POST", path="/documentpools", reason="connection refused"
        )

        with pytest.raises(ProvisioningError) as exc_info:
            await orchestrator.create(_spec())

        assert exc_info.value.kind is ErrorKind.TRANSPORT_FATAL
        assert "connection refused" in exc_info.value.message
        assert ledger.list() == []

    async def test_error_is_chained(self, orchestrator, fake_api):
        cause = _fatal()
        fake_api.failures["create_promptlet"] = cause
        with pytest.raises(ProvisioningError) as exc_info:
            await orchestrator.create(_spec())
        assert exc_info.value.__cause__ is cause

    async def test_symbol_only_name_rejected_before_remote_calls(self, orchestrator, fake_api):
        with pytest.raises(ValueError, match="empty identifier"):
            await orchestrator.create(_spec(display_name="!!!"))
        assert fake_api.calls == []

    def test_blank_display_name_rejected_by_spec(self):
        with pytest.raises(ValueError):
            AssistantSpec(display_name="   ")


class TestInitialFiles:
    @pytest.fixture
    def files(self):
        return [
            UploadFile(filename="handbook.pdf", content=b"%PDF", content_type="application/pdf"),
            UploadFile(filename="faq.txt", content=b"Q/A", content_type="text/plain"),
        ]

    async def test_upload_then_reindex_and_count(self, orchestrator, fake_api, ledger, files):
        entity = await orchestrator.create(_spec(files=files))

        assert fake_api.call_names() == [
            *CREATE_CALLS,
            "upload_documents",
            "rebuild_search_index",
        ]
        assert fake_api.calls[4][1] == ("pool_sales_helper", ["handbook.pdf", "faq.txt"])
        assert fake_api.rebuilds == ["index_sales_helper"]
        assert entity.documents_count == 2
        assert ledger.get("sales_helper").documents_count == 2

    async def test_upload_failure_does_not_fail_create(self, orchestrator, fake_api, ledger, files):
        fake_api.failures["upload_documents"] = _fatal(413, {"title": "Payload Too Large"})

        entity = await orchestrator.create(_spec(files=files))

        assert entity.documents_count == 0
        assert ledger.get("sales_helper").documents_count == 0
        assert "rebuild_search_index" in fake_api.call_names()

    async def test_reindex_failure_does_not_fail_create(self, orchestrator, fake_api, ledger, files):
        fake_api.failures["rebuild_search_index"] = _fatal()

        entity = await orchestrator.create(_spec(files=files))

        assert entity.documents_count == 2
        assert ledger.get("sales_helper") is not None

    async def test_no_files_skips_upload_and_reindex(self, orchestrator, fake_api):
        await orchestrator.create(_spec())
        assert "upload_documents" not in fake_api.call_names()
        assert "rebuild_search_index" not in fake_api.call_names()


class TestOverHttp:
    """The saga driven through HttpResourceAPI and a MockTransport."""

    @staticmethod
    def _orchestrator(client: httpx.AsyncClient, ledger) -> ProvisioningOrchestrator:
        api = HttpResourceAPI(
            base_url="https://assistants.example.com",
            tenant="acme",
            api_key="k",
            http_client=client,
        )
        return ProvisioningOrchestrator(api, ledger, embedding_model="test-embedding")

    async def test_unexpected_echo_bodies_do_not_abort(self, ledger):
        seen: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            name = json.loads(request.content)["name"]
            return httpx.Response(
                201, json={"name": name, "languageTags": None, "promptletNames": None}
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            entity = await self._orchestrator(client, ledger).create(_spec())

        assert seen == [
            ("POST", "/acme/api/documentpools"),
            ("POST", "/acme/api/searchindices"),
            ("POST", "/acme/api/promptlets"),
            ("POST", "/acme/api/chatbots"),
        ]
        assert ledger.get("sales_helper") == entity

    async def test_malformed_index_status_is_step_labelled(self, ledger):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json={"name": "index_sales_helper", "status": ["?"]})
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = self._orchestrator(client, ledger)
            await orchestrator.create(_spec())
            with pytest.raises(ProvisioningError) as exc_info:
                await orchestrator.index_status("sales_helper")

        assert exc_info.value.step is ProvisioningStep.INDEX_STATUS
        assert exc_info.value.kind is ErrorKind.REMOTE_FATAL
        assert exc_info.value.status_code == 200
