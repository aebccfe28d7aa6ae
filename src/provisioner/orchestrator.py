"""Provisioning saga for compound assistants.

Creation walks four remote resources in dependency order (pool, index,
promptlet, chatbot), treating an "already exists" answer as success, and only
then writes the ledger row.  Fatal failures abort immediately and leave
earlier resources in place; a later create with the same display name
reattaches to them.  Deletion walks the resources in reverse, swallowing each
failure, and always removes the ledger row.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

from opentelemetry import trace

from provisioner.classification import ErrorClassifier, ErrorKind, extract_error_message
from provisioner.identity import derive_child_names, derive_slug
from provisioner.ledger import Ledger
from provisioner.models import (
    SEARCH_INDEX_TYPE,
    SEMANTIC_SEARCH_TOOL_PROVIDER,
    AssistantSpec,
    AssistantUpdate,
    Chatbot,
    CompoundAssistant,
    Document,
    Promptlet,
    PromptletLanguage,
    SearchIndex,
    UploadFile,
)
from provisioner.resource_api import ResourceAPI, ResourceAPIError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("provisioner")

DEFAULT_EMBEDDING_MODEL = "intfloat/multilingual-e5-large"

T = TypeVar("T")


class ProvisioningStep(enum.StrEnum):
    """Remote operations the orchestrator reports failures for."""

    POOL = "pool"
    INDEX = "index"
    TEMPLATE = "template"
    AGENT = "agent"
    TEMPLATE_UPDATE = "template_update"
    DOCUMENT_UPLOAD = "document_upload"
    DOCUMENT_LIST = "document_list"
    DOCUMENT_DELETE = "document_delete"
    REINDEX = "reindex"
    INDEX_STATUS = "index_status"


_STEP_LABELS: dict[ProvisioningStep, str] = {
    ProvisioningStep.POOL: "create document pool",
    ProvisioningStep.INDEX: "create search index",
    ProvisioningStep.TEMPLATE: "create promptlet",
    ProvisioningStep.AGENT: "create chatbot",
    ProvisioningStep.TEMPLATE_UPDATE: "update promptlet",
    ProvisioningStep.DOCUMENT_UPLOAD: "upload documents",
    ProvisioningStep.DOCUMENT_LIST: "list documents",
    ProvisioningStep.DOCUMENT_DELETE: "delete document",
    ProvisioningStep.REINDEX: "trigger reindex",
    ProvisioningStep.INDEX_STATUS: "fetch search index status",
}


class ProvisioningError(RuntimeError):
    """Raised when a saga step fails fatally.

    Attributes
    ----------
    step:
        The step that failed.
    message:
        Message extracted from the remote error.
    kind:
        Classification of the underlying failure.
    status_code:
        HTTP status when a response was received.
    """

    def __init__(
        self,
        *,
        step: ProvisioningStep,
        message: str,
        kind: ErrorKind = ErrorKind.REMOTE_FATAL,
        status_code: int | None = None,
    ) -> None:
        self.step = step
        self.message = message
        self.kind = kind
        self.status_code = status_code
        super().__init__(f"Failed to {_STEP_LABELS[step]}: {message}")


class AssistantNotFoundError(LookupError):
    """Raised when no ledger row exists for a slug."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f"No assistant named {slug!r} in the ledger")


class ProvisioningOrchestrator:
    """Drives the create/update/delete sagas against a :class:`ResourceAPI`.

    Parameters
    ----------
    api:
        Resource API client.
    ledger:
        Local ledger receiving the durable record.
    embedding_model:
        Embedding model requested for new search indices.
    classifier:
        Error classification strategy; defaults to 409/422 or an
        "already exists" message meaning the resource is already present.
    """

    def __init__(
        self,
        api: ResourceAPI,
        ledger: Ledger,
        *,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self._api = api
        self._ledger = ledger
        self._embedding_model = embedding_model
        self._classifier = classifier or ErrorClassifier()

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    # ------------------------------------------------------------------
    # Ledger reads
    # ------------------------------------------------------------------

    def list_assistants(self) -> list[CompoundAssistant]:
        return self._ledger.list()

    def get(self, slug: str) -> CompoundAssistant | None:
        return self._ledger.get(slug)

    def require(self, slug: str) -> CompoundAssistant:
        entity = self._ledger.get(slug)
        if entity is None:
            raise AssistantNotFoundError(slug)
        return entity

    # ------------------------------------------------------------------
    # Create saga
    # ------------------------------------------------------------------

    async def create(self, spec: AssistantSpec) -> CompoundAssistant:
        """Provision the four remote resources and record the assistant.

        Raises
        ------
        ValueError
            When the display name normalises to an empty slug.
        ProvisioningError
            When any of the four creation steps fails with anything other
            than "already exists".  Resources created by earlier steps are
            not removed.
        """
        slug = derive_slug(spec.display_name)
        if not slug:
            raise ValueError(f"Display name {spec.display_name!r} yields an empty identifier")
        names = derive_child_names(slug)

        with tracer.start_as_current_span("provisioner.create") as span:
            span.set_attribute("assistant.slug", slug)
            logger.info("Provisioning assistant %r as %s", spec.display_name, slug)

            await self._create_step(
                ProvisioningStep.POOL,
                names.pool,
                lambda: self._api.create_document_pool(names.pool),
            )
            await self._create_step(
                ProvisioningStep.INDEX,
                names.index,
                lambda: self._api.create_search_index(
                    SearchIndex(
                        name=names.index,
                        document_pool=names.pool,
                        type=SEARCH_INDEX_TYPE,
                        language_tags=[spec.language],
                        embedding_model=self._embedding_model,
                    )
                ),
            )
            await self._create_step(
                ProvisioningStep.TEMPLATE,
                names.template,
                lambda: self._api.create_promptlet(
                    _system_promptlet(names.template, spec.language, spec.system_prompt)
                ),
            )
            await self._create_step(
                ProvisioningStep.AGENT,
                names.agent,
                lambda: self._api.create_chatbot(
                    Chatbot(
                        name=names.agent,
                        document_pool=names.pool,
                        promptlet_names=[names.template],
                        tool_providers_enabled=[SEMANTIC_SEARCH_TOOL_PROVIDER],
                    )
                ),
            )

            entity = CompoundAssistant(
                slug=slug,
                display_name=spec.display_name,
                description=spec.description,
                system_prompt=spec.system_prompt,
                language=spec.language,
                icon=spec.icon,
                color=spec.color,
                visibility=spec.visibility,
                document_pool_name=names.pool,
                search_index_name=names.index,
                promptlet_name=names.template,
                chatbot_name=names.agent,
                documents_count=0,
                conversations_count=0,
                creation_date=datetime.now(UTC),
            )
            self._ledger.upsert(entity)

            if spec.files:
                entity = await self._ingest_initial_files(entity, spec.files)

        logger.info("Assistant %s provisioned", slug)
        return entity

    async def _create_step(
        self,
        step: ProvisioningStep,
        resource_name: str,
        call: Callable[[], Awaitable[Any]],
    ) -> None:
        with tracer.start_as_current_span(f"provisioner.create.{step.value}") as span:
            span.set_attribute("resource.name", resource_name)
            logger.info("Creating %s %s", step.value, resource_name)
            try:
                await call()
            except ResourceAPIError as exc:
                error = exc.to_error_response()
                kind = self._classifier.classify(error)
                if kind is ErrorKind.ALREADY_EXISTS:
                    span.set_attribute("resource.reused", True)
                    logger.info("%s %s already exists, reusing it", step.value, resource_name)
                    return
                message = extract_error_message(error)
                logger.error(
                    "Creating %s %s failed (%s, status=%s): %s",
                    step.value,
                    resource_name,
                    kind.value,
                    error.status_code,
                    message,
                )
                raise ProvisioningError(
                    step=step, message=message, kind=kind, status_code=error.status_code
                ) from exc
            logger.info("Created %s %s", step.value, resource_name)

    async def _ingest_initial_files(
        self, entity: CompoundAssistant, files: Sequence[UploadFile]
    ) -> CompoundAssistant:
        """Upload and reindex after the durability point; never raises remote errors."""
        logger.info("Uploading %d file(s) to %s", len(files), entity.document_pool_name)
        try:
            await self._api.upload_documents(entity.document_pool_name, files)
        except ResourceAPIError as exc:
            logger.warning(
                "Upload to %s failed, assistant kept without documents: %s",
                entity.document_pool_name,
                extract_error_message(exc.to_error_response()),
            )
        else:
            entity = entity.model_copy(
                update={"documents_count": entity.documents_count + len(files)}
            )
            self._ledger.upsert(entity)

        try:
            await self._api.rebuild_search_index(entity.search_index_name)
        except ResourceAPIError as exc:
            logger.warning(
                "Reindex of %s failed: %s",
                entity.search_index_name,
                extract_error_message(exc.to_error_response()),
            )
        else:
            logger.info("Reindex of %s triggered", entity.search_index_name)
        return entity

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(self, slug: str, changes: AssistantUpdate) -> CompoundAssistant:
        """Apply an edit to an existing assistant.

        Metadata-only edits touch the ledger alone.  A changed system prompt
        is pushed to the existing promptlet first; if that fails the ledger is
        left as it was.
        """
        entity = self.require(slug)
        updates = changes.changes()

        new_prompt = updates.get("system_prompt")
        if new_prompt is not None and new_prompt != entity.system_prompt:
            await self._remote(
                ProvisioningStep.TEMPLATE_UPDATE,
                lambda: self._api.update_promptlet(
                    entity.promptlet_name,
                    _system_promptlet(entity.promptlet_name, entity.language, new_prompt),
                ),
            )

        updated = entity.model_copy(update=updates)
        self._ledger.upsert(updated)
        logger.info("Assistant %s updated (%s)", slug, ", ".join(sorted(updates)) or "no changes")
        return updated

    # ------------------------------------------------------------------
    # Delete saga
    # ------------------------------------------------------------------

    async def delete(self, entity: CompoundAssistant) -> None:
        """Tear down remote resources best-effort and drop the ledger row."""
        with tracer.start_as_current_span("provisioner.delete") as span:
            span.set_attribute("assistant.slug", entity.slug)
            logger.info("Deleting assistant %s", entity.slug)

            teardown: list[tuple[str, str, Callable[[str], Awaitable[None]]]] = [
                ("chatbot", entity.chatbot_name, self._api.delete_chatbot),
                ("promptlet", entity.promptlet_name, self._api.delete_promptlet),
                ("search index", entity.search_index_name, self._api.delete_search_index),
                ("document pool", entity.document_pool_name, self._api.delete_document_pool),
            ]
            try:
                for label, name, remove in teardown:
                    try:
                        await remove(name)
                    except ResourceAPIError as exc:
                        logger.warning(
                            "Deleting %s %s failed, continuing: %s",
                            label,
                            name,
                            extract_error_message(exc.to_error_response()),
                        )
                    except Exception:
                        logger.warning(
                            "Deleting %s %s raised unexpectedly, continuing",
                            label,
                            name,
                            exc_info=True,
                        )
            finally:
                self._ledger.remove(entity.slug)
        logger.info("Assistant %s deleted", entity.slug)

    async def delete_by_slug(self, slug: str) -> None:
        await self.delete(self.require(slug))

    # ------------------------------------------------------------------
    # Documents and index maintenance
    # ------------------------------------------------------------------

    async def list_documents(self, slug: str) -> list[Document]:
        entity = self.require(slug)
        return await self._remote(
            ProvisioningStep.DOCUMENT_LIST,
            lambda: self._api.list_documents(entity.document_pool_name),
        )

    async def upload_documents(
        self, slug: str, files: Sequence[UploadFile]
    ) -> CompoundAssistant:
        entity = self.require(slug)
        if not files:
            return entity
        await self._remote(
            ProvisioningStep.DOCUMENT_UPLOAD,
            lambda: self._api.upload_documents(entity.document_pool_name, files),
        )
        updated = entity.model_copy(
            update={"documents_count": entity.documents_count + len(files)}
        )
        self._ledger.upsert(updated)
        logger.info("Uploaded %d file(s) to %s", len(files), entity.document_pool_name)
        return updated

    async def delete_document(self, slug: str, document_name: str) -> CompoundAssistant:
        entity = self.require(slug)
        await self._remote(
            ProvisioningStep.DOCUMENT_DELETE,
            lambda: self._api.delete_document(document_name),
        )
        updated = entity.model_copy(
            update={"documents_count": max(0, entity.documents_count - 1)}
        )
        self._ledger.upsert(updated)
        return updated

    async def reindex(self, slug: str) -> None:
        entity = self.require(slug)
        await self._remote(
            ProvisioningStep.REINDEX,
            lambda: self._api.rebuild_search_index(entity.search_index_name),
        )
        logger.info("Reindex of %s triggered", entity.search_index_name)

    async def index_status(self, slug: str) -> SearchIndex:
        entity = self.require(slug)
        return await self._remote(
            ProvisioningStep.INDEX_STATUS,
            lambda: self._api.get_search_index(entity.search_index_name),
        )

    def record_conversation(self, slug: str) -> CompoundAssistant:
        """Bump the local conversation counter after a conversation is opened."""
        entity = self.require(slug)
        updated = entity.model_copy(
            update={"conversations_count": entity.conversations_count + 1}
        )
        self._ledger.upsert(updated)
        return updated

    async def _remote(self, step: ProvisioningStep, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except ResourceAPIError as exc:
            error = exc.to_error_response()
            message = extract_error_message(error)
            logger.error("Failed to %s: %s", _STEP_LABELS[step], message)
            raise ProvisioningError(
                step=step,
                message=message,
                kind=self._classifier.classify(error),
                status_code=error.status_code,
            ) from exc


def _system_promptlet(name: str, language: str, prompt: str) -> Promptlet:
    return Promptlet(
        name=name,
        role="SYSTEM",
        languages=[PromptletLanguage(language_tag=language, default_language=True, prompt=prompt)],
    )
