"""Pydantic models for compound assistants and Resource API payloads.

The persisted ledger layout and the Resource API both use camelCase keys;
models expose snake_case attributes and serialise by alias.
"""

from __future__ import annotations

import mimetypes
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_LANGUAGE = "de"
DEFAULT_ICON = "🤖"
DEFAULT_COLOR = "#dbeafe"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

SEMANTIC_SEARCH_TOOL_PROVIDER = "semantic_search"
SEARCH_INDEX_TYPE = "vector"


class Visibility(StrEnum):
    """Who may see an assistant in the catalogue."""

    ALL = "all"
    TEAM = "team"
    PRIVATE = "private"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Compound assistant
# ---------------------------------------------------------------------------


class CompoundAssistant(_CamelModel):
    """A compound assistant as recorded in the ledger.

    ``slug`` is persisted under the key ``name`` and never changes after
    creation; the four ``*_name`` fields point at the remote resources.
    """

    slug: str = Field(alias="name")
    display_name: str
    description: str = ""
    system_prompt: str = ""
    language: str = DEFAULT_LANGUAGE
    icon: str = DEFAULT_ICON
    color: str = DEFAULT_COLOR
    document_pool_name: str
    search_index_name: str
    promptlet_name: str
    chatbot_name: str
    documents_count: int = Field(default=0, ge=0)
    conversations_count: int = Field(default=0, ge=0)
    creation_date: datetime = Field(default_factory=lambda: datetime.now(UTC))
    visibility: Visibility = Visibility.ALL

    def to_record(self) -> dict[str, Any]:
        """Serialise to the persisted JSON layout."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> CompoundAssistant:
        return cls.model_validate(record)


class UploadFile(BaseModel):
    """A document to upload into an assistant's pool."""

    filename: str = Field(min_length=1)
    content: bytes
    content_type: str = DEFAULT_CONTENT_TYPE

    @classmethod
    def from_path(cls, path: Path) -> UploadFile:
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            content=Path(path).read_bytes(),
            content_type=content_type or DEFAULT_CONTENT_TYPE,
        )


class AssistantSpec(BaseModel):
    """Caller input for creating a compound assistant."""

    display_name: str
    description: str = ""
    system_prompt: str = ""
    language: str = DEFAULT_LANGUAGE
    icon: str = DEFAULT_ICON
    color: str = DEFAULT_COLOR
    visibility: Visibility = Visibility.ALL
    files: list[UploadFile] = Field(default_factory=list)

    @field_validator("display_name")
    @classmethod
    def _display_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("display_name must be a non-empty string")
        return value


class AssistantUpdate(BaseModel):
    """Partial edit of an existing assistant.  Unset fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    display_name: str | None = None
    description: str | None = None
    system_prompt: str | None = None
    icon: str | None = None
    color: str | None = None
    visibility: Visibility | None = None

    @field_validator("display_name")
    @classmethod
    def _display_name_not_blank(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("display_name must be a non-empty string")
        return value

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Resource API payloads
# ---------------------------------------------------------------------------


class _RemoteModel(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _null_as_empty(value: Any) -> Any:
    """The service sends ``null`` for list fields it has no entries for."""
    return [] if value is None else value


class DocumentPool(_RemoteModel):
    name: str
    system_pool: bool = False
    total_documents_count: int | None = None
    total_documents_size: int | None = None


class SearchIndex(_RemoteModel):
    name: str
    document_pool: str | None = None
    type: str = SEARCH_INDEX_TYPE
    status: str | None = None
    health: str | None = None
    language_tags: list[str] = Field(default_factory=list)
    embedding_model: str | None = None
    total_documents_count: int | None = None
    last_indexing_date: str | None = None

    _language_tags = field_validator("language_tags", mode="before")(_null_as_empty)


class PromptletLanguage(_RemoteModel):
    language_tag: str
    default_language: bool = True
    prompt: str


class Promptlet(_RemoteModel):
    name: str
    role: Literal["SYSTEM", "USER", "ASSISTANT"] = "SYSTEM"
    languages: list[PromptletLanguage] = Field(default_factory=list)

    _languages = field_validator("languages", mode="before")(_null_as_empty)


class Chatbot(_RemoteModel):
    name: str
    document_pool: str | None = None
    promptlet_names: list[str] = Field(default_factory=list)
    tool_providers_enabled: list[str] = Field(default_factory=list)

    _lists = field_validator("promptlet_names", "tool_providers_enabled", mode="before")(
        _null_as_empty
    )


class Document(_RemoteModel):
    name: str = ""
    document_pool: str | None = None
    size: int | None = None
    status: str | None = None
    creation_date: str | None = None
