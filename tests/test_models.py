"""Tests for model serialisation and upload helpers."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from provisioner.models import (
    DEFAULT_CONTENT_TYPE,
    AssistantUpdate,
    Chatbot,
    CompoundAssistant,
    SearchIndex,
    UploadFile,
)

pytestmark = pytest.mark.unit

RECORD = {
    "name": "sales_helper",
    "displayName": "Sales Helper",
    "description": "",
    "systemPrompt": "Be concise.",
    "language": "en",
    "icon": "🤖",
    "color": "#dbeafe",
    "documentPoolName": "pool_sales_helper",
    "searchIndexName": "index_sales_helper",
    "promptletName": "prompt_sales_helper",
    "chatbotName": "bot_sales_helper",
    "documentsCount": 3,
    "conversationsCount": 1,
    "creationDate": "2026-02-20T14:00:00Z",
    "visibility": "private",
}


class TestCompoundAssistant:
    def test_reads_persisted_record(self):
        entity = CompoundAssistant.from_record(RECORD)
        assert entity.slug == "sales_helper"
        assert entity.documents_count == 3
        assert entity.visibility == "private"

    def test_record_keeps_layout(self):
        record = CompoundAssistant.from_record(RECORD).to_record()
        assert set(record) == set(RECORD)
        assert record["name"] == "sales_helper"

    def test_records_without_counters_default_to_zero(self):
        minimal = {k: v for k, v in RECORD.items() if not k.endswith("Count")}
        entity = CompoundAssistant.from_record(minimal)
        assert entity.documents_count == 0
        assert entity.conversations_count == 0

    def test_negative_counter_rejected(self):
        with pytest.raises(ValueError):
            CompoundAssistant.from_record({**RECORD, "documentsCount": -1})


class TestUploadFile:
    def test_from_path_guesses_type(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        upload = UploadFile.from_path(path)
        assert upload.filename == "notes.txt"
        assert upload.content == b"hello"
        assert upload.content_type == "text/plain"

    def test_unknown_extension_falls_back(self, tmp_path):
        path = tmp_path / "blob.unknownext"
        path.write_bytes(b"\x00")
        assert UploadFile.from_path(path).content_type == DEFAULT_CONTENT_TYPE


def test_search_index_payload_omits_unset_fields():
    payload = SearchIndex(name="index_x", document_pool="pool_x").to_payload()
    assert payload == {"name": "index_x", "documentPool": "pool_x", "type": "vector", "languageTags": []}


def test_update_changes_only_set_fields():
    assert AssistantUpdate(description="d").changes() == {"description": "d"}


@pytest.mark.parametrize("value", ["", "   "])
def test_update_rejects_blank_display_name(value):
    with pytest.raises(ValidationError):
        AssistantUpdate(display_name=value)


def test_remote_lists_accept_null():
    index = SearchIndex.model_validate({"name": "index_x", "languageTags": None})
    chatbot = Chatbot.model_validate({"name": "bot_x", "promptletNames": None})
    assert index.language_tags == []
    assert chatbot.promptlet_names == []
