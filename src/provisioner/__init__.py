"""Provisioning of compound assistants (document pool, search index, promptlet, chatbot)."""

from provisioner.identity import ChildNames, derive_child_names, derive_slug
from provisioner.ledger import InMemoryLedgerStore, JsonFileLedgerStore, Ledger
from provisioner.models import AssistantSpec, AssistantUpdate, CompoundAssistant, UploadFile
from provisioner.orchestrator import (
    AssistantNotFoundError,
    ProvisioningError,
    ProvisioningOrchestrator,
)
from provisioner.resource_api import HttpResourceAPI, ResourceAPI

__all__ = [
    "AssistantNotFoundError",
    "AssistantSpec",
    "AssistantUpdate",
    "ChildNames",
    "CompoundAssistant",
    "HttpResourceAPI",
    "InMemoryLedgerStore",
    "JsonFileLedgerStore",
    "Ledger",
    "ProvisioningError",
    "ProvisioningOrchestrator",
    "ResourceAPI",
    "UploadFile",
    "derive_child_names",
    "derive_slug",
]
