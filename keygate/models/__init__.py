"""Keygate data models."""

from keygate.models.api_key import ManagedApiKey, ManagedApiKeyListItem
from keygate.models.audit import AuditEvent
from keygate.models.usage import UsageEvent

__all__ = [
    "AuditEvent",
    "ManagedApiKey",
    "ManagedApiKeyListItem",
    "UsageEvent",
]
