"""Keygate services."""

from keygate.services.admin_session import AdminSessionSigner
from keygate.services.api_key import ApiKeyService
from keygate.services.audit import AuditLog, AuditPage
from keygate.services.usage import UsageLedger, UsageSummary

__all__ = [
    "AdminSessionSigner",
    "ApiKeyService",
    "AuditLog",
    "AuditPage",
    "UsageLedger",
    "UsageSummary",
]
