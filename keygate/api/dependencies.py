"""FastAPI dependencies for Keygate.

Services are built once in ``create_app`` and kept on ``app.state``; these
helpers hand them to route handlers. Also provides the admin session check.
"""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import Depends, Request

from keygate.config import Settings
from keygate.errors import UnauthorizedError
from keygate.services.admin_session import SESSION_COOKIE_NAME, AdminSessionSigner
from keygate.services.api_key import ApiKeyService
from keygate.services.audit import AuditLog
from keygate.services.http import UpstreamClient
from keygate.services.usage import UsageLedger

logger = structlog.get_logger()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_api_key_service(request: Request) -> ApiKeyService:
    return request.app.state.api_keys


def get_usage_ledger(request: Request) -> UsageLedger:
    return request.app.state.usage


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.audit


def get_admin_sessions(request: Request) -> AdminSessionSigner:
    return request.app.state.admin_sessions


def get_upstream_client(request: Request) -> UpstreamClient:
    return request.app.state.upstream


def get_managed_key_id(request: Request) -> str | None:
    """Managed key id resolved for this request (None for static tokens)."""
    return getattr(request.state, "managed_key_id", None)


def require_admin(request: Request) -> None:
    """Require a valid admin session cookie.

    Passes trivially when no admin credentials are configured. Every
    verification failure is reported the same way as a missing session.

    Raises:
        UnauthorizedError: If the session is missing or invalid
    """
    signer: AdminSessionSigner = request.app.state.admin_sessions
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not signer.is_authenticated(token):
        logger.debug("admin.session.rejected", path=request.url.path)
        raise UnauthorizedError("Unauthorized")


# Type aliases for cleaner dependency injection
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
ApiKeyServiceDep = Annotated[ApiKeyService, Depends(get_api_key_service)]
UsageLedgerDep = Annotated[UsageLedger, Depends(get_usage_ledger)]
AuditLogDep = Annotated[AuditLog, Depends(get_audit_log)]
AdminSessionsDep = Annotated[AdminSessionSigner, Depends(get_admin_sessions)]
UpstreamClientDep = Annotated[UpstreamClient, Depends(get_upstream_client)]
AdminDep = Depends(require_admin)
