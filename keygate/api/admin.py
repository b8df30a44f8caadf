"""Admin API endpoints.

Session login/logout plus managed key CRUD, usage and audit queries.
Everything under ``/admin/api-keys`` requires an admin session once admin
credentials are configured.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Query, Request, Response
from pydantic import Field

from keygate.api.dependencies import (
    AdminDep,
    AdminSessionsDep,
    ApiKeyServiceDep,
    AuditLogDep,
    SettingsDep,
    UsageLedgerDep,
)
from keygate.errors import InvalidTimeRangeError, NotFoundError, UnauthorizedError
from keygate.models.api_key import CamelModel, ManagedApiKey, ManagedApiKeyListItem
from keygate.models.audit import AuditEvent
from keygate.models.usage import UsageEvent
from keygate.services.admin_session import SESSION_COOKIE_NAME
from keygate.utils.datetime import parse_instant

router = APIRouter(prefix="/admin", tags=["admin"])
keys_router = APIRouter(prefix="/api-keys", dependencies=[AdminDep])

_log = structlog.get_logger()


# ---- Request/Response Models ----


class OkResponse(CamelModel):
    ok: bool = True


class SessionStatusResponse(CamelModel):
    configured: bool
    authenticated: bool


class ApiKeyCreateRequest(CamelModel):
    """Create payload. Limits and expiry are validated by the service."""

    id: Any = ""
    total_limit: Any = None
    daily_limit: Any = None
    expires_at: Any = None


class ApiKeySettingsRequest(CamelModel):
    total_limit: Any = None
    daily_limit: Any = None
    expires_at: Any = None


class ApiKeySettingsResponse(CamelModel):
    id: str
    total_limit: Optional[int] = None
    daily_limit: Optional[int] = None
    expires_at: Optional[datetime] = None


class ApiKeyListEntry(ManagedApiKeyListItem):
    total_usage: int


class ApiKeyListResponse(CamelModel):
    items: list[ApiKeyListEntry]


class ApiKeySecretResponse(CamelModel):
    id: str
    key: str


class UsageRangeResponse(CamelModel):
    key_id: str
    from_: datetime = Field(alias="from")
    to: datetime
    count: int
    total_usage: int
    daily_usage: int
    records: list[UsageEvent]


class AuditPageResponse(CamelModel):
    total: int
    pages: int
    page: int
    page_size: int
    items: list[AuditEvent]


# ---- Helpers ----


def _parse_bound(value: str | None, name: str) -> datetime | None:
    if value is None or value.strip() == "":
        return None
    try:
        return parse_instant(value)
    except ValueError:
        raise InvalidTimeRangeError(f"invalid {name}", details={name: value}) from None


async def _require_key(api_keys, key_id: str) -> ManagedApiKey:
    item = await api_keys.get_by_id(key_id)
    if item is None:
        raise NotFoundError("API key not found", details={"id": key_id})
    return item


async def _read_login_form(request: Request) -> tuple[str, str]:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        username = payload.get("username")
        password = payload.get("password")
    else:
        form = await request.form()
        username = form.get("username")
        password = form.get("password")
    return (
        username.strip() if isinstance(username, str) else "",
        password if isinstance(password, str) else "",
    )


# ---- Session endpoints ----


@router.post("/login", response_model=OkResponse)
async def login(
    request: Request,
    response: Response,
    sessions: AdminSessionsDep,
) -> OkResponse:
    """Exchange admin credentials for a session cookie.

    Accepts JSON or form-encoded ``username``/``password``. When no admin
    credentials are configured this succeeds without setting a cookie.
    """
    if not sessions.configured:
        return OkResponse()

    username, password = await _read_login_form(request)
    if not sessions.validate_credentials(username, password):
        _log.info("admin.login.failed")
        raise UnauthorizedError("Invalid username or password")

    response.set_cookie(
        SESSION_COOKIE_NAME,
        sessions.create_token(username),
        max_age=sessions.ttl_seconds,
        path="/",
        secure=request.url.scheme == "https",
        httponly=True,
        samesite="lax",
    )
    _log.info("admin.login")
    return OkResponse()


@router.post("/logout", response_model=OkResponse)
async def logout(response: Response) -> OkResponse:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return OkResponse()


@router.get("/session", response_model=SessionStatusResponse)
async def session_status(request: Request, sessions: AdminSessionsDep) -> SessionStatusResponse:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    return SessionStatusResponse(
        configured=sessions.configured,
        authenticated=sessions.is_authenticated(token),
    )


# ---- Managed key endpoints ----


@keys_router.get("", response_model=ApiKeyListResponse)
async def list_api_keys(
    api_keys: ApiKeyServiceDep,
    usage: UsageLedgerDep,
) -> ApiKeyListResponse:
    """List keys (secrets masked) with their lifetime usage."""
    items = []
    for item in await api_keys.list():
        summary = await usage.usage_summary(item.id)
        items.append(ApiKeyListEntry(**item.model_dump(), total_usage=summary.total))
    return ApiKeyListResponse(items=items)


@keys_router.post("", response_model=ManagedApiKey)
async def create_api_key(
    request: ApiKeyCreateRequest,
    api_keys: ApiKeyServiceDep,
) -> ManagedApiKey:
    """Create a key. The response is the only listing of the full secret."""
    return await api_keys.create(
        request.id,
        total_limit=request.total_limit,
        daily_limit=request.daily_limit,
        expires_at=request.expires_at,
    )


@keys_router.get("/{key_id}", response_model=ApiKeySecretResponse)
async def get_api_key(key_id: str, api_keys: ApiKeyServiceDep) -> ApiKeySecretResponse:
    """Return the full secret for the admin copy action."""
    item = await _require_key(api_keys, key_id)
    return ApiKeySecretResponse(id=item.id, key=item.key)


@keys_router.patch("/{key_id}/settings", response_model=ApiKeySettingsResponse)
async def update_api_key_settings(
    key_id: str,
    request: ApiKeySettingsRequest,
    api_keys: ApiKeyServiceDep,
) -> ApiKeySettingsResponse:
    updated = await api_keys.update_settings(
        key_id,
        total_limit=request.total_limit,
        daily_limit=request.daily_limit,
        expires_at=request.expires_at,
    )
    if updated is None:
        raise NotFoundError("API key not found", details={"id": key_id})
    return ApiKeySettingsResponse(
        id=updated.id,
        total_limit=updated.total_limit,
        daily_limit=updated.daily_limit,
        expires_at=updated.expires_at,
    )


@keys_router.delete("/{key_id}", response_model=OkResponse)
async def delete_api_key(key_id: str, api_keys: ApiKeyServiceDep) -> OkResponse:
    if not await api_keys.delete(key_id):
        raise NotFoundError("API key not found", details={"id": key_id})
    return OkResponse()


@keys_router.get("/{key_id}/usage", response_model=UsageRangeResponse)
async def get_api_key_usage(
    key_id: str,
    api_keys: ApiKeyServiceDep,
    usage: UsageLedgerDep,
    from_: str | None = Query(None, alias="from"),
    to: str | None = Query(None),
) -> UsageRangeResponse:
    """Usage events in ``[from, to]`` plus current counters."""
    item = await _require_key(api_keys, key_id)

    start = _parse_bound(from_, "from")
    end = _parse_bound(to, "to")
    if start is None or end is None:
        raise InvalidTimeRangeError("from and to are required")
    if start > end:
        raise InvalidTimeRangeError()

    records = await usage.usage_by_range(item.id, start, end)
    summary = await usage.usage_summary(item.id)

    return UsageRangeResponse(
        key_id=item.id,
        from_=start,
        to=end,
        count=len(records),
        total_usage=summary.total,
        daily_usage=summary.daily,
        records=records,
    )


@keys_router.get("/{key_id}/audit", response_model=AuditPageResponse)
async def get_api_key_audit(
    key_id: str,
    api_keys: ApiKeyServiceDep,
    audit: AuditLogDep,
    settings: SettingsDep,
    from_: str | None = Query(None, alias="from"),
    to: str | None = Query(None),
    query: str | None = Query(None),
    page: int = Query(1),
    page_size: int | None = Query(None, alias="pageSize"),
) -> AuditPageResponse:
    """Audit events, newest first, filtered by time range and free text."""
    item = await _require_key(api_keys, key_id)

    start = _parse_bound(from_, "from")
    end = _parse_bound(to, "to")
    if start is not None and end is not None and start > end:
        raise InvalidTimeRangeError()

    size = page_size if page_size is not None else settings.audit.default_page_size
    size = min(settings.audit.max_page_size, max(1, size))

    result = await audit.page(
        item.id,
        start=start,
        end=end,
        query=query,
        page=page,
        page_size=size,
    )
    return AuditPageResponse(
        total=result.total,
        pages=result.pages,
        page=result.page,
        page_size=result.page_size,
        items=result.items,
    )


router.include_router(keys_router)
