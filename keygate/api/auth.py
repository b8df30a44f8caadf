"""Credential resolution for protected gateway paths.

Runs as HTTP middleware in front of the completion routers. Requests under a
protected prefix must present a static token or a managed key, either as
``Authorization: Bearer <token>`` or in the api-key header. Managed keys are
additionally checked for expiry and quota, and each accepted managed-key
request is counted once its response ends, including when the client
disconnects mid-stream.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import anyio
import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from keygate.config import SecurityConfig
from keygate.errors import GatewayError, QuotaExceededError, UnauthorizedError
from keygate.models.api_key import ManagedApiKey
from keygate.services.api_key import ApiKeyService
from keygate.services.usage import UsageLedger
from keygate.utils.datetime import utcnow

logger = structlog.get_logger()

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    match = _BEARER_PATTERN.match(authorization.strip())
    if not match:
        return None
    token = match.group(1).strip()
    return token or None


def extract_api_key(value: str | None) -> str | None:
    if not value:
        return None
    token = value.strip()
    return token or None


@dataclass(frozen=True)
class ResolvedCredential:
    """An accepted credential.

    ``managed_key`` is None for static tokens, which carry no quota or
    expiry policy.
    """

    token: str
    managed_key: ManagedApiKey | None = None

    @property
    def managed_key_id(self) -> str | None:
        return self.managed_key.id if self.managed_key else None


class CredentialResolver:
    """ASGI middleware enforcing credentials on protected path prefixes.

    Usage:
        app.add_middleware(
            CredentialResolver,
            security=settings.security,
            api_keys=api_keys,
            usage=usage,
        )
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        security: SecurityConfig,
        api_keys: ApiKeyService,
        usage: UsageLedger,
    ) -> None:
        self.app = app
        self._security = security
        self._api_keys = api_keys
        self._usage = usage
        self._log = logger.bind(component="auth")

    @property
    def challenge(self) -> str:
        return f'Bearer realm="{self._security.realm}"'

    def is_protected(self, request: Request) -> bool:
        if request.method == "OPTIONS":
            return False
        path = request.url.path
        return any(path.startswith(prefix) for prefix in self._security.protected_prefixes)

    async def resolve(self, request: Request) -> ResolvedCredential:
        """Resolve and authorize the credential on ``request``.

        Raises:
            UnauthorizedError: Not configured, missing, conflicting, invalid
                or expired credential
            QuotaExceededError: Total or daily limit reached
        """
        static_tokens = self._security.static_tokens

        # Fail closed: a gateway with no credentials at all accepts nothing
        if not static_tokens and not await self._api_keys.has_any():
            raise UnauthorizedError("API access is not configured")

        bearer = extract_bearer_token(request.headers.get("authorization"))
        api_key = extract_api_key(request.headers.get(self._security.api_key_header))

        if bearer and api_key and bearer != api_key:
            raise UnauthorizedError("Conflicting API tokens")

        token = bearer or api_key
        if not token:
            raise UnauthorizedError("Missing API token")

        if token in static_tokens:
            return ResolvedCredential(token=token)

        managed_key = await self._api_keys.get_by_token(token)
        if managed_key is None:
            raise UnauthorizedError("Invalid API token")

        now = utcnow()
        if managed_key.expires_at is not None and managed_key.expires_at <= now:
            raise UnauthorizedError("API key expired", details={"key_id": managed_key.id})

        if managed_key.total_limit is not None or managed_key.daily_limit is not None:
            summary = await self._usage.usage_summary(managed_key.id, now)
            if managed_key.total_limit is not None and summary.total >= managed_key.total_limit:
                raise QuotaExceededError(
                    "API key total usage limit reached",
                    details={"key_id": managed_key.id, "limit": managed_key.total_limit},
                )
            if managed_key.daily_limit is not None and summary.daily >= managed_key.daily_limit:
                raise QuotaExceededError(
                    "API key daily usage limit reached",
                    details={"key_id": managed_key.id, "limit": managed_key.daily_limit},
                )

        return ResolvedCredential(token=token, managed_key=managed_key)

    def _reject(self, request: Request, exc: GatewayError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        self._log.info(
            "auth.rejected",
            path=request.url.path,
            status=exc.status_code,
            reason=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
            headers={"WWW-Authenticate": self.challenge},
        )

    async def _record_usage(self, key_id: str, method: str, path: str, status: int) -> None:
        # Runs while the request task may already be cancelled (client gone)
        with anyio.CancelScope(shield=True):
            await self._usage.record_usage_safely(key_id, method=method, path=path, status=status)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if not self.is_protected(request):
            await self.app(scope, receive, send)
            return

        try:
            credential = await self.resolve(request)
        except (UnauthorizedError, QuotaExceededError) as exc:
            await self._reject(request, exc)(scope, receive, send)
            return

        request.state.managed_key_id = credential.managed_key_id
        if credential.managed_key is None:
            await self.app(scope, receive, send)
            return

        status = 500

        async def send_with_status(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        # Counted even when the handler fails or the client disconnects
        try:
            await self.app(scope, receive, send_with_status)
        finally:
            await self._record_usage(
                credential.managed_key.id,
                request.method,
                request.url.path,
                status,
            )
