"""Keygate FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from keygate.api.auth import CredentialResolver
from keygate.config import Settings, get_settings
from keygate.errors import GatewayError
from keygate.models import AuditEvent, ManagedApiKey, UsageEvent
from keygate.services.admin_session import AdminSessionSigner
from keygate.services.api_key import ApiKeyService
from keygate.services.audit import AuditLog
from keygate.services.http import UpstreamClient
from keygate.services.usage import UsageLedger
from keygate.storage import JsonCollectionStore

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings: Settings = app.state.settings
    logger.info(
        "keygate.startup",
        version="0.1.0",
        data_dir=str(settings.storage.data_dir),
        static_tokens=len(settings.security.static_tokens),
        admin_configured=settings.admin.configured,
    )

    for store in app.state.stores:
        await store.ensure()

    await app.state.upstream.startup()

    yield

    logger.info("keygate.shutdown")
    await app.state.upstream.shutdown()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Every component is built here from ``settings`` and kept on
    ``app.state``; nothing reads configuration globally.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Keygate",
        description="Managed API keys, quotas and audit for a completion gateway",
        version="0.1.0",
        lifespan=lifespan,
    )

    keys_store = JsonCollectionStore(settings.storage.resolved_keys_path(), ManagedApiKey)
    usage_store = JsonCollectionStore(settings.storage.resolved_usage_path(), UsageEvent)
    audit_store = JsonCollectionStore(settings.storage.resolved_audit_path(), AuditEvent)

    app.state.settings = settings
    app.state.stores = [keys_store, usage_store, audit_store]
    app.state.api_keys = ApiKeyService(keys_store)
    app.state.usage = UsageLedger(usage_store)
    app.state.audit = AuditLog(audit_store)
    app.state.admin_sessions = AdminSessionSigner(settings.admin)
    app.state.upstream = UpstreamClient(settings.upstream)

    # Credential resolver (inner middleware, runs after request ID)
    app.add_middleware(
        CredentialResolver,
        security=settings.security,
        api_keys=app.state.api_keys,
        usage=app.state.usage,
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    # Error handler
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        """Handle Keygate errors with consistent format."""
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
        )

    # Health check
    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    from keygate.api.admin import router as admin_router

    app.include_router(admin_router)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
    )
