"""Shared fixtures: settings rooted in a temp dir, services and an ASGI client."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI

from keygate.config import Settings
from keygate.main import create_app
from keygate.models import AuditEvent, ManagedApiKey, UsageEvent
from keygate.services.api_key import ApiKeyService
from keygate.services.audit import AuditLog
from keygate.services.usage import UsageLedger
from keygate.storage import JsonCollectionStore


def make_settings(
    data_dir: Path,
    *,
    api_tokens: str = "",
    admin_username: str = "admin",
    admin_password: str = "secret",
) -> Settings:
    """Create test settings with storage under ``data_dir``."""
    return Settings(
        storage={"data_dir": data_dir},
        security={"api_tokens": api_tokens},
        admin={"username": admin_username, "password": admin_password},
        upstream={"max_retries": 0, "base_delay_seconds": 0.0},
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def keys_store(tmp_path: Path) -> JsonCollectionStore[ManagedApiKey]:
    return JsonCollectionStore(tmp_path / "api_keys.json", ManagedApiKey)


@pytest.fixture
def usage_store(tmp_path: Path) -> JsonCollectionStore[UsageEvent]:
    return JsonCollectionStore(tmp_path / "api_key_usage.json", UsageEvent)


@pytest.fixture
def audit_store(tmp_path: Path) -> JsonCollectionStore[AuditEvent]:
    return JsonCollectionStore(tmp_path / "api_key_audit.json", AuditEvent)


@pytest.fixture
def api_keys(keys_store) -> ApiKeyService:
    return ApiKeyService(keys_store)


@pytest.fixture
def usage(usage_store) -> UsageLedger:
    return UsageLedger(usage_store)


@pytest.fixture
def audit(audit_store) -> AuditLog:
    return AuditLog(audit_store)


@pytest.fixture
def app(settings: Settings) -> FastAPI:
    return create_app(settings)


@pytest.fixture
async def client(app: FastAPI):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
