"""Tests for credential resolution on protected gateway paths."""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest
from fastapi import FastAPI, HTTPException

from tests.conftest import make_settings
from keygate.api.auth import extract_api_key, extract_bearer_token
from keygate.main import create_app
from keygate.models import UsageEvent
from keygate.utils.datetime import start_of_local_day, utcnow


def _with_echo_route(app: FastAPI) -> FastAPI:
    async def echo() -> dict[str, bool]:
        return {"ok": True}

    app.add_api_route("/v1/echo", echo, methods=["GET", "POST"])
    app.add_api_route("/models", echo, methods=["GET"])
    return app


async def _client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture
def gateway(tmp_path):
    return _with_echo_route(create_app(make_settings(tmp_path, api_tokens="static-one; static-two ;")))


@pytest.fixture
async def gw_client(gateway):
    async with await _client(gateway) as c:
        yield c


class TestTokenExtraction:
    """Test header parsing."""

    def test_bearer(self):
        """Only a non-empty Bearer credential is extracted."""
        assert extract_bearer_token("Bearer abc") == "abc"
        assert extract_bearer_token("bearer   abc  ") == "abc"
        assert extract_bearer_token("Basic abc") is None
        assert extract_bearer_token("Bearer ") is None
        assert extract_bearer_token(None) is None

    def test_api_key(self):
        """The x-api-key value is trimmed and blank means absent."""
        assert extract_api_key("  abc ") == "abc"
        assert extract_api_key("   ") is None
        assert extract_api_key(None) is None


class TestNotConfigured:
    """Gateway with no static tokens and no managed keys."""

    @pytest.mark.asyncio
    async def test_rejects_everything(self, tmp_path):
        """Nothing configured rejects every protected request."""
        app = _with_echo_route(create_app(make_settings(tmp_path)))
        async with await _client(app) as c:
            response = await c.get("/v1/echo", headers={"Authorization": "Bearer anything"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "API access is not configured"
        assert response.headers["WWW-Authenticate"] == 'Bearer realm="keygate"'


class TestRejections:
    """Test 401 cases."""

    @pytest.mark.asyncio
    async def test_missing_token(self, gw_client):
        """A request without a token is rejected."""
        response = await gw_client.get("/v1/echo")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Missing API token"
        assert response.headers["WWW-Authenticate"] == 'Bearer realm="keygate"'

    @pytest.mark.asyncio
    async def test_invalid_token(self, gw_client):
        """An unknown token is rejected."""
        response = await gw_client.get("/v1/echo", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API token"

    @pytest.mark.asyncio
    async def test_conflicting_tokens(self, gw_client):
        """Different tokens in both headers are rejected."""
        response = await gw_client.get(
            "/v1/echo",
            headers={"Authorization": "Bearer static-one", "x-api-key": "static-two"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Conflicting API tokens"

    @pytest.mark.asyncio
    async def test_same_token_in_both_headers(self, gw_client):
        """The same token in both headers is accepted."""
        response = await gw_client.get(
            "/v1/echo",
            headers={"Authorization": "Bearer static-one", "x-api-key": "static-one"},
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_request_id_on_rejection(self, gw_client):
        """Rejections carry the request id."""
        response = await gw_client.get("/v1/echo", headers={"X-Request-Id": "req-123"})

        assert response.json()["error"]["request_id"] == "req-123"
        assert response.headers["X-Request-Id"] == "req-123"


class TestPublicPaths:
    """Test paths that bypass credential checks."""

    @pytest.mark.asyncio
    async def test_health_is_public(self, gw_client):
        """The health endpoint needs no credential."""
        response = await gw_client.get("/health")
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_options_preflight_not_challenged(self, gw_client):
        """CORS preflight requests pass through."""
        response = await gw_client.options("/v1/echo")
        assert response.status_code != 401


class TestStaticTokens:
    """Test static token acceptance."""

    @pytest.mark.asyncio
    async def test_bearer_and_header(self, gw_client):
        """Static tokens work in either header."""
        assert (await gw_client.get("/v1/echo", headers={"Authorization": "Bearer static-one"})).status_code == 200
        assert (await gw_client.get("/models", headers={"x-api-key": "static-two"})).status_code == 200

    @pytest.mark.asyncio
    async def test_static_tokens_record_no_usage(self, gateway, gw_client, usage_store):
        """Static tokens are not counted."""
        await gw_client.get("/v1/echo", headers={"Authorization": "Bearer static-one"})
        assert await usage_store.read() == []


class TestManagedKeys:
    """Test managed key policy enforcement."""

    @pytest.mark.asyncio
    async def test_managed_key_accepted_and_counted(self, gateway, gw_client):
        """A managed key is accepted and counted once."""
        key = await gateway.state.api_keys.create("client-a")

        response = await gw_client.post("/v1/echo", headers={"x-api-key": key.key})

        assert response.status_code == 200
        summary = await gateway.state.usage.usage_summary("client-a")
        assert summary.total == 1

    @pytest.mark.asyncio
    async def test_total_limit(self, gateway, gw_client):
        """The total limit blocks further requests."""
        key = await gateway.state.api_keys.create("client-a", total_limit=2)
        headers = {"Authorization": f"Bearer {key.key}"}

        assert (await gw_client.get("/v1/echo", headers=headers)).status_code == 200
        assert (await gw_client.get("/v1/echo", headers=headers)).status_code == 200
        third = await gw_client.get("/v1/echo", headers=headers)

        assert third.status_code == 429
        assert third.json()["error"]["code"] == "quota_exceeded"
        assert (await gateway.state.usage.usage_summary("client-a")).total == 2

    @pytest.mark.asyncio
    async def test_zero_total_limit_blocks_immediately(self, gateway, gw_client):
        """A zero total limit blocks the first request."""
        key = await gateway.state.api_keys.create("client-a", total_limit=0)

        response = await gw_client.get("/v1/echo", headers={"x-api-key": key.key})

        assert response.status_code == 429

    @pytest.mark.asyncio
    async def test_daily_limit_ignores_previous_days(self, gateway, gw_client, usage_store):
        """Yesterday's usage does not count toward the daily limit."""
        key = await gateway.state.api_keys.create("client-a", daily_limit=1)
        yesterday = start_of_local_day(utcnow()) - timedelta(hours=1)
        await usage_store.write(
            [
                UsageEvent(key_id="client-a", timestamp=yesterday, method="GET", path="/v1/echo", status=200)
                for _ in range(5)
            ]
        )
        headers = {"x-api-key": key.key}

        assert (await gw_client.get("/v1/echo", headers=headers)).status_code == 200
        second = await gw_client.get("/v1/echo", headers=headers)

        assert second.status_code == 429
        assert second.json()["error"]["message"] == "API key daily usage limit reached"

    @pytest.mark.asyncio
    async def test_expired_key(self, gateway, gw_client):
        """An expired key is rejected."""
        expired = (utcnow() - timedelta(minutes=1)).isoformat()
        key = await gateway.state.api_keys.create("client-a", expires_at=expired)

        response = await gw_client.get("/v1/echo", headers={"x-api-key": key.key})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "API key expired"
        assert (await gateway.state.usage.usage_summary("client-a")).total == 0

    @pytest.mark.asyncio
    async def test_managed_keys_alone_enable_access(self, tmp_path):
        """Managed keys work without static tokens."""
        app = _with_echo_route(create_app(make_settings(tmp_path)))
        key = await app.state.api_keys.create("client-a")

        async with await _client(app) as c:
            response = await c.get("/v1/echo", headers={"Authorization": f"Bearer {key.key}"})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_failed_upstream_status_still_counted(self, gateway, gw_client):
        """Error responses still count toward usage."""
        async def broken() -> None:
            raise HTTPException(status_code=502, detail="bad gateway")

        gateway.add_api_route("/v1/broken", broken, methods=["GET"])
        key = await gateway.state.api_keys.create("client-a")

        response = await gw_client.get("/v1/broken", headers={"x-api-key": key.key})

        assert response.status_code == 502
        events = await gateway.state.usage.usage_by_range(
            "client-a", utcnow() - timedelta(minutes=1), utcnow()
        )
        assert [e.status for e in events] == [502]

    @pytest.mark.asyncio
    async def test_expired_key_rejected_before_quota(self, gateway, gw_client):
        """Expiry wins over an exhausted quota: 401, not 429."""
        expired = (utcnow() - timedelta(minutes=1)).isoformat()
        key = await gateway.state.api_keys.create(
            "client-a",
            total_limit=0,
            daily_limit=0,
            expires_at=expired,
        )

        response = await gw_client.get("/v1/echo", headers={"x-api-key": key.key})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "API key expired"
        assert response.headers["WWW-Authenticate"] == 'Bearer realm="keygate"'

    @pytest.mark.asyncio
    async def test_handler_crash_still_counted(self, gateway):
        """An unhandled handler error is counted with status 500."""

        async def crash() -> None:
            raise RuntimeError("handler bug")

        gateway.add_api_route("/v1/crash", crash, methods=["GET"])
        key = await gateway.state.api_keys.create("client-a")

        transport = httpx.ASGITransport(app=gateway)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            with pytest.raises(RuntimeError):
                await c.get("/v1/crash", headers={"x-api-key": key.key})

        events = await gateway.state.usage.usage_by_range(
            "client-a", utcnow() - timedelta(minutes=1), utcnow()
        )
        assert [e.status for e in events] == [500]
