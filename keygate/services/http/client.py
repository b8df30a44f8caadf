"""Shared upstream HTTP client.

Provides one httpx.AsyncClient with connection pooling for calls to the
upstream completion provider. Every call goes through the transport-error
retrier; HTTP error statuses are left to the caller.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from keygate.config import UpstreamConfig
from keygate.services.http.retry import fetch_with_retry

logger = structlog.get_logger()


class UpstreamClient:
    """Manages a pooled httpx.AsyncClient with retried requests.

    Usage:
        # In FastAPI lifespan
        await upstream.startup()
        ...
        await upstream.shutdown()

        # In handlers
        response = await upstream.request("POST", url, json=payload)
    """

    def __init__(
        self,
        config: UpstreamConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._log = logger.bind(component="upstream_client")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client.

        Raises:
            RuntimeError: If client is not initialized (call startup first)
        """
        if self._client is None:
            raise RuntimeError("Upstream client not initialized. Call startup() first.")
        return self._client

    @property
    def is_started(self) -> bool:
        return self._client is not None

    async def startup(self) -> None:
        """Initialize the HTTP client with connection pooling."""
        if self._client is not None:
            self._log.warning("upstream_client.already_started")
            return

        limits = httpx.Limits(
            max_connections=self._config.max_connections,
            max_keepalive_connections=self._config.max_keepalive_connections,
        )
        timeout = httpx.Timeout(
            self._config.read_timeout,
            connect=self._config.connect_timeout,
        )
        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout,
            transport=self._transport,
        )
        self._log.info(
            "upstream_client.started",
            max_connections=self._config.max_connections,
            max_retries=self._config.max_retries,
        )

    async def shutdown(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        self._log.info("upstream_client.shutdown")

    async def _with_retry(self, call):
        return await fetch_with_retry(
            call,
            max_retries=self._config.max_retries,
            base_delay=self._config.base_delay_seconds,
            max_delay=self._config.max_delay_seconds,
        )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying transport failures."""
        client = self.client
        return await self._with_retry(lambda: client.request(method, url, **kwargs))

    async def stream(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Open a streaming response, retrying until headers arrive.

        The caller must close the returned response (``await response.aclose()``).
        """
        client = self.client
        request = client.build_request(method, url, **kwargs)
        return await self._with_retry(lambda: client.send(request, stream=True))
