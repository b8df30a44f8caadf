"""Request auditing for completion handlers.

Completion routers mounted under protected prefixes use ``RequestAuditorDep``
to record one audit event per attempt: the JSON result, the error, or the
folded summary of a streamed response.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterable, AsyncIterator
from typing import Annotated, Any, TypeVar

import anyio
import httpx
from fastapi import Depends, Request
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from keygate.api.dependencies import get_audit_log, get_managed_key_id
from keygate.errors import GatewayError
from keygate.services.audit import AuditLog
from keygate.services.streaming import StreamAggregator, audit_stream

EventT = TypeVar("EventT")


def _usage_counts(response: Any) -> dict[str, int | None]:
    usage = response.get("usage") if isinstance(response, dict) else None
    if not isinstance(usage, dict):
        return {"token_usage": None, "input_tokens": None, "output_tokens": None}
    return {
        "token_usage": usage.get("total_tokens"),
        "input_tokens": usage.get("prompt_tokens"),
        "output_tokens": usage.get("completion_tokens"),
    }


def error_status(exc: BaseException) -> int:
    """HTTP status to record for a failed attempt."""
    if isinstance(exc, GatewayError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return 500


class AuditedStreamingResponse(StreamingResponse):
    """StreamingResponse that always closes its body iterator.

    Starlette leaves the iterator suspended when the client disconnects;
    closing it here runs the audit finalizer before the request completes.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            aclose = getattr(self.body_iterator, "aclose", None)
            if aclose is not None:
                with anyio.CancelScope(shield=True):
                    await aclose()


class RequestAuditor:
    """Audit recorder bound to one request."""

    def __init__(self, audit: AuditLog, key_id: str | None, method: str, path: str) -> None:
        self._audit = audit
        self._key_id = key_id
        self._method = method
        self._path = path
        self._started = time.monotonic()

    @property
    def key_id(self) -> str | None:
        return self._key_id

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    async def record(
        self,
        *,
        status: int,
        request: Any,
        response: Any,
        token_usage: int | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        error: str | None = None,
    ) -> None:
        await self._audit.record_safely(
            self._key_id,
            method=self._method,
            path=self._path,
            status=status,
            duration_ms=self.elapsed_ms(),
            request=request,
            response=response,
            token_usage=token_usage,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            error=error,
        )

    async def record_result(self, request: Any, response: Any, *, status: int = 200) -> None:
        """Record a non-streamed result, taking token counts from ``usage``."""
        await self.record(status=status, request=request, response=response, **_usage_counts(response))

    async def record_error(self, exc: BaseException, request: Any) -> None:
        await self.record(
            status=error_status(exc),
            request=request,
            response=None,
            error=str(exc) or type(exc).__name__,
        )

    def wrap_stream(
        self,
        events: AsyncIterable[EventT],
        request: Any,
        *,
        status: int = 200,
    ) -> AsyncIterator[EventT]:
        """Pass a response stream through, auditing its folded summary at the end."""

        async def on_complete(aggregator: StreamAggregator) -> None:
            await self.record(
                status=status,
                request=request,
                response=aggregator.to_response(),
                token_usage=aggregator.token_usage,
                input_tokens=aggregator.input_tokens,
                output_tokens=aggregator.output_tokens,
            )

        return audit_stream(events, on_complete)

    def stream_response(
        self,
        events: AsyncIterable[str | bytes],
        request: Any,
        *,
        status_code: int = 200,
        media_type: str = "text/event-stream",
        headers: dict[str, str] | None = None,
    ) -> AuditedStreamingResponse:
        """Stream SSE text or bytes to the client and audit the folded summary.

        The audit event is written whether the stream completes, fails or
        the client disconnects.
        """
        return AuditedStreamingResponse(
            self.wrap_stream(events, request, status=status_code),
            status_code=status_code,
            media_type=media_type,
            headers=headers,
        )


def get_request_auditor(
    request: Request,
    audit: Annotated[AuditLog, Depends(get_audit_log)],
    key_id: Annotated[str | None, Depends(get_managed_key_id)],
) -> RequestAuditor:
    return RequestAuditor(audit, key_id, request.method, request.url.path)


RequestAuditorDep = Annotated[RequestAuditor, Depends(get_request_auditor)]
