"""Streaming completion aggregation.

Folds a server-sent-event stream of chat completion chunks into one summary
that is stored as the audit ``response``. The raw stream is never persisted.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import anyio
import structlog

logger = structlog.get_logger()

EventT = TypeVar("EventT")


@dataclass
class StreamToolCall:
    """Tool call assembled from indexed fragments."""

    id: str | None = None
    name: str | None = None
    arguments: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class StreamAggregator:
    """Fold state for one streamed completion.

    Chunks must be applied in arrival order. Only an incomplete SSE line
    is carried over between calls.
    """

    content: str = ""
    tool_calls: dict[int, StreamToolCall] = field(default_factory=dict)
    token_usage: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None

    _pending: str = field(default="", repr=False, compare=False)
    _framed: bool = field(default=False, repr=False, compare=False)
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        repr=False,
        compare=False,
    )

    def apply(self, chunk: dict[str, Any]) -> None:
        """Fold one chat completion chunk. Missing parts are skipped."""
        usage = chunk.get("usage")
        if isinstance(usage, dict):
            self.token_usage = usage.get("total_tokens")
            self.input_tokens = usage.get("prompt_tokens")
            self.output_tokens = usage.get("completion_tokens")

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}

            text = delta.get("content")
            if text:
                self.content += text

            for fragment in delta.get("tool_calls") or []:
                index = fragment.get("index")
                if index is None:
                    continue
                current = self.tool_calls.setdefault(index, StreamToolCall())
                function = fragment.get("function") or {}
                if fragment.get("id") is not None:
                    current.id = fragment["id"]
                if function.get("name") is not None:
                    current.name = function["name"]
                current.arguments += function.get("arguments") or ""

    def apply_sse_data(self, data: str | None) -> None:
        """Fold the ``data`` field of one SSE message."""
        if not data or data.strip() == "[DONE]":
            return
        try:
            chunk = json.loads(data)
        except ValueError:
            logger.debug("stream.chunk.unparsable", size=len(data))
            return
        if isinstance(chunk, dict):
            self.apply(chunk)

    def feed_sse(self, text: str) -> None:
        """Fold raw SSE wire text, which may split lines across calls."""
        self._framed = True
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._apply_sse_line(line)

    def feed_sse_bytes(self, chunk: bytes) -> None:
        self.feed_sse(self._decoder.decode(chunk))

    def flush(self) -> None:
        """Fold a trailing line that arrived without a newline."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if tail:
            self._apply_sse_line(tail)

    def _apply_sse_line(self, line: str) -> None:
        line = line.rstrip("\r")
        if line.startswith("data:"):
            self.apply_sse_data(line[len("data:") :].lstrip())

    def to_response(self) -> dict[str, Any]:
        """Audit payload for the streamed result."""
        return {
            "streamed": True,
            "content": self.content,
            "toolCalls": [call.to_dict() for call in self.tool_calls.values()],
            "tokenUsage": self.token_usage,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
        }


_SSE_FIELD_PREFIXES = ("data:", "event:", "id:", "retry:", ":")


def _fold_event(aggregator: StreamAggregator, event: Any) -> None:
    # Accepts decoded chunks, SSE data payloads, raw SSE wire text or bytes,
    # and objects with a .data field
    if isinstance(event, dict):
        aggregator.apply(event)
    elif isinstance(event, (bytes, bytearray, memoryview)):
        aggregator.feed_sse_bytes(bytes(event))
    elif isinstance(event, str):
        if aggregator._framed or event.startswith(_SSE_FIELD_PREFIXES):
            aggregator.feed_sse(event)
        else:
            aggregator.apply_sse_data(event)
    else:
        data = getattr(event, "data", None)
        if isinstance(data, str):
            aggregator.apply_sse_data(data)


async def aggregate(events: AsyncIterable[Any]) -> StreamAggregator:
    """Consume a whole stream and return the folded summary."""
    aggregator = StreamAggregator()
    async for event in events:
        _fold_event(aggregator, event)
    aggregator.flush()
    return aggregator


async def audit_stream(
    events: AsyncIterable[EventT],
    on_complete: Callable[[StreamAggregator], Awaitable[None]],
) -> AsyncIterator[EventT]:
    """Pass events through unchanged while folding them.

    ``on_complete`` runs exactly once when the stream ends, fails, or the
    consumer stops iterating (client disconnect). It is shielded from
    cancellation so the summary is recorded even when the request task is
    being torn down. The source is closed afterwards.
    """
    aggregator = StreamAggregator()
    try:
        async for event in events:
            _fold_event(aggregator, event)
            yield event
    finally:
        aggregator.flush()
        with anyio.CancelScope(shield=True):
            try:
                await on_complete(aggregator)
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()
