"""Audit log.

Stores a full capture of every request attempt made with a managed key and
serves it back filtered, searched and paginated, newest first.
"""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from keygate.models.audit import AuditEvent
from keygate.storage import JsonCollectionStore
from keygate.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass
class AuditPage:
    """One page of audit events."""

    total: int
    pages: int
    page: int
    page_size: int
    items: list[AuditEvent] = field(default_factory=list)


def _stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


def _search_text(event: AuditEvent) -> str:
    """Build the lowercase haystack matched by free-text queries."""
    parts = [
        event.path,
        event.method,
        str(event.status),
        "" if event.token_usage is None else str(event.token_usage),
        "" if event.input_tokens is None else str(event.input_tokens),
        "" if event.output_tokens is None else str(event.output_tokens),
        event.error or "",
        _stable_json(event.request),
        _stable_json(event.response),
    ]
    return " ".join(parts).lower()


class AuditLog:
    """Append-only audit log with paginated retrieval."""

    def __init__(self, store: JsonCollectionStore[AuditEvent]) -> None:
        self._store = store
        self._log = logger.bind(component="audit")

    async def record(
        self,
        key_id: str,
        *,
        method: str,
        path: str,
        status: int,
        duration_ms: int,
        request: Any = None,
        response: Any = None,
        token_usage: int | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        error: str | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=uuid.uuid4().hex,
            key_id=key_id,
            timestamp=utcnow(),
            method=method,
            path=path,
            status=status,
            duration_ms=duration_ms,
            token_usage=token_usage,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            request=request,
            response=response,
            error=error,
        )
        await self._store.append(event)
        return event

    async def record_safely(self, key_id: str | None, **context: Any) -> None:
        """Record an audit event, logging instead of raising on failure.

        Requests made with static tokens have no key id and are not audited.
        """
        if not key_id:
            return
        try:
            await self.record(key_id, **context)
        except Exception as e:
            self._log.warning("audit.record.failed", key_id=key_id, error=str(e))

    async def page(
        self,
        key_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        query: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> AuditPage:
        """Get one page of a key's audit events, newest first.

        ``page_size`` is clamped to at least 1 and ``page`` into
        ``[1, pages]``; an empty result still has one page.
        """
        needle = (query or "").strip().lower()

        matched: list[AuditEvent] = []
        for event in await self._store.read():
            if event.key_id != key_id:
                continue
            if start is not None and event.timestamp < start:
                continue
            if end is not None and event.timestamp > end:
                continue
            if needle and needle not in _search_text(event):
                continue
            matched.append(event)

        matched.sort(key=lambda event: event.timestamp, reverse=True)

        page_size = max(1, page_size)
        total = len(matched)
        pages = max(1, math.ceil(total / page_size))
        page = min(max(1, page), pages)
        offset = (page - 1) * page_size

        return AuditPage(
            total=total,
            pages=pages,
            page=page,
            page_size=page_size,
            items=matched[offset : offset + page_size],
        )
