"""Quota ledger.

Records one usage event per authorized managed-key request and derives
lifetime and daily counters from the log on every query.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog

from keygate.models.usage import UsageEvent
from keygate.storage import JsonCollectionStore
from keygate.utils.datetime import start_of_local_day, utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class UsageSummary:
    """Request counters for one key.

    Attributes:
        total: Every request ever recorded
        daily: Requests since local midnight of the reference day
    """

    total: int
    daily: int


class UsageLedger:
    """Append-only usage log with quota counters."""

    def __init__(self, store: JsonCollectionStore[UsageEvent]) -> None:
        self._store = store
        self._log = logger.bind(component="usage")

    async def record_usage(
        self,
        key_id: str,
        *,
        method: str,
        path: str,
        status: int,
    ) -> UsageEvent:
        event = UsageEvent(
            key_id=key_id,
            timestamp=utcnow(),
            method=method,
            path=path,
            status=status,
        )
        await self._store.append(event)
        return event

    async def record_usage_safely(
        self,
        key_id: str,
        *,
        method: str,
        path: str,
        status: int,
    ) -> None:
        """Record usage, logging instead of raising on failure."""
        try:
            await self.record_usage(key_id, method=method, path=path, status=status)
        except Exception as e:
            self._log.warning("usage.record.failed", key_id=key_id, error=str(e))

    async def usage_summary(
        self,
        key_id: str,
        reference_time: datetime | None = None,
    ) -> UsageSummary:
        reference_time = reference_time or utcnow()
        day_start = start_of_local_day(reference_time)

        total = 0
        daily = 0
        for event in await self._store.read():
            if event.key_id != key_id:
                continue
            total += 1
            if event.timestamp >= day_start:
                daily += 1

        return UsageSummary(total=total, daily=daily)

    async def usage_by_range(
        self,
        key_id: str,
        start: datetime,
        end: datetime,
    ) -> list[UsageEvent]:
        """Events for ``key_id`` with start <= timestamp <= end."""
        return [
            event
            for event in await self._store.read()
            if event.key_id == key_id and start <= event.timestamp <= end
        ]
