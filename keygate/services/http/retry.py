"""Bounded exponential-backoff retry for one outbound call.

Only transport failures (connection errors, timeouts) are retried. Any HTTP
response, whatever its status, is returned to the caller untouched.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import structlog

logger = structlog.get_logger()

T = TypeVar("T")

MAX_RETRIES = 10
BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 5.0


def retry_delay_seconds(
    attempt: int,
    *,
    base_delay: float = BASE_DELAY_SECONDS,
    max_delay: float = MAX_DELAY_SECONDS,
) -> float:
    # attempt is the zero-based retry index
    return min(base_delay * (2**attempt), max_delay)


async def fetch_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY_SECONDS,
    max_delay: float = MAX_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``call()``, retrying transport errors with backoff.

    Args:
        call: Zero-argument coroutine factory performing the request
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, doubled each retry
        max_delay: Cap on any single delay
        sleep: Sleep function (injectable for tests)

    Raises:
        httpx.TransportError: The last error once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            return await call()
        except httpx.TransportError as e:
            if attempt >= max_retries:
                logger.warning(
                    "upstream.retry.exhausted",
                    attempts=attempt + 1,
                    error=str(e),
                )
                raise
            delay = retry_delay_seconds(attempt, base_delay=base_delay, max_delay=max_delay)
            logger.debug(
                "upstream.retry",
                attempt=attempt + 1,
                delay_seconds=delay,
                error_type=type(e).__name__,
            )
            attempt += 1
            await sleep(delay)
