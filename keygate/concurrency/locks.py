"""Collection-level in-memory locks for the JSON record store.

Every read-modify-write against a collection file holds that collection's
lock, so concurrent requests in one process cannot drop each other's updates.

Note: These locks only work within a single process/instance.
Two processes sharing a data directory still race, and the later
rename wins.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

# Key: resolved collection path, Value: asyncio.Lock
_collection_locks: dict[str, asyncio.Lock] = {}
_collection_locks_lock = asyncio.Lock()


async def get_collection_lock(path: Path) -> asyncio.Lock:
    """Get or create the lock guarding one collection file.

    Stores opened on the same path (even through different relative
    spellings) share one lock.

    Args:
        path: Collection file path

    Returns:
        asyncio.Lock for the collection
    """
    key = str(path.expanduser().resolve())
    async with _collection_locks_lock:
        if key not in _collection_locks:
            _collection_locks[key] = asyncio.Lock()
        return _collection_locks[key]


def get_lock_count() -> int:
    """Get current number of locks (for testing)."""
    return len(_collection_locks)
