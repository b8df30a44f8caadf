"""Durable JSON record store.

Each collection is one JSON array document on the local filesystem. Writes
go to a uniquely named temporary file in the same directory which is then
renamed over the canonical path, so readers only ever see a complete
document. Files are restricted to owner read/write (0600).
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Generic, TypeVar

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from keygate.concurrency.locks import get_collection_lock

logger = structlog.get_logger()

RecordT = TypeVar("RecordT", bound=BaseModel)
ResultT = TypeVar("ResultT")


class JsonCollectionStore(Generic[RecordT]):
    """Whole-document persistence for one collection of records.

    Usage:
        store = JsonCollectionStore(path, ManagedApiKey)
        keys = await store.read()
        await store.append(new_key)
    """

    def __init__(self, path: Path, model: type[RecordT]) -> None:
        self._path = Path(path)
        self._model = model
        self._log = logger.bind(component="store", collection=self._path.name)

    @property
    def path(self) -> Path:
        return self._path

    async def ensure(self) -> None:
        """Create the collection as an empty array if it does not exist."""
        await asyncio.to_thread(self._ensure_sync)

    async def read(self) -> list[RecordT]:
        """Return every valid record.

        A missing or unparsable file reads as an empty collection; records
        that fail validation are dropped.
        """
        return await asyncio.to_thread(self._read_sync)

    async def write(self, records: list[RecordT]) -> None:
        """Atomically replace the collection."""
        lock = await get_collection_lock(self._path)
        async with lock:
            await asyncio.to_thread(self._write_sync, records)

    async def append(self, record: RecordT) -> None:
        """Append one record (read-modify-write under the collection lock)."""

        def mutate(records: list[RecordT]) -> None:
            records.append(record)

        await self.update(mutate)

    async def update(
        self, mutator: Callable[[list[RecordT]], ResultT]
    ) -> ResultT:
        """Apply ``mutator`` to the current records and persist the result.

        The mutator edits the list in place and may return a value, which is
        passed back to the caller. Raising from the mutator aborts the write.
        """
        lock = await get_collection_lock(self._path)
        async with lock:
            records = await asyncio.to_thread(self._read_sync)
            result = mutator(records)
            await asyncio.to_thread(self._write_sync, records)
            return result

    # ---- sync helpers (run in a worker thread) ----

    def _ensure_sync(self) -> None:
        if self._path.exists():
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text("[]")
        os.chmod(self._path, 0o600)
        self._log.info("store.created", path=str(self._path))

    def _read_sync(self) -> list[RecordT]:
        try:
            raw = self._path.read_text(encoding="utf-8")
            parsed = json.loads(raw)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            self._log.warning("store.unreadable", error=str(e))
            return []

        if not isinstance(parsed, list):
            return []

        records: list[RecordT] = []
        for item in parsed:
            try:
                records.append(self._model.model_validate(item))
            except PydanticValidationError:
                self._log.debug("store.record.dropped")
        return records

    def _write_sync(self, records: list[RecordT]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_name(f"{self._path.name}.{uuid.uuid4().hex}.tmp")
        payload = [record.model_dump(mode="json", by_alias=True) for record in records]
        try:
            temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(temp_path, self._path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        os.chmod(self._path, 0o600)
