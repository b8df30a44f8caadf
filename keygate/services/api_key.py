"""Managed API key registry.

Handles key generation, id validation, masking, lookups and settings
updates on top of the JSON record store.
"""

from __future__ import annotations

import re
import secrets
from datetime import UTC, datetime
from typing import Any

import structlog

from keygate.errors import (
    ConflictError,
    InvalidExpirationError,
    InvalidIdError,
    InvalidLimitError,
)
from keygate.models.api_key import ManagedApiKey, ManagedApiKeyListItem
from keygate.storage import JsonCollectionStore
from keygate.utils.datetime import parse_instant, utcnow

logger = structlog.get_logger()

# Key format: cpk_{32 urlsafe base64 chars}
_KEY_PREFIX = "cpk_"
_KEY_RANDOM_BYTES = 24
_KEY_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def normalize_limit(value: Any, field: str) -> int | None:
    """Validate an optional usage limit.

    Raises:
        InvalidLimitError: If the value is not a non-negative integer
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidLimitError(
            f"{field} must be a non-negative integer",
            details={"field": field},
        )
    return value


def normalize_expiration(value: Any) -> datetime | None:
    """Validate an optional expiration instant and normalize it to UTC.

    Raises:
        InvalidExpirationError: If the value cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        # Naive datetimes are taken as local time
        return value.astimezone(UTC)
    if not isinstance(value, str):
        raise InvalidExpirationError()
    try:
        return parse_instant(value)
    except ValueError:
        raise InvalidExpirationError(details={"value": value}) from None


def mask_key(key: str) -> str:
    """Mask a secret for display, keeping the first and last four chars."""
    if len(key) <= 8:
        return "*" * max(1, len(key))
    return f"{key[:4]}...{key[-4:]}"


class ApiKeyService:
    """Service for managed API key lifecycle."""

    def __init__(self, store: JsonCollectionStore[ManagedApiKey]) -> None:
        self._store = store
        self._log = logger.bind(component="api_key")

    @staticmethod
    def generate_key() -> str:
        """Generate a new opaque bearer secret."""
        return f"{_KEY_PREFIX}{secrets.token_urlsafe(_KEY_RANDOM_BYTES)}"

    @staticmethod
    def normalize_id(key_id: str) -> str:
        return key_id.strip()

    async def create(
        self,
        key_id: Any,
        *,
        total_limit: Any = None,
        daily_limit: Any = None,
        expires_at: Any = None,
    ) -> ManagedApiKey:
        """Create a managed key.

        This is the only call that returns the full secret to an admin
        outside the explicit copy action.

        Raises:
            InvalidIdError: If the id is empty or has disallowed characters
            InvalidLimitError: If a limit is not a non-negative integer
            InvalidExpirationError: If expires_at cannot be parsed
            ConflictError: If the id already exists
        """
        if not isinstance(key_id, str):
            raise InvalidIdError(details={"id": key_id})
        normalized_id = self.normalize_id(key_id)
        if not normalized_id or not _KEY_ID_PATTERN.match(normalized_id):
            raise InvalidIdError(details={"id": normalized_id})

        item = ManagedApiKey(
            id=normalized_id,
            key=self.generate_key(),
            created_at=utcnow(),
            total_limit=normalize_limit(total_limit, "totalLimit"),
            daily_limit=normalize_limit(daily_limit, "dailyLimit"),
            expires_at=normalize_expiration(expires_at),
        )

        def add(records: list[ManagedApiKey]) -> None:
            if any(record.id == normalized_id for record in records):
                raise ConflictError("Key name already exists", details={"id": normalized_id})
            records.append(item)

        await self._store.update(add)

        self._log.info(
            "api_key.create",
            key_id=item.id,
            total_limit=item.total_limit,
            daily_limit=item.daily_limit,
            expires_at=item.expires_at.isoformat() if item.expires_at else None,
        )
        return item

    async def list(self) -> list[ManagedApiKeyListItem]:
        """List every key with its secret masked."""
        keys = await self._store.read()
        return [
            ManagedApiKeyListItem(
                id=item.id,
                prefix=mask_key(item.key),
                created_at=item.created_at,
                total_limit=item.total_limit,
                daily_limit=item.daily_limit,
                expires_at=item.expires_at,
            )
            for item in keys
        ]

    async def get_by_id(self, key_id: str) -> ManagedApiKey | None:
        normalized_id = self.normalize_id(key_id)
        for item in await self._store.read():
            if item.id == normalized_id:
                return item
        return None

    async def get_by_token(self, token: str) -> ManagedApiKey | None:
        for item in await self._store.read():
            if item.key == token:
                return item
        return None

    async def has_any(self) -> bool:
        return len(await self._store.read()) > 0

    async def update_settings(
        self,
        key_id: str,
        *,
        total_limit: Any = None,
        daily_limit: Any = None,
        expires_at: Any = None,
    ) -> ManagedApiKey | None:
        """Replace a key's limits and expiration.

        All three fields are replaced; omitting one clears it. id, key and
        created_at never change.

        Returns:
            The updated key, or None if the id does not exist

        Raises:
            InvalidLimitError: If a limit is not a non-negative integer
            InvalidExpirationError: If expires_at cannot be parsed
        """
        normalized_id = self.normalize_id(key_id)
        changes = {
            "total_limit": normalize_limit(total_limit, "totalLimit"),
            "daily_limit": normalize_limit(daily_limit, "dailyLimit"),
            "expires_at": normalize_expiration(expires_at),
        }

        def apply(records: list[ManagedApiKey]) -> ManagedApiKey | None:
            for index, record in enumerate(records):
                if record.id == normalized_id:
                    records[index] = record.model_copy(update=changes)
                    return records[index]
            return None

        updated = await self._store.update(apply)
        if updated is not None:
            self._log.info("api_key.update_settings", key_id=normalized_id)
        return updated

    async def delete(self, key_id: str) -> bool:
        """Hard-delete a key by id.

        Returns:
            True if a key was removed
        """
        normalized_id = self.normalize_id(key_id)

        def remove(records: list[ManagedApiKey]) -> bool:
            before = len(records)
            records[:] = [record for record in records if record.id != normalized_id]
            return len(records) != before

        deleted = await self._store.update(remove)
        if deleted:
            self._log.info("api_key.delete", key_id=normalized_id)
        return deleted
