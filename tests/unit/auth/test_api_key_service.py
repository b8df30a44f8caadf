"""Unit tests for ApiKeyService.

Tests key generation, id validation, limit/expiry validation, masking,
lookups, settings updates and deletion.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from keygate.errors import (
    ConflictError,
    InvalidExpirationError,
    InvalidIdError,
    InvalidLimitError,
    ValidationError,
)
from keygate.services.api_key import ApiKeyService, mask_key


class TestGenerateKey:
    """Test secret generation."""

    def test_format(self):
        """Generated key has cpk_ prefix and 24 random bytes of urlsafe base64."""
        key = ApiKeyService.generate_key()

        assert key.startswith("cpk_")
        # cpk_ (4 chars) + 32 base64 chars
        assert len(key) == 36
        assert "=" not in key

    def test_uniqueness(self):
        """Generated keys do not repeat."""
        keys = {ApiKeyService.generate_key() for _ in range(20)}
        assert len(keys) == 20


class TestMaskKey:
    """Test secret masking."""

    def test_long_key_keeps_first_and_last_four(self):
        """Long keys show only their first and last four characters."""
        assert mask_key("cpk_abcdefghijklmnop") == "cpk_...mnop"

    def test_short_key_is_fully_masked(self):
        """Short keys are masked entirely."""
        assert mask_key("12345678") == "********"

    def test_empty_key_masks_to_one_char(self):
        """An empty key masks to a single character."""
        assert mask_key("") == "*"


class TestCreate:
    """Test key creation."""

    @pytest.mark.asyncio
    async def test_create_returns_full_secret(self, api_keys):
        """Create returns the full key once."""
        item = await api_keys.create("client-a")

        assert item.id == "client-a"
        assert item.key.startswith("cpk_")
        assert item.total_limit is None
        assert item.daily_limit is None
        assert item.expires_at is None
        assert item.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_create_trims_id(self, api_keys):
        """Key ids are trimmed before storing."""
        item = await api_keys.create("  client.b_1  ")
        assert item.id == "client.b_1"

    @pytest.mark.asyncio
    async def test_create_persists_camel_case(self, api_keys, keys_store):
        """Stored records use camelCase field names."""
        await api_keys.create("client-a", total_limit=10, daily_limit=2)

        data = json.loads(keys_store.path.read_text())
        assert data[0]["id"] == "client-a"
        assert data[0]["totalLimit"] == 10
        assert data[0]["dailyLimit"] == 2
        assert "createdAt" in data[0]

    @pytest.mark.asyncio
    async def test_duplicate_id_conflicts_regardless_of_options(self, api_keys):
        """A second key with the same id conflicts."""
        await api_keys.create("client-a")

        with pytest.raises(ConflictError):
            await api_keys.create("client-a", total_limit=5)
        with pytest.raises(ConflictError):
            await api_keys.create(" client-a ", expires_at="2030-01-01T00:00:00Z")

        assert len(await api_keys.list()) == 1

    @pytest.mark.parametrize(
        "bad_id",
        ["", "   ", "has space", "slash/id", "colon:id", "emoji-✨", "semi;colon", None, 123, ["a"]],
    )
    @pytest.mark.asyncio
    async def test_invalid_id_rejected_and_nothing_persisted(self, api_keys, keys_store, bad_id):
        """Invalid ids raise and leave the store untouched."""
        with pytest.raises(InvalidIdError) as exc_info:
            await api_keys.create(bad_id)

        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.status_code == 400
        assert not keys_store.path.exists()

    @pytest.mark.parametrize("bad_limit", [-1, "5", True, 1.5, 3.0, 0.0, [1]])
    @pytest.mark.asyncio
    async def test_invalid_limit_rejected(self, api_keys, bad_limit):
        """Negative, non-integer and boolean limits raise."""
        with pytest.raises(InvalidLimitError):
            await api_keys.create("client-a", total_limit=bad_limit)
        with pytest.raises(InvalidLimitError):
            await api_keys.create("client-a", daily_limit=bad_limit)

    @pytest.mark.asyncio
    async def test_zero_limit_accepted(self, api_keys):
        """Zero is a valid limit."""
        item = await api_keys.create("client-a", total_limit=0, daily_limit=3)
        assert item.total_limit == 0
        assert item.daily_limit == 3

    @pytest.mark.asyncio
    async def test_expiration_normalized_to_utc(self, api_keys):
        """Expiry is stored as a UTC instant."""
        item = await api_keys.create("client-a", expires_at="2030-01-01T08:00:00+08:00")
        assert item.expires_at == datetime(2030, 1, 1, 0, 0, tzinfo=UTC)

    @pytest.mark.parametrize("bad_expiry", ["tomorrow", "2030-13-01", 12345])
    @pytest.mark.asyncio
    async def test_invalid_expiration_rejected(self, api_keys, bad_expiry):
        """Unparsable expiry values raise."""
        with pytest.raises(InvalidExpirationError):
            await api_keys.create("client-a", expires_at=bad_expiry)


class TestLookups:
    """Test list and exact-match lookups."""

    @pytest.mark.asyncio
    async def test_list_masks_secret(self, api_keys):
        """Listed keys carry only the masked secret."""
        created = await api_keys.create("client-a", total_limit=3)

        items = await api_keys.list()

        assert len(items) == 1
        assert items[0].id == "client-a"
        assert items[0].prefix == f"{created.key[:4]}...{created.key[-4:]}"
        assert created.key not in items[0].model_dump_json()
        assert items[0].total_limit == 3

    @pytest.mark.asyncio
    async def test_get_by_id_and_token(self, api_keys):
        """Keys are found by id and by secret."""
        created = await api_keys.create("client-a")
        await api_keys.create("client-b")

        assert (await api_keys.get_by_id("client-a")).key == created.key
        assert (await api_keys.get_by_token(created.key)).id == "client-a"
        assert await api_keys.get_by_id("missing") is None
        assert await api_keys.get_by_token("cpk_unknown") is None

    @pytest.mark.asyncio
    async def test_has_any(self, api_keys):
        """has_any reflects whether a key exists."""
        assert await api_keys.has_any() is False
        await api_keys.create("client-a")
        assert await api_keys.has_any() is True


class TestUpdateSettings:
    """Test settings updates."""

    @pytest.mark.asyncio
    async def test_update_replaces_only_policy_fields(self, api_keys):
        """Updates touch limits and expiry but not the secret."""
        created = await api_keys.create("client-a", total_limit=1)

        updated = await api_keys.update_settings(
            "client-a",
            total_limit=100,
            daily_limit=10,
            expires_at="2031-06-01T00:00:00Z",
        )
        fetched = await api_keys.get_by_id("client-a")

        assert updated == fetched
        assert fetched.total_limit == 100
        assert fetched.daily_limit == 10
        assert fetched.expires_at == datetime(2031, 6, 1, tzinfo=UTC)
        assert fetched.id == created.id
        assert fetched.key == created.key
        assert fetched.created_at == created.created_at

    @pytest.mark.asyncio
    async def test_update_clears_omitted_fields(self, api_keys):
        """Omitted policy fields are cleared."""
        await api_keys.create("client-a", total_limit=5, daily_limit=1)

        updated = await api_keys.update_settings("client-a")

        assert updated.total_limit is None
        assert updated.daily_limit is None

    @pytest.mark.asyncio
    async def test_update_missing_key_returns_none(self, api_keys):
        """Updating an unknown id returns None."""
        assert await api_keys.update_settings("missing", total_limit=1) is None

    @pytest.mark.asyncio
    async def test_update_validates(self, api_keys):
        """Updates apply the same validation as create."""
        await api_keys.create("client-a")

        with pytest.raises(InvalidLimitError):
            await api_keys.update_settings("client-a", daily_limit=-3)
        with pytest.raises(InvalidExpirationError):
            await api_keys.update_settings("client-a", expires_at="not-a-date")


class TestDelete:
    """Test hard deletion."""

    @pytest.mark.asyncio
    async def test_delete_removes_exactly_one(self, api_keys):
        """Delete removes only the named key."""
        await api_keys.create("client-a")
        await api_keys.create("client-b")

        assert await api_keys.delete("client-a") is True
        assert [item.id for item in await api_keys.list()] == ["client-b"]

    @pytest.mark.asyncio
    async def test_delete_missing_returns_false(self, api_keys):
        """Deleting an unknown id returns False."""
        await api_keys.create("client-a")
        assert await api_keys.delete("missing") is False
        assert len(await api_keys.list()) == 1
