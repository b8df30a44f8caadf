"""Managed API key data model.

Managed keys are operator-issued bearer credentials, independent of any
upstream provider identity. Unlike static tokens they carry quota and
expiry policy.
"""

from typing import Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model persisted and served with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ManagedApiKey(CamelModel):
    """Managed API key record.

    The full ``key`` is stored in plaintext because it is looked up by exact
    match on every request and returned once more by the admin copy action.
    """

    id: str
    key: str
    created_at: AwareDatetime
    total_limit: Optional[int] = Field(default=None, ge=0)  # lifetime cap
    daily_limit: Optional[int] = Field(default=None, ge=0)  # per local calendar day
    expires_at: Optional[AwareDatetime] = None


class ManagedApiKeyListItem(CamelModel):
    """Managed API key as listed to admins, secret masked."""

    id: str
    prefix: str
    created_at: AwareDatetime
    total_limit: Optional[int] = None
    daily_limit: Optional[int] = None
    expires_at: Optional[AwareDatetime] = None
