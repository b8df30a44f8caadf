"""Usage event data model."""

from pydantic import AwareDatetime

from keygate.models.api_key import CamelModel


class UsageEvent(CamelModel):
    """One authorized request made with a managed key.

    Usage events only feed quota counters; they are never edited.
    """

    key_id: str
    timestamp: AwareDatetime
    method: str
    path: str
    status: int
