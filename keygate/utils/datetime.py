"""Datetime helpers.

All persisted instants are timezone-aware UTC datetimes. Daily quota buckets
are the exception: they follow the host's local calendar day.
"""

from __future__ import annotations

from datetime import UTC, datetime, time


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    A trailing ``Z`` is accepted. Values without an offset are interpreted
    in the host's local timezone.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed.astimezone(UTC)


def start_of_local_day(reference: datetime) -> datetime:
    """Return local midnight of the calendar day containing ``reference``."""
    local_date = reference.astimezone().date()
    # Naive astimezone() resolves the offset in effect at midnight itself
    return datetime.combine(local_date, time()).astimezone()
