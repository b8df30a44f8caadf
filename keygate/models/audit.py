"""Audit event data model."""

from typing import Any, Optional

from pydantic import AwareDatetime

from keygate.models.api_key import CamelModel


class AuditEvent(CamelModel):
    """Full capture of one request attempt, successful or not.

    ``request`` and ``response`` are opaque JSON payloads. For streamed
    completions ``response`` holds the folded stream summary.
    """

    id: str
    key_id: str
    timestamp: AwareDatetime
    method: str
    path: str
    status: int
    duration_ms: int
    token_usage: Optional[int] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    request: Any = None
    response: Any = None
    error: Optional[str] = None
