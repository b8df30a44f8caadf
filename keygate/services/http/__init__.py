"""Outbound HTTP support."""

from keygate.services.http.client import UpstreamClient
from keygate.services.http.retry import fetch_with_retry, retry_delay_seconds

__all__ = ["UpstreamClient", "fetch_with_retry", "retry_delay_seconds"]
