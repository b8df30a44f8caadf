"""Keygate error types.

Error codes are stable strings for programmatic handling. Every error maps to
one HTTP status and is rendered by the application's exception handler as::

    {"error": {"code": ..., "message": ..., "request_id": ..., "details": {...}}}
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base error for all Keygate exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "request_id": request_id,
                "details": self.details,
            }
        }


class ValidationError(GatewayError):
    """Request validation error (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class InvalidIdError(ValidationError):
    """Key id is empty or contains characters outside [A-Za-z0-9_.-]."""

    code = "invalid_id"
    message = "Invalid key name. Use letters, numbers, dot, underscore, or hyphen."


class InvalidLimitError(ValidationError):
    """Usage limit is not a non-negative integer."""

    code = "invalid_limit"
    message = "Limits must be non-negative integers"


class InvalidExpirationError(ValidationError):
    """Expiration is not a parseable instant."""

    code = "invalid_expiration"
    message = "Invalid expiration time"


class InvalidTimeRangeError(ValidationError):
    """Query time range is unparseable or inverted."""

    code = "invalid_time_range"
    message = "Invalid time range"


class NotFoundError(GatewayError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class ConflictError(GatewayError):
    """Duplicate resource (409)."""

    code = "conflict"
    message = "Conflict"
    status_code = 409


class UnauthorizedError(GatewayError):
    """Authentication required or failed (401)."""

    code = "unauthorized"
    message = "Authentication required"
    status_code = 401


class QuotaExceededError(GatewayError):
    """Total or daily request quota reached (429)."""

    code = "quota_exceeded"
    message = "Quota exceeded"
    status_code = 429
