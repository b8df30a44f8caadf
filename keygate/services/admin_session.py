"""Stateless admin sessions.

A session token is ``base64url("username:expiry:signature")`` where the
signature is HMAC-SHA256 over ``"username:expiry"`` keyed by the currently
configured ``"username:password"``. Nothing is persisted: changing the admin
credentials changes the key and invalidates every issued session.

This is a separate credential domain from API keys, and the only place
where signatures are compared in constant time.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time

import structlog

from keygate.config import AdminConfig

logger = structlog.get_logger()

SESSION_COOKIE_NAME = "keygate_admin_session"


class AdminSessionSigner:
    """Issues and verifies admin session tokens."""

    def __init__(self, config: AdminConfig) -> None:
        self._config = config
        self._log = logger.bind(component="admin_session")

    @property
    def configured(self) -> bool:
        """Whether admin auth is enabled at all."""
        return self._config.configured

    @property
    def ttl_seconds(self) -> int:
        return self._config.session_ttl_seconds

    @property
    def _username(self) -> str:
        return self._config.username.strip()

    def _sign(self, payload: str) -> str:
        secret = f"{self._username}:{self._config.password}"
        return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()

    def validate_credentials(self, username: str, password: str) -> bool:
        """Check login credentials; always True when admin is not configured."""
        if not self.configured:
            return True
        return username.strip() == self._username and password == self._config.password

    def create_token(self, username: str, *, now: float | None = None) -> str:
        now = time.time() if now is None else now
        expires_at = int(now) + self.ttl_seconds
        payload = f"{username}:{expires_at}"
        raw = f"{payload}:{self._sign(payload)}"
        return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")

    def verify_token(self, token: str, *, now: float | None = None) -> bool:
        """Verify a session token.

        Every failure returns False without saying which check failed.
        """
        if not self.configured:
            return False

        try:
            padded = token + "=" * (-len(token) % 4)
            decoded = base64.urlsafe_b64decode(padded.encode()).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return False

        parts = decoded.split(":")
        if len(parts) != 3:
            return False
        username, expires_raw, signature = parts
        if not username or not expires_raw or not signature:
            return False

        if username != self._username:
            return False

        try:
            expires_at = int(expires_raw)
        except ValueError:
            return False
        now = time.time() if now is None else now
        if expires_at < int(now):
            return False

        expected = self._sign(f"{username}:{expires_at}").encode()
        actual = signature.encode()
        if len(actual) != len(expected):
            return False
        return hmac.compare_digest(actual, expected)

    def is_authenticated(self, token: str | None, *, now: float | None = None) -> bool:
        """Whether a request carrying ``token`` may use admin endpoints."""
        if not self.configured:
            return True
        if not token:
            return False
        return self.verify_token(token, now=now)
