"""Keygate configuration management.

Configuration sources (in priority order):
1. Environment variables (KEYGATE_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_api_tokens(raw: str | None) -> list[str]:
    """Split a semicolon-separated token list, dropping empty entries."""
    if not raw:
        return []
    return [token.strip() for token in raw.split(";") if token.strip()]


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 4141


class AdminConfig(BaseModel):
    """Admin console credentials.

    Admin auth is enabled when either username or password is non-empty.
    Changing either value invalidates every issued session.
    """

    username: str = ""
    password: str = ""
    session_ttl_seconds: int = 60 * 60 * 12

    @property
    def configured(self) -> bool:
        return self.username.strip() != "" or self.password != ""


class SecurityConfig(BaseModel):
    """API token authentication."""

    # Semicolon-separated static tokens, e.g. "token-a;token-b"
    api_tokens: str = ""

    api_key_header: str = "x-api-key"
    realm: str = "keygate"

    # Paths starting with any of these prefixes require a credential
    protected_prefixes: list[str] = Field(
        default_factory=lambda: [
            "/v1/",
            "/chat/completions",
            "/models",
            "/embeddings",
            "/v1/messages",
        ]
    )

    @property
    def static_tokens(self) -> list[str]:
        return parse_api_tokens(self.api_tokens)


class StorageConfig(BaseModel):
    """Locations of the persisted JSON collections.

    Each path defaults to a file inside ``data_dir``.
    """

    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".local" / "share" / "keygate"
    )
    keys_path: Path | None = None
    usage_path: Path | None = None
    audit_path: Path | None = None

    def resolved_keys_path(self) -> Path:
        return self.keys_path or self.data_dir / "api_keys.json"

    def resolved_usage_path(self) -> Path:
        return self.usage_path or self.data_dir / "api_key_usage.json"

    def resolved_audit_path(self) -> Path:
        return self.audit_path or self.data_dir / "api_key_audit.json"


class AuditConfig(BaseModel):
    """Audit query configuration."""

    default_page_size: int = 20
    max_page_size: int = 200


class UpstreamConfig(BaseModel):
    """Outbound HTTP client configuration."""

    # Transport-error retries (attempts = max_retries + 1)
    max_retries: int = 10
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 5.0

    max_connections: int = 200
    max_keepalive_connections: int = 100
    connect_timeout: float = 10.0
    read_timeout: float = 300.0


class Settings(BaseSettings):
    """Keygate application settings."""

    model_config = SettingsConfigDict(
        env_prefix="KEYGATE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment variables take precedence over YAML file values,
        # which are passed in as init kwargs.
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. KEYGATE_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/keygate/config.yaml
    """
    import os

    config_paths = [
        os.environ.get("KEYGATE_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/keygate/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get the process-wide settings instance for the entry point.

    Components never call this; ``create_app`` receives the settings
    object and hands it to each service explicitly.
    """
    file_config = _load_config_file()
    # Environment variables override file values via pydantic-settings
    return Settings(**file_config)
