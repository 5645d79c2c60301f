"""Configuration system for aadsession using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.aadsession] section (project-level)
3. ./aadsession.toml (project-level, explicit)
4. ~/.config/aadsession/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use AADSESSION_ prefix with nested delimiter __.
Example: AADSESSION_LOGIN__DEFAULT_TENANT, AADSESSION_REFRESH__MAX_RETRIES
"""

from __future__ import annotations

import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib  # type: ignore[import-not-found]
    except ImportError:
        tomllib = None


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    explicit = Path("aadsession.toml")
    if explicit.exists():
        files.append(explicit)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "aadsession" / "config.toml"
    else:
        user_config = Path("~/.config/aadsession/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("AADSESSION_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    if tomllib is None:
        return {}

    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("aadsession", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class LoginSettings(BaseSettings):
    """Interactive login settings.

    Environment prefix: AADSESSION_LOGIN__
    Example: AADSESSION_LOGIN__DEFAULT_TENANT=common

    TOML section: [tool.aadsession.login]
    """

    model_config = SettingsConfigDict(
        env_prefix="AADSESSION_LOGIN__",
        extra="ignore",
    )

    login_endpoint: str = Field(
        default="https://login.microsoftonline.com/",
        description="Identity provider base URL; the tenant segment is appended",
    )
    redirect_url: str = Field(
        default="https://vscode-redirect.azurewebsites.net/",
        description="Registered redirect URI that relays the code back to the host",
    )
    default_client_id: str = Field(
        default="aebc6443-996d-45c2-90f0-388ff96faa56",
        description="Client id used when the scopes carry no client id marker",
    )
    default_tenant: str = Field(
        default="organizations",
        description="Tenant used when the scopes carry no tenant marker",
    )
    provider_id: str = Field(
        default="microsoft",
        description="Key used to look up a host proxy endpoint override",
    )
    callback_authority: str = Field(
        default="vscode.microsoft-authentication",
        description="Authority of the deep-link callback URI for the redirect flow",
    )
    callback_host: str = Field(
        default="127.0.0.1",
        description="Bind address of the local callback server",
    )
    login_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Maximum seconds an interactive login may wait for its callback",
    )
    server_close_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Grace delay before the local callback server is torn down",
    )
    server_start_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Maximum seconds to wait for the local callback server to serve",
    )

    @field_validator("login_endpoint")
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        """Tenant paths are appended directly, so the base must end with '/'."""
        return v if v.endswith("/") else f"{v}/"


class RefreshSettings(BaseSettings):
    """Token refresh and retry settings.

    Environment prefix: AADSESSION_REFRESH__
    Example: AADSESSION_REFRESH__RECONNECT_INTERVAL_SECONDS=600
    """

    model_config = SettingsConfigDict(
        env_prefix="AADSESSION_REFRESH__",
        extra="ignore",
    )

    refresh_ratio: float = Field(
        default=2 / 3,
        gt=0,
        le=1,
        description="Fraction of the token lifetime after which a refresh is scheduled",
    )
    reconnect_interval_seconds: float = Field(
        default=1800.0,
        gt=0,
        description="Polling interval after a refresh failed on the network",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after the first token request on transport errors or 5xx",
    )
    backoff_base_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Retry n waits backoff_base_seconds * n**2",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout of a single token endpoint request",
    )


class StorageSettings(BaseSettings):
    """Persisted session storage settings.

    Environment prefix: AADSESSION_STORAGE__
    Example: AADSESSION_STORAGE__BACKEND=keyring
    """

    model_config = SettingsConfigDict(
        env_prefix="AADSESSION_STORAGE__",
        extra="ignore",
    )

    backend: Literal["memory", "keyring", "redis"] = Field(
        default="memory",
        description="Secret store backend: memory, keyring, or redis",
    )
    key: str = Field(
        default="microsoft.login.sessions",
        description="Key holding the JSON array of stored sessions",
    )
    legacy_key: str | None = Field(
        default=None,
        description="Older key read once when the primary key is empty",
    )
    service_name: str = Field(
        default="aadsession",
        description="Keyring service name",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    prefix: str = Field(
        default="aadsession",
        description="Redis key prefix",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: AADSESSION_LOG__
    Example: AADSESSION_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="AADSESSION_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class AuthSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: AADSESSION__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.aadsession] section
    3. ./aadsession.toml (project-level)
    4. ~/.config/aadsession/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="AADSESSION__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    login: LoginSettings = Field(default_factory=LoginSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()
        merged = _deep_merge(toml_config, data)
        super().__init__(**merged)


@lru_cache(maxsize=1)
def get_settings() -> AuthSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return AuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> AuthSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
