"""Tests for layered configuration.

Covers defaults, TOML files, environment variables and validation.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from pydantic import ValidationError

from aadsession.config import (
    AuthSettings,
    LoginSettings,
    RefreshSettings,
    get_settings,
    reload_settings,
)


class TestDefaults:
    """Built-in defaults."""

    def test_login_defaults(self) -> None:
        """Login endpoint, redirect and client defaults."""
        login = LoginSettings()
        assert login.login_endpoint == "https://login.microsoftonline.com/"
        assert login.redirect_url == "https://vscode-redirect.azurewebsites.net/"
        assert login.default_tenant == "organizations"
        assert login.login_timeout_seconds == 300

    def test_refresh_defaults(self) -> None:
        """Refresh at two thirds of the lifetime, poll every 30 minutes."""
        refresh = RefreshSettings()
        assert refresh.refresh_ratio == pytest.approx(2 / 3)
        assert refresh.reconnect_interval_seconds == 1800
        assert refresh.max_retries == 3
        assert refresh.backoff_base_seconds == 5

    def test_storage_defaults(self) -> None:
        """Sessions live under one key in memory by default."""
        settings = AuthSettings()
        assert settings.storage.backend == "memory"
        assert settings.storage.key == "microsoft.login.sessions"
        assert settings.log.level == "WARNING"


class TestValidation:
    """Field validation."""

    def test_trailing_slash_added(self) -> None:
        """The login endpoint always ends with a slash."""
        settings = AuthSettings(login={"login_endpoint": "https://login.example.com"})
        assert settings.login.login_endpoint == "https://login.example.com/"

    def test_negative_retries_rejected(self) -> None:
        """max_retries cannot be negative."""
        with pytest.raises(ValidationError):
            AuthSettings(refresh={"max_retries": -1})

    def test_unknown_backend_rejected(self) -> None:
        """Only known storage backends are accepted."""
        with pytest.raises(ValidationError):
            AuthSettings(storage={"backend": "filesystem"})


class TestSources:
    """TOML files and environment variables."""

    def test_pyproject_section(self, tmp_path: Path) -> None:
        """[tool.aadsession] in pyproject.toml is read."""
        (tmp_path / "pyproject.toml").write_text(
            '[tool.aadsession.login]\ndefault_tenant = "common"\n', encoding="utf-8"
        )
        assert AuthSettings().login.default_tenant == "common"

    def test_explicit_file_overrides_pyproject(self, tmp_path: Path) -> None:
        """aadsession.toml wins over pyproject.toml."""
        (tmp_path / "pyproject.toml").write_text(
            '[tool.aadsession.login]\ndefault_tenant = "common"\n', encoding="utf-8"
        )
        (tmp_path / "aadsession.toml").write_text(
            '[login]\ndefault_tenant = "consumers"\n[refresh]\nmax_retries = 7\n',
            encoding="utf-8",
        )
        settings = AuthSettings()
        assert settings.login.default_tenant == "consumers"
        assert settings.refresh.max_retries == 7

    def test_user_config(self, tmp_path: Path) -> None:
        """The user-level config file is read from the home directory."""
        user_dir = tmp_path / ".config" / "aadsession"
        user_dir.mkdir(parents=True)
        (user_dir / "config.toml").write_text('[storage]\nbackend = "keyring"\n', encoding="utf-8")
        assert AuthSettings().storage.backend == "keyring"

    def test_config_file_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """AADSESSION_CONFIG_FILE points at an extra config file."""
        config = tmp_path / "elsewhere.toml"
        config.write_text('[log]\nlevel = "DEBUG"\n', encoding="utf-8")
        monkeypatch.setenv("AADSESSION_CONFIG_FILE", str(config))
        assert AuthSettings().log.level == "DEBUG"

    def test_invalid_toml_ignored(self, tmp_path: Path) -> None:
        """A broken config file is skipped."""
        (tmp_path / "aadsession.toml").write_text("[login\n", encoding="utf-8")
        assert AuthSettings().login.default_tenant == "organizations"

    def test_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Section environment variables are applied."""
        monkeypatch.setenv("AADSESSION_LOGIN__DEFAULT_TENANT", "consumers")
        monkeypatch.setenv("AADSESSION_REFRESH__RECONNECT_INTERVAL_SECONDS", "60")
        settings = AuthSettings()
        assert settings.login.default_tenant == "consumers"
        assert settings.refresh.reconnect_interval_seconds == 60

    def test_init_overrides_files(self, tmp_path: Path) -> None:
        """Explicit arguments win over config files."""
        (tmp_path / "aadsession.toml").write_text(
            "[refresh]\nmax_retries = 7\n", encoding="utf-8"
        )
        assert AuthSettings(refresh={"max_retries": 1}).refresh.max_retries == 1


class TestCachedSettings:
    """The process-wide settings instance."""

    def test_cached(self) -> None:
        """get_settings returns one instance until reloaded."""
        first = get_settings()
        assert get_settings() is first
        assert reload_settings() is not first
