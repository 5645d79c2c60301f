"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import sys

from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio


# Add aadsession to path for imports
package_root = Path(__file__).parent.parent
if str(package_root) not in sys.path:
    sys.path.insert(0, str(package_root))


from aadsession.auth.secret_store import MemorySecretStore, reset_secret_store  # noqa: E402
from aadsession.auth.session_store import SessionStore  # noqa: E402
from aadsession.auth.token_client import TokenExchangeClient  # noqa: E402
from aadsession.auth.uri_router import UriCallbackRouter, reset_uri_router  # noqa: E402
from aadsession.config import AuthSettings, clear_settings  # noqa: E402
from tests.helpers import FakeHost, TokenEndpoint  # noqa: E402


if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Generator


@pytest.fixture(autouse=True)
def isolated_config(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[None, None, None]:
    """Keep user and project config files out of every test."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("APPDATA", str(tmp_path))
    monkeypatch.delenv("AADSESSION_CONFIG_FILE", raising=False)
    clear_settings()
    reset_secret_store()
    reset_uri_router()
    yield
    clear_settings()
    reset_secret_store()
    reset_uri_router()


async def no_sleep(_delay: float) -> None:
    """Retry backoff that does not wait."""


@pytest.fixture()
def settings() -> AuthSettings:
    """Settings with a single token request per exchange."""
    return AuthSettings(
        refresh={"max_retries": 0, "backoff_base_seconds": 0},
        login={"server_close_delay_seconds": 0},
    )


@pytest.fixture()
def endpoint() -> TokenEndpoint:
    """Scripted token endpoint."""
    return TokenEndpoint()


@pytest.fixture()
def host() -> FakeHost:
    """Host without a local server (redirect-URI logins)."""
    return FakeHost(local_server=False)


@pytest.fixture()
def secrets() -> MemorySecretStore:
    """Shared in-memory secret store."""
    return MemorySecretStore()


@pytest.fixture()
def uri_router() -> UriCallbackRouter:
    """Private callback URI router."""
    return UriCallbackRouter()


@pytest.fixture()
def client(settings: AuthSettings, endpoint: TokenEndpoint) -> TokenExchangeClient:
    """Token client talking to the scripted endpoint."""
    return TokenExchangeClient(settings, http_client=endpoint.client(), sleep=no_sleep)


@pytest_asyncio.fixture()
async def store(
    client: TokenExchangeClient,
    secrets: MemorySecretStore,
    host: FakeHost,
    settings: AuthSettings,
) -> AsyncGenerator[SessionStore, None]:
    """Session store wired to the scripted endpoint."""
    session_store = SessionStore(client, secrets, host, settings)
    yield session_store
    session_store.dispose()
    await client.aclose()
