"""Authentication service facade.

Wires settings, the host, the secret store, the token client, the
session store and the login coordinator into the single object an
application talks to.

Example
-------
>>> service = AuthenticationService(DesktopHost())
>>> await service.initialize()
>>> session = await service.create_session(["offline_access", "User.Read"])
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING

from ..config import get_settings
from ..log import configure
from .flow import LoginFlowCoordinator
from .secret_store import get_secret_store
from .session_store import SessionStore
from .token_client import TokenExchangeClient
from .uri_router import get_uri_router


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    import httpx

    from ..config import AuthSettings
    from ..types import Session, SessionsChangeEvent
    from .events import SessionsChangeListener
    from .host import HostEnvironment
    from .secret_store import SecretStore
    from .uri_router import UriCallbackRouter


logger = logging.getLogger("aadsession.auth")


class AuthenticationService:
    """Signed-in session management for one identity provider.

    Parameters
    ----------
    host : HostEnvironment
        The embedding application.
    settings : AuthSettings, optional
        Engine settings (defaults to the global settings).
    secret_store : SecretStore, optional
        Persistence backend (defaults to the configured backend).
    http_client : httpx.AsyncClient, optional
        Client for token requests.
    uri_router : UriCallbackRouter, optional
        Deep-link callback source (defaults to the process-wide router).
    """

    def __init__(
        self,
        host: HostEnvironment,
        settings: AuthSettings | None = None,
        secret_store: SecretStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        uri_router: UriCallbackRouter | None = None,
    ) -> None:
        """Initialize the authentication service."""
        self.settings = settings or get_settings()
        configure(self.settings.log)
        self.host = host

        storage = self.settings.storage
        self.secret_store = secret_store or get_secret_store(
            storage.backend,
            service_name=storage.service_name,
            redis_url=storage.redis_url,
            prefix=storage.prefix,
        )
        self.uri_router = uri_router or get_uri_router()
        self.client = TokenExchangeClient(
            self.settings,
            http_client=http_client,
            proxy_endpoints=host.get_proxy_endpoints,
        )
        self.store = SessionStore(self.client, self.secret_store, host, self.settings)
        self.flows = LoginFlowCoordinator(
            self.store, self.client, host, self.uri_router, self.settings
        )

    async def initialize(self) -> None:
        """Load and refresh the persisted sessions."""
        await self.store.initialize()

    async def get_sessions(self, scopes: Iterable[str] | None = None) -> list[Session]:
        """Return sessions, optionally only those for exactly ``scopes``."""
        return await self.store.get_sessions(scopes)

    async def create_session(self, scopes: Iterable[str]) -> Session:
        """Sign in interactively for ``scopes``."""
        return await self.flows.create_session(scopes)

    async def remove_session(self, session_id: str) -> Session | None:
        """Sign a session out."""
        return await self.store.remove_session(session_id)

    async def clear_sessions(self) -> None:
        """Sign every session out."""
        await self.store.clear_all()

    async def handle_storage_change(self) -> SessionsChangeEvent:
        """Reconcile after another process changed the persisted sessions."""
        return await self.store.reconcile_with_persisted()

    def on_did_change_sessions(self, listener: SessionsChangeListener) -> Callable[[], None]:
        """Subscribe to session changes; returns an unsubscribe callable."""
        return self.store.events.subscribe(listener)

    def cancel_login(self, scopes: Iterable[str] | None = None) -> int:
        """Cancel pending redirect-URI logins."""
        return self.flows.cancel(scopes)

    async def dispose(self) -> None:
        """Cancel pending logins and timers and close the HTTP client."""
        self.flows.cancel()
        self.store.dispose()
        await self.client.aclose()
        logger.debug("Authentication service disposed")
