"""Host environment the login flows run inside.

The engine never talks to a browser, an editor shell or a notification
area directly. It asks the host to open URLs, to map deep-link URIs to
something the browser can reach, and to tell the user when they were
signed out.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import webbrowser

from abc import ABC, abstractmethod


logger = logging.getLogger("aadsession.auth")


class HostEnvironment(ABC):
    """Capabilities of the application embedding the engine."""

    @property
    @abstractmethod
    def uri_scheme(self) -> str:
        """Scheme of deep links routed back into the host (e.g. ``"vscode"``)."""

    @property
    def is_remote(self) -> bool:
        """Whether the engine runs away from the user's machine."""
        return False

    @property
    def is_web(self) -> bool:
        """Whether the host is a browser-based deployment."""
        return False

    @property
    def can_run_local_server(self) -> bool:
        """Whether a loopback server is reachable from the user's browser."""
        return not (self.is_remote or self.is_web)

    @abstractmethod
    def open_external(self, url: str) -> bool:
        """Open ``url`` in the user's browser.

        Returns
        -------
        bool
            True if the browser was asked to open the URL.
        """

    async def as_external_uri(self, uri: str) -> str:
        """Map a host URI to one reachable from the user's browser."""
        return uri

    async def get_proxy_endpoints(self) -> dict[str, str] | None:
        """Per-provider base URL overrides for the token endpoint."""
        return None

    @abstractmethod
    def show_error_message(self, message: str) -> None:
        """Tell the user something went wrong."""


class DesktopHost(HostEnvironment):
    """Host running on the user's own machine.

    Parameters
    ----------
    uri_scheme : str
        Deep-link scheme of the host application.
    proxy_endpoints : dict[str, str], optional
        Static token endpoint overrides keyed by provider id.
    """

    def __init__(
        self,
        uri_scheme: str = "aadsession",
        proxy_endpoints: dict[str, str] | None = None,
    ) -> None:
        """Initialize the desktop host."""
        self._uri_scheme = uri_scheme
        self._proxy_endpoints = proxy_endpoints

    @property
    def uri_scheme(self) -> str:
        """Deep-link scheme of the host application."""
        return self._uri_scheme

    def open_external(self, url: str) -> bool:
        """Open ``url`` with the system web browser."""
        logger.debug("Opening browser at %s", url.split("?", 1)[0])
        return webbrowser.open(url)

    async def get_proxy_endpoints(self) -> dict[str, str] | None:
        """Return the configured token endpoint overrides."""
        return self._proxy_endpoints

    def show_error_message(self, message: str) -> None:
        """Log the message; desktop hosts without a UI have no other channel."""
        logger.error(message)
