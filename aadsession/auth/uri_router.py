"""Process-wide router for deep-link callback URIs.

The host hands every URI that targets this engine to ``handle_uri``.
Redirect-URI logins subscribe with ``on_uri`` for as long as they wait
and dispose the subscription when done.
"""

from __future__ import annotations

import logging
import threading

from collections.abc import Callable


logger = logging.getLogger("aadsession.auth")

UriHandler = Callable[[str], None]


class UriListener:
    """Subscription handle returned by :meth:`UriCallbackRouter.on_uri`."""

    def __init__(self, router: UriCallbackRouter, handler: UriHandler) -> None:
        """Initialize the listener handle."""
        self._router = router
        self._handler = handler
        self._disposed = False

    @property
    def disposed(self) -> bool:
        """Whether the listener was removed."""
        return self._disposed

    def dispose(self) -> None:
        """Stop receiving URIs. Disposing twice is a no-op."""
        if self._disposed:
            return
        self._disposed = True
        self._router._remove(self._handler)  # noqa: SLF001


class UriCallbackRouter:
    """Fans incoming callback URIs out to subscribed handlers.

    Handlers may be called from any thread; handlers that touch an event
    loop must hop onto it themselves.
    """

    def __init__(self) -> None:
        """Initialize the router."""
        self._handlers: list[UriHandler] = []
        self._lock = threading.Lock()

    def on_uri(self, handler: UriHandler) -> UriListener:
        """Subscribe ``handler`` to every future callback URI."""
        with self._lock:
            self._handlers.append(handler)
        return UriListener(self, handler)

    def _remove(self, handler: UriHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    @property
    def listener_count(self) -> int:
        """Number of subscribed handlers."""
        with self._lock:
            return len(self._handlers)

    def handle_uri(self, uri: str) -> None:
        """Deliver a callback URI to every subscribed handler."""
        with self._lock:
            handlers = list(self._handlers)
        logger.debug("Received callback URI, %d listener(s)", len(handlers))
        for handler in handlers:
            try:
                handler(uri)
            except Exception:
                logger.exception("Callback URI handler failed")


_router_instance: UriCallbackRouter | None = None
_router_lock = threading.Lock()


def get_uri_router() -> UriCallbackRouter:
    """Return the process-wide router."""
    global _router_instance  # noqa: PLW0603

    with _router_lock:
        if _router_instance is None:
            _router_instance = UriCallbackRouter()
        return _router_instance


def reset_uri_router() -> None:
    """Forget the process-wide router (tests)."""
    global _router_instance  # noqa: PLW0603

    with _router_lock:
        _router_instance = None
