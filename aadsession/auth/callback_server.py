"""Ephemeral localhost HTTP server for the local-server login.

The browser is first sent to ``/signin?nonce=...``; that request is held
open until the login flow answers it with a redirect to the authorize
endpoint. The identity provider's redirect relay later sends the browser
back to ``/?code=...&state=...``, which is held the same way until the
code has been exchanged. Any later ``GET /`` renders a result page.

Request handling runs on stdlib server threads and is bridged to the
event loop that called :meth:`LocalCallbackServer.start`.
"""

# pylint: disable=logging-too-many-args,C0103,W0212

from __future__ import annotations

import asyncio
import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

from ..exceptions import CallbackServerError


logger = logging.getLogger("aadsession.auth")

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Sign-in Complete</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  p { color: #666; }
</style></head>
<body><div class="card">
  <h1>&#x2705; You are signed in now</h1>
  <p>You can close this window and return to the application.</p>
</div></body></html>"""

ERROR_PAGE = """<!DOCTYPE html>
<html>
<head><title>Sign-in Failed</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; color: #cc0000; }}
  p {{ color: #666; }}
</style></head>
<body><div class="card">
  <h1>&#x274C; An error occurred while signing in</h1>
  <p>{error}</p>
</div></body></html>"""


class HeldResponse:
    """A browser request waiting for the login flow to answer it.

    Attributes
    ----------
    host : str
        The request's ``Host`` header.
    params : dict[str, str]
        Decoded query parameters (first value of each).
    error : str or None
        Set when the request itself is invalid (nonce mismatch) or
        carries a provider error.
    """

    def __init__(self, host: str, params: dict[str, str], error: str | None = None) -> None:
        """Initialize the held response."""
        self.host = host
        self.params = params
        self.error = error
        self._location: str | None = None
        self._released = threading.Event()

    @property
    def code(self) -> str | None:
        """The authorization code, if the request carried one."""
        return self.params.get("code")

    @property
    def released(self) -> bool:
        """Whether the response has been answered."""
        return self._released.is_set()

    def redirect(self, location: str) -> None:
        """Answer the browser with a 302 to ``location``. Only the first call counts."""
        if self._released.is_set():
            return
        self._location = location
        self._released.set()

    def wait(self, timeout: float | None = None) -> str:
        """Block the request thread until redirected; returns the location."""
        if not self._released.wait(timeout):
            return "/?error=Timeout"
        return self._location or "/"


def _nonce_matches(state: str, nonce: str) -> bool:
    parts = state.split(",")
    if len(parts) < 2:
        return False
    candidate = parts[1]
    return nonce in (candidate, unquote(candidate))


class LocalCallbackServer:
    """Loopback server capturing the sign-in redirect and the auth code.

    Parameters
    ----------
    nonce : str
        Random nonce the ``/signin`` request and the returned state must carry.
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    start_timeout : float
        Seconds to wait for the server thread to start serving.
    """

    def __init__(
        self,
        nonce: str,
        host: str = "127.0.0.1",
        port: int = 0,
        start_timeout: float = 5.0,
    ) -> None:
        """Initialize the callback server."""
        self._nonce = nonce
        self._host = host
        self._port = port
        self._start_timeout = start_timeout
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._redirect_future: asyncio.Future[HeldResponse] | None = None
        self._code_future: asyncio.Future[HeldResponse] | None = None
        self._lock = threading.Lock()
        self._signed_in = False
        self._code_received = False
        self._held: list[HeldResponse] = []
        self._closed = False
        self._actual_port = 0

    @property
    def port(self) -> int:
        """The bound port (0 before :meth:`start`)."""
        return self._actual_port

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` has been called."""
        return self._closed

    async def start(self) -> int:
        """Bind and start serving on a daemon thread.

        Returns
        -------
        int
            The bound port.

        Raises
        ------
        CallbackServerError
            If the port cannot be bound, the server was already closed,
            or the server thread does not start in time.
        """
        if self._closed:
            raise CallbackServerError("Closed", reason="closed")

        self._loop = asyncio.get_running_loop()
        self._redirect_future = self._loop.create_future()
        self._code_future = self._loop.create_future()

        try:
            self._server = ThreadingHTTPServer((self._host, self._port), self._make_handler())
        except OSError as exc:
            logger.error(
                "Callback server could not listen on %s:%s: %s", self._host, self._port, exc
            )
            raise CallbackServerError("Error listening to server", reason="listen") from exc
        self._server.daemon_threads = True
        self._actual_port = self._server.server_address[1]

        serving = threading.Event()
        server = self._server

        def _serve() -> None:
            serving.set()
            server.serve_forever(poll_interval=0.1)

        self._thread = threading.Thread(target=_serve, daemon=True)
        self._thread.start()

        started = await asyncio.to_thread(serving.wait, self._start_timeout)
        if self._closed:
            raise CallbackServerError("Closed", reason="closed")
        if not started:
            self.close()
            raise CallbackServerError("Timeout waiting for port", reason="timeout")

        logger.debug("Callback server started on %s:%d", self._host, self._actual_port)
        return self._actual_port

    async def wait_for_redirect(self) -> HeldResponse:
        """Wait for the browser's ``/signin`` request."""
        if self._redirect_future is None:
            raise CallbackServerError("Closed", reason="closed")
        return await self._redirect_future

    async def wait_for_code(self) -> HeldResponse:
        """Wait for the redirect carrying the authorization code."""
        if self._code_future is None:
            raise CallbackServerError("Closed", reason="closed")
        return await self._code_future

    # ── Request handling (server threads) ────────────────────────────

    def _resolve(self, future: asyncio.Future[HeldResponse] | None, held: HeldResponse) -> None:
        if self._loop is None or future is None:
            held.redirect("/?error=Closed")
            return

        def _set() -> None:
            if future.done():
                held.redirect("/?error=Closed")
            else:
                future.set_result(held)

        with self._lock:
            if self._closed:
                held.redirect("/?error=Closed")
                return
            self._held.append(held)
        self._loop.call_soon_threadsafe(_set)

    def _on_signin(self, host: str, params: dict[str, str]) -> HeldResponse | None:
        with self._lock:
            if self._signed_in or self._closed:
                return None
            self._signed_in = True
        error = None if params.get("nonce") == self._nonce else "Nonce does not match."
        held = HeldResponse(host, params, error)
        self._resolve(self._redirect_future, held)
        return held

    def _on_code(self, host: str, params: dict[str, str]) -> HeldResponse | None:
        with self._lock:
            if not self._signed_in or self._code_received or self._closed:
                return None
            self._code_received = True
        error = None
        if "error" in params:
            error = params.get("error_description") or params["error"]
        elif not _nonce_matches(params.get("state", ""), self._nonce):
            error = "Nonce does not match."
        elif not params.get("code"):
            error = "No code received."
        held = HeldResponse(host, params, error)
        self._resolve(self._code_future, held)
        return held

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        server_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for the local-server login."""

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)
                params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
                host = self.headers.get("Host", "")

                if parsed.path == "/signin":
                    held = server_ref._on_signin(host, params)
                    if held is None:
                        self._send_redirect("/")
                    else:
                        self._send_redirect(held.wait())
                elif parsed.path == "/":
                    held = None
                    if "code" in params or "error" in params:
                        held = server_ref._on_code(host, params)
                    if held is not None:
                        self._send_redirect(held.wait())
                    elif "error" in params:
                        safe_msg = html.escape(params["error"], quote=True)
                        self._send_html(ERROR_PAGE.format(error=safe_msg))
                    else:
                        self._send_html(SUCCESS_PAGE)
                else:
                    self.send_error(404)

            def _send_redirect(self, location: str) -> None:
                """Answer with a 302."""
                self.send_response(302)
                self.send_header("Location", location)
                self.send_header("Content-Length", "0")
                self.send_header("Cache-Control", "no-store")
                self.end_headers()

            def _send_html(self, html_content: str) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the aadsession logger."""
                if args:
                    logger.debug("Callback server: %s", args[0] % args[1:])

        return _CallbackHandler

    # ── Shutdown ─────────────────────────────────────────────────────

    def close(self) -> None:
        """Release held requests, fail pending waits and shut down."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            held = list(self._held)
            self._held.clear()
        for response in held:
            response.redirect("/?error=Closed")

        for future in (self._redirect_future, self._code_future):
            if future is not None and not future.done():
                future.set_exception(CallbackServerError("Closed", reason="closed"))
                future.exception()

        server = self._server
        if server is not None:

            def _shutdown() -> None:
                server.shutdown()
                server.server_close()

            threading.Thread(target=_shutdown, daemon=True).start()
        logger.debug("Callback server on port %d closed", self._actual_port)

    def close_later(self, delay: float) -> None:
        """Close the server after ``delay`` seconds on its event loop."""
        if self._loop is None or self._loop.is_closed():
            self.close()
            return
        self._loop.call_later(delay, self.close)
