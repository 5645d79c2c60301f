"""Interactive login orchestration.

LoginFlowCoordinator turns ``create_session(scopes)`` into a signed-in
session using one of two authorization-code + PKCE flows:

- **Local server**: a loopback server captures the redirect. Used when
  the host runs on the user's machine.
- **Redirect URI**: the code comes back through a host deep link routed
  by :class:`~aadsession.auth.uri_router.UriCallbackRouter`. Used by
  remote and web hosts, and as the fallback when the local server
  cannot be started.

Concurrent redirect-URI logins for the same scopes share one pending
login: one browser page, one code exchange, one session.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import asyncio
import logging
import re

from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote, unquote_plus, urlencode, urlsplit

from ..config import get_settings
from ..exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    CallbackServerError,
    MissingVerifierError,
    StateMismatchError,
)
from ..types import LoginFlowState, PendingLoginState
from .callback_server import LocalCallbackServer
from .pkce import PKCEChallenge, generate_nonce
from .uri_router import get_uri_router


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from urllib.parse import SplitResult

    from ..config import AuthSettings
    from ..types import Session
    from .host import HostEnvironment
    from .scopes import ScopeData
    from .session_store import SessionStore
    from .token_client import TokenExchangeClient
    from .uri_router import UriCallbackRouter, UriListener

    ServerFactory = Callable[..., LocalCallbackServer]


logger = logging.getLogger("aadsession.auth")

_HOST_PORT_RE = re.compile(r"^[^:]+:(\d+)$")
_AUTHORITY_PORT_RE = re.compile(r":([0-9]*)$")

_CALLBACK_ENVIRONMENTS = {
    "online.visualstudio.com": "vso",
    "online-ppe.core.vsengsaas.visualstudio.com": "vsoppe",
    "online.dev.core.vsengsaas.visualstudio.com": "vsodev",
}


def callback_environment(callback_uri: SplitResult) -> str:
    """Tag telling the redirect relay where to send the code back to."""
    if callback_uri.scheme not in ("https", "http"):
        return callback_uri.scheme
    return _CALLBACK_ENVIRONMENTS.get(callback_uri.netloc, callback_uri.netloc)


def _parse_query(query: str) -> dict[str, str]:
    """Split a query string without decoding its values."""
    params: dict[str, str] = {}
    for pair in query.split("&"):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        params.setdefault(key, value)
    return params


def _error_location(error: Any) -> str:
    message = getattr(error, "message", None) or str(error) or "Unknown error"
    return f"/?error={quote(message, safe='')}"


@dataclass
class _PendingLogin:
    """A redirect-URI login shared by every caller asking for the same scopes.

    Only the caller that starts the login registers a state; later callers
    for the same scopes wait on ``future`` without opening the browser.
    """

    scope_data: ScopeData
    future: asyncio.Future[Session]
    login: PendingLoginState | None = None
    listener: UriListener | None = None
    task: asyncio.Task[None] | None = None
    waiters: int = 0
    consumed: bool = False


class LoginFlowCoordinator:
    """Runs interactive logins and hands the resulting tokens to the store.

    Parameters
    ----------
    store : SessionStore
        Store receiving new sessions.
    client : TokenExchangeClient
        Client used for the code exchange and authorize URLs.
    host : HostEnvironment
        Host used to open the browser and resolve the callback URI.
    uri_router : UriCallbackRouter, optional
        Source of deep-link callbacks (defaults to the process-wide router).
    settings : AuthSettings, optional
        Engine settings (defaults to the global settings).
    server_factory : callable, optional
        Builds the local callback server; called with the nonce and the
        ``host`` and ``start_timeout`` keywords.
    """

    def __init__(
        self,
        store: SessionStore,
        client: TokenExchangeClient,
        host: HostEnvironment,
        uri_router: UriCallbackRouter | None = None,
        settings: AuthSettings | None = None,
        *,
        server_factory: ServerFactory = LocalCallbackServer,
    ) -> None:
        """Initialize the login coordinator."""
        self.settings = settings or get_settings()
        self._store = store
        self._client = client
        self._host = host
        self._uri_router = uri_router or get_uri_router()
        self._server_factory = server_factory
        self._pending: dict[str, _PendingLogin] = {}
        self._local_flow_state = LoginFlowState.IDLE

    @property
    def local_flow_state(self) -> LoginFlowState:
        """Step reached by the most recent local-server login."""
        return self._local_flow_state

    def _set_local_state(self, state: LoginFlowState) -> None:
        logger.debug("Local login %s -> %s", self._local_flow_state.value, state.value)
        self._local_flow_state = state

    @property
    def pending_scopes(self) -> list[str]:
        """Scope strings with a redirect-URI login in progress."""
        return list(self._pending)

    # ── Entry point ──────────────────────────────────────────────────

    async def create_session(self, scopes: Iterable[str]) -> Session:
        """Sign in interactively for ``scopes``.

        Parameters
        ----------
        scopes : Iterable[str]
            Requested scopes, optionally carrying client id / tenant markers.

        Returns
        -------
        Session
            The new session.

        Raises
        ------
        AuthFlowTimeout
            If no callback arrived within the login timeout.
        AuthFlowCancelled
            If the login was cancelled.
        AuthenticationError
            If the provider returned an error, the state did not match,
            or the code exchange failed.
        """
        scope_data = self._store.scope_data(scopes)
        logger.info("Logging in for the following scopes: %s", scope_data.scope_str)
        if not scope_data.includes_offline_access:
            logger.warning(
                "The 'offline_access' scope was not included, so the generated token "
                "will not be able to be refreshed."
            )

        if not self._host.can_run_local_server:
            return await self._create_session_without_local_server(scope_data)

        try:
            return await self._create_session_with_local_server(scope_data)
        except CallbackServerError as exc:
            logger.error(
                "Error creating session for scopes: %s Error: %s", scope_data.scope_str, exc
            )
            return await self._create_session_without_local_server(scope_data)

    # ── Shared helpers ───────────────────────────────────────────────

    def _authorize_url(self, scope_data: ScopeData, state: str, pkce: PKCEChallenge) -> str:
        params = {
            "response_type": "code",
            "response_mode": "query",
            "client_id": scope_data.client_id,
            "redirect_uri": self.settings.login.redirect_url,
            "state": state,
            "scope": scope_data.scopes_to_send,
            "prompt": "select_account",
            "code_challenge_method": pkce.method,
            "code_challenge": pkce.challenge,
        }
        query = urlencode(params, quote_via=quote)
        return f"{self._client.authorize_endpoint(scope_data)}?{query}"

    async def _wait(self, awaitable: Awaitable[Any], timeout: float) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as exc:
            raise AuthFlowTimeout(
                "Login timed out.", timeout=timeout, provider=self.settings.login.provider_id
            ) from exc

    # ── Local-server flow ────────────────────────────────────────────

    async def _create_session_with_local_server(self, scope_data: ScopeData) -> Session:
        login = self.settings.login
        nonce = generate_nonce()
        server = self._server_factory(
            nonce, host=login.callback_host, start_timeout=login.server_start_timeout_seconds
        )
        self._set_local_state(LoginFlowState.IDLE)
        try:
            port = await server.start()
            self._set_local_state(LoginFlowState.SERVER_STARTED)
            signin_url = f"http://localhost:{port}/signin?nonce={quote(nonce, safe='')}"
            self._host.open_external(signin_url)

            redirect = await self._wait(server.wait_for_redirect(), login.login_timeout_seconds)
            self._set_local_state(LoginFlowState.REDIRECT_RECEIVED)
            if redirect.error:
                redirect.redirect(_error_location(redirect.error))
                raise AuthenticationError(redirect.error, provider=login.provider_id)

            match = _HOST_PORT_RE.match(redirect.host)
            updated_port = int(match.group(1)) if match else port
            state = f"{updated_port},{quote(nonce, safe='')}"
            pkce = PKCEChallenge.generate()
            redirect.redirect(self._authorize_url(scope_data, state, pkce))
            self._set_local_state(LoginFlowState.AUTHORIZE_URL_ISSUED)

            code_response = await self._wait(server.wait_for_code(), login.login_timeout_seconds)
            self._set_local_state(LoginFlowState.CODE_RECEIVED)
            try:
                if code_response.error:
                    raise AuthenticationError(code_response.error, provider=login.provider_id)
                self._set_local_state(LoginFlowState.EXCHANGING)
                token = await self._client.exchange_code(
                    code_response.code or "", pkce.verifier, scope_data
                )
                await self._store.add_session(token, scope_data)
                logger.info("Login successful for scopes: %s", scope_data.scope_str)
                code_response.redirect("/")
                session = await self._store.convert_to_session(token)
            except Exception as exc:
                code_response.redirect(_error_location(exc))
                raise
        except Exception:
            self._set_local_state(LoginFlowState.FAILED)
            raise
        finally:
            server.close_later(login.server_close_delay_seconds)

        self._set_local_state(LoginFlowState.COMPLETE)
        return session

    # ── Redirect-URI flow ────────────────────────────────────────────

    async def _create_session_without_local_server(self, scope_data: ScopeData) -> Session:
        login = self.settings.login
        pending = self._pending.get(scope_data.scope_str)
        if pending is None:
            pending = await self._begin_redirect_login(scope_data)
        else:
            logger.info(
                "Login for scopes %s already in progress, waiting for it", scope_data.scope_str
            )

        pending.waiters += 1
        try:
            return await self._wait(asyncio.shield(pending.future), login.login_timeout_seconds)
        finally:
            pending.waiters -= 1
            if pending.waiters == 0:
                self._release(pending)

    async def _begin_redirect_login(self, scope_data: ScopeData) -> _PendingLogin:
        login = self.settings.login
        base_uri = f"{self._host.uri_scheme}://{login.callback_authority}"
        callback_uri = urlsplit(await self._host.as_external_uri(base_uri))
        nonce = generate_nonce()
        match = _AUTHORITY_PORT_RE.search(callback_uri.netloc)
        port = (match.group(1) if match else "") or (
            "443" if callback_uri.scheme == "https" else "80"
        )
        state = ",".join(
            (
                callback_environment(callback_uri),
                port,
                quote(nonce, safe=""),
                quote(callback_uri.query, safe=""),
            )
        )
        pkce = PKCEChallenge.generate()

        # Re-check after the await: another caller may have started the login meanwhile.
        existing = self._pending.get(scope_data.scope_str)
        if existing is not None:
            return existing

        loop = asyncio.get_running_loop()
        pending = _PendingLogin(
            scope_data=scope_data,
            future=loop.create_future(),
            login=PendingLoginState(
                state=state,
                nonce=nonce,
                code_verifier=pkce.verifier,
                scope_str=scope_data.scope_str,
            ),
        )
        pending.listener = self._uri_router.on_uri(
            partial(self._on_uri_threadsafe, loop, pending)
        )
        self._pending[scope_data.scope_str] = pending

        try:
            self._host.open_external(self._authorize_url(scope_data, state, pkce))
        except Exception:
            self._release(pending)
            raise
        return pending

    def _on_uri_threadsafe(
        self, loop: asyncio.AbstractEventLoop, pending: _PendingLogin, uri: str
    ) -> None:
        loop.call_soon_threadsafe(self._handle_callback, pending, uri)

    @staticmethod
    def _matching_login(pending: _PendingLogin, raw_state: str) -> PendingLoginState | None:
        once = unquote(raw_state)
        # Some web hosts encode the state twice on the way back.
        candidates = (once, unquote(once), raw_state)
        login = pending.login
        if login is not None and login.state in candidates:
            return login
        return None

    def _handle_callback(self, pending: _PendingLogin, uri: str) -> None:
        if pending.consumed or pending.future.done():
            return
        query = _parse_query(urlsplit(uri).query)
        raw_state = query.get("state", "")
        login = self._matching_login(pending, raw_state)
        if login is None:
            if any(self._matching_login(p, raw_state) for p in self._pending.values()):
                return
            logger.error("State does not match for scopes: %s", pending.scope_data.scope_str)
            self._fail(
                pending,
                StateMismatchError(
                    "State does not match.", provider=self.settings.login.provider_id
                ),
            )
            return

        pending.consumed = True
        if pending.listener is not None:
            pending.listener.dispose()

        if "error" in query:
            message = unquote_plus(query.get("error_description") or query["error"])
            self._fail(
                pending, AuthenticationError(message, provider=self.settings.login.provider_id)
            )
            return

        verifier = login.code_verifier
        if not verifier:
            self._fail(
                pending,
                MissingVerifierError(
                    "No available code verifier", provider=self.settings.login.provider_id
                ),
            )
            return

        code = unquote(query.get("code", ""))
        pending.task = asyncio.ensure_future(self._complete_redirect_login(pending, code, verifier))

    async def _complete_redirect_login(
        self, pending: _PendingLogin, code: str, verifier: str
    ) -> None:
        scope_data = pending.scope_data
        try:
            token = await self._client.exchange_code(code, verifier, scope_data)
            await self._store.add_session(token, scope_data)
            session = await self._store.convert_to_session(token)
        except Exception as exc:
            self._fail(pending, exc)
            return
        logger.info("Login successful for scopes: %s", scope_data.scope_str)
        if not pending.future.done():
            pending.future.set_result(session)

    @staticmethod
    def _fail(pending: _PendingLogin, exc: BaseException) -> None:
        if not pending.future.done():
            pending.future.set_exception(exc)

    def _release(self, pending: _PendingLogin) -> None:
        if pending.listener is not None:
            pending.listener.dispose()
        pending.login = None
        if self._pending.get(pending.scope_data.scope_str) is pending:
            del self._pending[pending.scope_data.scope_str]
        if pending.task is not None and not pending.task.done():
            pending.task.cancel()
        if not pending.future.done():
            pending.future.cancel()

    # ── Cancellation ─────────────────────────────────────────────────

    def cancel(self, scopes: Iterable[str] | None = None) -> int:
        """Reject pending redirect-URI logins.

        Parameters
        ----------
        scopes : Iterable[str], optional
            Only cancel the login for these scopes; all logins otherwise.

        Returns
        -------
        int
            Number of logins cancelled.
        """
        if scopes is None:
            targets = list(self._pending.values())
        else:
            pending = self._pending.get(self._store.scope_data(scopes).scope_str)
            targets = [pending] if pending is not None else []

        for pending in targets:
            logger.info("Cancelling login for scopes: %s", pending.scope_data.scope_str)
            self._fail(
                pending,
                AuthFlowCancelled("Login cancelled", provider=self.settings.login.provider_id),
            )
            self._release(pending)
        return len(targets)
