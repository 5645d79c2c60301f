"""Token endpoint client.

Performs the authorization-code and refresh-token exchanges against the
identity provider's ``/oauth2/v2.0/token`` endpoint. Transport errors and
5xx responses are retried with quadratic backoff; 4xx responses are
surfaced immediately because they mean the grant itself is no longer valid.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import time

from typing import TYPE_CHECKING

import httpx

from pydantic import ValidationError

from ..config import get_settings
from ..exceptions import AuthFailure, NetworkFailure
from ..log import redact_sensitive_data
from ..models import TokenResponse
from ..types import Account, Token
from .claims import extract_claims


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..config import AuthSettings
    from .scopes import ScopeData

    ProxyEndpointLookup = Callable[[], Awaitable[dict[str, str] | None]]


logger = logging.getLogger("aadsession.auth")


class TokenExchangeClient:
    """Exchanges codes and refresh tokens for access tokens.

    Parameters
    ----------
    settings : AuthSettings, optional
        Engine settings (defaults to the global settings).
    http_client : httpx.AsyncClient, optional
        Client to send requests with. One is created lazily otherwise.
    proxy_endpoints : callable, optional
        Async lookup returning ``{provider_id: base_url}`` overrides
        for the token endpoint host.
    sleep : callable, optional
        Coroutine used to wait between retries (default ``asyncio.sleep``).
    """

    def __init__(
        self,
        settings: AuthSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        proxy_endpoints: ProxyEndpointLookup | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the token exchange client."""
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._owns_client = http_client is None
        self._proxy_endpoints = proxy_endpoints
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.refresh.request_timeout_seconds
            )
            self._owns_client = True
        return self._http_client

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    # ── Endpoints ────────────────────────────────────────────────────

    async def _token_base_url(self) -> str:
        base = self.settings.login.login_endpoint
        if self._proxy_endpoints is None:
            return base
        overrides = await self._proxy_endpoints()
        override = (overrides or {}).get(self.settings.login.provider_id)
        if not override:
            return base
        logger.debug("Using proxy token endpoint %s", override)
        return override if override.endswith("/") else f"{override}/"

    async def token_endpoint(self, scope_data: ScopeData) -> str:
        """Return the token endpoint for the scope's tenant."""
        return f"{await self._token_base_url()}{scope_data.tenant}/oauth2/v2.0/token"

    def authorize_endpoint(self, scope_data: ScopeData) -> str:
        """Return the authorize endpoint for the scope's tenant."""
        return f"{self.settings.login.login_endpoint}{scope_data.tenant}/oauth2/v2.0/authorize"

    # ── Exchanges ────────────────────────────────────────────────────

    async def exchange(
        self,
        endpoint: str,
        body: dict[str, str],
        scope_data: ScopeData,
    ) -> TokenResponse:
        """POST a form body to the token endpoint with retry.

        Parameters
        ----------
        endpoint : str
            The token endpoint URL.
        body : dict[str, str]
            Form fields to send.
        scope_data : ScopeData
            Scopes of the request (used for logging).

        Returns
        -------
        TokenResponse
            The parsed token response.

        Raises
        ------
        AuthFailure
            If the endpoint answered with a non-5xx error status or an
            unparsable body.
        NetworkFailure
            If every attempt failed on the transport or with 5xx.
        """
        max_retries = self.settings.refresh.max_retries
        backoff = self.settings.refresh.backoff_base_seconds
        client = await self._get_client()

        attempt = 0
        last_error = ""
        while True:
            attempt += 1
            response: httpx.Response | None = None
            try:
                response = await client.post(
                    endpoint,
                    data=body,
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                last_error = str(exc) or exc.__class__.__name__

            if response is None or response.status_code >= 500:
                if response is not None:
                    last_error = f"{response.status_code}: {response.text}"
                if attempt > max_retries:
                    logger.error(
                        "Fetching token failed for scopes (%s): %s",
                        scope_data.scope_str,
                        last_error,
                    )
                    break
                delay = backoff * attempt * attempt
                logger.info(
                    "Token request attempt %d failed (%s), retrying in %.0fs",
                    attempt,
                    last_error,
                    delay,
                )
                await self._sleep(delay)
                continue

            if not response.is_success:
                raise AuthFailure(
                    response.text or f"Token endpoint returned {response.status_code}",
                    status_code=response.status_code,
                    scope=scope_data.scope_str,
                )

            try:
                payload = response.json()
                logger.debug("Token response: %s", redact_sensitive_data(payload))
                return TokenResponse.model_validate(payload)
            except (ValueError, ValidationError) as exc:
                msg = "Token endpoint returned an unparsable body"
                raise AuthFailure(
                    msg, status_code=response.status_code, scope=scope_data.scope_str
                ) from exc

        raise NetworkFailure(attempts=attempt, scope=scope_data.scope_str)

    async def exchange_code(self, code: str, code_verifier: str, scope_data: ScopeData) -> Token:
        """Exchange an authorization code for a new session token.

        Parameters
        ----------
        code : str
            Authorization code from the redirect.
        code_verifier : str
            PKCE verifier matching the challenge sent to the authorize endpoint.
        scope_data : ScopeData
            Scopes of the login.

        Returns
        -------
        Token
            A token with a freshly minted session id.
        """
        logger.info("Exchanging login code for token for scopes: %s", scope_data.scope_str)
        body = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": scope_data.client_id,
            "scope": scope_data.scopes_to_send,
            "code_verifier": code_verifier,
            "redirect_uri": self.settings.login.redirect_url,
        }
        try:
            response = await self.exchange(await self.token_endpoint(scope_data), body, scope_data)
            token = self.to_token(response, scope_data)
        except Exception as exc:
            logger.error(
                "Error exchanging code for token (for scopes %s): %s", scope_data.scope_str, exc
            )
            raise
        logger.info(
            "Exchanging login code for token (for scopes: %s) succeeded", scope_data.scope_str
        )
        return token

    async def refresh(self, refresh_token: str, scope_data: ScopeData, session_id: str) -> Token:
        """Exchange a refresh token for a renewed token of the same session.

        Parameters
        ----------
        refresh_token : str
            The session's refresh token.
        scope_data : ScopeData
            Scopes of the session.
        session_id : str
            Id to keep on the renewed token.

        Returns
        -------
        Token
            The renewed token. If the provider does not rotate the refresh
            token, the previous one is kept.
        """
        logger.info("Refreshing token for scopes: %s", scope_data.scope_str)
        body = {
            "refresh_token": refresh_token,
            "client_id": scope_data.client_id,
            "grant_type": "refresh_token",
            "scope": scope_data.scopes_to_send,
        }
        response = await self.exchange(await self.token_endpoint(scope_data), body, scope_data)
        if not response.refresh_token:
            response = response.model_copy(update={"refresh_token": refresh_token})
        return self.to_token(response, scope_data, existing_id=session_id)

    @staticmethod
    def to_token(
        response: TokenResponse,
        scope_data: ScopeData,
        existing_id: str | None = None,
    ) -> Token:
        """Convert a token response into a session token.

        Parameters
        ----------
        response : TokenResponse
            Parsed token endpoint response.
        scope_data : ScopeData
            Scopes the token was requested for.
        existing_id : str, optional
            Session id to keep; a new one is minted from the claims otherwise.

        Returns
        -------
        Token
            The session token.

        Raises
        ------
        ClaimsError
            If neither the access token nor the ID token carries claims.
        """
        claims = extract_claims(response.access_token, response.id_token)
        expires_at = time.time() + response.expires_in if response.expires_in else None
        return Token(
            access_token=response.access_token,
            id_token=response.id_token,
            expires_in=response.expires_in,
            expires_at=expires_at,
            refresh_token=response.refresh_token or "",
            scope=scope_data.scope_str,
            session_id=existing_id or claims.new_session_id(),
            account=Account(label=claims.account_label, id=claims.account_id),
        )
