"""Tests for the token endpoint client: request shape, retry and failure classes."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import httpx
import pytest

from aadsession.auth.scopes import ScopeData
from aadsession.auth.token_client import TokenExchangeClient
from aadsession.config import AuthSettings
from aadsession.exceptions import AuthFailure, ClaimsError, NetworkFailure
from tests.helpers import TokenEndpoint, make_jwt, token_json


SCOPES = ScopeData.from_scopes(["offline_access", "openid", "VSCODE_TENANT:contoso"])


class RecordingSleep:
    """Backoff stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def sleeper() -> RecordingSleep:
    """Recording sleep."""
    return RecordingSleep()


@pytest.fixture()
def retrying(endpoint: TokenEndpoint, sleeper: RecordingSleep) -> TokenExchangeClient:
    """Client using the default retry policy."""
    return TokenExchangeClient(
        AuthSettings(), http_client=endpoint.client(), sleep=sleeper
    )


# ── Request shape ───────────────────────────────────────────────────


class TestRequests:
    """The bodies and URLs sent to the token endpoint."""

    @pytest.mark.asyncio
    async def test_exchange_code_body(
        self, client: TokenExchangeClient, endpoint: TokenEndpoint
    ) -> None:
        """Code exchange posts the authorization_code grant with the verifier."""
        await client.exchange_code("the-code", "the-verifier", SCOPES)

        form = endpoint.requests[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"
        assert form["code_verifier"] == "the-verifier"
        assert form["client_id"] == SCOPES.client_id
        assert form["scope"] == "offline_access openid"
        assert form["redirect_uri"] == client.settings.login.redirect_url
        assert endpoint.urls[0] == "https://login.microsoftonline.com/contoso/oauth2/v2.0/token"

    @pytest.mark.asyncio
    async def test_refresh_body(
        self, client: TokenExchangeClient, endpoint: TokenEndpoint
    ) -> None:
        """Refresh posts the refresh_token grant without internal markers."""
        await client.refresh("rt-old", SCOPES, "tenant-1/oid-1/s1")

        form = endpoint.requests[0]
        assert form == {
            "refresh_token": "rt-old",
            "client_id": SCOPES.client_id,
            "grant_type": "refresh_token",
            "scope": "offline_access openid",
        }

    def test_authorize_endpoint(self, client: TokenExchangeClient) -> None:
        """The authorize endpoint is built from the tenant."""
        assert client.authorize_endpoint(SCOPES) == (
            "https://login.microsoftonline.com/contoso/oauth2/v2.0/authorize"
        )

    @pytest.mark.asyncio
    async def test_proxy_override(self, settings: AuthSettings, endpoint: TokenEndpoint) -> None:
        """A host proxy endpoint replaces the token endpoint base."""

        async def overrides() -> dict[str, str]:
            return {"microsoft": "https://proxy.example.com/login"}

        proxied = TokenExchangeClient(
            settings, http_client=endpoint.client(), proxy_endpoints=overrides
        )
        await proxied.exchange_code("c", "v", SCOPES)
        assert endpoint.urls[0] == "https://proxy.example.com/login/contoso/oauth2/v2.0/token"
        assert proxied.authorize_endpoint(SCOPES).startswith("https://login.microsoftonline.com/")

    @pytest.mark.asyncio
    async def test_proxy_without_entry(
        self, settings: AuthSettings, endpoint: TokenEndpoint
    ) -> None:
        """Overrides for other providers are ignored."""

        async def overrides() -> dict[str, str]:
            return {"github": "https://proxy.example.com/"}

        proxied = TokenExchangeClient(
            settings, http_client=endpoint.client(), proxy_endpoints=overrides
        )
        assert (await proxied.token_endpoint(SCOPES)).startswith(
            "https://login.microsoftonline.com/"
        )


# ── Token conversion ────────────────────────────────────────────────


class TestTokenConversion:
    """Responses are turned into session tokens."""

    @pytest.mark.asyncio
    async def test_new_session(self, client: TokenExchangeClient) -> None:
        """A code exchange mints a session id from the claims."""
        token = await client.exchange_code("c", "v", SCOPES)

        assert token.session_id.startswith("tenant-1/oid-1/")
        assert token.account.id == "tenant-1/oid-1"
        assert token.account.label == "user@contoso.com"
        assert token.refresh_token == "rt-new"
        assert token.scope == SCOPES.scope_str
        assert token.expires_in == 3600
        assert token.expires_at is not None

    @pytest.mark.asyncio
    async def test_refresh_keeps_session_id(self, client: TokenExchangeClient) -> None:
        """A refresh keeps the existing session id."""
        token = await client.refresh("rt-old", SCOPES, "tenant-1/oid-1/s1")
        assert token.session_id == "tenant-1/oid-1/s1"

    @pytest.mark.asyncio
    async def test_refresh_without_rotation(
        self, client: TokenExchangeClient, endpoint: TokenEndpoint
    ) -> None:
        """The previous refresh token is kept when none is returned."""
        endpoint.queue(endpoint.ok(refresh_token=None))
        token = await client.refresh("rt-old", SCOPES, "tenant-1/oid-1/s1")
        assert token.refresh_token == "rt-old"

    @pytest.mark.asyncio
    async def test_id_token_fallback(
        self, client: TokenExchangeClient, endpoint: TokenEndpoint
    ) -> None:
        """Claims come from the ID token when the access token is opaque."""
        body = token_json(id_token=make_jwt(tid="t9", oid="o9", email="guest@x.com"))
        body["access_token"] = "opaque"
        endpoint.queue(httpx.Response(200, json=body))

        token = await client.exchange_code("c", "v", SCOPES)
        assert token.account.id == "t9/o9"
        assert token.access_token == "opaque"

    @pytest.mark.asyncio
    async def test_no_claims(self, client: TokenExchangeClient, endpoint: TokenEndpoint) -> None:
        """No parsable claims is an auth failure."""
        body = token_json()
        body["access_token"] = "opaque"
        endpoint.queue(httpx.Response(200, json=body))

        with pytest.raises(ClaimsError):
            await client.exchange_code("c", "v", SCOPES)


# ── Failure classification ──────────────────────────────────────────


class TestRetry:
    """Transport errors and 5xx are retried; other errors are not."""

    @pytest.mark.asyncio
    async def test_quadratic_backoff_then_network_failure(
        self,
        retrying: TokenExchangeClient,
        endpoint: TokenEndpoint,
        sleeper: RecordingSleep,
    ) -> None:
        """Three retries wait 5, 20 and 45 seconds before giving up."""
        endpoint.default = httpx.Response(503, text="unavailable")

        with pytest.raises(NetworkFailure) as exc_info:
            await retrying.refresh("rt", SCOPES, "sid")

        assert len(endpoint.requests) == 4
        assert sleeper.delays == [5, 20, 45]
        assert exc_info.value.attempts == 4

    @pytest.mark.asyncio
    async def test_transport_error_recovers(
        self,
        retrying: TokenExchangeClient,
        endpoint: TokenEndpoint,
        sleeper: RecordingSleep,
    ) -> None:
        """A transport error followed by success returns the token."""
        endpoint.queue(httpx.ConnectError("refused"), httpx.Response(502), endpoint.ok())

        token = await retrying.refresh("rt", SCOPES, "sid")
        assert token.session_id == "sid"
        assert sleeper.delays == [5, 20]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(
        self,
        retrying: TokenExchangeClient,
        endpoint: TokenEndpoint,
        sleeper: RecordingSleep,
    ) -> None:
        """A 400 is an auth failure on the first attempt."""
        endpoint.queue(httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(AuthFailure) as exc_info:
            await retrying.refresh("rt", SCOPES, "sid")

        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.message
        assert not isinstance(exc_info.value, NetworkFailure)
        assert len(endpoint.requests) == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_unparsable_body(
        self, client: TokenExchangeClient, endpoint: TokenEndpoint
    ) -> None:
        """A 200 with a non-JSON body is an auth failure."""
        endpoint.queue(httpx.Response(200, text="<html>not json</html>"))

        with pytest.raises(AuthFailure):
            await client.refresh("rt", SCOPES, "sid")

    @pytest.mark.asyncio
    async def test_no_retries_configured(
        self, client: TokenExchangeClient, endpoint: TokenEndpoint
    ) -> None:
        """With max_retries=0 a single failed request is a network failure."""
        endpoint.default = httpx.Response(500)

        with pytest.raises(NetworkFailure):
            await client.refresh("rt", SCOPES, "sid")
        assert len(endpoint.requests) == 1


class TestLifecycle:
    """Client ownership."""

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self, endpoint: TokenEndpoint) -> None:
        """An injected http client is not closed."""
        http_client = endpoint.client()
        client = TokenExchangeClient(AuthSettings(), http_client=http_client)
        await client.aclose()
        assert not http_client.is_closed
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_aclose_owned_client(self) -> None:
        """A lazily created client is closed."""
        client = TokenExchangeClient(AuthSettings())
        http_client = await client._get_client()  # pylint: disable=protected-access
        await client.aclose()
        assert http_client.is_closed
