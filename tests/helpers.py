"""Shared test doubles: unsigned JWTs, a scripted token endpoint and a fake host."""

from __future__ import annotations

import asyncio
import json

from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl

import httpx

from aadsession.auth.host import HostEnvironment
from aadsession.auth.pkce import base64url


def make_jwt(**claims: Any) -> str:
    """Build an unsigned JWT carrying ``claims``."""
    header = base64url(json.dumps({"alg": "none", "typ": "JWT"}).encode())
    payload = base64url(json.dumps(claims).encode())
    return f"{header}.{payload}.signature"


def token_json(
    *,
    tid: str = "tenant-1",
    oid: str = "oid-1",
    email: str = "user@contoso.com",
    expires_in: int | None = 3600,
    refresh_token: str | None = "rt-new",
    **extra: Any,
) -> dict[str, Any]:
    """Token endpoint response body."""
    body: dict[str, Any] = {
        "access_token": make_jwt(tid=tid, oid=oid, email=email),
        "token_type": "Bearer",
        **extra,
    }
    if expires_in is not None:
        body["expires_in"] = expires_in
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    return body


def stored_blob(*sessions: dict[str, Any]) -> str:
    """Persisted JSON array of stored sessions."""
    return json.dumps(list(sessions))


def stored_entry(
    session_id: str = "tenant-1/oid-1/s1",
    scope: str = "offline_access openid",
    refresh_token: str = "rt-old",
    label: str = "user@contoso.com",
) -> dict[str, Any]:
    """One stored session as written by the store."""
    return {
        "id": session_id,
        "refreshToken": refresh_token,
        "scope": scope,
        "account": {"id": "tenant-1/oid-1", "label": label},
    }


Reply = httpx.Response | Exception | Callable[[dict[str, str]], Any]


class TokenEndpoint:
    """Token endpoint for ``httpx.MockTransport`` answering from a script.

    Queued replies are used in order; once the queue is empty every
    request gets ``default``.
    """

    def __init__(self) -> None:
        """Initialize the scripted endpoint."""
        self.requests: list[dict[str, str]] = []
        self.urls: list[str] = []
        self.replies: list[Reply] = []
        self.default: Reply = httpx.Response(200, json=token_json())

    def queue(self, *replies: Reply) -> None:
        """Append replies to the script."""
        self.replies.extend(replies)

    def ok(self, **kwargs: Any) -> httpx.Response:
        """A 200 token response."""
        return httpx.Response(200, json=token_json(**kwargs))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        """Answer one request."""
        form = dict(parse_qsl(request.content.decode()))
        self.requests.append(form)
        self.urls.append(str(request.url))
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)
        result = reply(form)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def client(self) -> httpx.AsyncClient:
        """An async client bound to this endpoint."""
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeHost(HostEnvironment):
    """Host recording opened URLs and notifications."""

    def __init__(
        self,
        *,
        local_server: bool = True,
        callback_uri: str | None = None,
        proxy_endpoints: dict[str, str] | None = None,
    ) -> None:
        """Initialize the fake host."""
        self.local_server = local_server
        self.callback_uri = callback_uri
        self.proxy_endpoints = proxy_endpoints
        self.opened: list[str] = []
        self.errors: list[str] = []

    @property
    def uri_scheme(self) -> str:
        """Deep-link scheme."""
        return "aadsession"

    @property
    def can_run_local_server(self) -> bool:
        """Whether the local-server login may be used."""
        return self.local_server

    def open_external(self, url: str) -> bool:
        """Record the URL."""
        self.opened.append(url)
        return True

    async def as_external_uri(self, uri: str) -> str:
        """Return the configured callback URI."""
        return self.callback_uri or uri

    async def get_proxy_endpoints(self) -> dict[str, str] | None:
        """Return the configured overrides."""
        return self.proxy_endpoints

    def show_error_message(self, message: str) -> None:
        """Record the message."""
        self.errors.append(message)


async def wait_until(predicate: Callable[[], Any], timeout: float = 5.0) -> None:
    """Yield to the loop until ``predicate()`` is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
