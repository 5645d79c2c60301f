"""Type definitions for the aadsession token engine.

Shared in-memory types used across the login coordinator,
session store, and refresh scheduler.
"""

from __future__ import annotations

import time

from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class Account:
    """Account identity derived from token claims.

    Attributes
    ----------
    label : str
        Display label (email or user principal name).
    id : str
        Stable account id, ``"{tenant}/{subject}"``.
    """

    label: str
    id: str


@dataclass(frozen=True)
class Token:
    """A cached grant for one session.

    Attributes
    ----------
    refresh_token : str
        Refresh token used to renew the grant.
    account : Account
        Account the grant belongs to.
    scope : str
        Canonical scope string the grant was requested for.
    session_id : str
        Session id, minted on first exchange and kept across refreshes.
    access_token : str or None
        Current access token; ``None`` after a refresh failed on the network.
    id_token : str or None
        OIDC ID token if the provider returned one.
    expires_in : int or None
        Access token lifetime in seconds.
    expires_at : float or None
        Unix timestamp at which the access token expires.
    """

    refresh_token: str
    account: Account
    scope: str
    session_id: str
    access_token: str | None = None
    id_token: str | None = None
    expires_in: int | None = None
    expires_at: float | None = None

    @property
    def is_available(self) -> bool:
        """Whether an access token is currently held."""
        return self.access_token is not None

    def is_expired(self, now: float | None = None) -> bool:
        """Check if the access token has expired."""
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass(frozen=True)
class Session:
    """Host-facing view of a token.

    Attributes
    ----------
    id : str
        The session id.
    access_token : str or None
        Access token, ``None`` while the session waits for the network.
    account : Account
        The signed-in account.
    scopes : tuple[str, ...]
        Scopes granted to the session.
    id_token : str or None
        OIDC ID token if available.
    """

    id: str
    access_token: str | None
    account: Account
    scopes: tuple[str, ...]
    id_token: str | None = None

    @classmethod
    def from_token(cls, token: Token) -> Session:
        """Project a token without checking expiry."""
        return cls(
            id=token.session_id,
            access_token=token.access_token,
            account=token.account,
            scopes=tuple(token.scope.split(" ")),
            id_token=token.id_token,
        )


@dataclass(frozen=True)
class SessionsChangeEvent:
    """Sessions added, removed, or changed in a single store operation."""

    added: tuple[Session, ...] = ()
    removed: tuple[Session, ...] = ()
    changed: tuple[Session, ...] = ()

    @property
    def is_empty(self) -> bool:
        """True when the event carries no sessions at all."""
        return not (self.added or self.removed or self.changed)


@dataclass
class PendingLoginState:
    """Bookkeeping of the caller that started an in-flight redirect login.

    Attributes
    ----------
    state : str
        The state value sent to the authorize endpoint.
    nonce : str
        Random nonce embedded in the state.
    code_verifier : str
        PKCE verifier for the code exchange.
    scope_str : str
        Canonical scope string of the login.
    created_at : float
        Unix timestamp when the login was started.
    """

    state: str
    nonce: str
    code_verifier: str
    scope_str: str
    created_at: float = field(default_factory=time.time)


class LoginFlowState(str, Enum):
    """Steps of the local-callback-server login."""

    IDLE = "idle"
    SERVER_STARTED = "server_started"
    REDIRECT_RECEIVED = "redirect_received"
    AUTHORIZE_URL_ISSUED = "authorize_url_issued"
    CODE_RECEIVED = "code_received"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"
