"""aadsession exception hierarchy.

All aadsession-specific exceptions inherit from AADSessionError, enabling
catch-all handling while supporting specific error types. Token endpoint
failures are split into two classes the engine must never confuse:
``NetworkFailure`` (transient, retried in the background) and
``AuthFailure`` (revoked or invalid credentials, ends the session).
"""

from __future__ import annotations

from typing import Any


class AADSessionError(Exception):
    """Base exception for all aadsession errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize aadsession exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (scope, session_id, status_code, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class PersistedDataError(AADSessionError):
    """The persisted session blob could not be parsed.

    The store treats this as "every session was removed".
    """


class AuthenticationError(AADSessionError):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    interactive login flows, token exchange, or session refresh.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The identity provider id (e.g., "microsoft").
        flow_id : str, optional
            The identifier of the login flow that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class AuthFlowCancelled(AuthenticationError):
    """Interactive login was cancelled.

    Raised when the host closes a pending flow. The authorize page
    may still be open in the browser.
    """


class AuthFlowTimeout(AuthenticationError):
    """Interactive login timed out.

    Raised when the callback is not received within the login timeout.
    Only the waiting caller is rejected.
    """

    def __init__(
        self,
        message: str,
        timeout: float,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        provider : str, optional
            The identity provider id.
        flow_id : str, optional
            The identifier of the login flow.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class StateMismatchError(AuthenticationError):
    """The callback state matches no registered login (possible CSRF)."""


class MissingVerifierError(AuthenticationError):
    """No PKCE code verifier is registered for the callback state."""


class CallbackServerError(AuthenticationError):
    """The local callback server could not be started or was closed.

    Infrastructure failure; the login coordinator falls back to the
    redirect-URI flow when it sees this error.
    """

    def __init__(self, message: str, reason: str | None = None, **context: Any) -> None:
        """Initialize callback server error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        reason : str, optional
            Short machine-readable reason ("listen", "closed", "timeout").
        **context : Any
            Additional context.
        """
        super().__init__(message, reason=reason, **context)
        self.reason = reason


class TokenError(AuthenticationError):
    """Base exception for token-related failures.

    Raised when token operations (exchange, refresh, conversion) fail.
    """


class NetworkFailure(TokenError):
    """The token endpoint could not be reached.

    Raised after the transport failed or returned 5xx on every attempt.
    Sessions hit by this error are kept and polled later.
    """

    def __init__(
        self, message: str = "Network failure", attempts: int | None = None, **context: Any
    ) -> None:
        """Initialize network failure.

        Parameters
        ----------
        message : str
            Human-readable error message.
        attempts : int, optional
            Number of requests made before giving up.
        **context : Any
            Additional context.
        """
        super().__init__(message, attempts=attempts, **context)
        self.attempts = attempts


class AuthFailure(TokenError):
    """The token endpoint rejected the request.

    A 4xx response means the grant was revoked, expired, or is otherwise
    invalid; the caller has to sign in again.
    """

    def __init__(self, message: str, status_code: int | None = None, **context: Any) -> None:
        """Initialize auth failure.

        Parameters
        ----------
        message : str
            Human-readable error message (usually the response body).
        status_code : int, optional
            The HTTP status returned by the token endpoint.
        **context : Any
            Additional context.
        """
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class ClaimsError(AuthFailure):
    """Neither the access token nor the ID token carried parsable claims."""


class TokenRefreshError(TokenError):
    """Refreshing a session failed for a reason other than the network.

    The session is signed out.
    """


class SessionUnavailableError(TokenError):
    """A session has no usable access token and could not be refreshed."""
