"""Tests for the aadsession exception hierarchy.

These tests verify message formatting, context storage and the
inheritance relationships callers rely on to tell transient network
failures from rejected credentials.
"""

from __future__ import annotations

import pytest

from aadsession.exceptions import (
    AADSessionError,
    AuthenticationError,
    AuthFailure,
    AuthFlowCancelled,
    AuthFlowTimeout,
    CallbackServerError,
    ClaimsError,
    MissingVerifierError,
    NetworkFailure,
    PersistedDataError,
    SessionUnavailableError,
    StateMismatchError,
    TokenError,
    TokenRefreshError,
)


class TestAADSessionError:
    """Test base exception class behavior."""

    def test_message_only(self) -> None:
        """Exception with just a message stores it correctly."""
        exc = AADSessionError("Something went wrong")
        assert exc.message == "Something went wrong"
        assert not exc.context
        assert str(exc) == "Something went wrong"

    def test_context_in_str(self) -> None:
        """Context is appended to the string form."""
        exc = AADSessionError("Failed", scope="openid", session_id="s1")
        assert exc.context == {"scope": "openid", "session_id": "s1"}
        assert str(exc) == "Failed (scope='openid', session_id='s1')"

    def test_none_context_dropped(self) -> None:
        """Context entries that are None are not stored."""
        assert AADSessionError("Failed", scope=None).context == {}


class TestHierarchy:
    """Inheritance relationships."""

    @pytest.mark.parametrize(
        "exc_type",
        [
            AuthFlowCancelled,
            StateMismatchError,
            MissingVerifierError,
            TokenError,
            TokenRefreshError,
            SessionUnavailableError,
        ],
    )
    def test_authentication_errors(self, exc_type: type[AuthenticationError]) -> None:
        """Login and token errors are authentication errors."""
        exc = exc_type("failed", provider="microsoft")
        assert isinstance(exc, AuthenticationError)
        assert isinstance(exc, AADSessionError)
        assert exc.provider == "microsoft"

    def test_network_and_auth_failures_are_distinct(self) -> None:
        """Neither failure class is a subclass of the other."""
        assert not issubclass(NetworkFailure, AuthFailure)
        assert not issubclass(AuthFailure, NetworkFailure)
        assert issubclass(NetworkFailure, TokenError)
        assert issubclass(AuthFailure, TokenError)

    def test_claims_error_is_auth_failure(self) -> None:
        """Unparsable claims end the login like a rejected grant."""
        assert issubclass(ClaimsError, AuthFailure)

    def test_persisted_data_error(self) -> None:
        """Storage errors are not authentication errors."""
        assert not issubclass(PersistedDataError, AuthenticationError)
        assert issubclass(PersistedDataError, AADSessionError)


class TestSpecificErrors:
    """Extra attributes of specific errors."""

    def test_network_failure_defaults(self) -> None:
        """NetworkFailure has a default message and records attempts."""
        exc = NetworkFailure(attempts=4)
        assert exc.message == "Network failure"
        assert exc.attempts == 4
        assert exc.context == {"attempts": 4}

    def test_auth_failure_status(self) -> None:
        """AuthFailure records the HTTP status."""
        exc = AuthFailure('{"error":"invalid_grant"}', status_code=400)
        assert exc.status_code == 400
        assert "status_code=400" in str(exc)

    def test_timeout(self) -> None:
        """AuthFlowTimeout records the timeout."""
        exc = AuthFlowTimeout("Login timed out.", timeout=300)
        assert exc.timeout == 300
        assert exc.context["timeout"] == 300

    def test_callback_server_reason(self) -> None:
        """CallbackServerError records a machine-readable reason."""
        exc = CallbackServerError("Error listening to server", reason="listen")
        assert exc.reason == "listen"
        assert isinstance(exc, AuthenticationError)
