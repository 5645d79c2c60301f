"""aadsession - OAuth2 token lifecycle engine for Microsoft identity.

This package signs users in with the authorization-code + PKCE flow,
keeps their sessions in a pluggable secret store, refreshes tokens
ahead of expiry and reconciles with changes made by other processes.
"""

from .auth import (
    AuthenticationService,
    DesktopHost,
    HostEnvironment,
    SessionStore,
    get_uri_router,
)
from .config import (
    AuthSettings,
    LoginSettings,
    LogSettings,
    RefreshSettings,
    StorageSettings,
    clear_settings,
    get_settings,
    reload_settings,
)
from .exceptions import (
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
from .log import enable_debug, get_logger, set_level
from .types import (
    Account,
    LoginFlowState,
    PendingLoginState,
    Session,
    SessionsChangeEvent,
    Token,
)


__version__ = "0.1.0"

__all__ = [
    "AADSessionError",
    "Account",
    "AuthFailure",
    "AuthFlowCancelled",
    "AuthFlowTimeout",
    "AuthSettings",
    "AuthenticationError",
    "AuthenticationService",
    "CallbackServerError",
    "ClaimsError",
    "DesktopHost",
    "HostEnvironment",
    "LogSettings",
    "LoginFlowState",
    "LoginSettings",
    "MissingVerifierError",
    "NetworkFailure",
    "PendingLoginState",
    "PersistedDataError",
    "RefreshSettings",
    "Session",
    "SessionStore",
    "SessionUnavailableError",
    "SessionsChangeEvent",
    "StateMismatchError",
    "StorageSettings",
    "Token",
    "TokenError",
    "TokenRefreshError",
    "__version__",
    "clear_settings",
    "enable_debug",
    "get_logger",
    "get_settings",
    "get_uri_router",
    "reload_settings",
    "set_level",
]
