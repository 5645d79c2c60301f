"""OAuth2 authorization-code + PKCE session engine.

Provides the token endpoint client, secret storage backends, the session
store with its refresh scheduling, the local callback server, the
deep-link callback router and the login flow coordinator.
"""

from __future__ import annotations

from .callback_server import HeldResponse, LocalCallbackServer
from .claims import TokenClaims, decode_jwt_payload, extract_claims
from .events import ChangeEventBus
from .flow import LoginFlowCoordinator, callback_environment
from .host import DesktopHost, HostEnvironment
from .pkce import PKCEChallenge, base64url, generate_nonce, sha256_base64url
from .scheduler import ReconnectPoller, RefreshScheduler
from .scopes import ScopeData
from .secret_store import (
    KeyringSecretStore,
    MemorySecretStore,
    RedisSecretStore,
    SecretStore,
    get_secret_store,
    reset_secret_store,
)
from .service import AuthenticationService
from .session_store import SIGNED_OUT_MESSAGE, SessionStore
from .token_client import TokenExchangeClient
from .uri_router import UriCallbackRouter, UriListener, get_uri_router, reset_uri_router


__all__ = [
    "SIGNED_OUT_MESSAGE",
    "AuthenticationService",
    "ChangeEventBus",
    "DesktopHost",
    "HeldResponse",
    "HostEnvironment",
    "KeyringSecretStore",
    "LocalCallbackServer",
    "LoginFlowCoordinator",
    "MemorySecretStore",
    "PKCEChallenge",
    "ReconnectPoller",
    "RedisSecretStore",
    "RefreshScheduler",
    "ScopeData",
    "SecretStore",
    "SessionStore",
    "TokenClaims",
    "TokenExchangeClient",
    "UriCallbackRouter",
    "UriListener",
    "base64url",
    "callback_environment",
    "decode_jwt_payload",
    "extract_claims",
    "generate_nonce",
    "get_secret_store",
    "get_uri_router",
    "reset_secret_store",
    "reset_uri_router",
    "sha256_base64url",
]
