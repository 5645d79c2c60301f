"""PKCE (Proof Key for Code Exchange) and nonce generation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
"""

from __future__ import annotations

import base64
import hashlib
import secrets

from dataclasses import dataclass


def base64url(data: bytes) -> str:
    """Encode bytes as unpadded base64url text."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def sha256_base64url(value: str) -> str:
    """Return the unpadded base64url SHA-256 digest of an ASCII string."""
    return base64url(hashlib.sha256(value.encode("ascii")).digest())


def generate_nonce(nbytes: int = 16) -> str:
    """Generate a random nonce.

    The nonce is standard base64 and may contain ``+``, ``/`` and ``=``;
    it must be percent-encoded wherever it is embedded in a URL.
    """
    return base64.b64encode(secrets.token_bytes(nbytes)).decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (base64url of 32 random bytes).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, nbytes: int = 32) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        nbytes : int
            Number of random bytes in the verifier (default 32,
            which encodes to the RFC 7636 minimum of 43 characters).

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        verifier = base64url(secrets.token_bytes(nbytes))
        return cls(verifier=verifier, challenge=sha256_base64url(verifier))
