"""Identity claims read from issued tokens.

Claims are only used to name the account and mint a session id, so the
payload is decoded without signature verification: the token came
straight from the token endpoint over TLS.
"""

from __future__ import annotations

import base64
import json
import logging
import uuid

from dataclasses import dataclass
from typing import Any

from ..exceptions import ClaimsError


logger = logging.getLogger("aadsession.auth")

_FALLBACK_LABEL = "user@example.com"


def decode_jwt_payload(token: str) -> dict[str, Any]:
    """Decode the JSON payload segment of a JWT.

    Parameters
    ----------
    token : str
        A compact-serialized JWT.

    Returns
    -------
    dict[str, Any]
        The decoded payload.

    Raises
    ------
    ValueError
        If the token has no payload segment or it is not a JSON object.
    """
    parts = token.split(".")
    if len(parts) < 2 or not parts[1]:
        msg = "Token is not a JWT"
        raise ValueError(msg)
    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    if not isinstance(payload, dict):
        msg = "JWT payload is not an object"
        raise ValueError(msg)
    return payload


@dataclass(frozen=True)
class TokenClaims:
    """Subset of token claims needed for account identity."""

    tid: str
    oid: str | None = None
    altsecid: str | None = None
    ipd: str | None = None
    email: str | None = None
    unique_name: str | None = None
    preferred_username: str | None = None
    exp: int | None = None
    scp: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TokenClaims:
        """Build claims from a decoded JWT payload."""
        if "tid" not in payload:
            msg = "Token has no tenant claim"
            raise ValueError(msg)
        return cls(
            tid=str(payload["tid"]),
            oid=payload.get("oid"),
            altsecid=payload.get("altsecid"),
            ipd=payload.get("ipd"),
            email=payload.get("email"),
            unique_name=payload.get("unique_name"),
            preferred_username=payload.get("preferred_username"),
            exp=payload.get("exp"),
            scp=payload.get("scp"),
        )

    @property
    def subject_id(self) -> str:
        """Object id, or the alternate secure id for guest/MSA accounts."""
        return self.oid or self.altsecid or self.ipd or ""

    @property
    def account_id(self) -> str:
        """Stable account id, ``"{tenant}/{subject}"``."""
        return f"{self.tid}/{self.subject_id}"

    @property
    def account_label(self) -> str:
        """Best available human-readable name."""
        return self.email or self.unique_name or self.preferred_username or _FALLBACK_LABEL

    def new_session_id(self) -> str:
        """Mint a session id for a first exchange."""
        return f"{self.account_id}/{uuid.uuid4()}"


def extract_claims(access_token: str | None, id_token: str | None = None) -> TokenClaims:
    """Read claims from the access token, falling back to the ID token.

    Parameters
    ----------
    access_token : str or None
        Access token; may be opaque.
    id_token : str or None
        OIDC ID token.

    Returns
    -------
    TokenClaims
        The parsed claims.

    Raises
    ------
    ClaimsError
        If neither token carries parsable claims.
    """
    try:
        return TokenClaims.from_payload(decode_jwt_payload(access_token or ""))
    except (ValueError, UnicodeError) as exc:
        if not id_token:
            msg = "Access token claims could not be parsed and no ID token was returned"
            raise ClaimsError(msg) from exc
        logger.info("Attempting to parse id_token instead since access_token was not parsable")

    try:
        return TokenClaims.from_payload(decode_jwt_payload(id_token))
    except (ValueError, UnicodeError) as exc:
        msg = "Neither access token nor ID token claims could be parsed"
        raise ClaimsError(msg) from exc
