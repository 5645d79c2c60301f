"""Unit tests for token claim parsing."""

from __future__ import annotations

import pytest

from aadsession.auth.claims import TokenClaims, decode_jwt_payload, extract_claims
from aadsession.exceptions import ClaimsError
from tests.helpers import make_jwt


class TestDecodeJwtPayload:
    """Tests for decode_jwt_payload."""

    def test_decodes_payload(self) -> None:
        """The middle segment is decoded as JSON."""
        assert decode_jwt_payload(make_jwt(tid="t", oid="o")) == {"tid": "t", "oid": "o"}

    def test_rejects_opaque_token(self) -> None:
        """A token without a payload segment is rejected."""
        with pytest.raises(ValueError):
            decode_jwt_payload("opaque-token")

    def test_rejects_non_object(self) -> None:
        """A payload that is not an object is rejected."""
        with pytest.raises(ValueError):
            decode_jwt_payload("e30.WzFd.sig")  # payload is [1]


class TestTokenClaims:
    """Tests for account identity derived from claims."""

    def test_account_id_uses_oid(self) -> None:
        """Account id is tenant/oid."""
        claims = TokenClaims.from_payload({"tid": "t1", "oid": "o1", "altsecid": "a1"})
        assert claims.account_id == "t1/o1"

    def test_account_id_falls_back_to_altsecid(self) -> None:
        """Guest accounts without oid use altsecid, then ipd."""
        assert TokenClaims.from_payload({"tid": "t", "altsecid": "a"}).account_id == "t/a"
        assert TokenClaims.from_payload({"tid": "t", "ipd": "i"}).account_id == "t/i"

    def test_label_preference(self) -> None:
        """email, then unique_name, then preferred_username, then a placeholder."""
        payload = {"tid": "t", "unique_name": "un", "preferred_username": "pu"}
        assert TokenClaims.from_payload(payload).account_label == "un"
        only_upn = {"tid": "t", "preferred_username": "pu"}
        assert TokenClaims.from_payload(only_upn).account_label == "pu"
        assert TokenClaims.from_payload({"tid": "t"}).account_label == "user@example.com"

    def test_new_session_id(self) -> None:
        """Session ids are prefixed with the account id and unique."""
        claims = TokenClaims.from_payload({"tid": "t1", "oid": "o1"})
        first, second = claims.new_session_id(), claims.new_session_id()
        assert first.startswith("t1/o1/")
        assert first != second

    def test_missing_tenant(self) -> None:
        """A payload without tid is rejected."""
        with pytest.raises(ValueError):
            TokenClaims.from_payload({"oid": "o"})


class TestExtractClaims:
    """Tests for extract_claims."""

    def test_access_token_claims(self) -> None:
        """Claims are read from the access token when it is a JWT."""
        claims = extract_claims(make_jwt(tid="t", oid="o", email="a@b.c"))
        assert claims.account_label == "a@b.c"

    def test_falls_back_to_id_token(self) -> None:
        """An opaque access token falls back to the ID token."""
        claims = extract_claims("opaque", make_jwt(tid="t", oid="from-id"))
        assert claims.account_id == "t/from-id"

    def test_opaque_without_id_token(self) -> None:
        """An opaque access token without ID token raises ClaimsError."""
        with pytest.raises(ClaimsError):
            extract_claims("opaque")

    def test_both_unparsable(self) -> None:
        """Unparsable access and ID tokens raise ClaimsError."""
        with pytest.raises(ClaimsError):
            extract_claims("opaque", "also-opaque")
