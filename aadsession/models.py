"""Pydantic models for persisted sessions and token endpoint responses."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from .exceptions import PersistedDataError
from .types import Account, Token


class StoredAccount(BaseModel):
    """Account as written to the secret store.

    Entries written by older releases carry ``displayName`` instead of
    ``label``; the label falls back to it when read.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    label: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")

    @model_validator(mode="after")
    def _fill_label(self) -> StoredAccount:
        if self.label is None:
            self.label = self.display_name or ""
        return self


class StoredSession(BaseModel):
    """The durable projection of a token.

    This is all that survives a restart: the access token is re-minted
    from the refresh token on startup.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    refresh_token: str = Field(alias="refreshToken")
    scope: str
    account: StoredAccount

    @classmethod
    def from_token(cls, token: Token) -> StoredSession:
        """Build the stored projection of a token."""
        return cls(
            id=token.session_id,
            refresh_token=token.refresh_token,
            scope=token.scope,
            account=StoredAccount(id=token.account.id, label=token.account.label),
        )

    def to_account(self) -> Account:
        """Return the account as an in-memory value."""
        return Account(label=self.account.label or "", id=self.account.id)


class TokenResponse(BaseModel):
    """JSON body returned by the token endpoint."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    expires_in: int | None = None
    ext_expires_in: int | None = None
    refresh_token: str | None = None
    scope: str = ""
    id_token: str | None = None


_stored_sessions_adapter: TypeAdapter[list[StoredSession]] = TypeAdapter(list[StoredSession])


def load_stored_sessions(blob: str | None) -> list[StoredSession]:
    """Parse the persisted JSON array of sessions.

    Parameters
    ----------
    blob : str or None
        The raw value read from the secret store; ``None`` means no sessions.

    Returns
    -------
    list[StoredSession]
        The stored sessions in persisted order.

    Raises
    ------
    PersistedDataError
        If the blob is not a JSON array of stored sessions.
    """
    if blob is None:
        return []
    try:
        return _stored_sessions_adapter.validate_json(blob)
    except ValidationError as exc:
        msg = f"Stored sessions could not be parsed: {exc.error_count()} error(s)"
        raise PersistedDataError(msg) from exc


def dump_stored_sessions(sessions: list[StoredSession]) -> str:
    """Serialize stored sessions to the persisted JSON array."""
    return _stored_sessions_adapter.dump_json(sessions, by_alias=True, exclude_none=True).decode(
        "utf-8"
    )
