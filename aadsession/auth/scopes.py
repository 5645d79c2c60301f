"""Scope canonicalization.

Client id and tenant overrides travel inside the requested scope list
as marker-prefixed entries (``VSCODE_CLIENT_ID:<id>``,
``VSCODE_TENANT:<tenant>``). This is a legacy convention that stored
sessions depend on, so it is parsed here rather than removed. Entries
with the internal prefix are never sent to the identity provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from collections.abc import Iterable


INTERNAL_SCOPE_PREFIX = "VSCODE_"
CLIENT_ID_MARKER = f"{INTERNAL_SCOPE_PREFIX}CLIENT_ID:"
TENANT_MARKER = f"{INTERNAL_SCOPE_PREFIX}TENANT:"

DEFAULT_CLIENT_ID = "aebc6443-996d-45c2-90f0-388ff96faa56"
DEFAULT_TENANT = "organizations"

OFFLINE_ACCESS = "offline_access"


def _find_marker(scopes: Iterable[str], marker: str) -> str | None:
    """Return the value of the first scope carrying ``marker``."""
    for scope in scopes:
        if scope.startswith(marker):
            return scope[len(marker) :]
    return None


@dataclass(frozen=True)
class ScopeData:
    """Canonical form of a requested scope set.

    Attributes
    ----------
    scopes : tuple[str, ...]
        Sorted, de-duplicated scopes including internal markers.
    scope_str : str
        Space-joined ``scopes``; the de-dup and storage key.
    scopes_to_send : str
        Space-joined scopes without internal markers.
    client_id : str
        Client id from the scopes, or the default.
    tenant : str
        Tenant from the scopes, or the default.
    """

    scopes: tuple[str, ...]
    scope_str: str
    scopes_to_send: str
    client_id: str
    tenant: str

    @classmethod
    def from_scopes(
        cls,
        scopes: Iterable[str],
        default_client_id: str = DEFAULT_CLIENT_ID,
        default_tenant: str = DEFAULT_TENANT,
    ) -> ScopeData:
        """Canonicalize a scope list.

        Repeated scopes are collapsed before sorting, so ``["a", "a"]`` and
        ``["a"]`` share the scope string ``"a"`` and the same stored session.

        Parameters
        ----------
        scopes : Iterable[str]
            Requested scopes in any order.
        default_client_id : str
            Client id used when no ``CLIENT_ID`` marker is present.
        default_tenant : str
            Tenant used when no ``TENANT`` marker is present.

        Returns
        -------
        ScopeData
            The canonical scope data.
        """
        ordered = tuple(sorted({s for s in scopes if s}))
        return cls(
            scopes=ordered,
            scope_str=" ".join(ordered),
            scopes_to_send=" ".join(s for s in ordered if not s.startswith(INTERNAL_SCOPE_PREFIX)),
            client_id=_find_marker(ordered, CLIENT_ID_MARKER) or default_client_id,
            tenant=_find_marker(ordered, TENANT_MARKER) or default_tenant,
        )

    @classmethod
    def from_scope_str(
        cls,
        scope_str: str,
        default_client_id: str = DEFAULT_CLIENT_ID,
        default_tenant: str = DEFAULT_TENANT,
    ) -> ScopeData:
        """Rebuild scope data from a stored scope string."""
        return cls.from_scopes(scope_str.split(" "), default_client_id, default_tenant)

    @property
    def includes_offline_access(self) -> bool:
        """Whether a refresh token can be issued for these scopes."""
        return OFFLINE_ACCESS in self.scopes
