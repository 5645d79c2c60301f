"""In-memory session list backed by a single persisted blob.

SessionStore is the only owner of the token list, the refresh timers and
the persisted JSON array of stored sessions. Every mutation goes through
its methods so that change events stay consistent with what was written:

- ``initialize`` loads and refreshes the stored sessions without firing
  any event.
- ``add_session`` / ``remove_session`` fire one event each.
- ``reconcile_with_persisted`` fires exactly one combined event.

Token exchanges are serialized process-wide; concurrent refreshes of the
same session share one in-flight request.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import asyncio
import dataclasses
import logging

from functools import partial
from typing import TYPE_CHECKING

from ..config import get_settings
from ..exceptions import (
    AADSessionError,
    NetworkFailure,
    PersistedDataError,
    SessionUnavailableError,
    TokenRefreshError,
)
from ..models import StoredSession, dump_stored_sessions, load_stored_sessions
from ..types import Session, SessionsChangeEvent, Token
from .events import ChangeEventBus
from .scheduler import ReconnectPoller, RefreshCallback, RefreshScheduler
from .scopes import ScopeData


if TYPE_CHECKING:
    from collections.abc import Iterable

    from ..config import AuthSettings
    from .host import HostEnvironment
    from .secret_store import SecretStore
    from .token_client import TokenExchangeClient


logger = logging.getLogger("aadsession.auth")

SIGNED_OUT_MESSAGE = (
    "You have been signed out because reading stored authentication information failed."
)


class SessionStore:
    """Owner of the signed-in sessions.

    Parameters
    ----------
    client : TokenExchangeClient
        Client used for refresh exchanges.
    secret_store : SecretStore
        Backend holding the persisted blob.
    host : HostEnvironment
        Host used for "signed out" notifications.
    settings : AuthSettings, optional
        Engine settings (defaults to the global settings).
    scheduler : RefreshScheduler, optional
        Timer scheduler; a private one is created otherwise.
    """

    def __init__(
        self,
        client: TokenExchangeClient,
        secret_store: SecretStore,
        host: HostEnvironment,
        settings: AuthSettings | None = None,
        *,
        scheduler: RefreshScheduler | None = None,
    ) -> None:
        """Initialize the session store."""
        self.settings = settings or get_settings()
        self._client = client
        self._secrets = secret_store
        self._host = host
        self._tokens: list[Token] = []
        self.scheduler = scheduler or RefreshScheduler()
        self.poller = ReconnectPoller(
            self.scheduler, self.settings.refresh.reconnect_interval_seconds
        )
        self.events = ChangeEventBus()
        self._refresh_lock = asyncio.Lock()
        self._reconcile_lock = asyncio.Lock()
        self._refreshes: dict[str, asyncio.Task[Token]] = {}
        self._restoring: dict[str, StoredSession] = {}
        self._disposed = False

    # ── Lookup ───────────────────────────────────────────────────────

    @property
    def tokens(self) -> list[Token]:
        """Snapshot of the in-memory tokens."""
        return list(self._tokens)

    def scope_data(self, scopes: Iterable[str]) -> ScopeData:
        """Canonicalize scopes with the configured defaults."""
        return ScopeData.from_scopes(
            scopes,
            self.settings.login.default_client_id,
            self.settings.login.default_tenant,
        )

    def _scope_data_for(self, scope_str: str) -> ScopeData:
        return self.scope_data(scope_str.split(" "))

    def _index(self, session_id: str) -> int | None:
        for i, token in enumerate(self._tokens):
            if token.session_id == session_id:
                return i
        return None

    def get_token(self, session_id: str) -> Token | None:
        """Return the in-memory token of a session."""
        index = self._index(session_id)
        return None if index is None else self._tokens[index]

    # ── Persistence ──────────────────────────────────────────────────

    @property
    def _key(self) -> str:
        return self.settings.storage.key

    async def _read_stored(self) -> list[StoredSession]:
        """Read the persisted sessions, migrating the legacy key once."""
        sessions = load_stored_sessions(await self._secrets.get(self._key))
        legacy_key = self.settings.storage.legacy_key
        if sessions or not legacy_key:
            return sessions

        logger.info("Attempting to migrate stored sessions.")
        blob = await self._secrets.get(legacy_key)
        if blob is None:
            logger.info("No stored sessions found.")
            return []
        try:
            migrated = load_stored_sessions(blob)
        except PersistedDataError:
            logger.info("Failed to parse stored sessions. Migrating no sessions.")
            return []
        logger.info("Migrated %d stored sessions.", len(migrated))
        return migrated

    async def _persist(self) -> None:
        stored = [StoredSession.from_token(t) for t in self._tokens]
        held = {t.session_id for t in self._tokens}
        # Sessions initialize() has not finished restoring stay in the blob.
        stored.extend(s for sid, s in self._restoring.items() if sid not in held)
        if not stored:
            await self._secrets.delete(self._key)
            return
        await self._secrets.set(self._key, dump_stored_sessions(stored))

    def _notify_signed_out(self) -> None:
        self._host.show_error_message(SIGNED_OUT_MESSAGE)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load stored sessions and refresh them.

        Sessions whose refresh failed on the network are kept without an
        access token and polled; sessions whose refresh was rejected are
        dropped. The blob is written once at the end and no events fire.
        """
        logger.info("Reading sessions from secret storage...")
        try:
            stored = await self._read_stored()
        except PersistedDataError as exc:
            logger.error("Failed to initialize stored data: %s", exc)
            self._notify_signed_out()
            await self.clear_all()
            return
        logger.info("Got %d stored sessions", len(stored))

        restorable = [s for s in stored if s.refresh_token]
        self._restoring.update((s.id, s) for s in restorable)
        try:
            await asyncio.gather(*(self._restore(s) for s in restorable))
        finally:
            self._restoring.clear()
        await self._persist()

    async def _restore(self, stored: StoredSession) -> None:
        logger.debug("Read stored session with scopes: %s", stored.scope)
        scope_data = self._scope_data_for(stored.scope)
        try:
            await self.refresh_token(stored.refresh_token, scope_data, stored.id, persist=False)
        except NetworkFailure:
            self._upsert(self._placeholder(stored))
        except AADSessionError as exc:
            logger.error("Dropping stored session %s: %s", stored.id, exc)
            await self.remove_session(stored.id, write_to_storage=False, notify=False)
        finally:
            self._restoring.pop(stored.id, None)

    @staticmethod
    def _placeholder(stored: StoredSession) -> Token:
        return Token(
            refresh_token=stored.refresh_token,
            account=stored.to_account(),
            scope=stored.scope,
            session_id=stored.id,
        )

    def dispose(self) -> None:
        """Cancel every timer and drop all listeners."""
        self._disposed = True
        self.scheduler.cancel_all()
        self.poller.clear()
        self.events.dispose()

    # ── Reads ────────────────────────────────────────────────────────

    async def _wait_for_pending(self) -> None:
        if self._refreshes:
            logger.info("Refreshing in progress. Waiting for completion before continuing.")
            await asyncio.gather(*self._refreshes.values(), return_exceptions=True)
        async with self._reconcile_lock:
            pass

    async def get_sessions(self, scopes: Iterable[str] | None = None) -> list[Session]:
        """Return sessions, optionally only those for exactly these scopes.

        Parameters
        ----------
        scopes : Iterable[str], optional
            Requested scopes in any order. Without scopes every session is
            returned as held in memory.

        Returns
        -------
        list[Session]
            The matching sessions; expired or unavailable ones are refreshed.

        Raises
        ------
        SessionUnavailableError
            If a matching session could not be refreshed.
        """
        await self._wait_for_pending()
        if scopes is None:
            sessions = [Session.from_token(t) for t in self._tokens]
            logger.info("Got %d sessions for all scopes...", len(sessions))
            return sessions

        scope_data = self.scope_data(scopes)
        matching = [t for t in self._tokens if t.scope == scope_data.scope_str]
        logger.info("Got %d sessions for %s...", len(matching), scope_data.scope_str)
        return list(await asyncio.gather(*(self.convert_to_session(t) for t in matching)))

    async def convert_to_session(self, token: Token) -> Session:
        """Project a token, refreshing it first if expired or unavailable."""
        if token.access_token and not token.is_expired():
            logger.info("Token available from cache (for scopes %s)", token.scope)
            return Session.from_token(token)

        logger.info("Token expired or unavailable (for scopes %s), trying refresh", token.scope)
        try:
            refreshed = await self.refresh_token(
                token.refresh_token, self._scope_data_for(token.scope), token.session_id
            )
        except AADSessionError as exc:
            raise SessionUnavailableError(
                "Unavailable due to network problems", session_id=token.session_id
            ) from exc
        if not refreshed.access_token:
            raise SessionUnavailableError(
                "Unavailable due to network problems", session_id=token.session_id
            )
        return Session.from_token(refreshed)

    # ── Writes ───────────────────────────────────────────────────────

    def _upsert(self, token: Token) -> None:
        index = self._index(token.session_id)
        if index is None:
            self._tokens.append(token)
        else:
            self._tokens[index] = token

    async def set_token(self, token: Token, scope_data: ScopeData, persist: bool = True) -> None:
        """Insert or replace a token by session id and persist. Fires nothing."""
        logger.info("Setting token for scopes: %s", scope_data.scope_str)
        self._upsert(token)
        if persist:
            await self._persist()

    async def add_session(self, token: Token, scope_data: ScopeData) -> Session:
        """Store a token from a completed login and announce it."""
        self._arm_refresh(token)
        await self.set_token(token, scope_data)
        session = Session.from_token(token)
        logger.info("Sending change event for session that was added with scopes: %s", token.scope)
        self.events.fire(SessionsChangeEvent(added=(session,)))
        return session

    async def remove_session(
        self,
        session_id: str,
        write_to_storage: bool = True,
        notify: bool = True,
    ) -> Session | None:
        """Sign a session out.

        Parameters
        ----------
        session_id : str
            The session to remove.
        write_to_storage : bool
            Rewrite the blob (or delete the key when no session is left).
        notify : bool
            Fire a ``removed`` event.

        Returns
        -------
        Session or None
            The removed session, or None if it was not held.
        """
        logger.info("Logging out of session '%s'", session_id)
        self.scheduler.cancel(session_id)
        self.poller.stop(session_id)
        self._refreshes.pop(session_id, None)

        index = self._index(session_id)
        if index is None:
            logger.info("Session not found '%s'", session_id)
            return None
        token = self._tokens.pop(index)

        if write_to_storage:
            await self._persist()

        session = Session.from_token(token)
        if notify:
            logger.info(
                "Sending change event for session that was removed with scopes: %s", token.scope
            )
            self.events.fire(SessionsChangeEvent(removed=(session,)))
        return session

    async def clear_all(self) -> None:
        """Sign every session out and delete the persisted blob. Fires nothing."""
        logger.info("Logging out of all sessions")
        self.scheduler.cancel_all()
        self.poller.clear()
        self._refreshes.clear()
        self._restoring.clear()
        self._tokens = []
        await self._secrets.delete(self._key)

    # ── Refresh ──────────────────────────────────────────────────────

    def _refresh_callback(self, session_id: str) -> RefreshCallback:
        async def _run() -> None:
            await self._run_scheduled_refresh(session_id)

        return _run

    def _arm_refresh(self, token: Token) -> None:
        self.poller.stop(token.session_id)
        if not token.expires_in:
            return
        delay = token.expires_in * self.settings.refresh.refresh_ratio
        self.scheduler.schedule(token.session_id, delay, self._refresh_callback(token.session_id))

    async def _run_scheduled_refresh(self, session_id: str) -> None:
        token = self.get_token(session_id)
        if token is None:
            return
        try:
            refreshed = await self.refresh_token(
                token.refresh_token, self._scope_data_for(token.scope), session_id
            )
        except NetworkFailure:
            return
        except AADSessionError as exc:
            logger.error("Scheduled refresh of session %s failed: %s", session_id, exc)
            await self.remove_session(session_id)
            return
        logger.info("Triggering change session event...")
        self.events.fire(SessionsChangeEvent(changed=(Session.from_token(refreshed),)))

    def _forget_refresh(self, session_id: str, task: asyncio.Task[Token]) -> None:
        if self._refreshes.get(session_id) is task:
            del self._refreshes[session_id]
        if not task.cancelled():
            task.exception()

    async def refresh_token(
        self,
        refresh_token: str,
        scope_data: ScopeData,
        session_id: str,
        persist: bool = True,
    ) -> Token:
        """Refresh a session, sharing any refresh of it already in flight.

        Parameters
        ----------
        refresh_token : str
            The session's refresh token.
        scope_data : ScopeData
            Scopes of the session.
        session_id : str
            The session to refresh.
        persist : bool
            Write the blob after storing the renewed token. A caller joining
            a refresh already in flight gets that refresh's setting.

        Returns
        -------
        Token
            The renewed token, already stored and re-armed.

        Raises
        ------
        NetworkFailure
            The endpoint was unreachable; the session is kept without an
            access token and polled.
        TokenRefreshError
            The refresh was rejected; the user was told they are signed out.
        """
        task = self._refreshes.get(session_id)
        if task is None or task.done():
            task = asyncio.ensure_future(
                self._do_refresh(refresh_token, scope_data, session_id, persist)
            )
            self._refreshes[session_id] = task
            task.add_done_callback(partial(self._forget_refresh, session_id))
        return await asyncio.shield(task)

    def _is_current_refresh(self, session_id: str) -> bool:
        return self._refreshes.get(session_id) is asyncio.current_task()

    async def _do_refresh(
        self, refresh_token: str, scope_data: ScopeData, session_id: str, persist: bool
    ) -> Token:
        async with self._refresh_lock:
            try:
                token = await self._client.refresh(refresh_token, scope_data, session_id)
            except NetworkFailure:
                if self._is_current_refresh(session_id) and not self._disposed:
                    self._mark_unavailable(session_id)
                raise
            except Exception as exc:
                self._notify_signed_out()
                logger.error(
                    "Refreshing token failed (for scopes: %s): %s", scope_data.scope_str, exc
                )
                raise TokenRefreshError(
                    "Refreshing token failed", session_id=session_id
                ) from exc

            if not self._is_current_refresh(session_id) or self._disposed:
                logger.info("Session %s was signed out during refresh", session_id)
                raise SessionUnavailableError("Session was signed out", session_id=session_id)

            self._arm_refresh(token)
            await self.set_token(token, scope_data, persist=persist)
            logger.info("Token refresh success for scopes: %s", token.scope)
            return token

    def _mark_unavailable(self, session_id: str) -> None:
        index = self._index(session_id)
        if index is not None:
            self._tokens[index] = dataclasses.replace(self._tokens[index], access_token=None)
        self.poller.start(session_id, self._refresh_callback(session_id))

    # ── External changes ─────────────────────────────────────────────

    async def reconcile_with_persisted(self) -> SessionsChangeEvent:
        """Bring memory in line with a blob changed by another process.

        Sessions only in memory are removed first, then sessions only in
        storage are refreshed and added. A malformed blob counts as every
        session removed; the store is cleared and the user told.

        Returns
        -------
        SessionsChangeEvent
            The single combined event that was fired (possibly empty).
        """
        async with self._reconcile_lock:
            try:
                incoming = load_stored_sessions(await self._secrets.get(self._key))
            except PersistedDataError as exc:
                logger.error("Stored sessions changed but could not be read: %s", exc)
                removed = tuple(Session.from_token(t) for t in self._tokens)
                self._notify_signed_out()
                await self.clear_all()
                event = SessionsChangeEvent(removed=removed)
                self.events.fire(event)
                return event

            incoming_keys = {(s.scope, s.id) for s in incoming}
            held_keys = {(t.scope, t.session_id) for t in self._tokens}

            removed_sessions: list[Session] = []
            for token in list(self._tokens):
                if (token.scope, token.session_id) in incoming_keys:
                    continue
                logger.info("Session removed in another window with scopes: %s", token.scope)
                session = await self.remove_session(
                    token.session_id, write_to_storage=False, notify=False
                )
                if session is not None:
                    removed_sessions.append(session)

            added_sessions: list[Session] = []
            for stored in incoming:
                if (stored.scope, stored.id) in held_keys or not stored.refresh_token:
                    continue
                logger.info("Session added in another window with scopes: %s", stored.scope)
                session = await self._adopt(stored)
                if session is not None:
                    added_sessions.append(session)

            event = SessionsChangeEvent(
                added=tuple(added_sessions), removed=tuple(removed_sessions)
            )
            self.events.fire(event)
            return event

    async def _adopt(self, stored: StoredSession) -> Session | None:
        scope_data = self._scope_data_for(stored.scope)
        try:
            token = await self.refresh_token(stored.refresh_token, scope_data, stored.id)
        except NetworkFailure:
            placeholder = self._placeholder(stored)
            self._upsert(placeholder)
            return Session.from_token(placeholder)
        except AADSessionError as exc:
            logger.error("Could not adopt session %s: %s", stored.id, exc)
            return None
        return Session.from_token(token)

