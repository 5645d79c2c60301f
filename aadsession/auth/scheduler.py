"""Per-session refresh timers.

RefreshScheduler keeps at most one live timer per session id; arming a
new one replaces the old. ReconnectPoller reuses the same timer slot to
retry on a long interval after a refresh failed on the network, so
cancelling a session's timer also stops its polling.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import contextlib
import logging

from collections.abc import Awaitable, Callable
from typing import Any


logger = logging.getLogger("aadsession.auth")

RefreshCallback = Callable[[], Awaitable[Any]]


class RefreshScheduler:
    """One-shot timers keyed by session id.

    Timers run on the event loop that is current when they are armed.
    When a timer fires, its callback runs as a task; cancelling the
    session afterwards does not interrupt a callback that already started.
    """

    def __init__(self) -> None:
        """Initialize the scheduler."""
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def schedule(self, session_id: str, delay: float, callback: RefreshCallback) -> None:
        """Arm the session's timer, replacing any prior one.

        Parameters
        ----------
        session_id : str
            The session the timer belongs to.
        delay : float
            Seconds until the callback runs.
        callback : callable
            Coroutine function to run when the timer fires.
        """
        self.cancel(session_id)
        loop = asyncio.get_running_loop()
        delay = max(delay, 0.0)
        self._handles[session_id] = loop.call_later(delay, self._fire, session_id, callback)
        logger.debug("Scheduled refresh for session %s in %.0fs", session_id, delay)

    def _fire(self, session_id: str, callback: RefreshCallback) -> None:
        self._handles.pop(session_id, None)
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scheduled refresh failed: %s", task.exception())

    def cancel(self, session_id: str) -> bool:
        """Cancel the session's pending timer.

        Returns
        -------
        bool
            True if a timer was pending.
        """
        handle = self._handles.pop(session_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel every pending timer and running scheduled callback."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        current = None
        with contextlib.suppress(RuntimeError):
            current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()

    def is_scheduled(self, session_id: str) -> bool:
        """Whether a timer is pending for the session."""
        return session_id in self._handles

    def due_in(self, session_id: str) -> float | None:
        """Seconds until the session's timer fires, or None."""
        handle = self._handles.get(session_id)
        if handle is None:
            return None
        return handle.when() - asyncio.get_running_loop().time()

    @property
    def scheduled_ids(self) -> list[str]:
        """Session ids with a pending timer."""
        return list(self._handles)


class ReconnectPoller:
    """Retries a session's refresh on a long interval.

    Parameters
    ----------
    scheduler : RefreshScheduler
        Scheduler whose per-session timer slot the poll occupies.
    interval : float
        Seconds between attempts (default 30 minutes).
    """

    def __init__(self, scheduler: RefreshScheduler, interval: float = 1800.0) -> None:
        """Initialize the poller."""
        self._scheduler = scheduler
        self.interval = interval
        self._polling: set[str] = set()

    def start(self, session_id: str, callback: RefreshCallback) -> None:
        """Arm the next poll attempt for a session."""
        self._polling.add(session_id)
        self._scheduler.schedule(session_id, self.interval, callback)
        logger.info(
            "Refresh for session %s failed on the network, retrying in %.0fs",
            session_id,
            self.interval,
        )

    def stop(self, session_id: str) -> None:
        """Forget that the session is polling (its timer is left alone)."""
        self._polling.discard(session_id)

    def is_polling(self, session_id: str) -> bool:
        """Whether the session's pending timer is a reconnect poll."""
        return session_id in self._polling and self._scheduler.is_scheduled(session_id)

    def clear(self) -> None:
        """Forget every polling session."""
        self._polling.clear()
