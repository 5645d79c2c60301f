"""Session change notifications.

One ChangeEventBus belongs to each SessionStore. Listeners receive a
``SessionsChangeEvent`` for every store operation that added, removed or
changed sessions; a reconciliation pass is always a single event.
"""

from __future__ import annotations

import asyncio
import inspect
import logging

from collections.abc import Callable
from typing import Any

from ..types import SessionsChangeEvent


logger = logging.getLogger("aadsession.auth")

SessionsChangeListener = Callable[[SessionsChangeEvent], Any]


class ChangeEventBus:
    """Fan-out of session change events to subscribed listeners.

    Synchronous listeners run inline; coroutine listeners are scheduled
    on the running event loop. A failing listener is logged and never
    affects the store or other listeners.
    """

    def __init__(self) -> None:
        """Initialize the event bus."""
        self._listeners: list[SessionsChangeListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, listener: SessionsChangeListener) -> Callable[[], None]:
        """Register a listener.

        Parameters
        ----------
        listener : callable
            Called with each ``SessionsChangeEvent``; may be a coroutine function.

        Returns
        -------
        callable
            Call it to unsubscribe.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        """Number of subscribed listeners."""
        return len(self._listeners)

    def fire(self, event: SessionsChangeEvent) -> None:
        """Deliver an event to every listener.

        Parameters
        ----------
        event : SessionsChangeEvent
            The change to publish. Empty events are dropped.
        """
        if event.is_empty:
            return
        logger.debug(
            "Sessions changed: %d added, %d removed, %d changed",
            len(event.added),
            len(event.removed),
            len(event.changed),
        )
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception:
                logger.exception("Sessions change listener failed")

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Sessions change listener failed: %s", task.exception())

    def dispose(self) -> None:
        """Drop all listeners and cancel pending async deliveries."""
        self._listeners.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
