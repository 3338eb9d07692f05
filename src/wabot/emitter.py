"""Named-event subscription table for a single connection.

Every connection owns one ``EventEmitter``. Listeners are kept in
subscription order per event name, and ``off`` removes exactly the callback
object that was passed to ``on``, so callers must keep the reference they
subscribed with.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any, TypeAlias

from wabot.logger import logger

Listener: TypeAlias = Callable[[Any], Any]


class EventEmitter:
    """Synchronous fan-out; coroutine listeners are scheduled as tasks."""

    def __init__(self) -> None:
        self._listeners: defaultdict[str, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> bool:
        """Remove one subscription. Returns False if it was not subscribed."""
        listeners = self._listeners.get(event)
        if not listeners:
            return False
        try:
            listeners.remove(listener)
        except ValueError:
            return False
        return True

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def listeners(self, event: str) -> list[Listener]:
        return list(self._listeners.get(event, ()))

    def event_names(self) -> list[str]:
        return [name for name, ls in self._listeners.items() if ls]

    def emit(self, event: str, payload: Any = None) -> bool:
        """Deliver *payload* to every listener of *event*, in subscription order.

        Returns True if the event had listeners. The listener list is
        snapshotted first so a listener may unsubscribe (or rebind) during
        delivery without skipping its neighbours.
        """
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                result = listener(payload)
            except Exception:
                logger.exception("Event listener failed", event=event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_task_done(event))
        return bool(listeners)

    async def drain(self) -> None:
        """Wait for all coroutine listeners scheduled so far (used on shutdown/tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_task_done(self, event: str) -> Callable[[asyncio.Task[Any]], None]:
        def _done(task: asyncio.Task[Any]) -> None:
            self._pending.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error("Async event listener failed", event=event, exc_info=exc)

        return _done
