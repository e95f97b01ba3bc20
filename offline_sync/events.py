"""
In-process event bus.

The engine reports progress and asks the UI for decisions through named
events. Handlers are plain callables taking the event payload; a handler
that returns an awaitable is scheduled on the running loop. Handler errors
are logged and never reach the emitter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Sync processor lifecycle
SYNC_START = "sync:start"
SYNC_FINISHED = "sync:finished"
SYNC_ERROR = "sync:error"
SYNC_ITEM_FAILED = "sync:item-failed"

# Queue entries removed by the user: {"type": "failed" | "all", "count": n}
SYNC_CLEARED = "sync:cleared"

# Entity tables refreshed from the remote
DATA_REFRESHED = "data:refreshed"

# Identity change
CONFIRM_CLEAR_LOCAL_DATA = "confirm:clear-local-data"
LOCAL_DATA_CLEARED = "local-data:cleared"

# Receives every broadcast as a BroadcastEvent
ALL_EVENTS = "*"

Handler = Callable[[Any], Any]


@dataclass(frozen=True)
class BroadcastEvent:
    """Payload delivered to ``ALL_EVENTS`` listeners."""

    name: str
    payload: Any = None


class EventBus:
    """
    Named-event dispatcher.

    Usage:
        events = EventBus()
        unsubscribe = events.on("sync:finished", lambda result: print(result))
        events.emit("sync:finished", result)
        unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._pending: set[asyncio.Future] = set()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a function that removes it."""
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        """Remove a handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def has_listeners(self, event: str) -> bool:
        return bool(self._handlers.get(event))

    def emit(self, event: str, payload: Any = None) -> bool:
        """Deliver ``payload`` to the handlers of ``event``.

        Returns:
            True if at least one handler was registered
        """
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            self._call(event, handler, payload)
        return bool(handlers)

    def broadcast(self, event: str, payload: Any = None) -> None:
        """Emit ``event`` and also notify ``ALL_EVENTS`` listeners."""
        self.emit(event, payload)
        if event != ALL_EVENTS:
            for handler in list(self._handlers.get(ALL_EVENTS, ())):
                self._call(event, handler, BroadcastEvent(event, payload))

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _call(self, event: str, handler: Handler, payload: Any) -> None:
        try:
            result = handler(payload)
        except Exception:
            logger.exception("Event handler failed for %s", event)
            return

        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(lambda f: self._finished(event, f))

    def _finished(self, event: str, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Async event handler failed for %s: %s", event, error)
