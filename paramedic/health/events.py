"""Lifecycle event bus: explicit callback registry for status transitions.

Events and their payloads:
    pass     (test)
    recover  (test)
    warn     (error, test)
    error    (error, test)

Handlers run synchronously in the tick that produced the event. A handler
that returns an awaitable is scheduled on the running loop. Handler
failures are logged and never reach the scheduler.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class LifecycleEvent(str, Enum):
    PASS = "pass"
    WARN = "warn"
    ERROR = "error"
    RECOVER = "recover"


class EventBus:
    """Multi-consumer fan-out of lifecycle events."""

    def __init__(self) -> None:
        self._handlers: dict[LifecycleEvent, list[Handler]] = {e: [] for e in LifecycleEvent}
        self._background: set[asyncio.Task[Any]] = set()

    def subscribe(self, event: LifecycleEvent | str, handler: Handler) -> Handler:
        """Register ``handler`` for ``event``; returns the handler (usable as a decorator)."""
        self._handlers[LifecycleEvent(event)].append(handler)
        return handler

    def unsubscribe(self, event: LifecycleEvent | str, handler: Handler) -> bool:
        handlers = self._handlers[LifecycleEvent(event)]
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handlers(self, event: LifecycleEvent | str) -> list[Handler]:
        return list(self._handlers[LifecycleEvent(event)])

    def emit(self, event: LifecycleEvent | str, *args: Any) -> int:
        """Call every handler of ``event``; returns how many were invoked."""
        event = LifecycleEvent(event)
        handlers = list(self._handlers[event])
        for handler in handlers:
            try:
                result = handler(*args)
            except Exception:
                logger.exception("Lifecycle handler error (%s)", event.value)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)
        return len(handlers)

    def _schedule(self, event: LifecycleEvent, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Async %s handler dropped: no running event loop", event.value)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def _guard() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("Async lifecycle handler error (%s)", event.value)

        task = loop.create_task(_guard(), name=f"paramedic-event-{event.value}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
