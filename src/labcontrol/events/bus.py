"""In-process publish/subscribe for cross-module events.

Handlers may be plain functions or coroutine functions.  ``emit`` calls
plain handlers inline and schedules coroutine handlers as tasks; every
handler has started by the time ``emit`` returns, but ``emit`` does not wait
for coroutine handlers to finish.  Use ``drain()`` to wait for them.

Usage:
    bus = EventBus()
    bus.on("ProtocolLinked", handle_link)
    await bus.emit(event)
    await bus.drain()
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from labcontrol.events.models import CrossModuleEvent, EventType

logger = logging.getLogger(__name__)

Handler = Callable[[CrossModuleEvent], Any]
ErrorHook = Callable[[CrossModuleEvent, Exception], None]


class EventBus:
    """Fan-out of events to handlers registered per event type.

    Args:
        on_error: Called with ``(event, exception)`` whenever a handler
            fails.  Failures are logged either way and never reach the
            emitter.
    """

    def __init__(self, on_error: ErrorHook | None = None) -> None:
        self.on_error = on_error
        self._handlers: dict[str, list[Handler]] = {}
        self._tasks: set[asyncio.Task] = set()

    def on(self, event_type: EventType, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: EventType, handler: Handler) -> None:
        """Unregister ``handler``.  Unknown handlers are ignored."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, []))

    async def emit(self, event: CrossModuleEvent) -> None:
        """Deliver ``event`` to its handlers in registration order."""
        handlers = list(self._handlers.get(event.type, []))
        if not handlers:
            logger.debug("No handlers for %s", event.type)
            return

        for handler in handlers:
            try:
                result = handler(event)
            except Exception as e:
                self._report(event, handler, e)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._run(event, handler, result))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        # Let scheduled handlers start before returning
        await asyncio.sleep(0)

    async def drain(self) -> None:
        """Wait until every scheduled handler has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _run(self, event: CrossModuleEvent, handler: Handler, awaitable: Awaitable) -> None:
        try:
            await awaitable
        except Exception as e:
            self._report(event, handler, e)

    def _report(self, event: CrossModuleEvent, handler: Handler, error: Exception) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        logger.error("Handler %s failed for %s: %s", name, event.type, error, exc_info=error)
        if self.on_error is None:
            return
        try:
            self.on_error(event, error)
        except Exception:
            logger.exception("Event bus error hook failed")
