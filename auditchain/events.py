"""Chain event bus — async pub/sub for operational ChainEvents.

The append engine, verifier and jobs publish events; subscribers (the
integrity alert logger, external alerting hooks) consume them from a
background queue, so a slow subscriber never stalls an append.

Usage:
    from auditchain.events import event_bus, emit

    event_bus.subscribe(my_handler)                     # every event
    event_bus.subscribe(pager, [EventType.CHAIN_HALTED])  # one type

    await emit(ChainEvent(event_type=EventType.TAIL_REPAIRED, chain_id="sox"))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from auditchain.schemas.events import ChainEvent, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChainEvent], Coroutine[Any, Any, None]]
Emitter = Callable[[ChainEvent], Coroutine[Any, Any, None]]

# Events meaning a chain's evidentiary value is at risk
CRITICAL_EVENTS: frozenset[EventType] = frozenset({
    EventType.INTEGRITY_FAILED,
    EventType.CHAIN_HALTED,
})


class EventBus:
    """Queue-backed dispatcher. One instance per process (see ``event_bus``)."""

    def __init__(self) -> None:
        self._global: list[EventHandler] = []
        self._typed: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[ChainEvent] | None = None
        self._worker: asyncio.Task[None] | None = None

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Register ``handler`` for ``event_types``, or for every event when None."""
        if event_types is None:
            self._global.append(handler)
        else:
            for et in event_types:
                self._typed.setdefault(et, []).append(handler)
        logger.info(
            "Registered event subscriber %s for %s",
            handler.__name__,
            "all events" if event_types is None else [t.value for t in event_types],
        )

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._global:
            self._global.remove(handler)
        for handlers in self._typed.values():
            if handler in handlers:
                handlers.remove(handler)

    async def emit(self, event: ChainEvent) -> None:
        """Queue an event for dispatch. Without a running bus, dispatch inline."""
        if self._queue is None or self._worker is None or self._worker.done():
            await self.dispatch(event)
            return
        await self._queue.put(event)
        logger.debug("Event queued: %s (chain=%s)", event.event_type.value, event.chain_id)

    async def dispatch(self, event: ChainEvent) -> None:
        """Deliver one event to every matching subscriber, isolating failures."""
        handlers = list(self._global) + list(self._typed.get(event.event_type, []))
        if not handlers:
            return
        results = await asyncio.gather(*[h(event) for h in handlers], return_exceptions=True)
        for handler, result in zip(handlers, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Event handler %s failed for %s: %s",
                    handler.__name__,
                    event.event_type.value,
                    result,
                )

    async def start(self) -> None:
        """Start the background worker. Call during application startup."""
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run())
        logger.info(
            "Event bus started with %d global + %d typed subscribers",
            len(self._global),
            sum(len(v) for v in self._typed.values()),
        )

    async def stop(self) -> None:
        """Drain pending events and stop the worker. Call during shutdown."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        logger.info("Event bus stopped")

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception("Error dispatching %s", event.event_type.value)
            finally:
                self._queue.task_done()


async def log_integrity_alert(event: ChainEvent) -> None:
    """Log integrity failures and chain halts at the highest severity."""
    logger.critical(
        "AUDIT CHAIN ALERT %s chain=%s sequence=%s data=%s",
        event.event_type.value,
        event.chain_id,
        event.sequence,
        event.data,
    )


# Module-level singleton, import this wherever events are published.
event_bus = EventBus()


async def emit(event: ChainEvent) -> None:
    """Publish on the process-wide bus."""
    await event_bus.emit(event)


def subscribe(handler: EventHandler, event_types: list[EventType] | None = None) -> None:
    event_bus.subscribe(handler, event_types)


async def start_event_system() -> None:
    await event_bus.start()


async def stop_event_system() -> None:
    await event_bus.stop()
