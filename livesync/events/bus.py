"""
In-process dispatch of match lifecycle events.

The queue is only a latency optimisation. Match rows are the source of
truth: a FINISHED match still missing derived data is picked up again by
the finalizer sweep, so an event dropped on overflow or lost on restart
costs a delay, not data.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("livesync.events")

MATCH_ENDED = "MATCH_ENDED"

Handler = Callable[["Event"], Awaitable[Any]]


@dataclass(frozen=True)
class Event:
    event_type: str
    payload: dict
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def match_id(self) -> Optional[str]:
        return self.payload.get("match_id")

    def __str__(self):
        return f"{self.event_type}(match_id={self.match_id}, source={self.payload.get('source', '?')})"


def _handler_name(handler) -> str:
    return getattr(handler, "__name__", None) or repr(handler)


class EventBus:
    """
    Bounded queue with a single consumer task.

    Handlers for an event type run one after another in subscription order;
    a failing handler is logged and the next one still runs. While a match
    is being handled, further events for the same match_id are skipped.
    """

    def __init__(self, max_queue_size: int = 1000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._in_progress: set[str] = set()
        self._consumer: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def processing_count(self) -> int:
        return len(self._in_progress)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)
        logger.info(f"[EVENTS] {_handler_name(handler)} subscribed to {event_type}")

    async def emit(self, event_type: str, payload: dict) -> bool:
        """Queue an event without waiting. Returns False if the queue was full."""
        event = Event(event_type, payload)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                f"[EVENTS] Queue full ({self._queue.maxsize}), dropped {event}; "
                f"the finalizer sweep will pick it up"
            )
            return False
        logger.info(f"[EVENTS] Queued {event}")
        return True

    async def start(self) -> None:
        if self.is_running:
            return
        self._consumer = asyncio.create_task(self._consume())
        logger.info("[EVENTS] Consumer started")

    async def stop(self, timeout: float = 10.0) -> None:
        """Let the consumer finish what is already queued, then stop it."""
        if self._consumer is None:
            return
        await self._queue.put(None)
        try:
            await asyncio.wait_for(self._consumer, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[EVENTS] Consumer still busy after {timeout}s, cancelled")
        self._consumer = None
        logger.info(f"[EVENTS] Consumer stopped (pending={self.pending_count}, dropped={self.dropped})")

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event is None:
                    return
                await self.dispatch(event)
            except Exception as e:
                logger.error(f"[EVENTS] Dispatch of {event} crashed: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def dispatch(self, event: Event) -> None:
        """Run every handler for the event now, in the caller's task."""
        handlers = self._handlers.get(event.event_type)
        if not handlers:
            logger.warning(f"[EVENTS] No handlers for {event.event_type}")
            return

        match_id = event.match_id
        if match_id is not None:
            if match_id in self._in_progress:
                logger.info(f"[EVENTS] {match_id} already being handled, skipping {event}")
                return
            self._in_progress.add(match_id)
        try:
            for handler in handlers:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"[EVENTS] {_handler_name(handler)} failed on {event}: {e}", exc_info=True)
        finally:
            if match_id is not None:
                self._in_progress.discard(match_id)


def match_ended_emitter(bus: EventBus):
    """Adapter from the reconciler's on_match_ended callback to a MATCH_ENDED event."""

    async def emit_match_ended(external_id: str, source: str) -> bool:
        return await bus.emit(MATCH_ENDED, {"match_id": external_id, "source": source})

    return emit_match_ended
