"""
In-process event dispatch for match lifecycle transitions.

Usage:
    from livesync.events import EventBus, MATCH_ENDED

    bus = EventBus()
    bus.subscribe(MATCH_ENDED, make_match_ended_handler(finalizer))
    await bus.start()
    await bus.emit(MATCH_ENDED, {"match_id": "l7oqdehg9rkr510"})
"""

from livesync.events.bus import (
    MATCH_ENDED,
    Event,
    EventBus,
    match_ended_emitter,
)
from livesync.events.handlers import make_match_ended_handler

__all__ = [
    "Event",
    "EventBus",
    "MATCH_ENDED",
    "make_match_ended_handler",
    "match_ended_emitter",
]
