"""
Typed notifications published by the scheduler.

Consumers (a storage writer, a live dashboard) subscribe to a fixed set of
event types. Listeners may be plain functions or coroutines. A failing
listener is logged and never affects the run or the other listeners.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from token_screener.models import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Every notification the scheduler can publish."""

    RUN_START = "run:start"
    RUN_COMPLETE = "run:complete"
    TOKEN_DISCOVERED = "token:discovered"
    TOKEN_PASSED = "token:passed"
    TOKEN_STORED = "token:stored"
    TOKEN_BLACKLISTED = "token:blacklisted"
    TOKEN_UNBLACKLISTED = "token:unblacklisted"
    SERVICE_STARTED = "service:started"
    SERVICE_STOPPED = "service:stopped"
    CONFIG_UPDATED = "config:updated"
    STATS_RESET = "stats:reset"


@dataclass(frozen=True)
class Event:
    """
    One published notification.

    Payload by type:
        run:start            {"run_id"}
        run:complete         RunRecord
        token:discovered     list of addresses
        token:passed         CombinedAnalysis
        token:stored         CombinedAnalysis
        token:blacklisted    {"address", "reason"}
        token:unblacklisted  {"address"}
        service:started      {"schedule", "next_run_at"}
        service:stopped      {}
        config:updated       AggregatorConfig
        stats:reset          {}
    """

    type: EventType
    payload: Any = None
    timestamp: datetime = field(default_factory=utc_now)


Listener = Callable[[Event], Union[None, Awaitable[None]]]


class EventDispatcher:
    """
    Observer registry with per-type subscriptions.

    Usage:
        dispatcher = EventDispatcher()
        unsubscribe = dispatcher.subscribe(on_passed, [EventType.TOKEN_PASSED])

        await dispatcher.emit(EventType.TOKEN_PASSED, analysis)
        unsubscribe()
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[Listener, Optional[frozenset[EventType]]]] = []
        self._errors = 0

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def error_count(self) -> int:
        return self._errors

    def subscribe(
        self,
        listener: Listener,
        types: Optional[Iterable[EventType]] = None,
    ) -> Callable[[], None]:
        """
        Register a listener for `types`, or for every event when None.

        Returns:
            A callable that removes the subscription
        """
        entry = (listener, frozenset(types) if types is not None else None)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    async def emit(self, event_type: EventType, payload: Any = None) -> Event:
        """Deliver an event to every matching listener, in subscription order."""
        event = Event(type=event_type, payload=payload)
        for listener, types in list(self._listeners):
            if types is not None and event_type not in types:
                continue
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._errors += 1
                logger.error(f"Listener {listener!r} failed on {event_type.value}: {e}")
        return event
