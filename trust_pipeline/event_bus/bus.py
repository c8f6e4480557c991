"""
In-process event bus: synchronous fan-out with bounded history.

Publishing never fails because of a consumer: each handler runs inside its own
try/except, failures are logged with the handler id, and the remaining handlers
still run. History is an append-only ring buffer (FIFO eviction) for audit and
replay; it does not survive a restart.
"""

from __future__ import annotations

import itertools
import threading
import uuid
from collections import deque
from typing import Any, Mapping

from trust_pipeline.core.clock import Clock, system_clock
from trust_pipeline.core.exceptions import EventBusError
from trust_pipeline.event_bus.models import (
    Event,
    EventHandler,
    EventHistoryEntry,
    HistoryFilter,
    Subscription,
    freeze_payload,
    matches_pattern,
)
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

DEFAULT_HISTORY_SIZE = 2000


class EventBus:
    """
    Typed publish/subscribe router.

    One RLock guards subscriptions, the sequence counter and history. Handlers
    are invoked outside the lock, so a handler may publish follow-up events.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE, *, clock: Clock = system_clock) -> None:
        if history_size < 1:
            raise EventBusError("history_size must be >= 1")
        self._clock = clock
        self._lock = threading.RLock()
        self._subscriptions: list[Subscription] = []
        self._history: deque[EventHistoryEntry] = deque(maxlen=history_size)
        self._sequence = itertools.count(1)
        self._order = itertools.count(1)
        self._published = 0
        self._handler_failures = 0

    @property
    def history_size(self) -> int:
        return self._history.maxlen or 0

    def subscribe(self, event_type: str, handler_id: str, handler: EventHandler) -> Subscription:
        """Register handler for event_type (exact, '*' or glob). Handlers run in registration order."""
        if not event_type:
            raise EventBusError("event_type must be non-empty")
        if not handler_id:
            raise EventBusError("handler_id must be non-empty")
        with self._lock:
            sub = Subscription(
                event_type=event_type,
                handler_id=handler_id,
                handler=handler,
                order=next(self._order),
                _unsubscribe=self.unsubscribe,
            )
            self._subscriptions.append(sub)
        logger.debug("bus_subscribed", handler_id=handler_id, pattern=event_type)
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            for i, sub in enumerate(self._subscriptions):
                if sub is subscription:
                    del self._subscriptions[i]
                    logger.debug(
                        "bus_unsubscribed",
                        handler_id=subscription.handler_id,
                        pattern=subscription.event_type,
                    )
                    return True
        return False

    def publish(
        self,
        event_type: str,
        source: str,
        payload: Mapping[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> Event:
        """
        Record the event in history, then invoke every matching handler in order.

        Returns the published Event. Handler exceptions are isolated and logged;
        only an invalid event_type raises (EventBusError).
        """
        if not event_type:
            raise EventBusError("event_type must be non-empty")
        event = Event(
            id=uuid.uuid4().hex,
            type=event_type,
            source=source,
            timestamp=self._clock(),
            payload=freeze_payload(payload),
            actor_id=actor_id,
        )
        with self._lock:
            self._history.append(EventHistoryEntry(sequence=next(self._sequence), event=event))
            self._published += 1
            targets = [s for s in self._subscriptions if matches_pattern(s.event_type, event_type)]

        logger.debug(
            "bus_event_published",
            event_type=event_type,
            source=source,
            actor_id=actor_id,
            handlers=len(targets),
        )
        for sub in targets:
            try:
                sub.handler(event)
            except Exception as e:
                with self._lock:
                    self._handler_failures += 1
                logger.exception(
                    "bus_handler_failed",
                    event_type=event_type,
                    handler_id=sub.handler_id,
                    error=str(e),
                )
        return event

    def history(self, filter: HistoryFilter | None = None) -> list[EventHistoryEntry]:
        """Return matching history entries, oldest first."""
        with self._lock:
            entries = list(self._history)
        if filter is None:
            return entries
        matched = [e for e in entries if filter.accepts(e)]
        if filter.limit is not None:
            matched = matched[-filter.limit:] if filter.limit > 0 else []
        return matched

    def subscriptions(self) -> dict[str, list[str]]:
        """Handler ids per subscribed pattern, in registration order (for monitoring)."""
        out: dict[str, list[str]] = {}
        with self._lock:
            for sub in self._subscriptions:
                out.setdefault(sub.event_type, []).append(sub.handler_id)
        return out

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
        logger.info("bus_history_cleared")

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "total_subscriptions": len(self._subscriptions),
                "event_types": len({s.event_type for s in self._subscriptions}),
                "history_size": len(self._history),
                "max_history_size": self.history_size,
                "published": self._published,
                "handler_failures": self._handler_failures,
            }
