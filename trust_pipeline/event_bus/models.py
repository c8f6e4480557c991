"""
Data models for the in-process event bus.

Events are immutable once published: the payload is deep-copied and exposed
as a read-only mapping. History entries pair an event with its sequence number.
"""

from __future__ import annotations

import copy
import fnmatch
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

WILDCARD = "*"


def freeze_payload(payload: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Deep-copy a payload and wrap it read-only so no consumer can mutate history."""
    return MappingProxyType(copy.deepcopy(dict(payload or {})))


def matches_pattern(pattern: str, event_type: str) -> bool:
    """Exact type, '*' for everything, or a glob such as 'fairness.*'."""
    if pattern == WILDCARD or pattern == event_type:
        return True
    return any(ch in pattern for ch in "*?[") and fnmatch.fnmatchcase(event_type, pattern)


@dataclass(frozen=True)
class Event:
    """Single published event. timestamp is Unix milliseconds."""

    id: str
    type: str
    source: str
    timestamp: int
    payload: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    actor_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "timestamp": self.timestamp,
            "actor_id": self.actor_id,
            "payload": copy.deepcopy(dict(self.payload)),
        }


@dataclass(frozen=True)
class EventHistoryEntry:
    """An event plus its bus-local, strictly increasing sequence number."""

    sequence: int
    event: Event


EventHandler = Callable[[Event], None]


@dataclass(frozen=True)
class HistoryFilter:
    """
    Filter for EventBus.history().

    event_type accepts the same patterns as subscribe(). since_ms is inclusive,
    until_ms exclusive. limit keeps the most recent N matches.
    """

    event_type: str | None = None
    source: str | None = None
    actor_id: str | None = None
    since_ms: int | None = None
    until_ms: int | None = None
    after_sequence: int | None = None
    limit: int | None = None

    def accepts(self, entry: EventHistoryEntry) -> bool:
        evt = entry.event
        if self.event_type is not None and not matches_pattern(self.event_type, evt.type):
            return False
        if self.source is not None and evt.source != self.source:
            return False
        if self.actor_id is not None and evt.actor_id != self.actor_id:
            return False
        if self.since_ms is not None and evt.timestamp < self.since_ms:
            return False
        if self.until_ms is not None and evt.timestamp >= self.until_ms:
            return False
        if self.after_sequence is not None and entry.sequence <= self.after_sequence:
            return False
        return True


@dataclass(frozen=True, eq=False)
class Subscription:
    """Handle returned by subscribe(); identity-compared."""

    event_type: str
    handler_id: str
    handler: EventHandler
    order: int
    _unsubscribe: Callable[["Subscription"], bool] = field(repr=False)

    def unsubscribe(self) -> bool:
        """Remove this subscription. Returns False if it was already removed."""
        return self._unsubscribe(self)
