"""
Event bus: in-process publish/subscribe with bounded history and typed payloads.
"""

from trust_pipeline.event_bus.bus import EventBus
from trust_pipeline.event_bus.models import (
    Event,
    EventHandler,
    EventHistoryEntry,
    HistoryFilter,
    Subscription,
)
from trust_pipeline.event_bus.payloads import (
    AnomalyType,
    Severity,
    decode_event,
    decode_payload,
)

__all__ = [
    "AnomalyType",
    "Event",
    "EventBus",
    "EventHandler",
    "EventHistoryEntry",
    "HistoryFilter",
    "Severity",
    "Subscription",
    "decode_event",
    "decode_payload",
]
