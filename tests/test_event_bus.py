"""
Tests for the in-process event bus: fan-out, isolation, patterns, history.
"""

from __future__ import annotations

import pytest

from trust_pipeline.core.exceptions import EventBusError
from trust_pipeline.event_bus import EventBus, HistoryFilter


def test_publish_stamps_event_with_clock(bus, clock):
    """Published events carry an id, source, actor and the bus clock's ms timestamp."""
    event = bus.publish("tip.completed", "adapter", {"fromActorId": "a", "toActorId": "b"}, actor_id="a")
    assert event.id
    assert event.type == "tip.completed"
    assert event.source == "adapter"
    assert event.actor_id == "a"
    assert event.timestamp == clock.now


def test_payload_is_copied_and_read_only(bus):
    """Mutating the caller's dict after publish does not change the event; the payload rejects writes."""
    payload = {"venueId": "stake", "nested": {"k": 1}}
    event = bus.publish("user.report.filed", "adapter", payload)
    payload["venueId"] = "changed"
    payload["nested"]["k"] = 2
    assert event.payload["venueId"] == "stake"
    assert event.payload["nested"]["k"] == 1
    with pytest.raises(TypeError):
        event.payload["venueId"] = "x"


def test_handler_failure_is_isolated(bus):
    """A raising handler neither stops later handlers nor fails publish."""
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe("tilt.detected", "broken", broken)
    bus.subscribe("tilt.detected", "ok", seen.append)
    event = bus.publish("tilt.detected", "adapter", {"actorId": "a"})
    assert seen == [event]
    assert bus.stats()["handler_failures"] == 1


def test_handlers_run_in_registration_order(bus):
    """Exact, wildcard and glob subscriptions all run in the order they were registered."""
    calls = []
    bus.subscribe("*", "all", lambda e: calls.append("all"))
    bus.subscribe("fairness.pump.detected", "exact", lambda e: calls.append("exact"))
    bus.subscribe("fairness.*", "glob", lambda e: calls.append("glob"))
    bus.publish("fairness.pump.detected", "detector", {})
    assert calls == ["all", "exact", "glob"]


def test_glob_pattern_does_not_match_other_namespaces(bus):
    seen = []
    bus.subscribe("fairness.*", "glob", seen.append)
    bus.publish("gameplay.sample.recorded", "adapter", {})
    bus.publish("fairness.cluster.detected", "detector", {})
    assert [e.type for e in seen] == ["fairness.cluster.detected"]


def test_unsubscribe_stops_delivery(bus):
    seen = []
    sub = bus.subscribe("tilt.detected", "h", seen.append)
    bus.publish("tilt.detected", "adapter", {})
    assert sub.unsubscribe() is True
    assert sub.unsubscribe() is False
    bus.publish("tilt.detected", "adapter", {})
    assert len(seen) == 1


def test_handler_may_publish_follow_up_events(bus):
    """Handlers run outside the bus lock, so nested publishes are delivered."""
    seen = []
    bus.subscribe("a.first", "relay", lambda e: bus.publish("a.second", "relay", {}))
    bus.subscribe("a.second", "sink", seen.append)
    bus.publish("a.first", "adapter", {})
    assert [e.type for e in seen] == ["a.second"]


def test_empty_event_type_rejected(bus):
    with pytest.raises(EventBusError):
        bus.publish("", "adapter", {})
    with pytest.raises(EventBusError):
        bus.subscribe("", "h", lambda e: None)


def test_history_evicts_oldest_first(clock):
    """Once full, the ring buffer drops the oldest entries; sequences keep increasing."""
    small = EventBus(history_size=3, clock=clock)
    for i in range(5):
        small.publish("tick", "test", {"i": i})
    entries = small.history()
    assert [e.sequence for e in entries] == [3, 4, 5]
    assert [e.event.payload["i"] for e in entries] == [2, 3, 4]
    assert small.stats()["history_size"] == 3
    assert small.stats()["published"] == 5


def test_history_filters(bus, clock):
    """Type glob, source, actor, time range (inclusive start, exclusive end), sequence and limit."""
    t0 = clock.now
    bus.publish("fairness.pump.detected", "detector", {}, actor_id="a")
    clock.advance(seconds=1)
    bus.publish("fairness.cluster.detected", "detector", {}, actor_id="b")
    clock.advance(seconds=1)
    bus.publish("tilt.detected", "adapter", {}, actor_id="a")

    assert len(bus.history(HistoryFilter(event_type="fairness.*"))) == 2
    assert len(bus.history(HistoryFilter(source="adapter"))) == 1
    assert len(bus.history(HistoryFilter(actor_id="a"))) == 2
    in_range = bus.history(HistoryFilter(since_ms=t0, until_ms=t0 + 1000))
    assert [e.event.type for e in in_range] == ["fairness.pump.detected"]
    assert [e.sequence for e in bus.history(HistoryFilter(after_sequence=2))] == [3]
    assert [e.event.type for e in bus.history(HistoryFilter(limit=1))] == ["tilt.detected"]


def test_subscriptions_and_clear_history(bus):
    bus.subscribe("tilt.detected", "one", lambda e: None)
    bus.subscribe("tilt.detected", "two", lambda e: None)
    bus.subscribe("*", "three", lambda e: None)
    assert bus.subscriptions() == {"tilt.detected": ["one", "two"], "*": ["three"]}
    bus.publish("tilt.detected", "adapter", {})
    bus.clear_history()
    stats = bus.stats()
    assert stats["history_size"] == 0
    assert stats["total_subscriptions"] == 3
    assert stats["event_types"] == 2
