"""
Pytest fixtures for trust pipeline tests: controllable clock, fresh bus per test,
event recorder and an in-memory pipeline.
"""

from __future__ import annotations

import pytest

from trust_pipeline.core.clock import MS_PER_HOUR, MS_PER_SECOND
from trust_pipeline.database.repository import InMemoryBackend
from trust_pipeline.event_bus.bus import EventBus
from trust_pipeline.event_bus.models import Event
from trust_pipeline.pipeline import build_pipeline

START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, *, ms: int = 0, seconds: float = 0, hours: float = 0) -> int:
        self.now += int(ms + seconds * MS_PER_SECOND + hours * MS_PER_HOUR)
        return self.now


class EventRecorder:
    """Collects events published on a bus, optionally filtered by pattern."""

    def __init__(self, bus: EventBus, pattern: str = "*") -> None:
        self.events: list[Event] = []
        self.subscription = bus.subscribe(pattern, f"recorder:{pattern}", self.events.append)

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus(clock):
    return EventBus(history_size=2000, clock=clock)


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def pipeline(clock, backend):
    """Started pipeline on an in-memory backend, driven by the fake clock."""
    p = build_pipeline(backend=backend, clock=clock)
    p.start()
    yield p
    p.stop()


@pytest.fixture
def record(bus):
    """Factory: record(pattern) -> EventRecorder on the test bus."""
    return lambda pattern="*": EventRecorder(bus, pattern)
