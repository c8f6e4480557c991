"""
Millisecond wall clock. Components take a Clock so tests can drive time.
"""

from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], int]

MS_PER_SECOND = 1000
MS_PER_HOUR = 3_600_000
MS_PER_DAY = 24 * MS_PER_HOUR


def system_clock() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * MS_PER_SECOND)


def hours_between(start_ms: int, end_ms: int) -> float:
    """Elapsed hours from start_ms to end_ms; never negative."""
    return max(0.0, (end_ms - start_ms) / MS_PER_HOUR)
