"""
Periodic task engine: run a callable every interval on a daemon thread.

The only background thread in the pipeline. Each run is exception-isolated;
a failing run is logged and the loop continues. Stopping wakes the thread
immediately instead of waiting out the interval.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

MIN_INTERVAL_SEC = 0.01


class PeriodicTask:
    """
    Call fn every interval_sec until stop().

    run_once() executes one isolated run synchronously (used by the loop and
    by tests). Returns True when the run completed without error.
    """

    def __init__(self, name: str, fn: Callable[[], Any], interval_sec: float) -> None:
        self._name = name
        self._fn = fn
        self._interval_sec = max(MIN_INTERVAL_SEC, float(interval_sec))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._runs = 0
        self._failures = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def runs(self) -> int:
        return self._runs

    @property
    def failures(self) -> int:
        return self._failures

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        started = time.monotonic()
        self._runs += 1
        try:
            self._fn()
        except Exception as e:
            self._failures += 1
            logger.exception("periodic_task_failed", task=self._name, run=self._runs, error=str(e))
            return False
        logger.debug(
            "periodic_task_done",
            task=self._name,
            run=self._runs,
            duration_sec=round(time.monotonic() - started, 3),
        )
        return True

    def _loop(self) -> None:
        logger.info("periodic_task_started", task=self._name, interval_sec=self._interval_sec)
        while not self._stop.is_set():
            cycle_start = time.monotonic()
            self.run_once()
            remaining = self._interval_sec - (time.monotonic() - cycle_start)
            if remaining > 0:
                self._stop.wait(remaining)
        logger.info("periodic_task_stopped", task=self._name, runs=self._runs, failures=self._failures)

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"periodic-{self._name}", daemon=True)
        self._thread.start()

    def request_stop(self) -> None:
        """Signal the loop to exit after the current run; safe from signal handlers."""
        self._stop.set()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop() is requested; True if it was."""
        return self._stop.wait(timeout)
