# Periodic execution: one daemon thread per task, exception-isolated runs.

from trust_pipeline.scheduler.engine import PeriodicTask

__all__ = [
    "PeriodicTask",
]
