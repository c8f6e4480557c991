"""
Application-level exceptions.

Everything raised by the pipeline derives from TrustPipelineError so adapters
can catch one type at their boundary.
"""

from __future__ import annotations


class TrustPipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(TrustPipelineError):
    """A configuration value is missing, out of range, or inconsistent."""


class EventBusError(TrustPipelineError):
    """Invalid use of the event bus (e.g. empty event type)."""


class PayloadDecodeError(TrustPipelineError):
    """An event payload does not match the shape its handler requires."""

    def __init__(self, event_type: str, message: str) -> None:
        super().__init__(f"{event_type}: {message}")
        self.event_type = event_type
        self.message = message


class PersistenceError(TrustPipelineError):
    """A durable read or write failed."""
