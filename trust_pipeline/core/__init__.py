from trust_pipeline.core.clock import Clock, system_clock
from trust_pipeline.core.exceptions import (
    ConfigurationError,
    EventBusError,
    PayloadDecodeError,
    PersistenceError,
    TrustPipelineError,
)
from trust_pipeline.core.locks import KeyedLocks

__all__ = [
    "Clock",
    "ConfigurationError",
    "EventBusError",
    "KeyedLocks",
    "PayloadDecodeError",
    "PersistenceError",
    "TrustPipelineError",
    "system_clock",
]
