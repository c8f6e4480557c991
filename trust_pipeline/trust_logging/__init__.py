"""
Structured logging for the trust pipeline.

JSON logs with timestamp, event_type and entity ids.
"""

from trust_pipeline.trust_logging.logger import bind_venue, get_logger

__all__ = ["bind_venue", "get_logger"]
