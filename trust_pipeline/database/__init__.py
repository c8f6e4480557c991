"""
Persistence layer: JSON records per kind behind a swappable backend.
"""

from trust_pipeline.database.repository import (
    KIND_ACTOR_PROFILES,
    KIND_ROLLUP_SNAPSHOTS,
    KIND_VENUE_PROFILES,
    InMemoryBackend,
    RecordBackend,
    Repository,
    SQLiteBackend,
    open_repositories,
)

__all__ = [
    "KIND_ACTOR_PROFILES",
    "KIND_ROLLUP_SNAPSHOTS",
    "KIND_VENUE_PROFILES",
    "InMemoryBackend",
    "RecordBackend",
    "Repository",
    "SQLiteBackend",
    "open_repositories",
]
