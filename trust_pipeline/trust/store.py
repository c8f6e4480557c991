"""
In-memory profile registry with dirty tracking and repository write-back.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Generic, Mapping, TypeVar

from trust_pipeline.core.clock import Clock
from trust_pipeline.core.exceptions import PersistenceError
from trust_pipeline.core.locks import KeyedLocks
from trust_pipeline.database.repository import Repository
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

P = TypeVar("P")


class ProfileRegistry(Generic[P]):
    """
    Holds profiles by id. Mutations happen under the caller's per-key lock;
    the registry lock only guards the map and the dirty set.

    flush() is the only place that touches the repository after load_all(),
    so handlers never block on I/O.
    """

    def __init__(
        self,
        *,
        repository: Repository | None,
        locks: KeyedLocks,
        clock: Clock,
        factory: Callable[[str, int], P],
        decoder: Callable[[Mapping[str, Any]], P],
        encoder: Callable[[P], dict[str, Any]],
    ) -> None:
        self._repository = repository
        self._locks = locks
        self._clock = clock
        self._factory = factory
        self._decoder = decoder
        self._encoder = encoder
        self._lock = threading.Lock()
        self._profiles: dict[str, P] = {}
        self._dirty: set[str] = set()

    def get(self, key: str) -> P | None:
        with self._lock:
            return self._profiles.get(key)

    def get_or_create(self, key: str) -> P:
        with self._lock:
            profile = self._profiles.get(key)
            if profile is None:
                profile = self._factory(key, self._clock())
                self._profiles[key] = profile
            return profile

    def mark_dirty(self, key: str) -> None:
        with self._lock:
            self._dirty.add(key)

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._profiles)

    def dirty_count(self) -> int:
        with self._lock:
            return len(self._dirty)

    def load_all(self) -> int:
        """
        Load every persisted profile. A corrupted record yields a fresh
        profile (marked dirty so it is rewritten) and a warning.
        """
        if self._repository is None:
            return 0
        kind = self._repository.kind
        loaded = 0
        for key in self._repository.list_ids():
            try:
                data = self._repository.load(key)
                if data is None:
                    continue
                profile = self._decoder(data)
            except (PersistenceError, KeyError, TypeError, ValueError) as e:
                logger.warning("profile_record_corrupted", kind=kind, record_id=key, error=str(e))
                profile = self._factory(key, self._clock())
                self.mark_dirty(key)
            with self._lock:
                self._profiles[key] = profile
            loaded += 1
        logger.info("profiles_loaded", kind=kind, count=loaded)
        return loaded

    def flush(self) -> int:
        """Write dirty profiles. Failed writes stay dirty for the next flush. Returns count written."""
        if self._repository is None:
            with self._lock:
                self._dirty.clear()
            return 0
        with self._lock:
            pending = sorted(self._dirty)
            self._dirty.clear()
        written = 0
        for key in pending:
            with self._locks.hold(key):
                with self._lock:
                    profile = self._profiles.get(key)
                if profile is None:
                    continue
                data = self._encoder(profile)
            try:
                self._repository.save(key, data)
                written += 1
            except PersistenceError as e:
                logger.warning("profile_flush_failed", kind=self._repository.kind, record_id=key, error=str(e))
                self.mark_dirty(key)
        if pending:
            logger.debug("profiles_flushed", kind=self._repository.kind, written=written, pending=len(pending))
        return written
