"""
Pipeline assembly: one bus instance wired into every component.

Components are constructed with the bus (no module-level singletons), loaded
from their repositories, then subscribed in dependency order: detector, venue
scorer, actor scorer, rollup service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from trust_pipeline.analysis_engine.detector import GameplayAnomalyDetector
from trust_pipeline.config.settings import PipelineConfig
from trust_pipeline.core.clock import Clock, system_clock
from trust_pipeline.database.repository import (
    KIND_ACTOR_PROFILES,
    KIND_ROLLUP_SNAPSHOTS,
    KIND_VENUE_PROFILES,
    RecordBackend,
    SQLiteBackend,
    open_repositories,
)
from trust_pipeline.event_bus.bus import EventBus
from trust_pipeline.rollup.service import RollupService
from trust_pipeline.trust.actor_scorer import ActorTrustScorer
from trust_pipeline.trust.venue_scorer import VenueTrustScorer
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)


@dataclass
class Pipeline:
    config: PipelineConfig
    bus: EventBus
    detector: GameplayAnomalyDetector
    venue_scorer: VenueTrustScorer
    actor_scorer: ActorTrustScorer
    rollup: RollupService
    started: bool = False

    def start(self) -> None:
        """Load persisted state and subscribe every component."""
        if self.started:
            return
        venues = self.venue_scorer.load_all()
        actors = self.actor_scorer.load_all()
        self.detector.start()
        self.venue_scorer.start()
        self.actor_scorer.start()
        self.rollup.start()
        self.started = True
        logger.info("pipeline_started", venues=venues, actors=actors)

    def stop(self) -> None:
        """Unsubscribe components and flush dirty state."""
        self.rollup.stop()
        self.actor_scorer.stop()
        self.venue_scorer.stop()
        self.detector.stop()
        self.flush()
        self.started = False
        logger.info("pipeline_stopped")

    def flush(self) -> dict[str, int]:
        return {
            "venues": self.venue_scorer.flush(),
            "actors": self.actor_scorer.flush(),
            "snapshots": self.rollup.persist_pending(),
        }

    def run_cycle(self) -> dict[str, Any]:
        """One maintenance cycle: write dirty profiles, then tick the rollup window."""
        venues = self.venue_scorer.flush()
        actors = self.actor_scorer.flush()
        snapshot = self.rollup.tick()
        result = {
            "venues_flushed": venues,
            "actors_flushed": actors,
            "rollup_snapshot": snapshot.snapshot_id if snapshot else None,
            "pending_snapshot_writes": self.rollup.pending_writes,
        }
        logger.debug("pipeline_cycle_done", **result)
        return result

    def health(self) -> dict[str, Any]:
        latest = self.rollup.get_latest_snapshot()
        return {
            "status": "ok" if self.started else "stopped",
            "bus": self.bus.stats(),
            "sessions": self.detector.session_count(),
            "venues": len(self.venue_scorer.venue_ids()),
            "actors": len(self.actor_scorer.actor_ids()),
            "latest_snapshot": latest.snapshot_id if latest else None,
            "pending_snapshot_writes": self.rollup.pending_writes,
        }


def build_pipeline(
    config: PipelineConfig | None = None,
    *,
    backend: RecordBackend | None = None,
    clock: Clock = system_clock,
) -> Pipeline:
    """
    Construct (but do not start) a pipeline. With backend=None nothing is
    persisted; pass SQLiteBackend(config.db_path) or an InMemoryBackend.
    """
    cfg = config or PipelineConfig()
    repos = open_repositories(backend) if backend is not None else {}
    bus = EventBus(cfg.bus.history_size, clock=clock)
    return Pipeline(
        config=cfg,
        bus=bus,
        detector=GameplayAnomalyDetector(bus, cfg.detector, clock=clock),
        venue_scorer=VenueTrustScorer(
            bus, cfg.venue, repository=repos.get(KIND_VENUE_PROFILES), clock=clock
        ),
        actor_scorer=ActorTrustScorer(
            bus, cfg.actor, repository=repos.get(KIND_ACTOR_PROFILES), clock=clock
        ),
        rollup=RollupService(
            bus, cfg.rollup, repository=repos.get(KIND_ROLLUP_SNAPSHOTS), clock=clock
        ),
    )


def build_sqlite_pipeline(config: PipelineConfig, *, clock: Clock = system_clock) -> Pipeline:
    return build_pipeline(config, backend=SQLiteBackend(config.db_path), clock=clock)
