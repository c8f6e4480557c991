"""
Hourly rollups and throttled on-demand trust snapshots.
"""

from trust_pipeline.rollup.models import (
    ActorRollup,
    RiskLevel,
    RollupSnapshot,
    SnapshotResponse,
    SnapshotTrigger,
    VenueRollup,
    classify_risk,
    volatility_score,
)
from trust_pipeline.rollup.service import RollupService

__all__ = [
    "ActorRollup",
    "RiskLevel",
    "RollupService",
    "RollupSnapshot",
    "SnapshotResponse",
    "SnapshotTrigger",
    "VenueRollup",
    "classify_risk",
    "volatility_score",
]
