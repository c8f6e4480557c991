"""
Rollup snapshot models and the 24h venue risk classification.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from trust_pipeline.event_bus.payloads import ActorRollupEntry, VenueRollupEntry

VOLATILITY_NORMALIZER = 50.0
NERF_VOLATILITY_WEIGHT = 1.5


class RiskLevel(str, Enum):
    LOW = "low"
    WATCH = "watch"
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"


class SnapshotTrigger(str, Enum):
    SCHEDULED = "scheduled"
    ON_DEMAND = "on_demand"


def population_std(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def volatility_score(trust_deltas: Sequence[float], nerf_percents: Sequence[float]) -> float:
    """std of trust deltas and weighted nerf percentages, normalized by 50 and clamped to 1."""
    inputs = list(trust_deltas) + [p * NERF_VOLATILITY_WEIGHT for p in nerf_percents]
    return min(1.0, population_std(inputs) / VOLATILITY_NORMALIZER)


def classify_risk(volatility: float, nerfs_24h: int) -> RiskLevel:
    if volatility < 0.15 and nerfs_24h == 0:
        return RiskLevel.LOW
    if volatility < 0.30 and nerfs_24h <= 1:
        return RiskLevel.WATCH
    if volatility < 0.50 and nerfs_24h <= 2:
        return RiskLevel.ELEVATED
    if volatility < 0.70 or nerfs_24h <= 3:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


@dataclass(frozen=True)
class VenueRollup:
    total_delta: float = 0.0
    event_count: int = 0
    last_severity: Optional[str] = None
    last_score: Optional[float] = None
    nerfs_24h: int = 0
    volatility_24h: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_delta": round(self.total_delta, 4),
            "event_count": self.event_count,
            "last_severity": self.last_severity,
            "last_score": self.last_score,
            "nerfs_24h": self.nerfs_24h,
            "volatility_24h": round(self.volatility_24h, 4),
            "risk_level": self.risk_level.value,
        }

    def to_entry(self) -> VenueRollupEntry:
        return VenueRollupEntry(**self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VenueRollup":
        return cls(
            total_delta=float(data.get("total_delta", 0.0)),
            event_count=int(data.get("event_count", 0)),
            last_severity=data.get("last_severity"),
            last_score=data.get("last_score"),
            nerfs_24h=int(data.get("nerfs_24h", 0)),
            volatility_24h=float(data.get("volatility_24h", 0.0)),
            risk_level=RiskLevel(data.get("risk_level", RiskLevel.LOW.value)),
        )


@dataclass(frozen=True)
class ActorRollup:
    total_delta_24h: float = 0.0
    event_count_24h: int = 0
    last_score: Optional[float] = None
    level: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_delta_24h": round(self.total_delta_24h, 4),
            "event_count_24h": self.event_count_24h,
            "last_score": self.last_score,
            "level": self.level,
        }

    def to_entry(self) -> ActorRollupEntry:
        return ActorRollupEntry(**self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActorRollup":
        return cls(
            total_delta_24h=float(data.get("total_delta_24h", 0.0)),
            event_count_24h=int(data.get("event_count_24h", 0)),
            last_score=data.get("last_score"),
            level=data.get("level"),
        )


@dataclass(frozen=True)
class RollupSnapshot:
    """Point-in-time digest of trust changes. Never mutated after generation."""

    snapshot_id: str
    window_start: int
    window_end: int
    generated_at: int
    trigger: SnapshotTrigger
    per_venue_delta: Mapping[str, VenueRollup] = field(default_factory=dict)
    per_actor_delta: Mapping[str, ActorRollup] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "generated_at": self.generated_at,
            "trigger": self.trigger.value,
            "per_venue_delta": {k: v.to_dict() for k, v in sorted(self.per_venue_delta.items())},
            "per_actor_delta": {k: v.to_dict() for k, v in sorted(self.per_actor_delta.items())},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RollupSnapshot":
        return cls(
            snapshot_id=str(data["snapshot_id"]),
            window_start=int(data["window_start"]),
            window_end=int(data["window_end"]),
            generated_at=int(data["generated_at"]),
            trigger=SnapshotTrigger(data.get("trigger", SnapshotTrigger.SCHEDULED.value)),
            per_venue_delta={
                k: VenueRollup.from_dict(v) for k, v in (data.get("per_venue_delta") or {}).items()
            },
            per_actor_delta={
                k: ActorRollup.from_dict(v) for k, v in (data.get("per_actor_delta") or {}).items()
            },
        )


@dataclass(frozen=True)
class SnapshotResponse:
    snapshot: RollupSnapshot | None
    throttled: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "throttled": self.throttled,
            "snapshot": self.snapshot.to_dict() if self.snapshot is not None else None,
        }
