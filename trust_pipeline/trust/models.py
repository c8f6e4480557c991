"""
Trust profile models for venues and actors.

Scores are always derived: a venue's composite is the weighted sum of its
category scores; an actor's composite is computed on read from base score,
decaying indicators, scam flags and bonuses at a given time. All profiles
round-trip through to_dict() / from_dict() JSON shapes.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from trust_pipeline.config.settings import (
    VENUE_CATEGORIES,
    ActorScorerConfig,
    VenueScorerConfig,
)
from trust_pipeline.core.clock import hours_between

SCORE_MIN = 0.0
SCORE_MAX = 100.0


def clamp_score(value: float) -> float:
    return max(SCORE_MIN, min(SCORE_MAX, value))


def composite_score(categories: Mapping[str, float], weights: Mapping[str, float]) -> float:
    """Σ weight·score / 100 over all categories (weights sum to 100)."""
    return sum(weights[c] * categories[c] for c in VENUE_CATEGORIES) / 100.0


# --- Venue ---


@dataclass(frozen=True)
class ScoreContribution:
    """One applied category delta, kept for explain()."""

    timestamp: int
    category: str
    delta: float
    reason: str
    source: str = ""
    severity: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "category": self.category,
            "delta": self.delta,
            "reason": self.reason,
            "source": self.source,
            "severity": self.severity,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScoreContribution":
        return cls(
            timestamp=int(data["timestamp"]),
            category=str(data["category"]),
            delta=float(data["delta"]),
            reason=str(data.get("reason", "")),
            source=str(data.get("source", "")),
            severity=data.get("severity"),
        )


@dataclass
class VenueTrustProfile:
    venue_id: str
    categories: dict[str, float]
    weights: Mapping[str, float]
    created_at: int
    last_updated: int
    history: deque[ScoreContribution]
    seen_signals: dict[str, None]
    """Insertion-ordered dedup keys; oldest evicted beyond dedup_limit."""
    dedup_limit: int = 500

    @classmethod
    def fresh(cls, venue_id: str, config: VenueScorerConfig, now: int) -> "VenueTrustProfile":
        return cls(
            venue_id=venue_id,
            categories={c: config.initial_category_score for c in VENUE_CATEGORIES},
            weights=config.category_weights,
            created_at=now,
            last_updated=now,
            history=deque(maxlen=config.history_limit),
            seen_signals={},
            dedup_limit=config.dedup_limit,
        )

    @property
    def composite(self) -> float:
        return composite_score(self.categories, self.weights)

    def has_seen(self, key: str) -> bool:
        return key in self.seen_signals

    def mark_seen(self, key: str) -> None:
        self.seen_signals[key] = None
        while len(self.seen_signals) > self.dedup_limit:
            del self.seen_signals[next(iter(self.seen_signals))]

    def apply(
        self,
        category: str,
        delta: float,
        *,
        reason: str,
        source: str,
        now: int,
        severity: str | None = None,
    ) -> tuple[float, float]:
        """Add delta to one category (clamped to [0, 100]); returns (previous, new)."""
        if category not in self.categories:
            raise KeyError(f"unknown venue category: {category}")
        previous = self.categories[category]
        new = clamp_score(previous + delta)
        self.categories[category] = new
        self.last_updated = now
        self.history.append(
            ScoreContribution(
                timestamp=now,
                category=category,
                delta=new - previous,
                reason=reason,
                source=source,
                severity=severity,
            )
        )
        return previous, new

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue_id": self.venue_id,
            "categories": dict(self.categories),
            "composite": round(self.composite, 4),
            "created_at": self.created_at,
            "last_updated": self.last_updated,
            "history": [h.to_dict() for h in self.history],
            "seen_signals": list(self.seen_signals),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], config: VenueScorerConfig) -> "VenueTrustProfile":
        """Rebuild from to_dict() output. Missing categories get the initial score; raises on bad shapes."""
        raw = data.get("categories") or {}
        categories = {
            c: clamp_score(float(raw.get(c, config.initial_category_score))) for c in VENUE_CATEGORIES
        }
        history: deque[ScoreContribution] = deque(
            (ScoreContribution.from_dict(h) for h in data.get("history", [])),
            maxlen=config.history_limit,
        )
        profile = cls(
            venue_id=str(data["venue_id"]),
            categories=categories,
            weights=config.category_weights,
            created_at=int(data["created_at"]),
            last_updated=int(data["last_updated"]),
            history=history,
            seen_signals={},
            dedup_limit=config.dedup_limit,
        )
        for key in data.get("seen_signals", []):
            profile.mark_seen(str(key))
        return profile


# --- Actor ---


class TrustLevel(str, Enum):
    VERY_HIGH = "very-high"
    HIGH = "high"
    NEUTRAL = "neutral"
    LOW = "low"
    HIGH_RISK = "high-risk"

    @classmethod
    def from_score(cls, score: float) -> "TrustLevel":
        if score >= 95:
            return cls.VERY_HIGH
        if score >= 80:
            return cls.HIGH
        if score >= 60:
            return cls.NEUTRAL
        if score >= 40:
            return cls.LOW
        return cls.HIGH_RISK


@dataclass(frozen=True)
class Indicator:
    """Negative behavior marker; magnitude decays linearly with elapsed hours."""

    weight: float
    applied_at: int
    reason: str

    def effective(self, at_ms: int, decay_per_hour: float) -> float:
        return max(0.0, self.weight - decay_per_hour * hours_between(self.applied_at, at_ms))

    def to_dict(self) -> dict[str, Any]:
        return {"weight": self.weight, "applied_at": self.applied_at, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Indicator":
        return cls(weight=float(data["weight"]), applied_at=int(data["applied_at"]), reason=str(data["reason"]))


@dataclass(frozen=True)
class ScamFlag:
    """Non-decaying penalty; removed only by explicit reversal."""

    applied_at: int
    reason: str
    report_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"applied_at": self.applied_at, "reason": self.reason, "report_id": self.report_id}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScamFlag":
        return cls(
            applied_at=int(data["applied_at"]),
            reason=str(data.get("reason", "scam_reported")),
            report_id=data.get("report_id"),
        )


@dataclass(frozen=True)
class Bonus:
    amount: float
    applied_at: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"amount": self.amount, "applied_at": self.applied_at, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Bonus":
        return cls(amount=float(data["amount"]), applied_at=int(data["applied_at"]), reason=str(data["reason"]))


@dataclass
class ActorTrustProfile:
    actor_id: str
    base_score: float
    created_at: int
    last_updated: int
    indicators: list[Indicator] = field(default_factory=list)
    scam_flags: list[ScamFlag] = field(default_factory=list)
    bonuses: list[Bonus] = field(default_factory=list)

    @classmethod
    def fresh(cls, actor_id: str, config: ActorScorerConfig, now: int) -> "ActorTrustProfile":
        return cls(actor_id=actor_id, base_score=config.base_score, created_at=now, last_updated=now)

    def indicator_penalty(self, at_ms: int, config: ActorScorerConfig) -> float:
        total = sum(i.effective(at_ms, config.decay_per_hour) for i in self.indicators)
        return min(config.indicator_cap, total)

    def flag_penalty(self, config: ActorScorerConfig) -> float:
        return min(config.scam_flag_cap, config.scam_flag_penalty * len(self.scam_flags))

    def bonus_total(self, config: ActorScorerConfig) -> float:
        return min(config.bonus_cap, sum(b.amount for b in self.bonuses))

    def score(self, at_ms: int, config: ActorScorerConfig) -> float:
        """clamp(base − indicators − flags + bonuses, 0, 100) evaluated at at_ms."""
        return clamp_score(
            self.base_score
            - self.indicator_penalty(at_ms, config)
            - self.flag_penalty(config)
            + self.bonus_total(config)
        )

    def prune(self, at_ms: int, config: ActorScorerConfig) -> None:
        """Drop fully decayed indicators and the oldest bonuses beyond history_limit."""
        self.indicators = [i for i in self.indicators if i.effective(at_ms, config.decay_per_hour) > 0]
        if len(self.bonuses) > config.history_limit:
            self.bonuses = self.bonuses[-config.history_limit:]

    def has_report(self, report_id: str) -> bool:
        return any(f.report_id == report_id for f in self.scam_flags)

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "base_score": self.base_score,
            "created_at": self.created_at,
            "last_updated": self.last_updated,
            "indicators": [i.to_dict() for i in self.indicators],
            "scam_flags": [f.to_dict() for f in self.scam_flags],
            "bonuses": [b.to_dict() for b in self.bonuses],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], config: ActorScorerConfig) -> "ActorTrustProfile":
        return cls(
            actor_id=str(data["actor_id"]),
            base_score=clamp_score(float(data.get("base_score", config.base_score))),
            created_at=int(data["created_at"]),
            last_updated=int(data["last_updated"]),
            indicators=[Indicator.from_dict(i) for i in data.get("indicators", [])],
            scam_flags=[ScamFlag.from_dict(f) for f in data.get("scam_flags", [])],
            bonuses=[Bonus.from_dict(b) for b in data.get("bonuses", [])],
        )
