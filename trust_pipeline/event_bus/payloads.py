"""
Typed payloads per event type, decoded at each handler's entry.

The bus itself never validates; consumers call decode_payload() and fail
closed on PayloadDecodeError (skip the mutation, log, continue). Keys are
accepted in snake_case or camelCase; unknown keys are ignored.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from trust_pipeline.core.exceptions import PayloadDecodeError
from trust_pipeline.event_bus.models import Event

# Event types (dot-namespaced)
FAIRNESS_PUMP_DETECTED = "fairness.pump.detected"
FAIRNESS_COMPRESSION_DETECTED = "fairness.compression.detected"
FAIRNESS_CLUSTER_DETECTED = "fairness.cluster.detected"
FAIRNESS_DRIFT_DETECTED = "fairness.drift.detected"
GAMEPLAY_SAMPLE_RECORDED = "gameplay.sample.recorded"
GAMEPLAY_BATCH_RECORDED = "gameplay.batch.recorded"
BONUS_UPDATED = "bonus.updated"
BONUS_NERF_DETECTED = "bonus.nerf.detected"
LINK_FLAGGED = "link.flagged"
USER_REPORT_FILED = "user.report.filed"
CASINO_ROLLUP_COMPLETED = "casino.rollup.completed"
DOMAIN_ROLLUP_COMPLETED = "domain.rollup.completed"
TIP_COMPLETED = "tip.completed"
TILT_DETECTED = "tilt.detected"
COOLDOWN_VIOLATED = "cooldown.violated"
SCAM_REPORTED = "scam.reported"
SCAM_REPORT_INVALIDATED = "scam.report.invalidated"
SCAM_FLAG_REVERSED = "scam.flag.reversed"
ACCOUNTABILITY_SUCCESS = "accountability.success"
TRUST_CASINO_UPDATED = "trust.casino.updated"
TRUST_DEGEN_UPDATED = "trust.degen.updated"
TRUST_CASINO_ROLLUP = "trust.casino.rollup"
TRUST_DEGEN_ROLLUP = "trust.degen.rollup"
TRUST_STATE_REQUESTED = "trust.state.requested"
TRUST_STATE_SNAPSHOT = "trust.state.snapshot"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AnomalyType(str, Enum):
    PUMP = "pump"
    VOLATILITY_COMPRESSION = "volatility_compression"
    WIN_CLUSTERING = "win_clustering"
    RTP_DRIFT = "rtp_drift"


class EventPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
        allow_inf_nan=False,
    )

    def to_wire(self) -> dict[str, Any]:
        """camelCase dict for publishing."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# --- Gameplay / anomaly ---


class AnomalySignalPayload(EventPayload):
    venue_id: str = Field(min_length=1)
    anomaly_type: AnomalyType
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: int
    session_id: Optional[str] = None
    actor_id: Optional[str] = None
    reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class SampleRecordedPayload(EventPayload):
    actor_id: str = Field(min_length=1)
    venue_id: str = Field(min_length=1)
    game_id: str = "unknown"
    wager_amount: float = Field(ge=0.0)
    payout_amount: float = Field(ge=0.0)
    session_id: Optional[str] = None
    timestamp: Optional[int] = None
    is_bonus: bool = False


class BatchRecordedPayload(EventPayload):
    actor_id: str = Field(min_length=1)
    venue_id: str = Field(min_length=1)
    game_id: str = "unknown"
    data: str
    session_id: Optional[str] = None


# --- Venue inputs ---


class BonusNerfPayload(EventPayload):
    venue_id: str = Field(min_length=1)
    percent_drop: float = Field(ge=0.0)


class BonusUpdatedPayload(EventPayload):
    venue_id: str = Field(min_length=1)
    old_amount: Optional[float] = None
    new_amount: Optional[float] = None


class LinkFlaggedPayload(EventPayload):
    venue_id: Optional[str] = None
    url: Optional[str] = None
    risk_level: str = "high"

    @model_validator(mode="after")
    def _needs_target(self) -> "LinkFlaggedPayload":
        if not (self.venue_id or self.url):
            raise ValueError("venue_id or url is required")
        return self


class UserReportPayload(EventPayload):
    venue_id: str = Field(min_length=1)
    sentiment: float = Field(ge=-1.0, le=1.0)
    reason: Optional[str] = None


class ExternalVenueDeltas(EventPayload):
    fairness_delta: Optional[float] = None
    payout_delta: Optional[float] = None
    bonus_delta: Optional[float] = None
    compliance_delta: Optional[float] = None
    support_delta: Optional[float] = None


class CasinoRollupPayload(EventPayload):
    venues: dict[str, ExternalVenueDeltas]
    source: Optional[str] = None


class DomainAggregate(EventPayload):
    total_delta: float
    event_count: int = Field(ge=0)
    last_severity: Optional[str] = None


class DomainRollupPayload(EventPayload):
    domains: dict[str, DomainAggregate]


# --- Actor inputs ---


class TipCompletedPayload(EventPayload):
    from_actor_id: str = Field(min_length=1)
    to_actor_id: str = Field(min_length=1)
    amount: Optional[float] = Field(default=None, ge=0.0)


class ActorBehaviorPayload(EventPayload):
    """tilt.detected / cooldown.violated; actor_id falls back to the event's actor_id."""

    actor_id: Optional[str] = None
    reason: Optional[str] = None


class AccountabilityPayload(EventPayload):
    action: str = Field(min_length=1)
    actor_id: Optional[str] = None


class ScamReportedPayload(EventPayload):
    accused_id: str = Field(min_length=1)
    reporter_id: Optional[str] = None
    report_id: Optional[str] = None


class ScamReportInvalidatedPayload(EventPayload):
    reporter_id: Optional[str] = None
    report_id: Optional[str] = None


class ScamFlagReversedPayload(EventPayload):
    actor_id: Optional[str] = None
    report_id: Optional[str] = None


# --- Published by scorers / rollup ---


class TrustCasinoUpdatedPayload(EventPayload):
    """previous_score / new_score / delta are composite scores; category_* describe the touched category."""

    venue_id: str
    category: str
    previous_score: float
    new_score: float
    delta: float
    reason: str
    source: str
    category_score: Optional[float] = None
    category_delta: Optional[float] = None
    severity: Optional[str] = None


class TrustDegenUpdatedPayload(EventPayload):
    actor_id: str
    previous_score: float
    new_score: float
    delta: float
    level: str
    reason: str
    source: str


class VenueRollupEntry(EventPayload):
    total_delta: float
    event_count: int
    last_severity: Optional[str] = None
    last_score: Optional[float] = None
    nerfs_24h: int = 0
    volatility_24h: float = 0.0
    risk_level: str = "low"


class ActorRollupEntry(EventPayload):
    total_delta_24h: float
    event_count_24h: int
    last_score: Optional[float] = None
    level: Optional[str] = None


class TrustCasinoRollupPayload(EventPayload):
    window_start: int
    window_end: int
    generated_at: int
    venues: dict[str, VenueRollupEntry]


class TrustDegenRollupPayload(EventPayload):
    window_start: int
    window_end: int
    generated_at: int
    actors: dict[str, ActorRollupEntry]


class StateRequestedPayload(EventPayload):
    scope: str = "both"


class StateSnapshotPayload(EventPayload):
    requester_id: str
    throttled: bool
    scope: str = "both"
    snapshot: Optional[dict[str, Any]] = None


P = TypeVar("P", bound=EventPayload)

EVENT_PAYLOADS: dict[str, type[EventPayload]] = {
    FAIRNESS_PUMP_DETECTED: AnomalySignalPayload,
    FAIRNESS_COMPRESSION_DETECTED: AnomalySignalPayload,
    FAIRNESS_CLUSTER_DETECTED: AnomalySignalPayload,
    FAIRNESS_DRIFT_DETECTED: AnomalySignalPayload,
    GAMEPLAY_SAMPLE_RECORDED: SampleRecordedPayload,
    GAMEPLAY_BATCH_RECORDED: BatchRecordedPayload,
    BONUS_UPDATED: BonusUpdatedPayload,
    BONUS_NERF_DETECTED: BonusNerfPayload,
    LINK_FLAGGED: LinkFlaggedPayload,
    USER_REPORT_FILED: UserReportPayload,
    CASINO_ROLLUP_COMPLETED: CasinoRollupPayload,
    DOMAIN_ROLLUP_COMPLETED: DomainRollupPayload,
    TIP_COMPLETED: TipCompletedPayload,
    TILT_DETECTED: ActorBehaviorPayload,
    COOLDOWN_VIOLATED: ActorBehaviorPayload,
    SCAM_REPORTED: ScamReportedPayload,
    SCAM_REPORT_INVALIDATED: ScamReportInvalidatedPayload,
    SCAM_FLAG_REVERSED: ScamFlagReversedPayload,
    ACCOUNTABILITY_SUCCESS: AccountabilityPayload,
    TRUST_CASINO_UPDATED: TrustCasinoUpdatedPayload,
    TRUST_DEGEN_UPDATED: TrustDegenUpdatedPayload,
    TRUST_CASINO_ROLLUP: TrustCasinoRollupPayload,
    TRUST_DEGEN_ROLLUP: TrustDegenRollupPayload,
    TRUST_STATE_REQUESTED: StateRequestedPayload,
    TRUST_STATE_SNAPSHOT: StateSnapshotPayload,
}


def _describe(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ())) or "<payload>"
        parts.append(f"{loc}: {e.get('msg', 'invalid')}")
    return "; ".join(parts)


def decode_payload(model: type[P], event: Event) -> P:
    """Validate event.payload against model; raise PayloadDecodeError on shape mismatch."""
    try:
        return model.model_validate(dict(event.payload))
    except ValidationError as e:
        raise PayloadDecodeError(event.type, _describe(e)) from e


def decode_event(event: Event) -> EventPayload:
    """Decode using the registered model for event.type."""
    model = EVENT_PAYLOADS.get(event.type)
    if model is None:
        raise PayloadDecodeError(event.type, "no payload model registered")
    return decode_payload(model, event)
