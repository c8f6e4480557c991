"""
Venue trust scorer.

Responsibilities:
- Translate fairness signals, bonus nerfs, link flags, user reports and
  external/domain rollups into category deltas on a venue profile.
- Deduplicate anomaly signals by (venue_id, timestamp, anomaly_type).
- Publish trust.casino.updated for every category mutation.
- Answer score / breakdown / explain queries; unknown venues report the
  neutral baseline without creating a profile.

Handlers decode payloads at entry and fail closed: a malformed payload is
logged and skipped, the profile is left untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlparse

from trust_pipeline.config.settings import VENUE_CATEGORIES, VenueScorerConfig
from trust_pipeline.core.clock import Clock, system_clock
from trust_pipeline.core.exceptions import PayloadDecodeError
from trust_pipeline.core.locks import KeyedLocks
from trust_pipeline.database.repository import Repository
from trust_pipeline.event_bus.bus import EventBus
from trust_pipeline.event_bus.models import Event, Subscription
from trust_pipeline.event_bus.payloads import (
    BONUS_NERF_DETECTED,
    BONUS_UPDATED,
    CASINO_ROLLUP_COMPLETED,
    DOMAIN_ROLLUP_COMPLETED,
    FAIRNESS_CLUSTER_DETECTED,
    FAIRNESS_COMPRESSION_DETECTED,
    FAIRNESS_DRIFT_DETECTED,
    FAIRNESS_PUMP_DETECTED,
    LINK_FLAGGED,
    TRUST_CASINO_UPDATED,
    USER_REPORT_FILED,
    AnomalySignalPayload,
    BonusNerfPayload,
    BonusUpdatedPayload,
    CasinoRollupPayload,
    DomainRollupPayload,
    LinkFlaggedPayload,
    TrustCasinoUpdatedPayload,
    UserReportPayload,
    decode_payload,
)
from trust_pipeline.trust.models import VenueTrustProfile, composite_score
from trust_pipeline.trust.store import ProfileRegistry
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

SOURCE = "venue_trust_scorer"

FAIRNESS_SIGNAL_TYPES = (
    FAIRNESS_PUMP_DETECTED,
    FAIRNESS_CLUSTER_DETECTED,
    FAIRNESS_DRIFT_DETECTED,
    FAIRNESS_COMPRESSION_DETECTED,
)

# External rollup delta field -> venue category
EXTERNAL_DELTA_CATEGORIES = (
    ("fairness_delta", "fairness"),
    ("payout_delta", "payout_speed"),
    ("bonus_delta", "bonus_terms"),
    ("compliance_delta", "compliance"),
    ("support_delta", "support"),
)

DOMAIN_DELTA_MIN = -8.0
DOMAIN_DELTA_MAX = 3.0
DOMAIN_DELTA_DIVISOR = 3.0
EXPLAIN_TOP_REASONS = 2


@dataclass(frozen=True)
class _Update:
    """A category mutation waiting to be published once the venue lock is released."""

    venue_id: str
    category: str
    previous_category: float
    new_category: float
    previous_composite: float
    new_composite: float
    reason: str
    severity: Optional[str]

    def to_payload(self) -> dict[str, Any]:
        return TrustCasinoUpdatedPayload(
            venue_id=self.venue_id,
            category=self.category,
            previous_score=round(self.previous_composite, 4),
            new_score=round(self.new_composite, 4),
            delta=round(self.new_composite - self.previous_composite, 4),
            category_score=round(self.new_category, 4),
            category_delta=round(self.new_category - self.previous_category, 4),
            reason=self.reason,
            source=SOURCE,
            severity=self.severity,
        ).to_wire()


def normalize_percent_drop(percent_drop: float) -> float:
    """Fraction of the bonus lost: values above 1 are percentages (25 -> 0.25)."""
    return percent_drop / 100.0 if percent_drop > 1 else percent_drop


def venue_from_url(url: str) -> str | None:
    """Hostname without a leading 'www.', or None when the URL has no host."""
    candidate = url if "://" in url else f"https://{url}"
    host = (urlparse(candidate).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host or None


class VenueTrustScorer:
    def __init__(
        self,
        bus: EventBus,
        config: VenueScorerConfig | None = None,
        *,
        repository: Repository | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._bus = bus
        self._config = config or VenueScorerConfig()
        self._clock = clock
        self._locks = KeyedLocks()
        self._profiles: ProfileRegistry[VenueTrustProfile] = ProfileRegistry(
            repository=repository,
            locks=self._locks,
            clock=clock,
            factory=lambda venue_id, now: VenueTrustProfile.fresh(venue_id, self._config, now),
            decoder=lambda data: VenueTrustProfile.from_dict(data, self._config),
            encoder=lambda profile: profile.to_dict(),
        )
        self._subscriptions: list[Subscription] = []

    @property
    def config(self) -> VenueScorerConfig:
        return self._config

    # --- lifecycle ---

    def start(self) -> None:
        if self._subscriptions:
            return
        subs = [
            (t, self._on_fairness_signal) for t in FAIRNESS_SIGNAL_TYPES
        ] + [
            (BONUS_NERF_DETECTED, self._on_bonus_nerf),
            (BONUS_UPDATED, self._on_bonus_updated),
            (CASINO_ROLLUP_COMPLETED, self._on_casino_rollup),
            (DOMAIN_ROLLUP_COMPLETED, self._on_domain_rollup),
            (LINK_FLAGGED, self._on_link_flagged),
            (USER_REPORT_FILED, self._on_user_report),
        ]
        self._subscriptions = [
            self._bus.subscribe(event_type, f"{SOURCE}.{event_type}", handler)
            for event_type, handler in subs
        ]

    def stop(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []

    def load_all(self) -> int:
        return self._profiles.load_all()

    def flush(self) -> int:
        return self._profiles.flush()

    # --- mutation core ---

    def _apply(
        self,
        venue_id: str,
        deltas: list[tuple[str, float]],
        *,
        reason: str,
        severity: str | None = None,
        dedup_key: str | None = None,
    ) -> list[_Update]:
        """Apply category deltas atomically for one venue and return the resulting updates."""
        updates: list[_Update] = []
        with self._locks.hold(venue_id):
            profile = self._profiles.get_or_create(venue_id)
            if dedup_key is not None:
                if profile.has_seen(dedup_key):
                    logger.debug("venue_signal_duplicate", venue_id=venue_id, dedup_key=dedup_key)
                    return []
                profile.mark_seen(dedup_key)
            now = self._clock()
            for category, delta in deltas:
                if delta == 0:
                    continue
                before = profile.composite
                previous, new = profile.apply(
                    category, delta, reason=reason, source=SOURCE, now=now, severity=severity
                )
                updates.append(
                    _Update(
                        venue_id=venue_id,
                        category=category,
                        previous_category=previous,
                        new_category=new,
                        previous_composite=before,
                        new_composite=profile.composite,
                        reason=reason,
                        severity=severity,
                    )
                )
            self._profiles.mark_dirty(venue_id)
        for u in updates:
            logger.info(
                "venue_score_updated",
                venue_id=venue_id,
                category=u.category,
                previous=round(u.previous_category, 4),
                new=round(u.new_category, 4),
                composite=round(u.new_composite, 4),
                reason=reason,
            )
        return updates

    def _publish(self, updates: list[_Update]) -> None:
        for u in updates:
            self._bus.publish(TRUST_CASINO_UPDATED, SOURCE, u.to_payload())

    def adjust(
        self,
        venue_id: str,
        category: str,
        delta: float,
        *,
        reason: str,
        severity: str | None = None,
    ) -> float:
        """Apply one category delta directly (moderation, adapters). Returns the new composite."""
        if category not in VENUE_CATEGORIES:
            raise ValueError(f"unknown venue category: {category}")
        self._publish(self._apply(venue_id, [(category, delta)], reason=reason, severity=severity))
        return self.get_score(venue_id)

    # --- handlers ---

    def _rejected(self, e: PayloadDecodeError) -> None:
        logger.warning("payload_rejected", event_type=e.event_type, handler_id=SOURCE, error=e.message)

    def _on_fairness_signal(self, event: Event) -> None:
        try:
            p = decode_payload(AnomalySignalPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        penalty = self._config.severity_penalties[p.severity.value] * p.confidence
        delta = -penalty
        reason = f"{p.anomaly_type.value} signal ({p.severity.value}, confidence {p.confidence:.2f})"
        if p.reason:
            reason = f"{reason}: {p.reason}"
        updates = self._apply(
            p.venue_id,
            [("fairness", delta), ("compliance", delta * self._config.compliance_share)],
            reason=reason,
            severity=p.severity.value,
            dedup_key=f"{p.venue_id}|{p.timestamp}|{p.anomaly_type.value}",
        )
        self._publish(updates)

    def _apply_nerf(self, venue_id: str, percent_drop: float) -> None:
        drop = normalize_percent_drop(percent_drop)
        penalty = min(self._config.bonus_nerf_max_penalty, drop * self._config.bonus_nerf_points_per_unit)
        severity = "critical" if penalty >= self._config.bonus_nerf_max_penalty else "warning"
        updates = self._apply(
            venue_id,
            [("bonus_terms", -penalty)],
            reason=f"Bonus nerf detected (-{drop * 100:.1f}%)",
            severity=severity,
        )
        self._publish(updates)

    def _on_bonus_nerf(self, event: Event) -> None:
        try:
            p = decode_payload(BonusNerfPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        self._apply_nerf(p.venue_id, p.percent_drop)

    def _on_bonus_updated(self, event: Event) -> None:
        """A bonus that shrank counts as a nerf; increases and incomplete updates are ignored."""
        try:
            p = decode_payload(BonusUpdatedPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        if p.old_amount is None or p.new_amount is None or p.old_amount <= 0:
            return
        if p.new_amount >= p.old_amount:
            return
        self._apply_nerf(p.venue_id, (p.old_amount - max(0.0, p.new_amount)) / p.old_amount)

    def _on_casino_rollup(self, event: Event) -> None:
        try:
            p = decode_payload(CasinoRollupPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        damping = self._config.external_damping
        origin = p.source or event.source
        for venue_id, ext in p.venues.items():
            deltas = [
                (category, getattr(ext, field_name) * damping)
                for field_name, category in EXTERNAL_DELTA_CATEGORIES
                if getattr(ext, field_name)
            ]
            if not deltas:
                continue
            self._publish(
                self._apply(venue_id, deltas, reason=f"External verification ({origin})")
            )

    def _on_domain_rollup(self, event: Event) -> None:
        try:
            p = decode_payload(DomainRollupPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        for domain, agg in p.domains.items():
            if agg.event_count == 0:
                continue
            avg = agg.total_delta / agg.event_count
            delta = max(DOMAIN_DELTA_MIN, min(DOMAIN_DELTA_MAX, avg / DOMAIN_DELTA_DIVISOR))
            self._publish(
                self._apply(
                    domain,
                    [("compliance", delta)],
                    reason=f"Domain rollup: {agg.event_count} events, avg {avg:+.1f}",
                    severity=agg.last_severity,
                )
            )

    def _on_link_flagged(self, event: Event) -> None:
        try:
            p = decode_payload(LinkFlaggedPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        venue_id = p.venue_id or venue_from_url(p.url or "")
        if not venue_id:
            logger.warning("link_flag_unresolved", url=p.url)
            return
        critical = p.risk_level.lower() == "critical"
        penalty = self._config.link_flag_critical_penalty if critical else self._config.link_flag_penalty
        self._publish(
            self._apply(
                venue_id,
                [("freespin_value", -penalty)],
                reason=f"Suspicious link flagged ({p.risk_level})",
                severity="critical" if critical else "warning",
            )
        )

    def _on_user_report(self, event: Event) -> None:
        try:
            p = decode_payload(UserReportPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        delta = p.sentiment * self._config.user_report_scale
        reason = "User report" + (f": {p.reason}" if p.reason else "")
        self._publish(self._apply(p.venue_id, [("user_reports", delta)], reason=reason))

    # --- queries ---

    def _snapshot(self, venue_id: str) -> dict[str, Any] | None:
        profile = self._profiles.get(venue_id)
        if profile is None:
            return None
        with self._locks.hold(venue_id):
            return profile.to_dict()

    def get_score(self, venue_id: str) -> float:
        """Composite score in [0, 100]; unknown venues report the neutral baseline."""
        return self.get_breakdown(venue_id)["composite"]

    def get_breakdown(self, venue_id: str) -> dict[str, Any]:
        data = self._snapshot(venue_id)
        if data is None:
            categories = {c: self._config.initial_category_score for c in VENUE_CATEGORIES}
            return {
                "venue_id": venue_id,
                "known": False,
                "composite": composite_score(categories, self._config.category_weights),
                "categories": categories,
                "weights": dict(self._config.category_weights),
            }
        return {
            "venue_id": venue_id,
            "known": True,
            "composite": composite_score(data["categories"], self._config.category_weights),
            "categories": data["categories"],
            "weights": dict(self._config.category_weights),
            "last_updated": data["last_updated"],
        }

    def get_profile(self, venue_id: str) -> dict[str, Any] | None:
        """Full persisted shape of a known venue, or None."""
        return self._snapshot(venue_id)

    def explain(self, venue_id: str) -> dict[str, Any]:
        """Per category: score, weight and the top contributions by absolute delta."""
        breakdown = self.get_breakdown(venue_id)
        data = self._snapshot(venue_id)
        history = data["history"] if data else []
        categories: dict[str, Any] = {}
        for category in VENUE_CATEGORIES:
            contributions = [h for h in history if h["category"] == category and h["delta"] != 0]
            contributions.sort(key=lambda h: abs(h["delta"]), reverse=True)
            categories[category] = {
                "score": breakdown["categories"][category],
                "weight": self._config.category_weights[category],
                "top_reasons": [
                    {
                        "reason": h["reason"],
                        "delta": h["delta"],
                        "timestamp": h["timestamp"],
                        "severity": h["severity"],
                    }
                    for h in contributions[:EXPLAIN_TOP_REASONS]
                ],
            }
        return {
            "venue_id": venue_id,
            "known": breakdown["known"],
            "composite": breakdown["composite"],
            "categories": categories,
        }

    def venue_ids(self) -> list[str]:
        return self._profiles.ids()
