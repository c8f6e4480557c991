"""
Actor trust scorer.

Behavior indicators (tilt, cooldown violations, false reports) decay linearly
and are evaluated lazily at read time; no background timer is involved.
Scam flags persist until explicitly reversed. Bonuses (tips, accountability
actions) are capped in total.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from trust_pipeline.config.settings import ActorScorerConfig
from trust_pipeline.core.clock import Clock, system_clock
from trust_pipeline.core.exceptions import PayloadDecodeError
from trust_pipeline.core.locks import KeyedLocks
from trust_pipeline.database.repository import Repository
from trust_pipeline.event_bus.bus import EventBus
from trust_pipeline.event_bus.models import Event, Subscription
from trust_pipeline.event_bus.payloads import (
    ACCOUNTABILITY_SUCCESS,
    COOLDOWN_VIOLATED,
    SCAM_FLAG_REVERSED,
    SCAM_REPORT_INVALIDATED,
    SCAM_REPORTED,
    TILT_DETECTED,
    TIP_COMPLETED,
    TRUST_DEGEN_UPDATED,
    AccountabilityPayload,
    ActorBehaviorPayload,
    ScamFlagReversedPayload,
    ScamReportedPayload,
    ScamReportInvalidatedPayload,
    TipCompletedPayload,
    TrustDegenUpdatedPayload,
    decode_payload,
)
from trust_pipeline.trust.models import (
    ActorTrustProfile,
    Bonus,
    Indicator,
    ScamFlag,
    TrustLevel,
)
from trust_pipeline.trust.store import ProfileRegistry
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

SOURCE = "actor_trust_scorer"

REASON_TILT = "tilt"
REASON_COOLDOWN = "cooldown"
REASON_FALSE_REPORT = "false_report"

Mutation = Callable[[ActorTrustProfile, int], bool]


@dataclass(frozen=True)
class _Update:
    actor_id: str
    previous_score: float
    new_score: float
    reason: str

    def to_payload(self) -> dict[str, Any]:
        return TrustDegenUpdatedPayload(
            actor_id=self.actor_id,
            previous_score=round(self.previous_score, 4),
            new_score=round(self.new_score, 4),
            delta=round(self.new_score - self.previous_score, 4),
            level=TrustLevel.from_score(self.new_score).value,
            reason=self.reason,
            source=SOURCE,
        ).to_wire()


class ActorTrustScorer:
    def __init__(
        self,
        bus: EventBus,
        config: ActorScorerConfig | None = None,
        *,
        repository: Repository | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._bus = bus
        self._config = config or ActorScorerConfig()
        self._clock = clock
        self._locks = KeyedLocks()
        self._profiles: ProfileRegistry[ActorTrustProfile] = ProfileRegistry(
            repository=repository,
            locks=self._locks,
            clock=clock,
            factory=lambda actor_id, now: ActorTrustProfile.fresh(actor_id, self._config, now),
            decoder=lambda data: ActorTrustProfile.from_dict(data, self._config),
            encoder=lambda profile: profile.to_dict(),
        )
        self._subscriptions: list[Subscription] = []

    @property
    def config(self) -> ActorScorerConfig:
        return self._config

    # --- lifecycle ---

    def start(self) -> None:
        if self._subscriptions:
            return
        subs = [
            (TIP_COMPLETED, self._on_tip),
            (ACCOUNTABILITY_SUCCESS, self._on_accountability),
            (TILT_DETECTED, self._on_tilt),
            (COOLDOWN_VIOLATED, self._on_cooldown),
            (SCAM_REPORTED, self._on_scam_reported),
            (SCAM_REPORT_INVALIDATED, self._on_report_invalidated),
            (SCAM_FLAG_REVERSED, self._on_flag_reversed),
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

    def _mutate(self, actor_id: str, mutation: Mutation, reason: str) -> _Update | None:
        """Run mutation under the actor lock; returns the score change, or None when nothing changed."""
        with self._locks.hold(actor_id):
            profile = self._profiles.get_or_create(actor_id)
            now = self._clock()
            previous = profile.score(now, self._config)
            if not mutation(profile, now):
                return None
            profile.prune(now, self._config)
            profile.last_updated = now
            new = profile.score(now, self._config)
            self._profiles.mark_dirty(actor_id)
        logger.info(
            "actor_score_updated",
            actor_id=actor_id,
            previous=round(previous, 4),
            new=round(new, 4),
            reason=reason,
        )
        return _Update(actor_id=actor_id, previous_score=previous, new_score=new, reason=reason)

    def _publish(self, update: _Update | None) -> None:
        if update is not None:
            self._bus.publish(TRUST_DEGEN_UPDATED, SOURCE, update.to_payload(), actor_id=update.actor_id)

    def _add_indicator(self, actor_id: str, weight: float, reason: str) -> None:
        def mutation(profile: ActorTrustProfile, now: int) -> bool:
            profile.indicators.append(Indicator(weight=weight, applied_at=now, reason=reason))
            return True

        self._publish(self._mutate(actor_id, mutation, reason))

    def _add_bonus(self, actor_id: str, amount: float, reason: str) -> None:
        if amount <= 0:
            return

        def mutation(profile: ActorTrustProfile, now: int) -> bool:
            profile.bonuses.append(Bonus(amount=amount, applied_at=now, reason=reason))
            return True

        self._publish(self._mutate(actor_id, mutation, reason))

    def add_scam_flag(self, actor_id: str, *, reason: str = "scam_reported", report_id: str | None = None) -> bool:
        """Flag an actor. A report_id already flagged on this actor is ignored. Returns True when applied."""

        def mutation(profile: ActorTrustProfile, now: int) -> bool:
            if report_id is not None and profile.has_report(report_id):
                logger.info("scam_report_duplicate", actor_id=actor_id, report_id=report_id)
                return False
            profile.scam_flags.append(ScamFlag(applied_at=now, reason=reason, report_id=report_id))
            return True

        update = self._mutate(actor_id, mutation, reason)
        self._publish(update)
        return update is not None

    def reverse_scam_flag(self, actor_id: str, report_id: str | None = None) -> bool:
        """Remove the flag for report_id, or the most recent flag when report_id is None."""

        def mutation(profile: ActorTrustProfile, now: int) -> bool:
            for i in range(len(profile.scam_flags) - 1, -1, -1):
                if report_id is None or profile.scam_flags[i].report_id == report_id:
                    del profile.scam_flags[i]
                    return True
            return False

        update = self._mutate(actor_id, mutation, "scam_flag_reversed")
        self._publish(update)
        return update is not None

    # --- handlers ---

    def _rejected(self, e: PayloadDecodeError) -> None:
        logger.warning("payload_rejected", event_type=e.event_type, handler_id=SOURCE, error=e.message)

    def _resolve_actor(self, payload_actor: str | None, event: Event) -> str | None:
        actor_id = payload_actor or event.actor_id
        if not actor_id:
            logger.warning("payload_rejected", event_type=event.type, handler_id=SOURCE, error="actor_id missing")
            return None
        return actor_id

    def _on_tip(self, event: Event) -> None:
        try:
            p = decode_payload(TipCompletedPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        if p.from_actor_id == p.to_actor_id:
            logger.warning("self_tip_ignored", actor_id=p.from_actor_id)
            return
        cfg = self._config
        sender_bonus = cfg.tip_sender_bonus
        if p.amount is not None and p.amount > cfg.large_tip_amount:
            sender_bonus += cfg.large_tip_bonus
        self._add_bonus(p.from_actor_id, sender_bonus, "tip_sent")
        self._add_bonus(p.to_actor_id, cfg.tip_recipient_bonus, "tip_received")

    def _on_accountability(self, event: Event) -> None:
        try:
            p = decode_payload(AccountabilityPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        actor_id = self._resolve_actor(p.actor_id, event)
        if actor_id is None:
            return
        amount = self._config.accountability_bonuses.get(p.action, self._config.default_accountability_bonus)
        self._add_bonus(actor_id, amount, f"accountability:{p.action}")

    def _on_behavior(self, event: Event, reason: str) -> None:
        try:
            p = decode_payload(ActorBehaviorPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        actor_id = self._resolve_actor(p.actor_id, event)
        if actor_id is None:
            return
        self._add_indicator(actor_id, self._config.indicator_weight, reason)

    def _on_tilt(self, event: Event) -> None:
        self._on_behavior(event, REASON_TILT)

    def _on_cooldown(self, event: Event) -> None:
        self._on_behavior(event, REASON_COOLDOWN)

    def _on_scam_reported(self, event: Event) -> None:
        try:
            p = decode_payload(ScamReportedPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        self.add_scam_flag(p.accused_id, report_id=p.report_id)

    def _on_report_invalidated(self, event: Event) -> None:
        try:
            p = decode_payload(ScamReportInvalidatedPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        reporter_id = self._resolve_actor(p.reporter_id, event)
        if reporter_id is None:
            return
        self._add_indicator(reporter_id, self._config.false_report_weight, REASON_FALSE_REPORT)

    def _on_flag_reversed(self, event: Event) -> None:
        try:
            p = decode_payload(ScamFlagReversedPayload, event)
        except PayloadDecodeError as e:
            self._rejected(e)
            return
        actor_id = self._resolve_actor(p.actor_id, event)
        if actor_id is None:
            return
        if not self.reverse_scam_flag(actor_id, p.report_id):
            logger.info("scam_flag_reverse_noop", actor_id=actor_id, report_id=p.report_id)

    # --- queries ---

    def _copy(self, actor_id: str) -> ActorTrustProfile | None:
        profile = self._profiles.get(actor_id)
        if profile is None:
            return None
        with self._locks.hold(actor_id):
            return ActorTrustProfile.from_dict(profile.to_dict(), self._config)

    def get_score(self, actor_id: str, at_ms: int | None = None) -> float:
        """Composite at at_ms (default now). Unknown actors report base_score."""
        profile = self._copy(actor_id)
        if profile is None:
            return self._config.base_score
        return profile.score(self._clock() if at_ms is None else at_ms, self._config)

    def get_level(self, actor_id: str, at_ms: int | None = None) -> TrustLevel:
        return TrustLevel.from_score(self.get_score(actor_id, at_ms))

    def get_breakdown(self, actor_id: str, at_ms: int | None = None) -> dict[str, Any]:
        at = self._clock() if at_ms is None else at_ms
        cfg = self._config
        profile = self._copy(actor_id) or ActorTrustProfile.fresh(actor_id, cfg, at)
        score = profile.score(at, cfg)
        return {
            "actor_id": actor_id,
            "known": self._profiles.get(actor_id) is not None,
            "score": score,
            "level": TrustLevel.from_score(score).value,
            "base_score": profile.base_score,
            "indicator_penalty": profile.indicator_penalty(at, cfg),
            "flag_penalty": profile.flag_penalty(cfg),
            "bonus_total": profile.bonus_total(cfg),
            "at_ms": at,
        }

    def explain(self, actor_id: str, at_ms: int | None = None) -> dict[str, Any]:
        """Breakdown plus active indicators (with remaining magnitude), flags and bonuses."""
        at = self._clock() if at_ms is None else at_ms
        out = self.get_breakdown(actor_id, at)
        profile = self._copy(actor_id)
        if profile is None:
            out.update(indicators=[], scam_flags=[], bonuses=[])
            return out
        out["indicators"] = [
            {**i.to_dict(), "remaining": round(i.effective(at, self._config.decay_per_hour), 4)}
            for i in profile.indicators
            if i.effective(at, self._config.decay_per_hour) > 0
        ]
        out["scam_flags"] = [f.to_dict() for f in profile.scam_flags]
        out["bonuses"] = [b.to_dict() for b in profile.bonuses]
        return out

    def actor_ids(self) -> list[str]:
        return self._profiles.ids()
