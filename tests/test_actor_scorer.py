"""
Tests for actor trust scoring: lazy decay, caps, scam flags, bonuses.
"""

from __future__ import annotations

import pytest

from trust_pipeline.database.repository import KIND_ACTOR_PROFILES, Repository
from trust_pipeline.event_bus import EventBus
from trust_pipeline.event_bus.payloads import (
    ACCOUNTABILITY_SUCCESS,
    COOLDOWN_VIOLATED,
    SCAM_FLAG_REVERSED,
    SCAM_REPORT_INVALIDATED,
    SCAM_REPORTED,
    TILT_DETECTED,
    TIP_COMPLETED,
    TRUST_DEGEN_UPDATED,
)
from trust_pipeline.trust import ActorTrustScorer, TrustLevel

HOUR_MS = 3_600_000


def _scorer(bus, clock, backend=None) -> ActorTrustScorer:
    repo = Repository(backend, KIND_ACTOR_PROFILES) if backend is not None else None
    scorer = ActorTrustScorer(bus, repository=repo, clock=clock)
    scorer.start()
    return scorer


def _tilt(bus, actor="degen-1"):
    bus.publish(TILT_DETECTED, "tilt_monitor", {"actorId": actor})


def test_tilt_decays_back_to_base(bus, clock):
    """One tilt costs 5 points and recovers at 0.5 per hour: fully gone after 10 hours."""
    scorer = _scorer(bus, clock)
    t0 = clock.now
    _tilt(bus)
    assert scorer.get_score("degen-1") == pytest.approx(65.0)
    assert scorer.get_score("degen-1", t0 + 4 * HOUR_MS) == pytest.approx(67.0)
    clock.advance(hours=10)
    assert scorer.get_score("degen-1") == pytest.approx(70.0)


def test_score_is_independent_of_event_order(bus, clock):
    """Tilt then cooldown two hours apart equals cooldown then tilt: both 62 at t0+3h."""
    first = _scorer(bus, clock)
    t0 = clock.now
    _tilt(bus, "a")
    bus.publish(COOLDOWN_VIOLATED, "tilt_monitor", {"actorId": "b"})
    clock.advance(hours=2)
    bus.publish(COOLDOWN_VIOLATED, "tilt_monitor", {"actorId": "a"})
    _tilt(bus, "b")
    at = t0 + 3 * HOUR_MS
    assert first.get_score("a", at) == pytest.approx(62.0)
    assert first.get_score("b", at) == pytest.approx(62.0)


def test_indicator_penalty_is_capped(bus, clock):
    scorer = _scorer(bus, clock)
    for _ in range(6):
        _tilt(bus)
    breakdown = scorer.get_breakdown("degen-1")
    assert breakdown["indicator_penalty"] == pytest.approx(25.0)
    assert breakdown["score"] == pytest.approx(45.0)
    assert breakdown["level"] == "low"


def test_scam_flags_cap_and_reversal(bus, clock):
    scorer = _scorer(bus, clock)
    for report_id in ("r1", "r2", "r3"):
        bus.publish(SCAM_REPORTED, "moderation", {"accusedId": "scammer", "reportId": report_id})
    assert scorer.get_score("scammer") == pytest.approx(30.0)
    assert scorer.get_level("scammer") is TrustLevel.HIGH_RISK

    bus.publish(SCAM_FLAG_REVERSED, "moderation", {"actorId": "scammer", "reportId": "r1"})
    assert scorer.get_score("scammer") == pytest.approx(30.0)
    bus.publish(SCAM_FLAG_REVERSED, "moderation", {"actorId": "scammer", "reportId": "r2"})
    assert scorer.get_score("scammer") == pytest.approx(50.0)


def test_scam_flags_do_not_decay(bus, clock):
    scorer = _scorer(bus, clock)
    assert scorer.add_scam_flag("scammer", report_id="r1") is True
    clock.advance(hours=1000)
    assert scorer.get_score("scammer") == pytest.approx(50.0)


def test_duplicate_report_id_is_ignored(bus, clock, record):
    scorer = _scorer(bus, clock)
    updates = record(TRUST_DEGEN_UPDATED)
    assert scorer.add_scam_flag("scammer", report_id="r1") is True
    assert scorer.add_scam_flag("scammer", report_id="r1") is False
    assert scorer.get_score("scammer") == pytest.approx(50.0)
    assert len(updates.events) == 1


def test_reversing_without_flags_is_a_noop(bus, clock):
    scorer = _scorer(bus, clock)
    assert scorer.reverse_scam_flag("clean") is False
    assert scorer.get_score("clean") == pytest.approx(70.0)


def test_tip_bonuses_for_sender_and_recipient(bus, clock):
    scorer = _scorer(bus, clock)
    bus.publish(TIP_COMPLETED, "tips", {"fromActorId": "sender", "toActorId": "recipient", "amount": 150})
    assert scorer.get_score("sender") == pytest.approx(73.0)
    assert scorer.get_score("recipient") == pytest.approx(70.5)


def test_self_tip_is_ignored(bus, clock):
    scorer = _scorer(bus, clock)
    bus.publish(TIP_COMPLETED, "tips", {"fromActorId": "me", "toActorId": "me", "amount": 500})
    assert scorer.actor_ids() == []


def test_bonus_total_is_capped(bus, clock):
    scorer = _scorer(bus, clock)
    for _ in range(5):
        bus.publish(ACCOUNTABILITY_SUCCESS, "vault", {"actorId": "saver", "action": "smart-withdrawal"})
    breakdown = scorer.get_breakdown("saver")
    assert breakdown["bonus_total"] == pytest.approx(15.0)
    assert breakdown["score"] == pytest.approx(85.0)
    assert breakdown["level"] == "high"


def test_unknown_accountability_action_uses_default_bonus(bus, clock):
    scorer = _scorer(bus, clock)
    bus.publish(ACCOUNTABILITY_SUCCESS, "vault", {"action": "journal-entry"}, actor_id="saver")
    assert scorer.get_score("saver") == pytest.approx(71.0)


def test_false_report_penalizes_reporter(bus, clock):
    scorer = _scorer(bus, clock)
    bus.publish(SCAM_REPORT_INVALIDATED, "moderation", {"reporterId": "liar", "reportId": "r9"})
    assert scorer.get_score("liar") == pytest.approx(67.0)
    clock.advance(hours=6)
    assert scorer.get_score("liar") == pytest.approx(70.0)


def test_actor_id_falls_back_to_event_actor(bus, clock):
    """Behavior events may carry the actor only on the envelope; with neither they are dropped."""
    scorer = _scorer(bus, clock)
    bus.publish(TILT_DETECTED, "tilt_monitor", {}, actor_id="envelope-actor")
    bus.publish(TILT_DETECTED, "tilt_monitor", {})
    assert scorer.actor_ids() == ["envelope-actor"]
    assert scorer.get_score("envelope-actor") == pytest.approx(65.0)


def test_degen_updated_event(bus, clock, record):
    _scorer(bus, clock)
    updates = record(TRUST_DEGEN_UPDATED)
    _tilt(bus)
    assert len(updates.events) == 1
    event = updates.events[0]
    assert event.actor_id == "degen-1"
    assert event.payload["previousScore"] == pytest.approx(70.0)
    assert event.payload["newScore"] == pytest.approx(65.0)
    assert event.payload["delta"] == pytest.approx(-5.0)
    assert event.payload["level"] == "neutral"
    assert event.payload["reason"] == "tilt"


@pytest.mark.parametrize(
    "score,level",
    [
        (100, TrustLevel.VERY_HIGH),
        (95, TrustLevel.VERY_HIGH),
        (94.99, TrustLevel.HIGH),
        (80, TrustLevel.HIGH),
        (79.9, TrustLevel.NEUTRAL),
        (60, TrustLevel.NEUTRAL),
        (59.9, TrustLevel.LOW),
        (40, TrustLevel.LOW),
        (39.9, TrustLevel.HIGH_RISK),
        (0, TrustLevel.HIGH_RISK),
    ],
)
def test_level_boundaries(score, level):
    assert TrustLevel.from_score(score) is level


def test_unknown_actor_reports_base_score(bus, clock):
    scorer = _scorer(bus, clock)
    breakdown = scorer.get_breakdown("stranger")
    assert breakdown["known"] is False
    assert breakdown["score"] == pytest.approx(70.0)
    assert scorer.actor_ids() == []


def test_explain_shows_remaining_indicator_magnitude(bus, clock):
    scorer = _scorer(bus, clock)
    _tilt(bus)
    clock.advance(hours=2)
    explained = scorer.explain("degen-1")
    assert [i["reason"] for i in explained["indicators"]] == ["tilt"]
    assert explained["indicators"][0]["remaining"] == pytest.approx(4.0)
    assert explained["scam_flags"] == []
    assert scorer.explain("stranger")["indicators"] == []


def test_profiles_survive_flush_and_reload(bus, clock, backend):
    scorer = _scorer(bus, clock, backend)
    t0 = clock.now
    _tilt(bus)
    scorer.add_scam_flag("degen-1", report_id="r1")
    assert scorer.flush() == 1

    restored = _scorer(EventBus(clock=clock), clock, backend)
    assert restored.load_all() == 1
    assert restored.get_score("degen-1", t0 + 4 * HOUR_MS) == pytest.approx(47.0)
    assert restored.add_scam_flag("degen-1", report_id="r1") is False
