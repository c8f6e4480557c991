"""
Tests for venue trust scoring: category deltas, dedup, damping, persistence.
"""

from __future__ import annotations

import pytest

from trust_pipeline.config import VenueScorerConfig
from trust_pipeline.database.repository import KIND_VENUE_PROFILES, Repository
from trust_pipeline.event_bus import EventBus
from trust_pipeline.event_bus.payloads import (
    BONUS_NERF_DETECTED,
    BONUS_UPDATED,
    CASINO_ROLLUP_COMPLETED,
    DOMAIN_ROLLUP_COMPLETED,
    FAIRNESS_PUMP_DETECTED,
    LINK_FLAGGED,
    TRUST_CASINO_UPDATED,
    USER_REPORT_FILED,
)
from trust_pipeline.trust import VenueTrustScorer
from trust_pipeline.trust.venue_scorer import normalize_percent_drop, venue_from_url


def _scorer(bus, clock, backend=None, config=None) -> VenueTrustScorer:
    repo = Repository(backend, KIND_VENUE_PROFILES) if backend is not None else None
    scorer = VenueTrustScorer(bus, config, repository=repo, clock=clock)
    scorer.start()
    return scorer


def _pump(bus, venue="stake", severity="critical", confidence=1.0, ts=1000):
    return bus.publish(
        FAIRNESS_PUMP_DETECTED,
        "anomaly_detector",
        {
            "venueId": venue,
            "anomalyType": "pump",
            "severity": severity,
            "confidence": confidence,
            "timestamp": ts,
        },
    )


def test_critical_pump_updates_fairness_and_compliance(bus, clock, record):
    """Fairness 50 - 12 = 38, compliance takes a quarter share: 47; composite 46.25."""
    scorer = _scorer(bus, clock)
    updates = record(TRUST_CASINO_UPDATED)
    _pump(bus)

    breakdown = scorer.get_breakdown("stake")
    assert breakdown["known"] is True
    assert breakdown["categories"]["fairness"] == pytest.approx(38.0)
    assert breakdown["categories"]["compliance"] == pytest.approx(47.0)
    assert breakdown["composite"] == pytest.approx(46.25)

    assert [e.payload["category"] for e in updates.events] == ["fairness", "compliance"]
    first = updates.events[0].payload
    assert first["venueId"] == "stake"
    assert first["previousScore"] == pytest.approx(50.0)
    assert first["newScore"] == pytest.approx(46.4)
    assert first["categoryScore"] == pytest.approx(38.0)
    assert first["categoryDelta"] == pytest.approx(-12.0)
    assert first["severity"] == "critical"
    assert first["source"] == "venue_trust_scorer"
    assert updates.events[1].payload["newScore"] == pytest.approx(46.25)


def test_duplicate_signal_applied_once(bus, clock, record):
    scorer = _scorer(bus, clock)
    updates = record(TRUST_CASINO_UPDATED)
    _pump(bus)
    _pump(bus)
    assert scorer.get_breakdown("stake")["categories"]["fairness"] == pytest.approx(38.0)
    assert len(updates.events) == 2

    _pump(bus, ts=2000)
    assert scorer.get_breakdown("stake")["categories"]["fairness"] == pytest.approx(26.0)


def test_dedup_memory_is_bounded(bus, clock):
    """Beyond dedup_limit the oldest key is forgotten, so a very old replay applies again."""
    scorer = _scorer(bus, clock, config=VenueScorerConfig(dedup_limit=2))
    for ts in (1, 2, 3):
        _pump(bus, severity="info", ts=ts)
    assert scorer.get_breakdown("stake")["categories"]["fairness"] == pytest.approx(44.0)
    _pump(bus, severity="info", ts=1)
    assert scorer.get_breakdown("stake")["categories"]["fairness"] == pytest.approx(42.0)
    _pump(bus, severity="info", ts=1)
    assert scorer.get_breakdown("stake")["categories"]["fairness"] == pytest.approx(42.0)


def test_confidence_scales_penalty(bus, clock):
    scorer = _scorer(bus, clock)
    _pump(bus, severity="warning", confidence=0.5)
    assert scorer.get_breakdown("stake")["categories"]["fairness"] == pytest.approx(47.0)


def test_bonus_nerf_fraction_and_percent_are_equivalent(bus, clock, record):
    scorer = _scorer(bus, clock)
    updates = record(TRUST_CASINO_UPDATED)
    bus.publish(BONUS_NERF_DETECTED, "bonus_tracker", {"venueId": "a", "percentDrop": 0.25})
    bus.publish(BONUS_NERF_DETECTED, "bonus_tracker", {"venueId": "b", "percentDrop": 25})
    assert scorer.get_breakdown("a")["categories"]["bonus_terms"] == pytest.approx(42.5)
    assert scorer.get_breakdown("b")["categories"]["bonus_terms"] == pytest.approx(42.5)
    assert {e.payload["severity"] for e in updates.events} == {"warning"}


def test_bonus_nerf_penalty_is_capped(bus, clock, record):
    scorer = _scorer(bus, clock)
    updates = record(TRUST_CASINO_UPDATED)
    bus.publish(BONUS_NERF_DETECTED, "bonus_tracker", {"venueId": "stake", "percentDrop": 0.9})
    assert scorer.get_breakdown("stake")["categories"]["bonus_terms"] == pytest.approx(35.0)
    assert updates.events[0].payload["severity"] == "critical"


def test_shrinking_bonus_update_counts_as_nerf(bus, clock):
    scorer = _scorer(bus, clock)
    bus.publish(BONUS_UPDATED, "bonus_tracker", {"venueId": "stake", "oldAmount": 100, "newAmount": 75})
    assert scorer.get_breakdown("stake")["categories"]["bonus_terms"] == pytest.approx(42.5)
    bus.publish(BONUS_UPDATED, "bonus_tracker", {"venueId": "stake", "oldAmount": 75, "newAmount": 120})
    assert scorer.get_breakdown("stake")["categories"]["bonus_terms"] == pytest.approx(42.5)


def test_external_rollup_is_damped(bus, clock):
    """External deltas move categories by 20%; unknown fields in the rollup are ignored."""
    scorer = _scorer(bus, clock)
    bus.publish(
        CASINO_ROLLUP_COMPLETED,
        "review_aggregator",
        {
            "venues": {
                "stake": {"fairnessDelta": -20, "payoutDelta": 10, "internalScores": {"x": 1}},
            }
        },
    )
    categories = scorer.get_breakdown("stake")["categories"]
    assert categories["fairness"] == pytest.approx(46.0)
    assert categories["payout_speed"] == pytest.approx(52.0)
    assert categories["support"] == pytest.approx(50.0)


def test_domain_rollup_average_is_scaled_and_clamped(bus, clock):
    scorer = _scorer(bus, clock)
    bus.publish(
        DOMAIN_ROLLUP_COMPLETED,
        "domain_monitor",
        {
            "domains": {
                "stake": {"totalDelta": -30, "eventCount": 2},
                "shady.example": {"totalDelta": -60, "eventCount": 2, "lastSeverity": "critical"},
                "quiet.example": {"totalDelta": 0, "eventCount": 0},
            }
        },
    )
    assert scorer.get_breakdown("stake")["categories"]["compliance"] == pytest.approx(45.0)
    assert scorer.get_breakdown("shady.example")["categories"]["compliance"] == pytest.approx(42.0)
    assert "quiet.example" not in scorer.venue_ids()


def test_link_flag_resolves_venue_from_url(bus, clock):
    scorer = _scorer(bus, clock)
    bus.publish(LINK_FLAGGED, "link_scanner", {"url": "https://www.Shady.example/promo", "riskLevel": "critical"})
    bus.publish(LINK_FLAGGED, "link_scanner", {"venueId": "stake"})
    assert scorer.get_breakdown("shady.example")["categories"]["freespin_value"] == pytest.approx(40.0)
    assert scorer.get_breakdown("stake")["categories"]["freespin_value"] == pytest.approx(45.0)


def test_user_report_sentiment(bus, clock):
    scorer = _scorer(bus, clock)
    bus.publish(USER_REPORT_FILED, "adapter", {"venueId": "stake", "sentiment": -0.5, "reason": "slow payout"})
    assert scorer.get_breakdown("stake")["categories"]["user_reports"] == pytest.approx(48.0)


def test_malformed_payloads_fail_closed(bus, clock, record):
    """Out-of-range confidence or a missing link target leaves no profile behind."""
    scorer = _scorer(bus, clock)
    updates = record(TRUST_CASINO_UPDATED)
    _pump(bus, confidence=1.5)
    bus.publish(LINK_FLAGGED, "link_scanner", {"riskLevel": "critical"})
    bus.publish(USER_REPORT_FILED, "adapter", {"venueId": "stake", "sentiment": 3})
    assert scorer.venue_ids() == []
    assert updates.events == []


def test_unknown_venue_reports_baseline_without_creating_profile(bus, clock):
    scorer = _scorer(bus, clock)
    breakdown = scorer.get_breakdown("ghost")
    assert breakdown["known"] is False
    assert breakdown["composite"] == pytest.approx(50.0)
    assert scorer.get_score("ghost") == pytest.approx(50.0)
    assert scorer.get_profile("ghost") is None
    assert scorer.venue_ids() == []


def test_categories_clamp_at_zero(bus, clock):
    scorer = _scorer(bus, clock)
    scorer.adjust("stake", "fairness", -80, reason="manual review")
    assert scorer.get_breakdown("stake")["categories"]["fairness"] == 0.0
    history = scorer.get_profile("stake")["history"]
    assert history[-1]["delta"] == pytest.approx(-50.0)
    with pytest.raises(ValueError):
        scorer.adjust("stake", "vibes", 1, reason="nope")


def test_explain_lists_top_contributions(bus, clock):
    scorer = _scorer(bus, clock)
    for delta, reason in ((-3, "small"), (-10, "large"), (-1, "tiny")):
        scorer.adjust("stake", "fairness", delta, reason=reason)
    explained = scorer.explain("stake")
    fairness = explained["categories"]["fairness"]
    assert fairness["score"] == pytest.approx(36.0)
    assert fairness["weight"] == 30.0
    assert [r["reason"] for r in fairness["top_reasons"]] == ["large", "small"]
    assert explained["categories"]["support"]["top_reasons"] == []


def test_profiles_survive_flush_and_reload(bus, clock, backend):
    """Scores and seen signal keys are persisted; a replayed signal is still a duplicate."""
    scorer = _scorer(bus, clock, backend)
    _pump(bus)
    assert scorer.flush() == 1
    assert scorer.flush() == 0

    other_bus = EventBus(clock=clock)
    restored = _scorer(other_bus, clock, backend)
    assert restored.load_all() == 1
    assert restored.get_breakdown("stake")["composite"] == pytest.approx(46.25)
    _pump(other_bus)
    assert restored.get_breakdown("stake")["categories"]["fairness"] == pytest.approx(38.0)


def test_corrupted_record_restarts_at_baseline(clock, backend):
    backend.ensure_schema()
    backend.put(KIND_VENUE_PROFILES, "broken", "{not json")
    scorer = _scorer(EventBus(clock=clock), clock, backend)
    assert scorer.load_all() == 1
    breakdown = scorer.get_breakdown("broken")
    assert breakdown["known"] is True
    assert breakdown["composite"] == pytest.approx(50.0)
    assert scorer.flush() == 1


def test_url_and_percent_helpers():
    assert venue_from_url("www.stake.com/promo") == "stake.com"
    assert venue_from_url("") is None
    assert normalize_percent_drop(40) == pytest.approx(0.4)
    assert normalize_percent_drop(0.4) == pytest.approx(0.4)
    assert normalize_percent_drop(1) == 1
