"""
Tests for gameplay anomaly detection: checks in isolation and the session detector.
"""

from __future__ import annotations

import pytest

from trust_pipeline.analysis_engine import (
    GameplayAnomalyDetector,
    OutcomeSample,
    encode_compressed_samples,
)
from trust_pipeline.analysis_engine.anomaly import (
    check_pump,
    check_rtp_drift,
    check_volatility_compression,
    check_win_clustering,
)
from trust_pipeline.analysis_engine.detector import default_session_id
from trust_pipeline.config import DetectorConfig
from trust_pipeline.core.exceptions import PayloadDecodeError
from trust_pipeline.event_bus import AnomalyType, EventBus, Severity
from trust_pipeline.event_bus.payloads import (
    FAIRNESS_PUMP_DETECTED,
    GAMEPLAY_BATCH_RECORDED,
    GAMEPLAY_SAMPLE_RECORDED,
)

ACTOR = "degen-1"
VENUE = "stake"
CFG = DetectorConfig()


def _sample(payout: float, wager: float = 1.0, ts: int = 0, game: str = "slots") -> OutcomeSample:
    return OutcomeSample(
        session_id=default_session_id(ACTOR, VENUE),
        actor_id=ACTOR,
        venue_id=VENUE,
        game_id=game,
        wager_amount=wager,
        payout_amount=payout,
        timestamp=1_700_000_000_000 + ts,
    )


def _series(payouts, wager: float = 1.0, game: str = "slots") -> list[OutcomeSample]:
    return [_sample(p, wager=wager, ts=i * 1000, game=game) for i, p in enumerate(payouts)]


def _detector(bus, **overrides) -> GameplayAnomalyDetector:
    det = GameplayAnomalyDetector(bus, DetectorConfig(**overrides))
    det.start()
    return det


# --- checks in isolation ---


def test_pump_critical_when_far_above_baseline():
    """RTP 1.20 vs 0.96 baseline: deviation 0.24 >= 1.5 x 0.10 -> critical, full confidence."""
    finding = check_pump(_series([1.2] * 20), 0.96, CFG)
    assert finding is not None
    assert finding.anomaly_type is AnomalyType.PUMP
    assert finding.severity is Severity.CRITICAL
    assert finding.confidence == pytest.approx(1.0)
    assert finding.metadata["observed_rtp"] == pytest.approx(1.2)


def test_pump_warning_between_threshold_and_critical():
    finding = check_pump(_series([1.08] * 20), 0.96, CFG)
    assert finding is not None
    assert finding.severity is Severity.WARNING


def test_no_pump_at_or_near_baseline():
    assert check_pump(_series([0.96] * 50), 0.96, CFG) is None
    assert check_pump(_series([1.05] * 50), 0.96, CFG) is None


def test_pump_respects_drift_allowance():
    """Allowance is subtracted from the deviation before comparing to the threshold."""
    cfg = DetectorConfig(drift_allowance=0.05)
    assert check_pump(_series([1.08] * 20), 0.96, cfg) is None


def test_compression_warning_when_variance_collapses():
    """80 volatile spins (returns 0/2) followed by 20 flat spins: ratio 0 -> warning."""
    payouts = [0.0, 2.0] * 40 + [1.0] * 20
    finding = check_volatility_compression(_series(payouts), CFG)
    assert finding is not None
    assert finding.anomaly_type is AnomalyType.VOLATILITY_COMPRESSION
    assert finding.severity is Severity.WARNING
    assert finding.metadata["variance_ratio"] == pytest.approx(0.0)


def test_compression_info_for_moderate_collapse():
    """Short-window variance around 0.29x of the long window is an info-level precursor."""
    payouts = [0.0, 2.0] * 40 + [0.5, 1.5] * 10
    finding = check_volatility_compression(_series(payouts), CFG)
    assert finding is not None
    assert finding.severity is Severity.INFO
    assert 0.1 <= finding.metadata["variance_ratio"] < 0.3


def test_compression_needs_long_window():
    assert check_volatility_compression(_series([0.0, 2.0] * 40 + [1.0] * 19), CFG) is None


def test_win_clustering_detects_bursts():
    """Three bursts of 10 consecutive wins in 100 spins is far burstier than independent trials."""
    wins = set(range(0, 10)) | set(range(45, 55)) | set(range(90, 100))
    payouts = [2.0 if i in wins else 0.0 for i in range(100)]
    finding = check_win_clustering(_series(payouts), CFG)
    assert finding is not None
    assert finding.anomaly_type is AnomalyType.WIN_CLUSTERING
    assert finding.severity is Severity.CRITICAL
    assert finding.metadata["cluster_score"] == pytest.approx(1.0)
    assert finding.metadata["max_streak"] == 10
    assert finding.metadata["win_streak_count"] == 3


def test_win_clustering_ignores_regular_pattern():
    """Alternating win/loss has perfectly regular gaps (CV 0) and never clusters."""
    assert check_win_clustering(_series([2.0, 0.0] * 50), CFG) is None


def test_win_clustering_needs_enough_gaps():
    payouts = [2.0] * 3 + [0.0] * 97
    assert check_win_clustering(_series(payouts), CFG) is None


def test_rtp_drift_detects_steady_climb():
    payouts = [0.8 + 0.8 * i / 150 for i in range(150)]
    finding = check_rtp_drift(_series(payouts), 0.96, CFG)
    assert finding is not None
    assert finding.anomaly_type is AnomalyType.RTP_DRIFT
    assert finding.severity is Severity.CRITICAL
    assert finding.metadata["slope"] > 0


def test_rtp_drift_needs_twice_min_spins():
    payouts = [0.8 + 0.8 * i / 39 for i in range(39)]
    assert check_rtp_drift(_series(payouts), 0.96, CFG) is None


# --- session detector ---


def test_below_min_spins_never_emits(bus, record):
    """19 wildly profitable spins: no signal, no event, forced analysis returns None."""
    det = _detector(bus)
    fairness = record("fairness.*")
    signals = det.submit_batch(_series([50.0] * 19))
    assert signals == []
    assert fairness.events == []
    assert det.analyze_session(ACTOR, VENUE) is None
    assert fairness.events == []


def test_pump_emitted_at_min_spins(bus, record):
    det = _detector(bus)
    pumps = record(FAIRNESS_PUMP_DETECTED)
    signals = det.submit_batch(_series([1.2] * 20))
    assert [s.anomaly_type for s in signals] == [AnomalyType.PUMP]
    assert len(pumps.events) == 1
    payload = pumps.events[0].payload
    assert payload["venueId"] == VENUE
    assert payload["anomalyType"] == "pump"
    assert payload["severity"] == "critical"
    assert payload["sessionId"] == default_session_id(ACTOR, VENUE)
    assert pumps.events[0].actor_id == ACTOR


def test_evaluation_cadence(bus):
    """First evaluation at min_spins, then again only after detection_interval new samples."""
    det = _detector(bus)
    assert det.submit_batch(_series([1.2] * 20))
    for _ in range(199):
        assert det.submit(_sample(1.2)) == []
    assert det.submit(_sample(1.2))
    assert len(det.get_reports(ACTOR)) == 2


def test_window_is_bounded(bus):
    det = _detector(bus, window_size=100, detection_window=100, compression_long_window=100)
    det.submit_batch(_series([0.5] * 150))
    assert det.session_sample_count(ACTOR, VENUE) == 100


def test_compressed_batch_matches_individual_samples(clock):
    """Decoded compressed batches produce exactly the signals of the same samples sent one by one."""
    samples = _series([3.0, 0.0] * 20)
    bus_a = EventBus(clock=clock)
    bus_b = EventBus(clock=clock)
    det_a = GameplayAnomalyDetector(bus_a, clock=clock)
    det_b = GameplayAnomalyDetector(bus_b, clock=clock)

    from_samples = [det_a.submit(s) for s in samples]
    from_batch = det_b.submit_compressed(encode_compressed_samples(samples), actor_id=ACTOR, venue_id=VENUE, game_id="slots")

    flat = [s.to_payload() for group in from_samples for s in group]
    assert flat
    assert flat == [s.to_payload() for s in from_batch]


def test_malformed_compressed_batch_applies_nothing(bus):
    det = _detector(bus)
    with pytest.raises(PayloadDecodeError):
        det.submit_compressed("1|2|1000;1|oops|2000", actor_id=ACTOR, venue_id=VENUE)
    assert det.session_count() == 0


def test_negative_wager_rejected(bus):
    det = _detector(bus)
    with pytest.raises(ValueError):
        det.submit(_sample(1.0, wager=-1.0))
    assert det.session_count() == 0


def test_bus_ingestion_and_fail_closed(bus, record):
    """Samples published on the bus are analyzed; malformed sample payloads are dropped."""
    det = _detector(bus)
    pumps = record(FAIRNESS_PUMP_DETECTED)
    bus.publish(GAMEPLAY_SAMPLE_RECORDED, "adapter", {"actorId": ACTOR, "venueId": VENUE, "wagerAmount": -5, "payoutAmount": 1})
    assert det.session_count() == 0
    for i in range(20):
        bus.publish(
            GAMEPLAY_SAMPLE_RECORDED,
            "adapter",
            {"actorId": ACTOR, "venueId": VENUE, "wagerAmount": 1.0, "payoutAmount": 1.3, "timestamp": 1000 + i},
        )
    assert len(pumps.events) == 1


def test_bus_batch_ingestion(bus, record):
    det = _detector(bus)
    pumps = record(FAIRNESS_PUMP_DETECTED)
    data = ";".join(f"1|1.25|{1000 + i}" for i in range(20))
    bus.publish(GAMEPLAY_BATCH_RECORDED, "mobile", {"actorId": ACTOR, "venueId": VENUE, "data": data})
    assert det.session_sample_count(ACTOR, VENUE) == 20
    assert len(pumps.events) == 1
    bus.publish(GAMEPLAY_BATCH_RECORDED, "mobile", {"actorId": ACTOR, "venueId": VENUE, "data": "garbage"})
    assert det.session_sample_count(ACTOR, VENUE) == 20


def test_game_baseline_suppresses_pump(bus):
    """A game configured with a high expected RTP is judged against that baseline."""
    det = _detector(bus)
    det.set_game_baseline("crash", 1.2)
    assert det.submit_batch(_series([1.2] * 20, game="crash")) == []


def test_report_risk_score_and_mobile_summary(bus):
    det = _detector(bus)
    det.submit_batch(_series([1.2] * 20))
    report = det.get_reports(ACTOR)[-1]
    assert report.risk_score == 40
    assert report.recommendations
    summary = det.mobile_summary(ACTOR, VENUE)
    assert summary["f"] & 1
    assert summary["n"] == 20
    assert summary["r"] == pytest.approx(120.0)


def test_end_session_analyzes_then_clears(bus):
    det = _detector(bus)
    det.submit_batch(_series([0.9] * 30))
    report = det.end_session(ACTOR, VENUE)
    assert report is not None
    assert det.session_count() == 0
    assert det.clear_session(ACTOR, VENUE) is False
