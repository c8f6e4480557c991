"""
Closed-form anomaly checks over outcome windows.

Flags RTP pumps, volatility compression, win clustering and RTP drift.
Fully explainable: each finding carries a severity, a confidence, a
human-readable reason and the numbers it was computed from. No ML.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import numpy as np

from trust_pipeline.analysis_engine.samples import OutcomeSample
from trust_pipeline.config.settings import DetectorConfig
from trust_pipeline.event_bus.payloads import (
    FAIRNESS_CLUSTER_DETECTED,
    FAIRNESS_COMPRESSION_DETECTED,
    FAIRNESS_DRIFT_DETECTED,
    FAIRNESS_PUMP_DETECTED,
    AnomalySignalPayload,
    AnomalyType,
    Severity,
)
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

EVENT_TYPE_BY_ANOMALY: dict[AnomalyType, str] = {
    AnomalyType.PUMP: FAIRNESS_PUMP_DETECTED,
    AnomalyType.VOLATILITY_COMPRESSION: FAIRNESS_COMPRESSION_DETECTED,
    AnomalyType.WIN_CLUSTERING: FAIRNESS_CLUSTER_DETECTED,
    AnomalyType.RTP_DRIFT: FAIRNESS_DRIFT_DETECTED,
}

SEVERITY_ORDER = (Severity.INFO, Severity.WARNING, Severity.CRITICAL)

# Risk score weights per check; compression shares the pump slot (it precedes pumps)
RISK_WEIGHTS: dict[AnomalyType, float] = {
    AnomalyType.PUMP: 0.4,
    AnomalyType.VOLATILITY_COMPRESSION: 0.4,
    AnomalyType.WIN_CLUSTERING: 0.3,
    AnomalyType.RTP_DRIFT: 0.3,
}
SEVERITY_RISK_POINTS: dict[Severity, float] = {
    Severity.INFO: 25.0,
    Severity.WARNING: 50.0,
    Severity.CRITICAL: 100.0,
}
DRIFT_MAX_SUBWINDOW = 50
DRIFT_MIN_SUBWINDOWS = 3


@dataclass(frozen=True)
class RTPStats:
    observed_rtp: float
    total_wagers: float
    total_payouts: float
    spin_count: int
    window_start: int
    window_end: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "observed_rtp": round(self.observed_rtp, 6),
            "total_wagers": self.total_wagers,
            "total_payouts": self.total_payouts,
            "spin_count": self.spin_count,
            "window_start": self.window_start,
            "window_end": self.window_end,
        }


@dataclass(frozen=True)
class AnomalyFinding:
    """
    Result of one check over one window.

    Converted into an AnomalySignal (with venue/session ids and timestamp)
    by the detector before publishing.
    """

    anomaly_type: AnomalyType
    severity: Severity
    confidence: float
    reason: str
    """Human-readable explanation of why this was flagged."""
    metadata: dict[str, Any] = field(default_factory=dict)
    """Thresholds and observed values used; for auditing and explainability."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "anomaly_type": self.anomaly_type.value,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class AnomalySignal:
    """Detector claim that an outcome stream deviates from an honest baseline. Never mutated."""

    venue_id: str
    anomaly_type: AnomalyType
    severity: Severity
    confidence: float
    reason: str
    timestamp: int
    session_id: str | None = None
    actor_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return EVENT_TYPE_BY_ANOMALY[self.anomaly_type]

    @property
    def dedup_key(self) -> str:
        return f"{self.venue_id}|{self.timestamp}|{self.anomaly_type.value}"

    def to_payload(self) -> dict[str, Any]:
        return AnomalySignalPayload(
            venue_id=self.venue_id,
            anomaly_type=self.anomaly_type,
            severity=self.severity,
            confidence=self.confidence,
            timestamp=self.timestamp,
            session_id=self.session_id,
            actor_id=self.actor_id,
            reason=self.reason,
            metadata=self.metadata,
        ).to_wire()

    @classmethod
    def from_finding(
        cls,
        finding: AnomalyFinding,
        *,
        venue_id: str,
        timestamp: int,
        session_id: str | None = None,
        actor_id: str | None = None,
    ) -> "AnomalySignal":
        return cls(
            venue_id=venue_id,
            anomaly_type=finding.anomaly_type,
            severity=finding.severity,
            confidence=finding.confidence,
            reason=finding.reason,
            timestamp=timestamp,
            session_id=session_id,
            actor_id=actor_id,
            metadata=dict(finding.metadata),
        )


def compute_rtp_stats(samples: Sequence[OutcomeSample]) -> RTPStats:
    """Observed RTP = sum(payout) / sum(wager); 0 when nothing was wagered."""
    if not samples:
        return RTPStats(0.0, 0.0, 0.0, 0, 0, 0)
    total_wagers = float(sum(s.wager_amount for s in samples))
    total_payouts = float(sum(s.payout_amount for s in samples))
    return RTPStats(
        observed_rtp=total_payouts / total_wagers if total_wagers > 0 else 0.0,
        total_wagers=total_wagers,
        total_payouts=total_payouts,
        spin_count=len(samples),
        window_start=samples[0].timestamp,
        window_end=samples[-1].timestamp,
    )


def check_pump(
    window: Sequence[OutcomeSample],
    baseline_rtp: float,
    config: DetectorConfig,
) -> AnomalyFinding | None:
    """
    Flag RTP pump: observed RTP above baseline (+ drift allowance) by more than pump_threshold.
    """
    stats = compute_rtp_stats(window)
    if stats.total_wagers <= 0:
        return None
    deviation = stats.observed_rtp - baseline_rtp - config.drift_allowance
    if deviation <= config.pump_threshold:
        return None
    confidence = min(1.0, deviation / config.pump_threshold)
    if deviation < config.pump_threshold * config.pump_critical_multiplier:
        severity = Severity.WARNING
    else:
        severity = Severity.CRITICAL
    return AnomalyFinding(
        anomaly_type=AnomalyType.PUMP,
        severity=severity,
        confidence=confidence,
        reason=(
            f"RTP {stats.observed_rtp * 100:.1f}% is {deviation * 100:.1f} points above "
            f"baseline {baseline_rtp * 100:.1f}% over {stats.spin_count} spins "
            f"(threshold: {config.pump_threshold * 100:.1f})"
        ),
        metadata={
            "observed_rtp": round(stats.observed_rtp, 6),
            "baseline_rtp": round(baseline_rtp, 6),
            "drift_allowance": config.drift_allowance,
            "deviation": round(deviation, 6),
            "threshold": config.pump_threshold,
            "window_size": stats.spin_count,
        },
    )


def check_volatility_compression(
    window: Sequence[OutcomeSample],
    config: DetectorConfig,
) -> AnomalyFinding | None:
    """
    Flag compression: variance of per-spin returns in the recent short window
    collapses relative to the longer comparison window.
    """
    if len(window) < config.compression_long_window:
        return None
    returns = np.array(
        [s.return_ratio for s in list(window)[-config.compression_long_window:]],
        dtype=float,
    )
    long_var = float(np.var(returns))
    if long_var <= 0:
        return None
    short_var = float(np.var(returns[-config.compression_short_window:]))
    ratio = short_var / long_var
    if ratio >= config.compression_ratio_threshold:
        return None
    severity = Severity.WARNING if ratio < config.compression_critical_ratio else Severity.INFO
    confidence = min(1.0, (config.compression_ratio_threshold - ratio) / config.compression_ratio_threshold)
    return AnomalyFinding(
        anomaly_type=AnomalyType.VOLATILITY_COMPRESSION,
        severity=severity,
        confidence=confidence,
        reason=(
            f"Payout variance compressed to {ratio:.2f}x of the {config.compression_long_window}-spin "
            f"baseline over the last {config.compression_short_window} spins "
            f"(threshold: {config.compression_ratio_threshold})"
        ),
        metadata={
            "variance_ratio": round(ratio, 6),
            "short_variance": round(short_var, 6),
            "long_variance": round(long_var, 6),
            "short_window": config.compression_short_window,
            "long_window": config.compression_long_window,
            "threshold": config.compression_ratio_threshold,
        },
    )


def _streak_stats(wins: np.ndarray) -> dict[str, float]:
    """Win streak summary plus z-score of the longest streak vs. a Bernoulli expectation."""
    streaks: list[int] = []
    current = 0
    for w in wins:
        if w:
            current += 1
        elif current:
            streaks.append(current)
            current = 0
    if current:
        streaks.append(current)
    n = len(wins)
    p = float(wins.mean()) if n else 0.0
    max_streak = max(streaks) if streaks else 0
    expected_max = math.log(n) / -math.log(p) if 0 < p < 1 and n > 1 else 1.0
    z_score = (max_streak - expected_max) / (expected_max / math.sqrt(n)) if expected_max > 0 and n else 0.0
    return {
        "win_streak_count": len(streaks),
        "max_streak": max_streak,
        "avg_streak_length": round(sum(streaks) / len(streaks), 4) if streaks else 0.0,
        "expected_max_streak": round(expected_max, 4),
        "z_score": round(z_score, 4),
    }


def check_win_clustering(
    window: Sequence[OutcomeSample],
    config: DetectorConfig,
) -> AnomalyFinding | None:
    """
    Flag win clustering: coefficient of variation of inter-win gaps vs. the
    geometric-distribution expectation sqrt(1 - p) for independent trials.
    """
    if len(window) < config.min_spins_required:
        return None
    wins = np.array([s.is_win for s in window], dtype=bool)
    p = float(wins.mean())
    if p <= 0.0 or p >= 1.0:
        return None
    gaps = np.diff(np.flatnonzero(wins))
    if len(gaps) < config.cluster_min_gaps:
        return None
    mean_gap = float(gaps.mean())
    observed_cv = float(gaps.std()) / mean_gap
    expected_cv = math.sqrt(1.0 - p)
    score = min(1.0, max(0.0, (observed_cv - expected_cv) / expected_cv))
    if score <= config.cluster_threshold:
        return None
    if score >= config.cluster_threshold * config.cluster_critical_multiplier:
        severity = Severity.CRITICAL
    else:
        severity = Severity.WARNING
    sample_confidence = min(1.0, len(window) / config.detection_window)
    streaks = _streak_stats(wins)
    return AnomalyFinding(
        anomaly_type=AnomalyType.WIN_CLUSTERING,
        severity=severity,
        confidence=sample_confidence * score,
        reason=(
            f"Wins are clustered: gap CV {observed_cv:.2f} vs {expected_cv:.2f} expected "
            f"(score: {score:.2f}, threshold: {config.cluster_threshold})"
        ),
        metadata={
            "cluster_score": round(score, 4),
            "observed_gap_cv": round(observed_cv, 4),
            "expected_gap_cv": round(expected_cv, 4),
            "win_rate": round(p, 4),
            "gap_count": int(len(gaps)),
            "window_size": len(window),
            "threshold": config.cluster_threshold,
            **streaks,
        },
    )


def _trend(values: Sequence[float]) -> tuple[float, float]:
    """Least-squares slope and Pearson correlation of values against their index."""
    if len(values) < 2:
        return 0.0, 0.0
    y = np.asarray(values, dtype=float)
    x = np.arange(len(y), dtype=float)
    x_diff = x - x.mean()
    y_diff = y - y.mean()
    denom_x = float(np.sum(x_diff * x_diff))
    denom_y = float(np.sum(y_diff * y_diff))
    numerator = float(np.sum(x_diff * y_diff))
    slope = numerator / denom_x if denom_x > 0 else 0.0
    correlation = numerator / math.sqrt(denom_x * denom_y) if denom_x > 0 and denom_y > 0 else 0.0
    return slope, correlation


def check_rtp_drift(
    window: Sequence[OutcomeSample],
    baseline_rtp: float,
    config: DetectorConfig,
) -> AnomalyFinding | None:
    """
    Flag consistent RTP drift: half-overlapping sub-window RTPs trend away from baseline.
    """
    samples = list(window)
    if len(samples) < config.min_spins_required * 2:
        return None
    size = min(DRIFT_MAX_SUBWINDOW, len(samples) // 3)
    step = max(1, size // 2)
    rtps = [
        compute_rtp_stats(samples[i:i + size]).observed_rtp
        for i in range(0, len(samples) - size + 1, step)
    ]
    if len(rtps) < DRIFT_MIN_SUBWINDOWS:
        return None
    slope, correlation = _trend(rtps)
    overall = compute_rtp_stats(samples)
    deviation_ratio = abs(overall.observed_rtp - baseline_rtp) / baseline_rtp
    trend_confidence = abs(correlation)
    if deviation_ratio >= config.drift_threshold * 2 and trend_confidence > 0.6:
        severity = Severity.CRITICAL
    elif deviation_ratio >= config.drift_threshold and trend_confidence > 0.4:
        severity = Severity.WARNING
    else:
        return None
    sample_confidence = min(1.0, len(samples) / (config.detection_window * 2))
    direction = "upward" if slope > 0 else "downward" if slope < 0 else "flat"
    return AnomalyFinding(
        anomaly_type=AnomalyType.RTP_DRIFT,
        severity=severity,
        confidence=trend_confidence * sample_confidence,
        reason=(
            f"RTP shows {direction} drift of {deviation_ratio * 100:.1f}% from baseline "
            f"across {len(rtps)} sub-windows"
        ),
        metadata={
            "observed_rtp": round(overall.observed_rtp, 6),
            "baseline_rtp": round(baseline_rtp, 6),
            "deviation_ratio": round(deviation_ratio, 6),
            "slope": round(slope, 6),
            "correlation": round(correlation, 4),
            "windows_analyzed": len(rtps),
        },
    )


def detect_anomalies(
    session_window: Sequence[OutcomeSample],
    baseline_rtp: float,
    config: DetectorConfig,
) -> list[AnomalyFinding]:
    """
    Run all checks independently over one session window.

    Pump and clustering use the most recent detection_window samples;
    compression and drift use the whole session window. Fewer than
    min_spins_required samples never produce findings. A failing check is
    logged and skipped; the others still run.
    """
    if len(session_window) < config.min_spins_required:
        return []
    samples = list(session_window)
    detection = samples[-config.detection_window:]

    checks: list[tuple[str, Callable[[], AnomalyFinding | None]]] = [
        ("pump", lambda: check_pump(detection, baseline_rtp, config)),
        ("volatility_compression", lambda: check_volatility_compression(samples, config)),
        ("win_clustering", lambda: check_win_clustering(detection, config)),
        ("rtp_drift", lambda: check_rtp_drift(samples, baseline_rtp, config)),
    ]
    findings: list[AnomalyFinding] = []
    for name, check in checks:
        try:
            finding = check()
            if finding is not None:
                findings.append(finding)
        except Exception as e:
            logger.warning("anomaly_check_failed", check=name, error=str(e))
    return findings


def risk_score(findings: Sequence[AnomalyFinding]) -> int:
    """0-100 weighted risk; pump and compression share one slot (the larger counts)."""
    slots: dict[str, float] = {}
    for f in findings:
        slot = "pump" if f.anomaly_type in (AnomalyType.PUMP, AnomalyType.VOLATILITY_COMPRESSION) else f.anomaly_type.value
        points = SEVERITY_RISK_POINTS[f.severity] * f.confidence * RISK_WEIGHTS[f.anomaly_type]
        slots[slot] = max(slots.get(slot, 0.0), points)
    return int(round(min(100.0, sum(slots.values()))))


def recommendations(findings: Sequence[AnomalyFinding], score: int) -> list[str]:
    out: list[str] = []
    for f in findings:
        if f.anomaly_type is AnomalyType.PUMP:
            out.append(
                "RTP far above baseline: may be a pump to encourage larger bets; reduce bet sizes."
                if f.severity is Severity.CRITICAL
                else "RTP above normal: stay cautious."
            )
        elif f.anomaly_type is AnomalyType.VOLATILITY_COMPRESSION:
            out.append("Payouts unusually smooth: this often precedes a pump.")
        elif f.anomaly_type is AnomalyType.WIN_CLUSTERING:
            out.append(
                "Unusual win clustering: patterns may not continue; set a stop-win limit."
                if f.severity is Severity.CRITICAL
                else "Some win clustering observed: keep bankroll discipline."
            )
        elif f.anomaly_type is AnomalyType.RTP_DRIFT:
            out.append(
                "Significant RTP drift from advertised: consider reporting the venue."
                if f.severity is Severity.CRITICAL
                else "RTP trending away from expected: monitor closely."
            )
    if score >= 70:
        out.append("Overall risk is high: consider taking a break.")
    elif score >= 40:
        out.append("Moderate anomalies detected: exercise extra caution.")
    elif not out:
        out.append("No significant anomalies detected.")
    return out


def max_severity(findings: Sequence[AnomalyFinding]) -> Severity | None:
    if not findings:
        return None
    return max((f.severity for f in findings), key=SEVERITY_ORDER.index)
