"""
Gameplay anomaly detector.

Responsibilities:
- Keep a bounded sliding window of outcome samples per session (actor, venue).
- Evaluate the window at min_spins_required, then every detection_interval samples.
- Publish one AnomalySignal event per finding (pump, compression, clustering, drift).
- Keep recent AnalysisReports per actor for explainability and mobile summaries.

Samples arrive by direct call (submit / submit_batch / submit_compressed) or
through the bus (gameplay.sample.recorded, gameplay.batch.recorded).
Signals are published after the session lock is released.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from trust_pipeline.analysis_engine.anomaly import (
    AnomalyFinding,
    AnomalySignal,
    RTPStats,
    compute_rtp_stats,
    detect_anomalies,
    max_severity,
    recommendations,
    risk_score,
)
from trust_pipeline.analysis_engine.samples import OutcomeSample, decode_compressed_samples
from trust_pipeline.config.settings import DetectorConfig
from trust_pipeline.core.clock import Clock, system_clock
from trust_pipeline.core.exceptions import PayloadDecodeError
from trust_pipeline.core.locks import KeyedLocks
from trust_pipeline.event_bus.bus import EventBus
from trust_pipeline.event_bus.models import Event, Subscription
from trust_pipeline.event_bus.payloads import (
    GAMEPLAY_BATCH_RECORDED,
    GAMEPLAY_SAMPLE_RECORDED,
    AnomalyType,
    BatchRecordedPayload,
    SampleRecordedPayload,
    decode_payload,
)
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

SOURCE = "anomaly_detector"

# Bit flags for mobile summaries
FLAG_PUMP = 1
FLAG_CLUSTER = 2
FLAG_DRIFT = 4
FLAG_COMPRESSION = 8

_FLAG_BY_TYPE = {
    AnomalyType.PUMP: FLAG_PUMP,
    AnomalyType.WIN_CLUSTERING: FLAG_CLUSTER,
    AnomalyType.RTP_DRIFT: FLAG_DRIFT,
    AnomalyType.VOLATILITY_COMPRESSION: FLAG_COMPRESSION,
}


def default_session_id(actor_id: str, venue_id: str) -> str:
    return f"{actor_id}:{venue_id}"


def _session_lock_key(actor_id: str, venue_id: str) -> str:
    return f"{actor_id}\x1f{venue_id}"


@dataclass
class _Session:
    session_id: str
    actor_id: str
    venue_id: str
    samples: deque[OutcomeSample]
    started_at: int
    last_activity: int
    total_submitted: int = 0
    last_evaluated_count: int = 0


@dataclass(frozen=True)
class AnalysisReport:
    """One evaluation of a session window: stats, signals, risk score and advice."""

    session_id: str
    actor_id: str
    venue_id: str
    analyzed_at: int
    rtp: RTPStats
    baseline_rtp: float
    signals: tuple[AnomalySignal, ...] = ()
    risk_score: int = 0
    recommendations: tuple[str, ...] = field(default_factory=tuple)

    @property
    def flags(self) -> int:
        bits = 0
        for s in self.signals:
            bits |= _FLAG_BY_TYPE[s.anomaly_type]
        return bits

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "actor_id": self.actor_id,
            "venue_id": self.venue_id,
            "analyzed_at": self.analyzed_at,
            "rtp": self.rtp.to_dict(),
            "baseline_rtp": self.baseline_rtp,
            "signals": [s.to_payload() for s in self.signals],
            "risk_score": self.risk_score,
            "recommendations": list(self.recommendations),
        }


def _validate_sample(sample: OutcomeSample) -> None:
    for name in ("wager_amount", "payout_amount"):
        value = getattr(sample, name)
        if not math.isfinite(value) or value < 0:
            raise ValueError(f"{name} must be finite and >= 0, got {value!r}")
    if not sample.actor_id or not sample.venue_id:
        raise ValueError("actor_id and venue_id are required")


class GameplayAnomalyDetector:
    """
    Per-session sliding windows plus closed-form anomaly checks.

    Sessions are keyed by (actor_id, venue_id). One lock per session serializes
    window mutation and evaluation; the session map and report history share a
    registry lock.
    """

    def __init__(
        self,
        bus: EventBus,
        config: DetectorConfig | None = None,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self._bus = bus
        self._config = config or DetectorConfig()
        self._clock = clock
        self._locks = KeyedLocks()
        self._registry_lock = threading.Lock()
        self._sessions: dict[tuple[str, str], _Session] = {}
        self._reports: dict[str, deque[AnalysisReport]] = {}
        self._game_baselines: dict[str, float] = {}
        self._subscriptions: list[Subscription] = []

    @property
    def config(self) -> DetectorConfig:
        return self._config

    # --- lifecycle ---

    def start(self) -> None:
        """Subscribe to gameplay ingestion events."""
        if self._subscriptions:
            return
        self._subscriptions = [
            self._bus.subscribe(GAMEPLAY_SAMPLE_RECORDED, f"{SOURCE}.sample", self._on_sample),
            self._bus.subscribe(GAMEPLAY_BATCH_RECORDED, f"{SOURCE}.batch", self._on_batch),
        ]

    def stop(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []

    # --- ingestion ---

    def submit(self, sample: OutcomeSample) -> list[AnomalySignal]:
        """Append one sample; returns (and publishes) any signals from an evaluation it triggered."""
        _validate_sample(sample)
        signals = self._ingest(sample)
        self._publish(signals)
        return signals

    def submit_batch(self, samples: Iterable[OutcomeSample]) -> list[AnomalySignal]:
        """Submit samples in order, exactly as if each was submitted alone. Validates all first."""
        batch = list(samples)
        for s in batch:
            _validate_sample(s)
        out: list[AnomalySignal] = []
        for s in batch:
            signals = self._ingest(s)
            self._publish(signals)
            out.extend(signals)
        return out

    def submit_compressed(
        self,
        data: str,
        *,
        actor_id: str,
        venue_id: str,
        game_id: str = "unknown",
        session_id: str | None = None,
    ) -> list[AnomalySignal]:
        """Decode 'wager|payout|timestamp[|bonus];...' and submit. Malformed data rejects the whole batch."""
        samples = decode_compressed_samples(
            data,
            session_id=session_id or default_session_id(actor_id, venue_id),
            actor_id=actor_id,
            venue_id=venue_id,
            game_id=game_id,
        )
        return self.submit_batch(samples)

    def _ingest(self, sample: OutcomeSample) -> list[AnomalySignal]:
        key = sample.session_key
        with self._locks.hold(_session_lock_key(*key)):
            session = self._get_or_create_session(sample)
            session.samples.append(sample)
            session.total_submitted += 1
            session.last_activity = sample.timestamp
            if not self._due(session):
                return []
            report = self._evaluate(session)
        self._store_report(report)
        return list(report.signals)

    def _get_or_create_session(self, sample: OutcomeSample) -> _Session:
        key = sample.session_key
        with self._registry_lock:
            session = self._sessions.get(key)
            if session is None:
                session = _Session(
                    session_id=sample.session_id or default_session_id(*key),
                    actor_id=sample.actor_id,
                    venue_id=sample.venue_id,
                    samples=deque(maxlen=self._config.window_size),
                    started_at=sample.timestamp,
                    last_activity=sample.timestamp,
                )
                self._sessions[key] = session
                logger.debug(
                    "detector_session_started",
                    actor_id=sample.actor_id,
                    venue_id=sample.venue_id,
                )
            return session

    def _due(self, session: _Session) -> bool:
        cfg = self._config
        if session.total_submitted < cfg.min_spins_required:
            return False
        if session.last_evaluated_count == 0:
            return True
        return session.total_submitted - session.last_evaluated_count >= cfg.detection_interval

    # --- evaluation ---

    def _baseline_for(self, window: Sequence[OutcomeSample]) -> float:
        """Wager-weighted blend of per-game baselines; configured baseline for unknown games."""
        if not self._game_baselines:
            return self._config.baseline_rtp
        total = 0.0
        weighted = 0.0
        for s in window:
            total += s.wager_amount
            weighted += s.wager_amount * self._game_baselines.get(s.game_id, self._config.baseline_rtp)
        return weighted / total if total > 0 else self._config.baseline_rtp

    def _evaluate(self, session: _Session) -> AnalysisReport:
        """Run all checks over the session window. Caller holds the session lock."""
        cfg = self._config
        window = list(session.samples)
        detection = window[-cfg.detection_window:]
        baseline = self._baseline_for(detection)
        findings: list[AnomalyFinding] = detect_anomalies(window, baseline, cfg)
        session.last_evaluated_count = session.total_submitted
        timestamp = window[-1].timestamp
        signals = tuple(
            AnomalySignal.from_finding(
                f,
                venue_id=session.venue_id,
                timestamp=timestamp,
                session_id=session.session_id,
                actor_id=session.actor_id,
            )
            for f in findings
        )
        score = risk_score(findings)
        report = AnalysisReport(
            session_id=session.session_id,
            actor_id=session.actor_id,
            venue_id=session.venue_id,
            analyzed_at=self._clock(),
            rtp=compute_rtp_stats(detection),
            baseline_rtp=baseline,
            signals=signals,
            risk_score=score,
            recommendations=tuple(recommendations(findings, score)),
        )
        top = max_severity(findings)
        logger.info(
            "detector_session_evaluated",
            actor_id=session.actor_id,
            venue_id=session.venue_id,
            spins=len(window),
            signals=len(signals),
            max_severity=top.value if top else None,
            risk_score=score,
        )
        return report

    def analyze_session(self, actor_id: str, venue_id: str) -> AnalysisReport | None:
        """
        Force an evaluation now. Returns None (and emits nothing) for unknown
        sessions or sessions below min_spins_required.
        """
        key = (actor_id, venue_id)
        with self._locks.hold(_session_lock_key(*key)):
            with self._registry_lock:
                session = self._sessions.get(key)
            if session is None or len(session.samples) < self._config.min_spins_required:
                return None
            report = self._evaluate(session)
        self._store_report(report)
        self._publish(list(report.signals))
        return report

    def _store_report(self, report: AnalysisReport) -> None:
        with self._registry_lock:
            history = self._reports.get(report.actor_id)
            if history is None:
                history = deque(maxlen=self._config.report_history_size)
                self._reports[report.actor_id] = history
            history.append(report)

    def _publish(self, signals: Sequence[AnomalySignal]) -> None:
        for signal in signals:
            self._bus.publish(signal.event_type, SOURCE, signal.to_payload(), actor_id=signal.actor_id)

    # --- bus handlers (fail closed) ---

    def _on_sample(self, event: Event) -> None:
        try:
            p = decode_payload(SampleRecordedPayload, event)
        except PayloadDecodeError as e:
            logger.warning("payload_rejected", event_type=e.event_type, handler_id=f"{SOURCE}.sample", error=e.message)
            return
        self.submit(
            OutcomeSample(
                session_id=p.session_id or default_session_id(p.actor_id, p.venue_id),
                actor_id=p.actor_id,
                venue_id=p.venue_id,
                game_id=p.game_id,
                wager_amount=p.wager_amount,
                payout_amount=p.payout_amount,
                timestamp=p.timestamp if p.timestamp is not None else event.timestamp,
                is_bonus=p.is_bonus,
            )
        )

    def _on_batch(self, event: Event) -> None:
        try:
            p = decode_payload(BatchRecordedPayload, event)
            self.submit_compressed(
                p.data,
                actor_id=p.actor_id,
                venue_id=p.venue_id,
                game_id=p.game_id,
                session_id=p.session_id,
            )
        except PayloadDecodeError as e:
            logger.warning("payload_rejected", event_type=e.event_type, handler_id=f"{SOURCE}.batch", error=e.message)

    # --- baselines / queries ---

    def set_game_baseline(self, game_id: str, rtp: float) -> None:
        """Override the expected RTP for one game (fraction, e.g. 0.97)."""
        if not (0 < rtp <= 2) or not math.isfinite(rtp):
            raise ValueError(f"rtp must be in (0, 2], got {rtp!r}")
        with self._registry_lock:
            self._game_baselines[game_id] = rtp
        logger.info("detector_game_baseline_set", game_id=game_id, rtp=rtp)

    def get_reports(self, actor_id: str, limit: int | None = None) -> list[AnalysisReport]:
        """Recent reports for an actor, oldest first."""
        with self._registry_lock:
            reports = list(self._reports.get(actor_id, ()))
        if limit is not None:
            reports = reports[-limit:] if limit > 0 else []
        return reports

    def mobile_summary(self, actor_id: str, venue_id: str | None = None) -> dict[str, Any] | None:
        """
        Compact summary of the latest report for low-bandwidth clients.

        Keys: s (risk score), f (bit flags: 1 pump, 2 cluster, 4 drift,
        8 compression), r (observed RTP percent), n (spins), t (analyzed_at).
        """
        reports = self.get_reports(actor_id)
        if venue_id is not None:
            reports = [r for r in reports if r.venue_id == venue_id]
        if not reports:
            return None
        latest = reports[-1]
        return {
            "s": latest.risk_score,
            "f": latest.flags,
            "r": round(latest.rtp.observed_rtp * 100, 1),
            "n": latest.rtp.spin_count,
            "t": latest.analyzed_at,
        }

    def session_sample_count(self, actor_id: str, venue_id: str) -> int:
        with self._registry_lock:
            session = self._sessions.get((actor_id, venue_id))
            return len(session.samples) if session else 0

    def end_session(self, actor_id: str, venue_id: str) -> AnalysisReport | None:
        """Run a final evaluation (when enough samples exist) and drop the session."""
        report = self.analyze_session(actor_id, venue_id)
        self.clear_session(actor_id, venue_id)
        return report

    def clear_session(self, actor_id: str, venue_id: str) -> bool:
        with self._locks.hold(_session_lock_key(actor_id, venue_id)):
            with self._registry_lock:
                removed = self._sessions.pop((actor_id, venue_id), None)
        if removed is not None:
            logger.info("detector_session_cleared", actor_id=actor_id, venue_id=venue_id)
        return removed is not None

    def session_count(self) -> int:
        with self._registry_lock:
            return len(self._sessions)
