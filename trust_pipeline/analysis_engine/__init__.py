"""
Gameplay anomaly detection: sliding windows, closed-form checks, signals.
"""

from trust_pipeline.analysis_engine.anomaly import (
    AnomalyFinding,
    AnomalySignal,
    RTPStats,
    compute_rtp_stats,
    detect_anomalies,
)
from trust_pipeline.analysis_engine.detector import AnalysisReport, GameplayAnomalyDetector
from trust_pipeline.analysis_engine.samples import (
    OutcomeSample,
    decode_compressed_samples,
    encode_compressed_samples,
)

__all__ = [
    "AnalysisReport",
    "AnomalyFinding",
    "AnomalySignal",
    "GameplayAnomalyDetector",
    "OutcomeSample",
    "RTPStats",
    "compute_rtp_stats",
    "decode_compressed_samples",
    "detect_anomalies",
    "encode_compressed_samples",
]
