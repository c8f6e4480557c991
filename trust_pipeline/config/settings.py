"""
Pipeline settings: explicit, validated, immutable configuration.

Built once at startup (defaults or load_config_from_env) and passed by value
into each component. Validation failures raise ConfigurationError.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from trust_pipeline.core.exceptions import ConfigurationError

VENUE_CATEGORIES: tuple[str, ...] = (
    "fairness",
    "payout_speed",
    "bonus_terms",
    "user_reports",
    "freespin_value",
    "compliance",
    "support",
)

DEFAULT_CATEGORY_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        "fairness": 30.0,
        "payout_speed": 20.0,
        "bonus_terms": 15.0,
        "user_reports": 15.0,
        "freespin_value": 10.0,
        "compliance": 5.0,
        "support": 5.0,
    }
)

DEFAULT_SEVERITY_PENALTIES: Mapping[str, float] = MappingProxyType(
    {"info": 2.0, "warning": 6.0, "critical": 12.0}
)

DEFAULT_ACCOUNTABILITY_BONUSES: Mapping[str, float] = MappingProxyType(
    {
        "cooldown-accepted": 2.0,
        "vault-used": 3.0,
        "phone-a-friend": 2.0,
        "smart-withdrawal": 4.0,
    }
)


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


@dataclass(frozen=True)
class BusConfig:
    """history_size: ring buffer capacity for audit/replay."""

    history_size: int = 2000

    def __post_init__(self) -> None:
        _require(self.history_size >= 1, "history_size must be >= 1")


@dataclass(frozen=True)
class DetectorConfig:
    """
    Thresholds and window sizes for gameplay anomaly detection.

    RTP values are fractions (0.96 = 96%). pump_threshold is absolute RTP
    points above baseline (0.10 = 10 percentage points).
    """

    window_size: int = 400
    detection_window: int = 100
    detection_interval: int = 200
    min_spins_required: int = 20
    baseline_rtp: float = 0.96
    drift_allowance: float = 0.0
    pump_threshold: float = 0.10
    pump_critical_multiplier: float = 1.5
    compression_short_window: int = 20
    compression_long_window: int = 100
    compression_ratio_threshold: float = 0.3
    compression_critical_ratio: float = 0.1
    cluster_threshold: float = 0.75
    cluster_critical_multiplier: float = 1.2
    cluster_min_gaps: int = 5
    drift_threshold: float = 0.05
    report_history_size: int = 50
    mobile_batch_size: int = 25

    def __post_init__(self) -> None:
        _require(self.min_spins_required >= 2, "min_spins_required must be >= 2")
        _require(
            self.min_spins_required <= self.detection_window <= self.window_size,
            "expected min_spins_required <= detection_window <= window_size",
        )
        _require(self.detection_interval >= 1, "detection_interval must be >= 1")
        _require(self.baseline_rtp > 0, "baseline_rtp must be > 0")
        _require(self.pump_threshold > 0, "pump_threshold must be > 0")
        _require(self.pump_critical_multiplier >= 1, "pump_critical_multiplier must be >= 1")
        _require(
            2 <= self.compression_short_window < self.compression_long_window <= self.window_size,
            "expected 2 <= compression_short_window < compression_long_window <= window_size",
        )
        _require(
            0 < self.compression_critical_ratio <= self.compression_ratio_threshold < 1,
            "compression ratios must satisfy 0 < critical <= threshold < 1",
        )
        _require(0 < self.cluster_threshold <= 1, "cluster_threshold must be in (0, 1]")
        _require(self.cluster_min_gaps >= 2, "cluster_min_gaps must be >= 2")
        _require(self.drift_threshold > 0, "drift_threshold must be > 0")


@dataclass(frozen=True)
class VenueScorerConfig:
    """Category weights (sum to 100), severity penalties and damping for venue scoring."""

    initial_category_score: float = 50.0
    category_weights: Mapping[str, float] = field(default_factory=lambda: DEFAULT_CATEGORY_WEIGHTS)
    severity_penalties: Mapping[str, float] = field(default_factory=lambda: DEFAULT_SEVERITY_PENALTIES)
    compliance_share: float = 0.25
    bonus_nerf_points_per_unit: float = 30.0
    bonus_nerf_max_penalty: float = 15.0
    external_damping: float = 0.20
    link_flag_penalty: float = 5.0
    link_flag_critical_penalty: float = 10.0
    user_report_scale: float = 4.0
    history_limit: int = 100
    dedup_limit: int = 500

    def __post_init__(self) -> None:
        object.__setattr__(self, "category_weights", MappingProxyType(dict(self.category_weights)))
        object.__setattr__(self, "severity_penalties", MappingProxyType(dict(self.severity_penalties)))
        _require(
            set(self.category_weights) == set(VENUE_CATEGORIES),
            f"category_weights must define exactly {VENUE_CATEGORIES}",
        )
        _require(
            all(w >= 0 for w in self.category_weights.values()),
            "category weights must be non-negative",
        )
        _require(
            math.isclose(sum(self.category_weights.values()), 100.0, abs_tol=1e-9),
            "category weights must sum to 100",
        )
        _require(
            set(self.severity_penalties) == {"info", "warning", "critical"},
            "severity_penalties must define info, warning and critical",
        )
        _require(0 <= self.initial_category_score <= 100, "initial_category_score must be in [0, 100]")
        _require(0 < self.external_damping <= 1, "external_damping must be in (0, 1]")
        _require(0 <= self.compliance_share <= 1, "compliance_share must be in [0, 1]")
        _require(self.history_limit >= 1, "history_limit must be >= 1")
        _require(self.dedup_limit >= 1, "dedup_limit must be >= 1")


@dataclass(frozen=True)
class ActorScorerConfig:
    """Actor trust model: base score, indicator decay, flag and bonus caps."""

    base_score: float = 70.0
    indicator_weight: float = 5.0
    indicator_cap: float = 25.0
    decay_per_hour: float = 0.5
    false_report_weight: float = 3.0
    scam_flag_penalty: float = 20.0
    scam_flag_cap: float = 40.0
    bonus_cap: float = 15.0
    tip_sender_bonus: float = 1.0
    tip_recipient_bonus: float = 0.5
    large_tip_amount: float = 100.0
    large_tip_bonus: float = 2.0
    default_accountability_bonus: float = 1.0
    accountability_bonuses: Mapping[str, float] = field(
        default_factory=lambda: DEFAULT_ACCOUNTABILITY_BONUSES
    )
    history_limit: int = 100

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "accountability_bonuses", MappingProxyType(dict(self.accountability_bonuses))
        )
        _require(0 <= self.base_score <= 100, "base_score must be in [0, 100]")
        _require(self.decay_per_hour > 0, "decay_per_hour must be > 0")
        _require(0 < self.indicator_weight <= self.indicator_cap, "indicator_weight must be in (0, indicator_cap]")
        _require(0 < self.scam_flag_penalty <= self.scam_flag_cap, "scam_flag_penalty must be in (0, scam_flag_cap]")
        _require(self.bonus_cap >= 0, "bonus_cap must be >= 0")


@dataclass(frozen=True)
class RollupConfig:
    """Rollup cadence, snapshot retention and on-demand request throttle (seconds)."""

    cadence_sec: float = 3600.0
    request_cooldown_sec: float = 5.0
    actor_window_sec: float = 86400.0
    venue_risk_window_sec: float = 86400.0
    retained_snapshots: int = 24

    def __post_init__(self) -> None:
        _require(self.cadence_sec > 0, "cadence_sec must be > 0")
        _require(self.request_cooldown_sec >= 0, "request_cooldown_sec must be >= 0")
        _require(self.retained_snapshots >= 1, "retained_snapshots must be >= 1")


@dataclass(frozen=True)
class PipelineConfig:
    """Top-level configuration; one instance per process."""

    bus: BusConfig = field(default_factory=BusConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    venue: VenueScorerConfig = field(default_factory=VenueScorerConfig)
    actor: ActorScorerConfig = field(default_factory=ActorScorerConfig)
    rollup: RollupConfig = field(default_factory=RollupConfig)
    db_path: str = "trust_pipeline.db"
    cycle_interval_sec: float = 30.0
    api_host: str = "127.0.0.1"
    api_port: int = 0
    """0 disables the HTTP API in the runtime."""

    def __post_init__(self) -> None:
        _require(self.cycle_interval_sec > 0, "cycle_interval_sec must be > 0")
        _require(0 <= self.api_port <= 65535, "api_port must be in [0, 65535]")
