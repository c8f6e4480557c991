"""
Environment variable loading for the trust pipeline.

- TRUST_HISTORY_SIZE: event bus history capacity (default 2000)
- TRUST_BASELINE_RTP: detector baseline RTP (default 0.96)
- TRUST_PUMP_THRESHOLD: pump threshold in RTP points (default 0.10)
- TRUST_MIN_SPINS: minimum samples before detection (default 20)
- TRUST_EXTERNAL_DAMPING: share of external rollup deltas applied (default 0.20)
- TRUST_ROLLUP_CADENCE_SEC: rollup window length (default 3600)
- TRUST_SNAPSHOT_COOLDOWN_SEC: per-requester snapshot throttle (default 5)
- TRUST_DB_PATH: SQLite file for profiles and snapshots (default trust_pipeline.db)
- TRUST_CYCLE_INTERVAL_SEC: runtime cycle interval (default 30)
- TRUST_API_HOST / TRUST_API_PORT: serve the HTTP API from the runtime (port 0 = off)
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

from dotenv import load_dotenv

from trust_pipeline.config.settings import PipelineConfig
from trust_pipeline.core.exceptions import ConfigurationError

_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"


def load_pipeline_env() -> None:
    """Load .env from project root. Safe to call multiple times; existing env wins."""
    load_dotenv(_ENV_PATH, override=False)


def _env_str(name: str) -> str | None:
    raw = (os.getenv(name) or "").strip()
    return raw or None


def _env_float(name: str) -> float | None:
    raw = _env_str(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str) -> int | None:
    raw = _env_str(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def load_config_from_env(base: PipelineConfig | None = None) -> PipelineConfig:
    """
    Build PipelineConfig from environment, starting from base (or defaults).

    Only variables that are set override the base; the result is validated
    by the dataclasses' __post_init__.
    """
    load_pipeline_env()
    cfg = base or PipelineConfig()

    bus = cfg.bus
    history_size = _env_int("TRUST_HISTORY_SIZE")
    if history_size is not None:
        bus = replace(bus, history_size=history_size)

    detector = cfg.detector
    detector_overrides: dict[str, float | int] = {}
    baseline = _env_float("TRUST_BASELINE_RTP")
    if baseline is not None:
        detector_overrides["baseline_rtp"] = baseline
    pump = _env_float("TRUST_PUMP_THRESHOLD")
    if pump is not None:
        detector_overrides["pump_threshold"] = pump
    min_spins = _env_int("TRUST_MIN_SPINS")
    if min_spins is not None:
        detector_overrides["min_spins_required"] = min_spins
    if detector_overrides:
        detector = replace(detector, **detector_overrides)

    venue = cfg.venue
    damping = _env_float("TRUST_EXTERNAL_DAMPING")
    if damping is not None:
        venue = replace(venue, external_damping=damping)

    rollup = cfg.rollup
    rollup_overrides: dict[str, float] = {}
    cadence = _env_float("TRUST_ROLLUP_CADENCE_SEC")
    if cadence is not None:
        rollup_overrides["cadence_sec"] = cadence
    cooldown = _env_float("TRUST_SNAPSHOT_COOLDOWN_SEC")
    if cooldown is not None:
        rollup_overrides["request_cooldown_sec"] = cooldown
    if rollup_overrides:
        rollup = replace(rollup, **rollup_overrides)

    db_path = _env_str("TRUST_DB_PATH") or cfg.db_path
    cycle = _env_float("TRUST_CYCLE_INTERVAL_SEC")
    api_port = _env_int("TRUST_API_PORT")

    return replace(
        cfg,
        bus=bus,
        detector=detector,
        venue=venue,
        rollup=rollup,
        db_path=db_path,
        cycle_interval_sec=cycle if cycle is not None else cfg.cycle_interval_sec,
        api_host=_env_str("TRUST_API_HOST") or cfg.api_host,
        api_port=api_port if api_port is not None else cfg.api_port,
    )
