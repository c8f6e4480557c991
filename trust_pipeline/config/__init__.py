# Pipeline configuration: validated frozen dataclasses + .env loading.

from trust_pipeline.config.env import load_config_from_env, load_pipeline_env
from trust_pipeline.config.settings import (
    VENUE_CATEGORIES,
    ActorScorerConfig,
    BusConfig,
    DetectorConfig,
    PipelineConfig,
    RollupConfig,
    VenueScorerConfig,
)

__all__ = [
    "VENUE_CATEGORIES",
    "ActorScorerConfig",
    "BusConfig",
    "DetectorConfig",
    "PipelineConfig",
    "RollupConfig",
    "VenueScorerConfig",
    "load_config_from_env",
    "load_pipeline_env",
]
