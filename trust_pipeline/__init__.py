"""
Trust & anomaly pipeline.

Event bus -> gameplay anomaly detector -> venue / actor trust scorers ->
rollup and snapshot service. Build one with build_pipeline().
"""

from trust_pipeline.pipeline import Pipeline, build_pipeline, build_sqlite_pipeline

__all__ = ["Pipeline", "build_pipeline", "build_sqlite_pipeline"]

__version__ = "0.1.0"
