"""
Long-running trust pipeline process.

Loads config (.env + TRUST_* variables), builds the pipeline on SQLite,
restores persisted profiles and snapshots, then runs the maintenance cycle
(flush dirty profiles, tick rollups) on a periodic thread. With
TRUST_API_PORT set, the HTTP API is served from the main thread.
Safe shutdown on SIGINT/SIGTERM: state is flushed before exit.

Usage: python -m trust_pipeline.runtime
"""

from __future__ import annotations

import signal
import sys

from trust_pipeline.config.env import load_config_from_env
from trust_pipeline.config.settings import PipelineConfig
from trust_pipeline.core.exceptions import ConfigurationError
from trust_pipeline.pipeline import Pipeline, build_sqlite_pipeline
from trust_pipeline.scheduler.engine import PeriodicTask
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)


def _serve_api(pipeline: Pipeline, config: PipelineConfig) -> None:
    """Blocking uvicorn server; returns when uvicorn handles SIGINT/SIGTERM."""
    import uvicorn

    from trust_pipeline.api_server.server import create_app

    logger.info("runtime_api_starting", host=config.api_host, port=config.api_port)
    uvicorn.run(create_app(pipeline), host=config.api_host, port=config.api_port)


def run(config: PipelineConfig) -> None:
    pipeline = build_sqlite_pipeline(config)
    pipeline.start()
    task = PeriodicTask("pipeline_cycle", pipeline.run_cycle, config.cycle_interval_sec)

    logger.info(
        "runtime_started",
        db_path=config.db_path,
        cycle_interval_sec=config.cycle_interval_sec,
        api_port=config.api_port or None,
    )
    task.start()
    try:
        if config.api_port:
            _serve_api(pipeline, config)
        else:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    signal.signal(sig, lambda *_: task.request_stop())
                except (AttributeError, ValueError):
                    # Unsupported platform or not the main thread
                    pass
            while task.is_running() and not task.wait(1.0):
                pass
    except KeyboardInterrupt:
        pass
    finally:
        task.stop()
        pipeline.stop()
        logger.info("runtime_stopped", cycles=task.runs, failures=task.failures)


def main() -> int:
    try:
        config = load_config_from_env()
    except ConfigurationError as e:
        logger.error("runtime_config_invalid", error=str(e))
        return 2
    run(config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
