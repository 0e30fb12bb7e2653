"""Command-line entry point: ``python -m orchid_orchestrator``."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence
from pathlib import Path

from aiohttp import web

from orchid_orchestrator.api import create_app
from orchid_orchestrator.config import AppSettings, load_config
from orchid_orchestrator.config.loader import DEFAULT_CONFIG_DIR
from orchid_orchestrator.errors import OrchestratorError
from orchid_orchestrator.observability import (
    PrometheusMetricsRecorder,
    bootstrap_logging_from_app_settings,
    configure_prometheus_metrics,
)
from orchid_orchestrator.runtime import Orchestrator

logger = logging.getLogger("orchid_orchestrator")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="orchid-orchestrator",
        description="Supervise local service processes and serve the control API.",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help="Directory holding appsettings.json (default: %(default)s)",
    )
    parser.add_argument(
        "--env",
        default=None,
        help="Environment overlay to merge (default: $ORCHESTRATOR_ENV or development)",
    )
    return parser.parse_args(argv)


def build_application(settings: AppSettings) -> web.Application:
    metrics: PrometheusMetricsRecorder | None = None
    if settings.metrics.enabled:
        metrics = configure_prometheus_metrics(prefix=settings.metrics.prefix)
    orchestrator = Orchestrator(
        settings.orchestrator,
        version=settings.service.version,
        metrics=metrics,
    )
    return create_app(orchestrator, settings=settings, metrics=metrics)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        settings = load_config(config_dir=args.config_dir, env=args.env)
    except OrchestratorError as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Failed to load configuration: %s", exc)
        return 2

    bootstrap_logging_from_app_settings(settings, env=args.env)
    logger.info(
        "Starting orchestrator",
        extra={"host": settings.service.host, "port": settings.service.port},
    )
    web.run_app(
        build_application(settings),
        host=settings.service.host,
        port=settings.service.port,
        print=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
