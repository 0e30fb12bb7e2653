"""aiohttp application factory for the control API."""

from __future__ import annotations

import logging

from aiohttp import web

from orchid_orchestrator.api.middleware import error_middleware
from orchid_orchestrator.api.routes import (
    METRICS_KEY,
    ORCHESTRATOR_KEY,
    SETTINGS_KEY,
    setup_routes,
)
from orchid_orchestrator.config.models import AppSettings
from orchid_orchestrator.errors import ShutdownError
from orchid_orchestrator.observability.http import create_aiohttp_request_id_middleware
from orchid_orchestrator.observability.metrics import PrometheusMetricsRecorder
from orchid_orchestrator.runtime.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Orchestrator,
    *,
    settings: AppSettings | None = None,
    metrics: PrometheusMetricsRecorder | None = None,
    manage_lifecycle: bool = True,
) -> web.Application:
    """Build the control API.

    Args:
        orchestrator: The orchestrator served by the API.
        settings: Application settings; defaults are used when omitted.
        metrics: Recorder exposed on ``/metrics``; the route answers 404 without one.
        manage_lifecycle: Initialize the orchestrator on startup and shut it
            down on cleanup.
    """
    app = web.Application(
        middlewares=[create_aiohttp_request_id_middleware(), error_middleware],
    )
    app[ORCHESTRATOR_KEY] = orchestrator
    app[SETTINGS_KEY] = settings or AppSettings()
    if metrics is not None:
        app[METRICS_KEY] = metrics
    setup_routes(app)

    if manage_lifecycle:
        app.on_startup.append(_start_orchestrator)
        app.on_cleanup.append(_stop_orchestrator)
    return app


async def _start_orchestrator(app: web.Application) -> None:
    orchestrator = app[ORCHESTRATOR_KEY]
    await orchestrator.initialize(auto_start=False)
    # Auto-start honours per-service start delays; the API must not wait for them.
    orchestrator.schedule_auto_start()


async def _stop_orchestrator(app: web.Application) -> None:
    try:
        await app[ORCHESTRATOR_KEY].shutdown()
    except ShutdownError as exc:
        logger.error(
            "Orchestrator shutdown was incomplete",
            extra={"components": sorted(exc.errors)},
        )
