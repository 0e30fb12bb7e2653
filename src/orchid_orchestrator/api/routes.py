"""Control API handlers mounted under ``/orchestrator``."""

from __future__ import annotations

import asyncio
import json
import logging

from aiohttp import web

from orchid_orchestrator.api.responses import (
    action_error_response,
    error_response,
    success_response,
    timestamp,
)
from orchid_orchestrator.api.schemas import (
    ActionRequest,
    BatchRequest,
    KillRequest,
    parse_body,
    parse_lines,
    read_json,
)
from orchid_orchestrator.config.models import AppSettings
from orchid_orchestrator.observability.metrics import (
    PrometheusMetricsRecorder,
    prometheus_content_type,
    render_prometheus_metrics,
)
from orchid_orchestrator.runtime.orchestrator import Orchestrator, ServiceAction

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = web.AppKey("orchestrator", Orchestrator)
SETTINGS_KEY = web.AppKey("settings", AppSettings)
METRICS_KEY = web.AppKey("metrics", PrometheusMetricsRecorder)

PREFIX = "/orchestrator"
SSE_KEEPALIVE_SECONDS = 15.0


def _orchestrator(request: web.Request) -> Orchestrator:
    return request.app[ORCHESTRATOR_KEY]


async def status_all(request: web.Request) -> web.Response:
    return success_response(_orchestrator(request).get_status_all())


async def service_status(request: web.Request) -> web.Response:
    service_id = request.match_info["service_id"]
    return success_response(_orchestrator(request).get_service_status(service_id))


async def service_processes(request: web.Request) -> web.Response:
    service_id = request.match_info["service_id"]
    return success_response(_orchestrator(request).get_service_processes(service_id))


async def service_kill_status(request: web.Request) -> web.Response:
    service_id = request.match_info["service_id"]
    return success_response(_orchestrator(request).get_service_kill_status(service_id))


async def service_logs(request: web.Request) -> web.Response:
    service_id = request.match_info["service_id"]
    lines = parse_lines(request.query.get("lines"))
    logs = _orchestrator(request).get_service_logs(service_id, lines)
    return success_response({"service_id": service_id, "logs": logs, "timestamp": timestamp()})


async def service_action(request: web.Request) -> web.Response:
    service_id = request.match_info["service_id"]
    body = parse_body(ActionRequest, await read_json(request))
    orchestrator = _orchestrator(request)
    orchestrator.registry.get(service_id)

    result = await orchestrator.dispatch_action(service_id, body.action)
    if not result.success:
        return action_error_response(result)
    return success_response(result.data, message=result.message)


async def service_kill(request: web.Request) -> web.Response:
    service_id = request.match_info["service_id"]
    body = parse_body(KillRequest, await read_json(request))
    result = await _orchestrator(request).kill_service_process(service_id, force=body.force)
    return success_response(
        result, message=f"Process for service {service_id} killed successfully"
    )


async def batch_start(request: web.Request) -> web.Response:
    return await _batch(request, ServiceAction.START)


async def batch_stop(request: web.Request) -> web.Response:
    return await _batch(request, ServiceAction.STOP)


async def _batch(request: web.Request, action: ServiceAction) -> web.Response:
    body = parse_body(BatchRequest, await read_json(request))
    results = await _orchestrator(request).batch(action, body.service_ids)
    return success_response({"results": [result.to_dict() for result in results]})


async def full_restart(request: web.Request) -> web.Response:
    _orchestrator(request).schedule_full_restart()
    return success_response(
        message="Orchestrator restart initiated. Services will reload shortly.",
        status=202,
    )


async def registry(request: web.Request) -> web.Response:
    data = _orchestrator(request).get_registry()
    services = data["services"]
    return success_response(
        {
            "services": services,
            "count": len(services) if isinstance(services, list) else 0,
            "startup_order": data["startup_order"],
        }
    )


async def health(request: web.Request) -> web.Response:
    orchestrator = _orchestrator(request)
    settings = request.app[SETTINGS_KEY]
    report = await orchestrator.health_report(
        timeout_seconds=settings.orchestrator.health_check.timeout_seconds
    )
    payload = {
        **report.to_dict(),
        "service": settings.service.name,
        "version": orchestrator.version,
        "uptime": orchestrator.uptime_seconds,
        "timestamp": timestamp(),
    }
    return web.json_response(payload, status=200 if report.healthy else 503)


async def events(request: web.Request) -> web.StreamResponse:
    """Server-sent event stream of orchestrator events."""
    bus = _orchestrator(request).bus
    queue = bus.open_queue()
    response = web.StreamResponse(
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )
    await response.prepare(request)
    logger.info("Event stream opened", extra={"subscribers": bus.subscriber_count})
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
            except TimeoutError:
                await response.write(b": keepalive\n\n")
                continue
            frame = f"event: {event.type.value}\ndata: {json.dumps(event.to_dict())}\n\n"
            await response.write(frame.encode("utf-8"))
    except ConnectionResetError:
        logger.info("Event stream client disconnected")
    finally:
        bus.close_queue(queue)
    return response


async def metrics(request: web.Request) -> web.Response:
    recorder = request.app.get(METRICS_KEY)
    if recorder is None:
        return error_response("Metrics are disabled", status=404, code="METRICS_DISABLED")
    body = render_prometheus_metrics(registry=recorder.registry)
    return web.Response(body=body, headers={"Content-Type": prometheus_content_type()})


def setup_routes(app: web.Application) -> None:
    router = app.router
    router.add_get(f"{PREFIX}/status-all", status_all)
    router.add_get(f"{PREFIX}/registry", registry)
    router.add_get(f"{PREFIX}/health", health)
    router.add_get(f"{PREFIX}/events", events)
    router.add_post(f"{PREFIX}/restart", full_restart)
    router.add_post(f"{PREFIX}/services/batch/start", batch_start)
    router.add_post(f"{PREFIX}/services/batch/stop", batch_stop)
    router.add_get(f"{PREFIX}/services/{{service_id}}/status", service_status)
    router.add_get(f"{PREFIX}/services/{{service_id}}/processes", service_processes)
    router.add_get(f"{PREFIX}/services/{{service_id}}/kill-status", service_kill_status)
    router.add_get(f"{PREFIX}/services/{{service_id}}/logs", service_logs)
    router.add_post(f"{PREFIX}/services/{{service_id}}/actions", service_action)
    router.add_post(f"{PREFIX}/services/{{service_id}}/kill", service_kill)
    router.add_get("/metrics", metrics)
