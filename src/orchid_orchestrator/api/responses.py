"""Response envelope shared by every control API route."""

from __future__ import annotations

from typing import Any

from aiohttp import web

from orchid_orchestrator.runtime.orchestrator import ActionResult
from orchid_orchestrator.runtime.state import isoformat, utcnow


def timestamp() -> str:
    return isoformat(utcnow()) or ""


def success_response(
    data: Any | None = None,
    *,
    message: str | None = None,
    status: int = 200,
) -> web.Response:
    payload: dict[str, Any] = {"success": True}
    if message is not None:
        payload["message"] = message
    if data is not None:
        payload["data"] = data
    payload["timestamp"] = timestamp()
    return web.json_response(payload, status=status)


def error_response(error: str, *, status: int, code: str, **extra: Any) -> web.Response:
    payload: dict[str, Any] = {"success": False, "error": error, "code": code}
    payload.update({key: value for key, value in extra.items() if value is not None})
    payload["timestamp"] = timestamp()
    return web.json_response(payload, status=status)


def action_error_response(result: ActionResult) -> web.Response:
    return error_response(
        result.error or f"Failed to execute action {result.action}",
        status=result.status_code,
        code=result.error_code or "ORCHESTRATOR_ERROR",
        service_id=result.service_id,
        managed="external" if result.managed == "external" else None,
    )
