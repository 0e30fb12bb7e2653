"""Error translation for the control API."""

from __future__ import annotations

import logging

from aiohttp import web

from orchid_orchestrator.api.responses import error_response
from orchid_orchestrator.errors import (
    ExternallyManagedError,
    InvalidRequestError,
    OrchestratorError,
)
from orchid_orchestrator.observability.http import AiohttpHandler

logger = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request: web.Request, handler: AiohttpHandler) -> web.StreamResponse:
    """Map orchestrator errors to their status codes; anything else becomes a JSON 500."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ExternallyManagedError as exc:
        return error_response(
            str(exc),
            status=exc.status_code,
            code=exc.code,
            service_id=exc.service_id,
            managed="external",
        )
    except InvalidRequestError as exc:
        return error_response(
            str(exc), status=exc.status_code, code=exc.code, details=exc.details or None
        )
    except OrchestratorError as exc:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "Control API request failed",
            extra={"path": request.path, "code": exc.code, "error": str(exc)},
        )
        return error_response(str(exc), status=exc.status_code, code=exc.code)
    except Exception:
        logger.exception(
            "Unhandled control API error",
            extra={"path": request.path, "method": request.method},
        )
        return error_response("Internal server error", status=500, code="INTERNAL_ERROR")
