"""HTTP helpers for request correlation on the control API."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any, TypeAlias
from uuid import uuid4

from aiohttp import web

from orchid_orchestrator.observability.logging import (
    REQUEST_ID_HEADER,
    correlation_scope,
    extract_request_id,
)

AiohttpHandler: TypeAlias = Callable[[web.Request], Awaitable[web.StreamResponse]]


@contextmanager
def http_request_scope(
    *,
    headers: Mapping[str, str] | None = None,
    generate_request_id: bool = True,
) -> Iterator[str | None]:
    """Bind the incoming (or a fresh) request id for the duration of a request."""
    request_id = extract_request_id(_coerce_headers(headers or {}))
    if request_id is None and generate_request_id:
        request_id = _new_request_id()
    with correlation_scope(request_id=request_id):
        yield request_id


def create_aiohttp_request_id_middleware(
    *,
    request_id_response_header: str = REQUEST_ID_HEADER,
    set_response_request_id: bool = True,
    generate_request_id: bool = True,
) -> Callable[[web.Request, AiohttpHandler], Awaitable[web.StreamResponse]]:
    """Build aiohttp middleware that binds the request id and echoes it back."""

    @web.middleware
    async def middleware(request: web.Request, handler: AiohttpHandler) -> web.StreamResponse:
        with http_request_scope(
            headers=_coerce_headers(request.headers),
            generate_request_id=generate_request_id,
        ) as request_id:
            request["request_id"] = request_id
            try:
                response = await handler(request)
            except web.HTTPException as exc:
                if set_response_request_id and request_id is not None:
                    _set_header_if_missing(exc.headers, request_id_response_header, request_id)
                raise

        if set_response_request_id and request_id is not None and not response.prepared:
            _set_header_if_missing(response.headers, request_id_response_header, request_id)
        return response

    return middleware


def _new_request_id() -> str:
    return uuid4().hex


def _coerce_headers(headers: object) -> Mapping[str, str]:
    if isinstance(headers, Mapping):
        return {str(key): str(value) for key, value in headers.items()}
    return {}


def _set_header_if_missing(headers: Any, key: str, value: str) -> None:
    if headers.get(key):
        return
    headers[key] = value


__all__ = [
    "create_aiohttp_request_id_middleware",
    "http_request_scope",
]
