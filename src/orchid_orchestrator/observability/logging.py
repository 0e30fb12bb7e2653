"""Structured logging bootstrap and correlation context helpers."""

from __future__ import annotations

import contextvars
import json
import logging
import os
import random
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from orchid_orchestrator.config.models import AppSettings

_UNSET = object()

REQUEST_ID_HEADER = "x-request-id"
_REQUEST_ID_HEADERS = (REQUEST_ID_HEADER, "request-id", "x-correlation-id")

_REQUEST_ID_CTX: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "orchestrator_request_id",
    default=None,
)
_SERVICE_ID_CTX: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "orchestrator_service_id",
    default=None,
)

_STANDARD_RECORD_KEYS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }
)
_RESERVED_FIELDS = frozenset({"service", "env", "request_id", "service_id"})


@dataclass(frozen=True, slots=True)
class CorrelationIds:
    """Context values attached to every log record."""

    request_id: str | None = None
    service_id: str | None = None


class SamplingFilter(logging.Filter):
    """Sampling filter for low-severity logs."""

    def __init__(self, sampling: float) -> None:
        super().__init__()
        self._sampling = sampling

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return random.random() < self._sampling


class JsonFormatter(logging.Formatter):
    """JSON formatter with required service and correlation fields."""

    def __init__(self, *, service: str, env: str) -> None:
        super().__init__()
        self._service = service
        self._env = env

    def format(self, record: logging.LogRecord) -> str:
        correlation = get_correlation_ids()
        payload: dict[str, Any] = {
            "timestamp": _format_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
            "env": self._env,
            "request_id": correlation.request_id,
            "service_id": _record_service_id(record, correlation),
        }

        payload.update(_extract_extra_fields(record))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=True)


class TextFormatter(logging.Formatter):
    """Plain text formatter that still includes the same correlation context."""

    def __init__(self, *, service: str, env: str) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")
        self._service = service
        self._env = env

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        correlation = get_correlation_ids()
        return (
            f"{base} "
            f"service={self._service} env={self._env} "
            f"service_id={_record_service_id(record, correlation) or '-'} "
            f"request_id={correlation.request_id or '-'}"
        )


def extract_request_id(headers: Mapping[str, str]) -> str | None:
    """Return the first request id found in incoming headers."""
    normalized = {str(key).lower(): str(value) for key, value in headers.items()}
    for key in _REQUEST_ID_HEADERS:
        value = _clean_optional_string(normalized.get(key))
        if value is not None:
            return value
    return None


def get_correlation_ids() -> CorrelationIds:
    return CorrelationIds(request_id=_REQUEST_ID_CTX.get(), service_id=_SERVICE_ID_CTX.get())


@contextmanager
def correlation_scope(
    *,
    request_id: str | None | object = _UNSET,
    service_id: str | None | object = _UNSET,
) -> Iterator[None]:
    """Temporarily bind correlation IDs for the current context."""
    tokens: list[tuple[contextvars.ContextVar[str | None], contextvars.Token[str | None]]] = []

    _bind_if_provided(_REQUEST_ID_CTX, request_id, tokens)
    _bind_if_provided(_SERVICE_ID_CTX, service_id, tokens)

    try:
        yield
    finally:
        for context_var, token in reversed(tokens):
            context_var.reset(token)


@contextmanager
def service_scope(service_id: str) -> Iterator[None]:
    """Bind ``service_id`` for logs emitted here and in tasks created here."""
    with correlation_scope(service_id=service_id):
        yield


def bootstrap_logging(
    *,
    service: str,
    env: str | None = None,
    level: str = "INFO",
    log_format: str = "json",
    sampling: float | None = None,
    logger: logging.Logger | None = None,
    stream: TextIO | None = None,
    force: bool = True,
) -> logging.Logger:
    """Configure a logger with standard formatting and correlation fields."""
    resolved_env = env if env is not None else os.getenv("ORCHESTRATOR_ENV", "development")
    target_logger = logger or logging.getLogger()

    if force:
        for handler in list(target_logger.handlers):
            target_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(_build_formatter(log_format, service=service, env=resolved_env))

    if sampling is not None and sampling < 1.0:
        handler.addFilter(SamplingFilter(sampling))

    target_logger.addHandler(handler)
    target_logger.setLevel(level.upper())
    if target_logger is not logging.getLogger():
        target_logger.propagate = False
    return target_logger


def bootstrap_logging_from_app_settings(
    app_settings: AppSettings,
    *,
    env: str | None = None,
    logger: logging.Logger | None = None,
    stream: TextIO | None = None,
    force: bool = True,
) -> logging.Logger:
    """Bootstrap logging using values from typed appsettings."""
    return bootstrap_logging(
        service=app_settings.service.name,
        env=env,
        level=app_settings.logging.level,
        log_format=app_settings.logging.format,
        sampling=app_settings.logging.sampling,
        logger=logger,
        stream=stream,
        force=force,
    )


def _build_formatter(log_format: str, *, service: str, env: str) -> logging.Formatter:
    if log_format == "text":
        return TextFormatter(service=service, env=env)
    return JsonFormatter(service=service, env=env)


def _record_service_id(record: logging.LogRecord, correlation: CorrelationIds) -> str | None:
    # An explicit ``extra={"service_id": ...}`` wins over the bound scope.
    explicit = record.__dict__.get("service_id")
    return str(explicit) if explicit is not None else correlation.service_id


def _bind_if_provided(
    context_var: contextvars.ContextVar[str | None],
    value: str | None | object,
    tokens: list[tuple[contextvars.ContextVar[str | None], contextvars.Token[str | None]]],
) -> None:
    if value is _UNSET:
        return
    token = context_var.set(_clean_optional_string(value))
    tokens.append((context_var, token))


def _clean_optional_string(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if text == "":
        return None
    return text


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    extras: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_RECORD_KEYS or key.startswith("_"):
            continue
        if key in _RESERVED_FIELDS:
            continue
        extras[key] = value
    return extras


def _format_timestamp(created: float) -> str:
    timestamp = datetime.fromtimestamp(created, tz=UTC)
    return timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")
