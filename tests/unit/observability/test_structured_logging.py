"""Tests for structured logging helpers."""

from __future__ import annotations

import asyncio
import json
import logging
from io import StringIO

from orchid_orchestrator.config import AppSettings
from orchid_orchestrator.observability.logging import (
    bootstrap_logging,
    bootstrap_logging_from_app_settings,
    correlation_scope,
    extract_request_id,
    get_correlation_ids,
    service_scope,
)


def test_json_logs_include_required_fields() -> None:
    stream = StringIO()
    logger = logging.getLogger("tests.logging.required_fields")

    bootstrap_logging(
        service="orchestrator",
        env="production",
        level="INFO",
        log_format="json",
        logger=logger,
        stream=stream,
    )

    with correlation_scope(request_id="req-123"), service_scope("api-gateway"):
        logger.info("started", extra={"pid": 4242})

    payload = json.loads(stream.getvalue().strip())

    assert payload["service"] == "orchestrator"
    assert payload["env"] == "production"
    assert payload["request_id"] == "req-123"
    assert payload["service_id"] == "api-gateway"
    assert payload["pid"] == 4242
    assert payload["timestamp"].endswith("Z")


def test_explicit_service_id_extra_wins_over_scope() -> None:
    stream = StringIO()
    logger = logging.getLogger("tests.logging.explicit_service")
    bootstrap_logging(service="orchestrator", env="test", logger=logger, stream=stream)

    with service_scope("outer"):
        logger.info("cascade", extra={"service_id": "dependent"})

    payload = json.loads(stream.getvalue().strip())
    assert payload["service_id"] == "dependent"


def test_correlation_scope_restores_previous_values() -> None:
    with correlation_scope(request_id="outer"):
        with correlation_scope(request_id="inner", service_id="api"):
            assert get_correlation_ids().request_id == "inner"
            assert get_correlation_ids().service_id == "api"
        assert get_correlation_ids().request_id == "outer"
        assert get_correlation_ids().service_id is None

    assert get_correlation_ids().request_id is None


async def test_service_scope_is_inherited_by_tasks() -> None:
    async def read_scope() -> str | None:
        return get_correlation_ids().service_id

    with service_scope("worker"):
        task = asyncio.create_task(read_scope())

    assert await task == "worker"
    assert get_correlation_ids().service_id is None


def test_extract_request_id_accepts_alternative_headers() -> None:
    assert extract_request_id({"X-Request-ID": " req-1 "}) == "req-1"
    assert extract_request_id({"x-correlation-id": "corr-9"}) == "corr-9"
    assert extract_request_id({"x-request-id": "  "}) is None


def test_sampling_zero_drops_info_but_keeps_warning() -> None:
    stream = StringIO()
    logger = logging.getLogger("tests.logging.sampling")

    bootstrap_logging(
        service="orchestrator",
        env="staging",
        level="INFO",
        log_format="json",
        sampling=0.0,
        logger=logger,
        stream=stream,
    )

    logger.info("sampled out")
    logger.warning("always keep warning")

    lines = [line for line in stream.getvalue().splitlines() if line.strip()]
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["level"] == "WARNING"
    assert payload["message"] == "always keep warning"


def test_bootstrap_from_app_settings_uses_logging_config() -> None:
    stream = StringIO()
    logger = logging.getLogger("tests.logging.from_app_settings")
    app_settings = AppSettings.model_validate(
        {
            "service": {"name": "local-orchestrator", "version": "1.0.0"},
            "logging": {"level": "DEBUG", "format": "text", "sampling": 1.0},
        }
    )

    bootstrap_logging_from_app_settings(
        app_settings,
        env="development",
        logger=logger,
        stream=stream,
    )
    with service_scope("auth"):
        logger.debug("auth ready")

    output = stream.getvalue()
    assert "service=local-orchestrator" in output
    assert "env=development" in output
    assert "service_id=auth" in output
    assert "auth ready" in output
