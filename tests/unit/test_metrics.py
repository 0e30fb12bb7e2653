"""Tests for Prometheus metrics recorder and exposition helpers."""

from __future__ import annotations

import pytest

from orchid_orchestrator.observability.metrics import (
    NoopMetricsRecorder,
    PrometheusMetricsRecorder,
    configure_prometheus_metrics,
    get_metrics_recorder,
    prometheus_content_type,
    render_prometheus_metrics,
    set_metrics_recorder,
)

prometheus_client = pytest.importorskip("prometheus_client")


def test_prometheus_metrics_registration_and_samples() -> None:
    registry = prometheus_client.CollectorRegistry()
    recorder = PrometheusMetricsRecorder(registry=registry)

    recorder.observe_operation(
        resource="Orchestrator",
        operation="startService",
        duration_seconds=0.015,
        success=True,
    )
    recorder.observe_operation(
        resource="Orchestrator",
        operation="startService",
        duration_seconds=0.022,
        success=False,
    )
    recorder.observe_error(
        resource="Orchestrator",
        operation="startService",
        error_type="DependencyNotReadyError",
    )

    assert registry.get_sample_value(
        "orchid_orchestrator_operation_throughput_total",
        {"resource": "orchestrator", "operation": "startservice", "status": "success"},
    ) == 1.0
    assert registry.get_sample_value(
        "orchid_orchestrator_operation_throughput_total",
        {"resource": "orchestrator", "operation": "startservice", "status": "error"},
    ) == 1.0
    assert registry.get_sample_value(
        "orchid_orchestrator_operation_errors_total",
        {
            "resource": "orchestrator",
            "operation": "startservice",
            "error_type": "dependencynotreadyerror",
        },
    ) == 1.0
    assert registry.get_sample_value(
        "orchid_orchestrator_operation_latency_seconds_count",
        {"resource": "orchestrator", "operation": "startservice", "status": "success"},
    ) == 1.0


def test_health_check_latency_split_by_outcome() -> None:
    registry = prometheus_client.CollectorRegistry()
    recorder = PrometheusMetricsRecorder(registry=registry, prefix="orch")

    recorder.observe_health_check(service_id="api-gateway", duration_seconds=0.01, healthy=True)
    recorder.observe_health_check(service_id="api-gateway", duration_seconds=0.02, healthy=False)
    recorder.observe_health_check(service_id="api-gateway", duration_seconds=0.03, healthy=False)

    assert registry.get_sample_value(
        "orch_health_check_latency_seconds_count",
        {"service_id": "api_gateway", "status": "healthy"},
    ) == 1.0
    assert registry.get_sample_value(
        "orch_health_check_latency_seconds_count",
        {"service_id": "api_gateway", "status": "unhealthy"},
    ) == 2.0


def test_service_state_gauge_marks_only_current_state() -> None:
    registry = prometheus_client.CollectorRegistry()
    recorder = PrometheusMetricsRecorder(registry=registry)

    recorder.observe_service_state(service_id="api", state="starting")
    recorder.observe_service_state(service_id="api", state="running")

    def sample(state: str) -> float | None:
        return registry.get_sample_value(
            "orchid_orchestrator_service_state", {"service_id": "api", "state": state}
        )

    assert sample("running") == 1.0
    assert sample("starting") == 0.0
    assert sample("circuit_open") == 0.0


def test_recorders_share_collectors_on_one_registry() -> None:
    registry = prometheus_client.CollectorRegistry()
    first = PrometheusMetricsRecorder(registry=registry)
    second = PrometheusMetricsRecorder(registry=registry)

    first.observe_operation(
        resource="supervisor", operation="stop", duration_seconds=0.1, success=True
    )
    second.observe_operation(
        resource="supervisor", operation="stop", duration_seconds=0.1, success=True
    )

    assert registry.get_sample_value(
        "orchid_orchestrator_operation_throughput_total",
        {"resource": "supervisor", "operation": "stop", "status": "success"},
    ) == 2.0


def test_configure_prometheus_metrics_sets_default() -> None:
    previous = get_metrics_recorder()
    registry = prometheus_client.CollectorRegistry()
    try:
        recorder = configure_prometheus_metrics(registry=registry)
        assert get_metrics_recorder() is recorder
        assert recorder.registry is registry

        set_metrics_recorder(None)
        assert isinstance(get_metrics_recorder(), NoopMetricsRecorder)
    finally:
        set_metrics_recorder(previous)


def test_render_exposes_recorded_series() -> None:
    registry = prometheus_client.CollectorRegistry()
    recorder = PrometheusMetricsRecorder(registry=registry)
    recorder.observe_operation(
        resource="orchestrator",
        operation="initialize",
        duration_seconds=0.005,
        success=True,
    )

    payload = render_prometheus_metrics(registry=registry)

    assert b"orchid_orchestrator_operation_throughput_total" in payload
    assert prometheus_content_type().startswith("text/plain")
