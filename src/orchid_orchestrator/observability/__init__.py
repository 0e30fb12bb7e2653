"""Logging and metrics helpers."""

from orchid_orchestrator.observability._observable import ObservableMixin
from orchid_orchestrator.observability.logging import (
    bootstrap_logging,
    bootstrap_logging_from_app_settings,
    correlation_scope,
    get_correlation_ids,
    service_scope,
)
from orchid_orchestrator.observability.metrics import (
    MetricsRecorder,
    NoopMetricsRecorder,
    PrometheusMetricsRecorder,
    configure_prometheus_metrics,
    get_metrics_recorder,
    reset_metrics_recorder,
    set_metrics_recorder,
)

__all__ = [
    "MetricsRecorder",
    "NoopMetricsRecorder",
    "ObservableMixin",
    "PrometheusMetricsRecorder",
    "bootstrap_logging",
    "bootstrap_logging_from_app_settings",
    "configure_prometheus_metrics",
    "correlation_scope",
    "get_correlation_ids",
    "get_metrics_recorder",
    "reset_metrics_recorder",
    "service_scope",
    "set_metrics_recorder",
]
