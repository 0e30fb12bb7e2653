"""Configuration loading and validation module."""

from orchid_orchestrator.config.errors import (
    ConfigError,
    ConfigFileNotFoundError,
    ConfigValidationError,
    MissingRunConfigError,
    PlaceholderResolutionError,
    RegistryError,
    ServiceNotFoundError,
)
from orchid_orchestrator.config.loader import deep_merge, load_config
from orchid_orchestrator.config.models import (
    AppSettings,
    AutoRestartSettings,
    CircuitBreakerSettings,
    EventSettings,
    HealthCheckSettings,
    LoggingSettings,
    MetricsSettings,
    OrchestratorSettings,
    ProcessSettings,
    RegistrySettings,
    ServiceSettings,
    StateSettings,
)

__all__ = [
    "AppSettings",
    "AutoRestartSettings",
    "CircuitBreakerSettings",
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    "EventSettings",
    "HealthCheckSettings",
    "LoggingSettings",
    "MetricsSettings",
    "MissingRunConfigError",
    "OrchestratorSettings",
    "PlaceholderResolutionError",
    "ProcessSettings",
    "RegistryError",
    "RegistrySettings",
    "ServiceNotFoundError",
    "ServiceSettings",
    "StateSettings",
    "deep_merge",
    "load_config",
]
