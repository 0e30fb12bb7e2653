"""Typed configuration models with Pydantic validation."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ServiceSettings(BaseModel):
    """Control API identification and network settings."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="orchestrator", min_length=1, description="Service name")
    version: str = Field(default="1.2.0", min_length=1, description="Service version")
    host: str = Field(
        default="127.0.0.1",
        description=(
            "Bind host for the control API. Defaults to loopback because the API "
            "can spawn and kill processes on this host."
        ),
    )
    port: int = Field(default=6030, ge=1, le=65535, description="Bind port")


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    format: Literal["json", "text"] = Field(default="json", description="Log output format")
    sampling: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Optional sampling ratio for low-severity logs",
    )


class RegistrySettings(BaseModel):
    """Where the service catalog lives and how relative paths resolve."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(default=Path("config/services.json"), description="Service registry file")
    project_root: Path = Field(
        default=Path("."),
        description="Base directory for relative service working directories",
    )


class HealthCheckSettings(BaseModel):
    """Periodic HTTP health probing."""

    model_config = ConfigDict(frozen=True)

    interval_ms: int = Field(default=5000, ge=10, description="Delay between health probes")
    timeout_ms: int = Field(default=3000, ge=1, description="Hard timeout of a single probe")
    host: str = Field(default="127.0.0.1", min_length=1, description="Host probed for services")

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


class CircuitBreakerSettings(BaseModel):
    """Health-driven circuit breaker."""

    model_config = ConfigDict(frozen=True)

    threshold: int = Field(default=3, ge=1, description="Failures before the breaker opens")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth per reopen")
    initial_backoff_seconds: float = Field(
        default=1.0, gt=0.0, description="Backoff after the first opening"
    )
    max_backoff_seconds: float = Field(default=300.0, gt=0.0, description="Backoff ceiling")

    @model_validator(mode="after")
    def _validate_backoff_bounds(self) -> CircuitBreakerSettings:
        if self.max_backoff_seconds < self.initial_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= initial_backoff_seconds")
        return self


class ProcessSettings(BaseModel):
    """Spawn, log capture and kill protocol settings."""

    model_config = ConfigDict(frozen=True)

    kill_timeout_ms: int = Field(
        default=5000,
        ge=2,
        description="Total kill budget; split evenly between the SIGTERM and SIGKILL windows",
    )
    poll_interval_ms: int = Field(default=100, ge=1, description="Liveness polling interval")
    log_lines: int = Field(default=1000, ge=1, description="Lines kept per stdout/stderr buffer")
    cleanup_orphans: bool = Field(
        default=True, description="Sweep stale processes on the port/name patterns"
    )
    cleanup_settle_seconds: float = Field(
        default=1.5, ge=0.0, description="Pause after a sweep so killed processes release ports"
    )
    orphan_patterns: tuple[str, ...] = Field(
        default=("services/{service_id}",),
        description=(
            "Command-line patterns identifying stale processes, matched up to a path or "
            "argument boundary; {service_id} is expanded"
        ),
    )

    @property
    def kill_timeout_seconds(self) -> float:
        return self.kill_timeout_ms / 1000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000


class AutoRestartSettings(BaseModel):
    """Exit-driven restart backoff."""

    model_config = ConfigDict(frozen=True)

    base_delay_seconds: float = Field(default=5.0, ge=0.0, description="Delay before attempt 1")
    max_delay_seconds: float = Field(default=60.0, ge=0.0, description="Delay ceiling")
    max_attempts: int = Field(default=10, ge=0, description="Attempts before giving up")

    def delay_for(self, attempt: int) -> float:
        """Return the delay before restart number ``attempt + 1``."""
        return min(self.base_delay_seconds * (2**attempt), self.max_delay_seconds)


class StateSettings(BaseModel):
    """Runtime snapshot persistence."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["json", "sqlite"] = Field(default="json", description="Snapshot backend")
    path: Path = Field(
        default=Path("data/orchestrator-state.json"), description="Snapshot file location"
    )


class EventSettings(BaseModel):
    """Supervisor -> orchestrator channel."""

    model_config = ConfigDict(frozen=True)

    queue_size: int = Field(default=1000, ge=1, description="Bounded event queue size")


class MetricsSettings(BaseModel):
    """Prometheus metrics settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=False, description="Expose Prometheus metrics")
    prefix: str = Field(default="orchid_orchestrator", min_length=1, description="Metric prefix")


class OrchestratorSettings(BaseModel):
    """Everything the orchestrator core needs, grouped by concern."""

    model_config = ConfigDict(frozen=True)

    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    health_check: HealthCheckSettings = Field(default_factory=HealthCheckSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    process: ProcessSettings = Field(default_factory=ProcessSettings)
    auto_restart: AutoRestartSettings = Field(default_factory=AutoRestartSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    events: EventSettings = Field(default_factory=EventSettings)


class AppSettings(BaseModel):
    """Root application settings."""

    model_config = ConfigDict(frozen=True)

    service: ServiceSettings = Field(default_factory=ServiceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
