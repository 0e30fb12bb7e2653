"""Persisted shape of a service's runtime state."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from orchid_orchestrator.runtime.state import (
    CircuitBreakerInfo,
    CircuitState,
    HealthInfo,
    KillPhase,
    KillTracking,
    LogBuffers,
    ProcessInfo,
    ServiceRuntimeState,
    ServiceState,
    WarmupInfo,
    utcnow,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class _Persisted(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PersistedProcess(_Persisted):
    pid: int | None = None
    start_time: datetime | None = None
    uptime: float = 0.0
    memory: dict[str, int] | None = None
    exit_code: int | None = None


class PersistedHealth(_Persisted):
    is_healthy: bool = False
    consecutive_failures: int = Field(default=0, ge=0)
    consecutive_successes: int = Field(default=0, ge=0)
    last_check: datetime | None = None
    response_time_ms: float | None = None
    error: str | None = None


class PersistedCircuitBreaker(_Persisted):
    state: CircuitState = "closed"
    failures: int = Field(default=0, ge=0)
    backoff_seconds: float = Field(default=1.0, ge=0.0)
    last_failure: datetime | None = None
    next_retry: datetime | None = None


class PersistedWarmup(_Persisted):
    is_in_warmup: bool = False
    successful_checks: int = Field(default=0, ge=0)
    required_checks: int = Field(default=1, ge=0)
    start_time: datetime | None = None


class PersistedKillTracking(_Persisted):
    phase: KillPhase = KillPhase.IDLE
    sigterm_sent_at: datetime | None = None
    sigkill_sent_at: datetime | None = None
    kill_attempts: int = Field(default=0, ge=0)
    last_kill_error: str | None = None


class PersistedServiceState(_Persisted):
    """One service entry of the snapshot document."""

    service_id: str = Field(..., min_length=1)
    state: ServiceState = ServiceState.STOPPED
    dependencies: tuple[str, ...] = ()
    process: PersistedProcess = Field(default_factory=PersistedProcess)
    health: PersistedHealth = Field(default_factory=PersistedHealth)
    circuit_breaker: PersistedCircuitBreaker = Field(default_factory=PersistedCircuitBreaker)
    warmup: PersistedWarmup = Field(default_factory=PersistedWarmup)
    kill_tracking: PersistedKillTracking = Field(default_factory=PersistedKillTracking)
    auto_restore_attempts: int = Field(default=0, ge=0)
    last_state_change: datetime = Field(default_factory=utcnow)


def runtime_to_persisted(runtime: ServiceRuntimeState) -> dict[str, Any]:
    """Serialize ``runtime`` to a JSON-compatible dict; log buffers are not persisted."""
    model = PersistedServiceState(
        service_id=runtime.service_id,
        state=runtime.state,
        dependencies=runtime.dependencies,
        process=PersistedProcess(
            pid=runtime.process.pid,
            start_time=runtime.process.start_time,
            uptime=runtime.process.uptime,
            memory=runtime.process.memory,
            exit_code=runtime.process.exit_code,
        ),
        health=PersistedHealth(
            is_healthy=runtime.health.is_healthy,
            consecutive_failures=runtime.health.consecutive_failures,
            consecutive_successes=runtime.health.consecutive_successes,
            last_check=runtime.health.last_check,
            response_time_ms=runtime.health.response_time_ms,
            error=runtime.health.error,
        ),
        circuit_breaker=PersistedCircuitBreaker(
            state=runtime.circuit_breaker.state,
            failures=runtime.circuit_breaker.failures,
            backoff_seconds=runtime.circuit_breaker.backoff_seconds,
            last_failure=runtime.circuit_breaker.last_failure,
            next_retry=runtime.circuit_breaker.next_retry,
        ),
        warmup=PersistedWarmup(
            is_in_warmup=runtime.warmup.is_in_warmup,
            successful_checks=runtime.warmup.successful_checks,
            required_checks=runtime.warmup.required_checks,
            start_time=runtime.warmup.start_time,
        ),
        kill_tracking=PersistedKillTracking(
            phase=runtime.kill_tracking.phase,
            sigterm_sent_at=runtime.kill_tracking.sigterm_sent_at,
            sigkill_sent_at=runtime.kill_tracking.sigkill_sent_at,
            kill_attempts=runtime.kill_tracking.kill_attempts,
            last_kill_error=runtime.kill_tracking.last_kill_error,
        ),
        auto_restore_attempts=runtime.auto_restore_attempts,
        last_state_change=runtime.last_state_change,
    )
    return model.model_dump(mode="json")


def persisted_to_runtime(
    persisted: PersistedServiceState,
    *,
    log_lines: int = 1000,
) -> ServiceRuntimeState:
    """Rebuild runtime fields from a snapshot entry.

    The restore policy (downgrading active states, skipping external ids) is
    applied by the orchestrator, not here.
    """
    return ServiceRuntimeState(
        service_id=persisted.service_id,
        state=persisted.state,
        dependencies=tuple(persisted.dependencies),
        process=ProcessInfo(
            pid=persisted.process.pid,
            start_time=persisted.process.start_time,
            uptime=persisted.process.uptime,
            memory=dict(persisted.process.memory) if persisted.process.memory else None,
            exit_code=persisted.process.exit_code,
        ),
        health=HealthInfo(**persisted.health.model_dump()),
        circuit_breaker=CircuitBreakerInfo(**persisted.circuit_breaker.model_dump()),
        warmup=WarmupInfo(**persisted.warmup.model_dump()),
        kill_tracking=KillTracking(**persisted.kill_tracking.model_dump()),
        auto_restore_attempts=persisted.auto_restore_attempts,
        last_state_change=persisted.last_state_change,
        logs=LogBuffers(max_lines=log_lines),
    )


def parse_services(raw: Any, *, source: str) -> dict[str, PersistedServiceState]:
    """Validate snapshot entries; invalid ones are skipped with a warning."""
    if not isinstance(raw, Mapping):
        logger.warning("Ignoring snapshot without a services mapping", extra={"source": source})
        return {}

    services: dict[str, PersistedServiceState] = {}
    for key, entry in raw.items():
        if not isinstance(entry, Mapping):
            logger.warning(
                "Skipping malformed snapshot entry",
                extra={"source": source, "service_id": key},
            )
            continue
        try:
            services[str(key)] = PersistedServiceState.model_validate(
                {"service_id": key, **entry}
            )
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid snapshot entry",
                extra={"source": source, "service_id": key, "errors": exc.error_count()},
            )
    return services
