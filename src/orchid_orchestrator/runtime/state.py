"""Per-service runtime state owned by the orchestrator."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

CircuitState = Literal["closed", "open", "half_open"]


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ServiceState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    CIRCUIT_OPEN = "circuit_open"
    STOPPING = "stopping"
    ERROR = "error"
    EXTERNAL = "external"


# States in which a process is believed to be alive.
ACTIVE_STATES = frozenset(
    {
        ServiceState.STARTING,
        ServiceState.RUNNING,
        ServiceState.UNHEALTHY,
        ServiceState.CIRCUIT_OPEN,
        ServiceState.STOPPING,
    }
)

# States whose health results are still applied.
PROBED_STATES = frozenset(
    {
        ServiceState.STARTING,
        ServiceState.RUNNING,
        ServiceState.UNHEALTHY,
        ServiceState.CIRCUIT_OPEN,
    }
)


class KillPhase(StrEnum):
    IDLE = "idle"
    SIGTERM_SENT = "sigterm_sent"
    SIGTERM_WAIT = "sigterm_wait"
    SIGKILL_SENT = "sigkill_sent"
    KILLED = "killed"
    ZOMBIE = "zombie"


@dataclass(slots=True)
class ProcessInfo:
    pid: int | None = None
    start_time: datetime | None = None
    uptime: float = 0.0
    memory: dict[str, int] | None = None
    exit_code: int | None = None

    def clear(self) -> None:
        self.pid = None
        self.start_time = None
        self.uptime = 0.0
        self.memory = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "start_time": isoformat(self.start_time),
            "uptime": self.uptime,
            "memory": dict(self.memory) if self.memory else None,
            "exit_code": self.exit_code,
        }


@dataclass(slots=True)
class HealthInfo:
    is_healthy: bool = False
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_check: datetime | None = None
    response_time_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_check": isoformat(self.last_check),
            "response_time_ms": self.response_time_ms,
            "error": self.error,
        }


@dataclass(slots=True)
class CircuitBreakerInfo:
    state: CircuitState = "closed"
    failures: int = 0
    backoff_seconds: float = 1.0
    last_failure: datetime | None = None
    next_retry: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failures": self.failures,
            "backoff_seconds": self.backoff_seconds,
            "last_failure": isoformat(self.last_failure),
            "next_retry": isoformat(self.next_retry),
        }


@dataclass(slots=True)
class WarmupInfo:
    is_in_warmup: bool = False
    successful_checks: int = 0
    required_checks: int = 1
    start_time: datetime | None = None

    @property
    def progress(self) -> int:
        if self.required_checks <= 0:
            return 0
        return min(100, round(self.successful_checks / self.required_checks * 100))

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_in_warmup": self.is_in_warmup,
            "successful_checks": self.successful_checks,
            "required_checks": self.required_checks,
            "progress": self.progress,
            "start_time": isoformat(self.start_time),
        }


@dataclass(slots=True)
class KillTracking:
    phase: KillPhase = KillPhase.IDLE
    sigterm_sent_at: datetime | None = None
    sigkill_sent_at: datetime | None = None
    kill_attempts: int = 0
    last_kill_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "sigterm_sent_at": isoformat(self.sigterm_sent_at),
            "sigkill_sent_at": isoformat(self.sigkill_sent_at),
            "kill_attempts": self.kill_attempts,
            "last_kill_error": self.last_kill_error,
        }


@dataclass(slots=True)
class LogBuffers:
    """Bounded stdout/stderr ring buffers; the oldest lines drop first."""

    max_lines: int = 1000
    stdout: deque[str] = field(init=False)
    stderr: deque[str] = field(init=False)

    def __post_init__(self) -> None:
        self.stdout = deque(maxlen=self.max_lines)
        self.stderr = deque(maxlen=self.max_lines)

    def append(self, stream: Literal["stdout", "stderr"], line: str) -> None:
        buffer = self.stdout if stream == "stdout" else self.stderr
        buffer.append(line)

    def tail(self, lines: int) -> dict[str, list[str]]:
        return {
            "stdout": list(self.stdout)[-lines:] if lines > 0 else [],
            "stderr": list(self.stderr)[-lines:] if lines > 0 else [],
        }


@dataclass(slots=True)
class ServiceRuntimeState:
    """Mutable runtime record for one service.

    Mutated only by the process supervisor and orchestrator actions.
    """

    service_id: str
    state: ServiceState = ServiceState.STOPPED
    dependencies: tuple[str, ...] = ()
    process: ProcessInfo = field(default_factory=ProcessInfo)
    health: HealthInfo = field(default_factory=HealthInfo)
    circuit_breaker: CircuitBreakerInfo = field(default_factory=CircuitBreakerInfo)
    warmup: WarmupInfo = field(default_factory=WarmupInfo)
    kill_tracking: KillTracking = field(default_factory=KillTracking)
    auto_restore_attempts: int = 0
    last_state_change: datetime = field(default_factory=utcnow)
    logs: LogBuffers = field(default_factory=LogBuffers)
    generation: int = 0

    @classmethod
    def external(cls, service_id: str, dependencies: tuple[str, ...] = ()) -> ServiceRuntimeState:
        """External services are pre-warmed, always healthy and never backed off."""
        return cls(
            service_id=service_id,
            state=ServiceState.EXTERNAL,
            dependencies=dependencies,
            health=HealthInfo(is_healthy=True, consecutive_successes=1, last_check=utcnow()),
            circuit_breaker=CircuitBreakerInfo(backoff_seconds=0.0),
            warmup=WarmupInfo(successful_checks=1, required_checks=1),
        )

    @property
    def is_external(self) -> bool:
        return self.state == ServiceState.EXTERNAL

    @property
    def is_running_and_healthy(self) -> bool:
        return self.state == ServiceState.RUNNING and self.health.is_healthy

    def set_state(self, state: ServiceState) -> bool:
        """Move to ``state``; returns whether anything changed."""
        if self.state == ServiceState.EXTERNAL or self.state == state:
            return False
        self.state = state
        self.last_state_change = utcnow()
        return True
