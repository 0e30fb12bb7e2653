"""Runtime primitives: state, supervision and orchestration."""

from orchid_orchestrator.runtime.circuit_breaker import BreakerOutcome, CircuitBreakerPolicy
from orchid_orchestrator.runtime.cleanup import OrphanSweeper, Sweeper, SweepReport
from orchid_orchestrator.runtime.events import (
    EventBus,
    EventType,
    OrchestratorEvent,
    SupervisorEvent,
    SupervisorEventKind,
)
from orchid_orchestrator.runtime.guards import InFlightGuard
from orchid_orchestrator.runtime.health import (
    HealthProbe,
    HealthReport,
    HealthStatus,
    HttpHealthProbe,
    aggregate_health_checks,
)
from orchid_orchestrator.runtime.orchestrator import ActionResult, Orchestrator, ServiceAction
from orchid_orchestrator.runtime.process import ProcessHandle, SpawnRequest, spawn_process
from orchid_orchestrator.runtime.state import (
    KillPhase,
    ServiceRuntimeState,
    ServiceState,
)
from orchid_orchestrator.runtime.supervisor import KillResult, ProcessSupervisor

__all__ = [
    "ActionResult",
    "BreakerOutcome",
    "CircuitBreakerPolicy",
    "EventBus",
    "EventType",
    "HealthProbe",
    "HealthReport",
    "HealthStatus",
    "HttpHealthProbe",
    "InFlightGuard",
    "KillPhase",
    "KillResult",
    "Orchestrator",
    "OrchestratorEvent",
    "OrphanSweeper",
    "ProcessHandle",
    "ProcessSupervisor",
    "ServiceAction",
    "ServiceRuntimeState",
    "ServiceState",
    "SpawnRequest",
    "SupervisorEvent",
    "SupervisorEventKind",
    "SweepReport",
    "Sweeper",
    "aggregate_health_checks",
    "spawn_process",
]
