"""Custom exceptions for the orchestrator."""

from __future__ import annotations

from typing import ClassVar


class OrchestratorError(Exception):
    """Base exception for this package."""

    code: ClassVar[str] = "ORCHESTRATOR_ERROR"
    status_code: ClassVar[int] = 500


class MissingDependencyError(OrchestratorError):
    """Raised when an optional dependency is required but not installed."""

    code = "MISSING_DEPENDENCY"


class ExternallyManagedError(OrchestratorError):
    """Raised when a mutating action targets an externally managed service."""

    code = "EXTERNALLY_MANAGED"
    status_code = 501

    def __init__(self, service_id: str, action: str = "controlled") -> None:
        self.service_id = service_id
        super().__init__(
            f"Service {service_id} is externally managed and cannot be {action} by orchestrator"
        )


class ConcurrencyConflictError(OrchestratorError):
    """Raised when an action for the same service is already in flight."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 409


class ServiceAlreadyActiveError(ConcurrencyConflictError):
    """Raised when starting a service that is already starting or running."""

    code = "SERVICE_ALREADY_ACTIVE"


class DependencyNotReadyError(OrchestratorError):
    """Raised when a dependency is neither running+healthy nor external."""

    code = "DEPENDENCY_NOT_READY"
    status_code = 424

    def __init__(self, service_id: str, dependency_id: str, expected: str) -> None:
        self.service_id = service_id
        self.dependency_id = dependency_id
        super().__init__(f"Dependency {dependency_id} is not {expected} for service {service_id}")


class ProcessSpawnError(OrchestratorError):
    """Raised when the OS refuses to spawn a service process."""

    code = "PROCESS_SPAWN_FAILED"


class NoActiveProcessError(OrchestratorError):
    """Raised when a kill is requested for a service without a live process."""

    code = "NO_ACTIVE_PROCESS"
    status_code = 409


class KillVerificationError(OrchestratorError):
    """Raised when a process survived both SIGTERM and SIGKILL."""

    code = "KILL_VERIFICATION_FAILED"

    def __init__(self, service_id: str, pid: int | None, attempts: int) -> None:
        self.service_id = service_id
        self.pid = pid
        self.attempts = attempts
        super().__init__(
            f"Process {pid} of service {service_id} is still alive after "
            f"{attempts} kill attempt(s) (zombie)"
        )


class StateStoreError(OrchestratorError):
    """Raised when the runtime snapshot cannot be persisted."""

    code = "STATE_STORE_ERROR"


class ShutdownError(OrchestratorError):
    """Raised when one or more components fail to close during shutdown."""

    code = "SHUTDOWN_ERROR"

    def __init__(self, errors: dict[str, Exception]) -> None:
        self.errors = errors
        names = ", ".join(errors.keys())
        super().__init__(f"Failed to close components: {names}")


class InvalidRequestError(OrchestratorError):
    """Raised when a control API request fails validation."""

    code = "INVALID_REQUEST"
    status_code = 400

    def __init__(self, message: str, *, details: list[dict[str, str]] | None = None) -> None:
        self.details = details or []
        super().__init__(message)
