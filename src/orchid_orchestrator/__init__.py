"""Single-host process orchestrator with health-gated lifecycle management."""

from orchid_orchestrator.api import create_app
from orchid_orchestrator.config import AppSettings, OrchestratorSettings, load_config
from orchid_orchestrator.errors import (
    ConcurrencyConflictError,
    DependencyNotReadyError,
    ExternallyManagedError,
    KillVerificationError,
    OrchestratorError,
)
from orchid_orchestrator.registry import ServiceDescriptor, ServiceRegistry
from orchid_orchestrator.runtime import (
    ActionResult,
    Orchestrator,
    ServiceAction,
    ServiceState,
)

__version__ = "1.2.0"

__all__ = [
    "ActionResult",
    "AppSettings",
    "ConcurrencyConflictError",
    "DependencyNotReadyError",
    "ExternallyManagedError",
    "KillVerificationError",
    "Orchestrator",
    "OrchestratorError",
    "OrchestratorSettings",
    "ServiceAction",
    "ServiceDescriptor",
    "ServiceRegistry",
    "ServiceState",
    "__version__",
    "create_app",
    "load_config",
]
