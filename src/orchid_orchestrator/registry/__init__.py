"""Service registry: descriptors and dependency ordering."""

from orchid_orchestrator.registry.catalog import (
    ServiceRegistry,
    StartupStep,
    build_service_environment,
    resolve_working_directory,
)
from orchid_orchestrator.registry.models import (
    OptionalEnvVar,
    RunConfig,
    ServiceCriticality,
    ServiceDescriptor,
)

__all__ = [
    "OptionalEnvVar",
    "RunConfig",
    "ServiceCriticality",
    "ServiceDescriptor",
    "ServiceRegistry",
    "StartupStep",
    "build_service_environment",
    "resolve_working_directory",
]
