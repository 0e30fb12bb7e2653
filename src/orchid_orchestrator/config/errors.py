"""Configuration-specific exceptions."""

from __future__ import annotations

from orchid_orchestrator.errors import OrchestratorError


class ConfigError(OrchestratorError):
    """Base exception for configuration errors."""

    code = "CONFIG_ERROR"
    status_code = 400


class ConfigFileNotFoundError(ConfigError):
    """Raised when a required configuration file is not found."""

    code = "CONFIG_FILE_NOT_FOUND"

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Configuration file not found: {path}")


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""

    code = "CONFIG_INVALID"

    def __init__(self, errors: list[dict[str, str]], *, source: str = "Configuration") -> None:
        self.errors = errors
        messages = []
        for err in errors:
            loc = err.get("loc", "unknown")
            msg = err.get("msg", "validation error")
            messages.append(f"  - {loc}: {msg}")
        detail = "\n".join(messages)
        super().__init__(f"{source} validation failed:\n{detail}")


class PlaceholderResolutionError(ConfigError):
    """Raised when an environment variable placeholder cannot be resolved."""

    code = "PLACEHOLDER_UNRESOLVED"

    def __init__(self, placeholder: str, key_path: str) -> None:
        self.placeholder = placeholder
        self.key_path = key_path
        super().__init__(
            f"Cannot resolve placeholder '{placeholder}' at '{key_path}': "
            f"environment variable not set"
        )


class RegistryError(ConfigError):
    """Raised when the service registry is malformed (duplicate ids, cycles, unknown deps)."""

    code = "REGISTRY_INVALID"


class ServiceNotFoundError(ConfigError):
    """Raised when an id is not present in the service registry."""

    code = "SERVICE_NOT_FOUND"
    status_code = 404

    def __init__(self, service_id: str) -> None:
        self.service_id = service_id
        super().__init__(f"Service {service_id} not found in registry")


class MissingRunConfigError(ConfigError):
    """Raised when a service cannot be spawned because its run config is incomplete."""

    code = "MISSING_RUN_CONFIG"
