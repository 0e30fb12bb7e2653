"""Tests for unified exception hierarchy."""

from __future__ import annotations

import pytest

from orchid_orchestrator.config.errors import (
    ConfigError,
    ConfigFileNotFoundError,
    ConfigValidationError,
    MissingRunConfigError,
    PlaceholderResolutionError,
    RegistryError,
    ServiceNotFoundError,
)
from orchid_orchestrator.errors import (
    ConcurrencyConflictError,
    DependencyNotReadyError,
    ExternallyManagedError,
    InvalidRequestError,
    KillVerificationError,
    NoActiveProcessError,
    OrchestratorError,
    ProcessSpawnError,
    ServiceAlreadyActiveError,
    ShutdownError,
    StateStoreError,
)


class TestExceptionHierarchy:
    """Verify every package exception inherits from OrchestratorError."""

    @pytest.mark.parametrize(
        "error",
        [
            ConfigError(),
            ConfigFileNotFoundError("missing.json"),
            ConfigValidationError([]),
            PlaceholderResolutionError("${VAR}", "key.path"),
            RegistryError("cycle"),
            ServiceNotFoundError("api"),
            MissingRunConfigError("no command"),
            ExternallyManagedError("postgres"),
            ConcurrencyConflictError("busy"),
            ServiceAlreadyActiveError("running"),
            DependencyNotReadyError("api", "db", "running and healthy"),
            ProcessSpawnError("enoent"),
            NoActiveProcessError("none"),
            KillVerificationError("api", 42, 2),
            StateStoreError("disk full"),
            ShutdownError({"store": RuntimeError("x")}),
            InvalidRequestError("bad"),
        ],
    )
    def test_is_orchestrator_error(self, error: Exception) -> None:
        assert isinstance(error, OrchestratorError)

    def test_already_active_is_a_concurrency_conflict(self) -> None:
        """Callers that skip conflicts also skip already-active services."""
        with pytest.raises(ConcurrencyConflictError):
            raise ServiceAlreadyActiveError("Service api is already running")

    def test_catch_config_error_with_orchestrator_error(self) -> None:
        caught = False
        try:
            raise ConfigError("test")
        except OrchestratorError:
            caught = True
        assert caught


class TestErrorCodes:
    @pytest.mark.parametrize(
        ("error", "code", "status"),
        [
            (ServiceNotFoundError("api"), "SERVICE_NOT_FOUND", 404),
            (ExternallyManagedError("db"), "EXTERNALLY_MANAGED", 501),
            (ConcurrencyConflictError("busy"), "CONCURRENCY_CONFLICT", 409),
            (ServiceAlreadyActiveError("busy"), "SERVICE_ALREADY_ACTIVE", 409),
            (DependencyNotReadyError("a", "b", "x"), "DEPENDENCY_NOT_READY", 424),
            (NoActiveProcessError("none"), "NO_ACTIVE_PROCESS", 409),
            (KillVerificationError("a", 1, 2), "KILL_VERIFICATION_FAILED", 500),
            (InvalidRequestError("bad"), "INVALID_REQUEST", 400),
            (OrchestratorError("boom"), "ORCHESTRATOR_ERROR", 500),
        ],
    )
    def test_code_and_status(self, error: OrchestratorError, code: str, status: int) -> None:
        assert error.code == code
        assert error.status_code == status

    def test_externally_managed_message_names_action(self) -> None:
        error = ExternallyManagedError("postgres", "stopped")

        assert error.service_id == "postgres"
        assert str(error) == (
            "Service postgres is externally managed and cannot be stopped by orchestrator"
        )

    def test_dependency_not_ready_message(self) -> None:
        error = DependencyNotReadyError("api", "db", "external and healthy")

        assert error.dependency_id == "db"
        assert str(error) == "Dependency db is not external and healthy for service api"

    def test_kill_verification_mentions_zombie(self) -> None:
        error = KillVerificationError("api", 4242, 2)

        assert "4242" in str(error)
        assert "zombie" in str(error)

    def test_shutdown_error_lists_components(self) -> None:
        error = ShutdownError({"state_store": RuntimeError("a"), "supervisor": RuntimeError("b")})

        assert str(error) == "Failed to close components: state_store, supervisor"
        assert set(error.errors) == {"state_store", "supervisor"}
