"""Lifecycle coordinator for every service in the registry."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from time import perf_counter
from typing import Any, Literal

from orchid_orchestrator.config.models import OrchestratorSettings
from orchid_orchestrator.errors import (
    ConcurrencyConflictError,
    DependencyNotReadyError,
    ExternallyManagedError,
    KillVerificationError,
    OrchestratorError,
    ServiceAlreadyActiveError,
    ShutdownError,
    StateStoreError,
)
from orchid_orchestrator.observability import ObservableMixin, service_scope
from orchid_orchestrator.observability.metrics import MetricsRecorder
from orchid_orchestrator.persistence import (
    StateStore,
    create_state_store,
    persisted_to_runtime,
)
from orchid_orchestrator.registry import ServiceDescriptor, ServiceRegistry
from orchid_orchestrator.runtime.cleanup import Sweeper, SweepReport
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
    aggregate_health_checks,
)
from orchid_orchestrator.runtime.process import Spawner, spawn_process
from orchid_orchestrator.runtime.state import (
    ACTIVE_STATES,
    LogBuffers,
    ServiceRuntimeState,
    ServiceState,
    isoformat,
    utcnow,
)
from orchid_orchestrator.runtime.supervisor import KillResult, ProcessSupervisor

logger = logging.getLogger(__name__)

RegistryLoader = Callable[[], ServiceRegistry]


class ServiceAction(StrEnum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    RESET_CIRCUIT = "resetCircuit"
    CLEANUP = "cleanup"

    @classmethod
    def parse(cls, value: str | ServiceAction) -> ServiceAction:
        """Accept the canonical names plus ``reset_circuit``."""
        if isinstance(value, ServiceAction):
            return value
        if value == "reset_circuit":
            return cls.RESET_CIRCUIT
        return cls(value)


@dataclass(slots=True)
class ActionResult:
    """Outcome of one dispatched action; failures never raise."""

    service_id: str
    action: str
    success: bool
    message: str | None = None
    error: str | None = None
    error_code: str | None = None
    status_code: int = 200
    managed: Literal["internal", "external"] = "internal"
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "service_id": self.service_id,
            "action": self.action,
            "success": self.success,
            "status_code": self.status_code,
            "managed": self.managed,
        }
        if self.message is not None:
            payload["message"] = self.message
        if self.error is not None:
            payload["error"] = self.error
            payload["code"] = self.error_code
        if self.data is not None:
            payload["data"] = self.data
        return payload


class Orchestrator(ObservableMixin):
    """Owns runtime state for every registered service.

    All state mutations happen on the event loop. Lifecycle actions for one
    id are mutually exclusive; a second concurrent request fails instead of
    queueing. Supervisor events are consumed in order by a single dispatcher
    task.

    Example usage::

        orchestrator = Orchestrator(settings.orchestrator, version=settings.service.version)
        await orchestrator.initialize()
        await orchestrator.start_service("api")
        status = orchestrator.get_status_all()
        await orchestrator.shutdown()
    """

    _resource_name = "orchestrator"

    def __init__(
        self,
        settings: OrchestratorSettings,
        *,
        version: str = "1.2.0",
        registry_loader: RegistryLoader | None = None,
        store: StateStore | None = None,
        spawner: Spawner = spawn_process,
        probe: HealthProbe | None = None,
        sweeper: Sweeper | None = None,
        base_env: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._version = version
        self._registry_loader = registry_loader or (
            lambda: ServiceRegistry.from_file(settings.registry.path)
        )
        self._store = store or create_state_store(settings.state, metrics=metrics)
        self._clock = clock
        self._metrics = metrics
        self._events: asyncio.Queue[SupervisorEvent] = asyncio.Queue(
            maxsize=settings.events.queue_size
        )
        self._supervisor = ProcessSupervisor(
            settings,
            events=self._events,
            spawner=spawner,
            probe=probe,
            sweeper=sweeper,
            base_env=base_env,
            clock=clock,
            metrics=metrics,
        )
        self.bus = EventBus(queue_size=settings.events.queue_size)

        self._registry = ServiceRegistry([])
        self._services: dict[str, ServiceRuntimeState] = {}
        self._guard = InFlightGuard("orchestrator")
        self._dispatcher: asyncio.Task[None] | None = None
        self._restart_tasks: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._full_restart: asyncio.Task[None] | None = None
        self._started_at = clock()
        self._initialized = False
        self._shutting_down = False

    @property
    def version(self) -> str:
        return self._version

    @property
    def registry(self) -> ServiceRegistry:
        return self._registry

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, (self._clock() - self._started_at).total_seconds())

    def runtime(self, service_id: str) -> ServiceRuntimeState:
        """Return the live runtime record; raises ServiceNotFoundError for unknown ids."""
        return self._lookup(service_id)[1]

    async def initialize(self, *, auto_start: bool = True) -> None:
        """Load the registry, restore persisted state and start the dispatcher.

        Args:
            auto_start: Start eligible services before returning. Pass ``False``
                and call :meth:`schedule_auto_start` to do it in the background.
        """
        started = perf_counter()
        try:
            await self._store.open()
            self._registry = self._registry_loader()
            self._build_runtime_states()
            await self._restore_state()
            self._start_dispatcher()
        except Exception as exc:
            self._observe_error("initialize", started, exc)
            raise
        self._shutting_down = False
        self._initialized = True
        self._observe_operation("initialize", started, success=True)
        logger.info(
            "Orchestrator initialized",
            extra={"services": len(self._services), "version": self._version},
        )

        if auto_start:
            await self._auto_start()

    def schedule_auto_start(self) -> asyncio.Task[None]:
        return self._spawn_background(self._auto_start(), name="auto-start")

    async def start_service(self, service_id: str) -> None:
        """Start one service once its dependencies are ready.

        Raises:
            ServiceNotFoundError: Unknown id.
            ExternallyManagedError: The service is managed outside the orchestrator.
            ConcurrencyConflictError: An action is in flight or the service is active.
            DependencyNotReadyError: A dependency is not running and healthy.
        """
        await self._start(service_id, cancel_pending_restart=True)

    async def stop_service(self, service_id: str) -> KillResult:
        """Stop one service with verified termination.

        Raises:
            KillVerificationError: The process survived SIGKILL (after persisting).
        """
        descriptor, runtime = self._lookup(service_id)
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "stopped")

        started = perf_counter()
        with self._guard.hold(service_id, "stop"), service_scope(service_id):
            self._cancel_restart(service_id)
            try:
                result = await self._supervisor.stop_service(descriptor, runtime)
            except Exception as exc:
                self._observe_error("stop_service", started, exc)
                raise
            await self._persist(runtime)
            self._observe_operation("stop_service", started, success=result.success)

        await self._publish(EventType.SERVICE_STOPPED, service_id, result.to_dict())
        if not result.success:
            raise KillVerificationError(service_id, result.pid, result.attempts)
        return result

    async def restart_service(self, service_id: str) -> None:
        """Stop then start under a single ``restart`` guard."""
        descriptor, runtime = self._lookup(service_id)
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "restarted")

        started = perf_counter()
        with self._guard.hold(service_id, "restart"), service_scope(service_id):
            self._cancel_restart(service_id)
            try:
                result = await self._supervisor.stop_service(descriptor, runtime)
                await self._persist(runtime)
                if not result.success:
                    raise KillVerificationError(service_id, result.pid, result.attempts)
                self._check_dependencies(descriptor)
                await self._supervisor.start_service(descriptor, runtime)
            except Exception as exc:
                self._observe_error("restart_service", started, exc)
                await self._persist(runtime)
                raise
            await self._persist(runtime)
            self._observe_operation("restart_service", started, success=True)

        await self._publish(
            EventType.SERVICE_RESTARTED, service_id, {"pid": runtime.process.pid}
        )

    async def reset_circuit_breaker(self, service_id: str) -> None:
        """Close the breaker; a CIRCUIT_OPEN service drops to STOPPED."""
        descriptor, runtime = self._lookup(service_id)
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "reset")

        with self._guard.hold(service_id, "reset"), service_scope(service_id):
            self._supervisor.breaker.reset(runtime.circuit_breaker)
            previous = runtime.state
            if runtime.state == ServiceState.CIRCUIT_OPEN:
                runtime.set_state(ServiceState.STOPPED)
            await self._persist(runtime)
            logger.info("Circuit breaker reset", extra={"state": runtime.state.value})

        await self._publish(
            EventType.CIRCUIT_BREAKER_RESET,
            service_id,
            {"circuit_breaker": runtime.circuit_breaker.to_dict()},
        )
        if runtime.state != previous:
            await self._publish(
                EventType.STATE_CHANGE,
                service_id,
                {"state": runtime.state.value, "previous_state": previous.value},
            )

    async def cleanup_service_processes(self, service_id: str) -> SweepReport:
        descriptor, _ = self._lookup(service_id)
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "cleaned up")

        with self._guard.hold(service_id, "cleanup"):
            report = await self._supervisor.sweep(descriptor)
        logger.info("Manual orphan cleanup finished", extra=report.to_dict())
        return report

    async def kill_service_process(self, service_id: str, *, force: bool = False) -> dict[str, Any]:
        """Send one signal to the live process outside the stop flow.

        Deliberately unguarded so a hung stop can still be forced.
        """
        descriptor, runtime = self._lookup(service_id)
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "killed")
        try:
            result = await self._supervisor.kill(descriptor, runtime, force=force)
        finally:
            await self._persist(runtime)
        return {
            "killed": True,
            "message": f"Sent {result['signal']} to process {result['pid']}",
            **result,
        }

    async def dispatch_action(
        self,
        service_id: str,
        action: str | ServiceAction,
    ) -> ActionResult:
        """Run one lifecycle action and fold any failure into the result."""
        try:
            parsed = ServiceAction.parse(action)
        except ValueError:
            return ActionResult(
                service_id=service_id,
                action=str(action),
                success=False,
                error=f"Unknown action: {action}",
                error_code="INVALID_ACTION",
                status_code=400,
            )

        managed: Literal["internal", "external"] = (
            "external" if self._registry.is_externally_managed(service_id) else "internal"
        )
        try:
            data = await self._run_action(service_id, parsed)
        except OrchestratorError as exc:
            return ActionResult(
                service_id=service_id,
                action=parsed.value,
                success=False,
                error=str(exc),
                error_code=exc.code,
                status_code=exc.status_code,
                managed=managed,
            )
        except Exception as exc:
            logger.exception(
                "Unhandled error while executing action",
                extra={"service_id": service_id, "action": parsed.value},
            )
            return ActionResult(
                service_id=service_id,
                action=parsed.value,
                success=False,
                error=str(exc) or type(exc).__name__,
                error_code="INTERNAL_ERROR",
                status_code=500,
                managed=managed,
            )

        return ActionResult(
            service_id=service_id,
            action=parsed.value,
            success=True,
            message=f"Action {parsed.value} executed successfully on service {service_id}",
            managed=managed,
            data=data,
        )

    async def batch(
        self,
        action: str | ServiceAction,
        service_ids: Iterable[str],
    ) -> list[ActionResult]:
        """Apply ``action`` to each id in order; one failure never stops the rest."""
        return [await self.dispatch_action(service_id, action) for service_id in service_ids]

    async def _run_action(self, service_id: str, action: ServiceAction) -> dict[str, Any] | None:
        if action is ServiceAction.START:
            await self.start_service(service_id)
        elif action is ServiceAction.STOP:
            return (await self.stop_service(service_id)).to_dict()
        elif action is ServiceAction.RESTART:
            await self.restart_service(service_id)
        elif action is ServiceAction.RESET_CIRCUIT:
            await self.reset_circuit_breaker(service_id)
        elif action is ServiceAction.CLEANUP:
            return (await self.cleanup_service_processes(service_id)).to_dict()
        return None

    def schedule_full_restart(self, *, delay: float = 0.5) -> asyncio.Task[None]:
        """Shut down and re-initialize in the background; returns immediately.

        ``delay`` leaves time for the triggering HTTP response to be flushed.
        """
        if self._full_restart is not None and not self._full_restart.done():
            return self._full_restart
        self._full_restart = asyncio.create_task(
            self._run_full_restart(delay), name="full-restart"
        )
        return self._full_restart

    async def _run_full_restart(self, delay: float) -> None:
        logger.info("Full orchestrator restart requested", extra={"delay_seconds": delay})
        await asyncio.sleep(delay)
        try:
            await self.shutdown()
        except ShutdownError as exc:
            logger.error(
                "Shutdown before restart was incomplete",
                extra={"components": sorted(exc.errors)},
            )
        try:
            await self.initialize()
        except Exception:
            logger.exception("Orchestrator failed to re-initialize after restart")
            raise
        logger.info("Full orchestrator restart completed")

    async def shutdown(self) -> None:
        """Persist, terminate every tracked process and close the store.

        Raises:
            ShutdownError: One or more components failed; all were attempted.
        """
        started = perf_counter()
        self._shutting_down = True
        await self._cancel_background()

        errors: dict[str, Exception] = {}
        try:
            await self._store.save_state(self._services)
        except StateStoreError as exc:
            errors["state_store"] = exc
        try:
            await self._supervisor.cleanup()
        except Exception as exc:
            errors["supervisor"] = exc
        await self._stop_dispatcher()
        try:
            await self._store.close()
        except Exception as exc:
            errors["state_store_close"] = exc

        self._initialized = False
        if errors:
            error = ShutdownError(errors)
            self._observe_error("shutdown", started, error)
            raise error
        self._observe_operation("shutdown", started, success=True)
        logger.info("Orchestrator shut down")

    async def drain_events(self) -> None:
        """Wait until queued supervisor events and the cascades they spawned are done."""
        while True:
            dispatching = self._dispatcher is not None and not self._dispatcher.done()
            if dispatching:
                await self._events.join()
            pending = [task for task in self._background if not task.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            elif not dispatching or self._events.empty():
                return

    def get_service_status(self, service_id: str) -> dict[str, Any]:
        descriptor, runtime = self._lookup(service_id)
        process = self._supervisor.get_process_info(service_id)
        return {
            "service_id": service_id,
            "name": descriptor.display_name,
            "managed": descriptor.managed,
            "state": runtime.state.value,
            "port": descriptor.port,
            "criticality": descriptor.criticality.value,
            "dependencies": list(runtime.dependencies),
            "pid": process["pid"] if process else runtime.process.pid,
            "uptime": process["uptime"] if process else 0.0,
            "memory": process["memory"] if process else None,
            "exit_code": runtime.process.exit_code,
            "health": runtime.health.to_dict(),
            "warmup": runtime.warmup.to_dict(),
            "circuit_breaker": runtime.circuit_breaker.to_dict(),
            "kill_tracking": runtime.kill_tracking.to_dict(),
            "auto_restore_attempts": runtime.auto_restore_attempts,
            "last_state_change": isoformat(runtime.last_state_change),
        }

    def get_status_all(self) -> dict[str, Any]:
        services = [self.get_service_status(service_id) for service_id in sorted(self._services)]
        running = [s for s in services if s["state"] == ServiceState.RUNNING.value]
        return {
            "orchestrator": {
                "version": self._version,
                "uptime": self.uptime_seconds,
                "services_total": len(services),
                "services_running": len(running),
                "services_healthy": sum(1 for s in running if s["health"]["is_healthy"]),
            },
            "services": services,
        }

    def get_service_processes(self, service_id: str) -> dict[str, Any]:
        _, runtime = self._lookup(service_id)
        process = self._supervisor.get_process_info(service_id)
        return {
            "service_id": service_id,
            "state": runtime.state.value,
            "main_process": process,
            "kill_tracking": runtime.kill_tracking.to_dict(),
        }

    def get_service_kill_status(self, service_id: str) -> dict[str, Any]:
        _, runtime = self._lookup(service_id)
        return {
            "service_id": service_id,
            "state": runtime.state.value,
            "kill_tracking": runtime.kill_tracking.to_dict(),
        }

    def get_service_logs(self, service_id: str, lines: int = 50) -> dict[str, list[str]]:
        _, runtime = self._lookup(service_id)
        return runtime.logs.tail(lines)

    def get_registry(self) -> dict[str, object]:
        return self._registry.to_dict()

    async def health_report(self, *, timeout_seconds: float | None = None) -> HealthReport:
        """Readiness of the orchestrator itself: state store and event dispatcher."""
        checks = {
            "state_store": self._store.health_check,
            "dispatcher": self._dispatcher_health,
        }
        return await aggregate_health_checks(checks, timeout_seconds=timeout_seconds)

    async def _dispatcher_health(self) -> HealthStatus:
        alive = self._dispatcher is not None and not self._dispatcher.done()
        return HealthStatus(
            healthy=alive,
            latency_ms=0.0,
            message=None if alive else "Event dispatcher is not running",
            details={"queued": str(self._events.qsize())},
        )

    def _lookup(self, service_id: str) -> tuple[ServiceDescriptor, ServiceRuntimeState]:
        descriptor = self._registry.get(service_id)
        runtime = self._services.get(service_id)
        if runtime is None:
            runtime = self._new_runtime(descriptor)
            self._services[service_id] = runtime
        return descriptor, runtime

    def _new_runtime(self, descriptor: ServiceDescriptor) -> ServiceRuntimeState:
        if descriptor.externally_managed:
            return ServiceRuntimeState.external(descriptor.id, descriptor.dependencies)
        return ServiceRuntimeState(
            service_id=descriptor.id,
            dependencies=descriptor.dependencies,
            circuit_breaker=self._supervisor.breaker.new_info(),
            logs=LogBuffers(max_lines=self._settings.process.log_lines),
        )

    def _build_runtime_states(self) -> None:
        self._services = {
            descriptor.id: self._new_runtime(descriptor) for descriptor in self._registry
        }

    async def _restore_state(self) -> None:
        try:
            persisted = await self._store.load()
        except StateStoreError:
            logger.warning("Could not load persisted state, starting fresh", exc_info=True)
            return

        restored = 0
        for service_id, entry in persisted.items():
            descriptor = self._registry.find(service_id)
            if descriptor is None or descriptor.externally_managed:
                continue
            runtime = persisted_to_runtime(entry, log_lines=self._settings.process.log_lines)
            runtime.dependencies = descriptor.dependencies
            # No process survives the orchestrator restart, so nothing is warming up.
            runtime.warmup.is_in_warmup = False
            if runtime.state in ACTIVE_STATES or runtime.state == ServiceState.EXTERNAL:
                runtime.state = ServiceState.STOPPED
                runtime.process.clear()
                runtime.health.is_healthy = False
            self._services[service_id] = runtime
            restored += 1
        logger.info("Restored persisted service state", extra={"restored": restored})

    async def _auto_start(self) -> None:
        for step in self._registry.startup_order():
            descriptor = self._registry.get(step.service_id)
            runtime = self._services[step.service_id]
            if not descriptor.auto_start_eligible or self._is_busy(step.service_id, runtime):
                continue
            if descriptor.start_delay > 0:
                logger.info(
                    "Delaying auto-start",
                    extra={"service_id": descriptor.id, "delay_seconds": descriptor.start_delay},
                )
                await asyncio.sleep(descriptor.start_delay)
            try:
                await self.start_service(descriptor.id)
            except OrchestratorError as exc:
                logger.warning(
                    "Auto-start failed",
                    extra={"service_id": descriptor.id, "error": str(exc)},
                )

    async def _start(self, service_id: str, *, cancel_pending_restart: bool) -> None:
        descriptor, runtime = self._lookup(service_id)
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "started")

        started = perf_counter()
        with self._guard.hold(service_id, "start"), service_scope(service_id):
            if cancel_pending_restart:
                self._cancel_restart(service_id)
            try:
                if runtime.state in (ServiceState.STARTING, ServiceState.RUNNING) or (
                    runtime.warmup.is_in_warmup
                ):
                    raise ServiceAlreadyActiveError(
                        f"Service {service_id} is already {runtime.state.value}"
                    )
                self._check_dependencies(descriptor)
                await self._supervisor.start_service(descriptor, runtime)
            except Exception as exc:
                self._observe_error("start_service", started, exc)
                if runtime.state == ServiceState.ERROR:
                    await self._persist(runtime)
                raise
            await self._persist(runtime)
            self._observe_operation("start_service", started, success=True)

        await self._publish(
            EventType.SERVICE_STARTED,
            service_id,
            {"pid": runtime.process.pid, "required_checks": runtime.warmup.required_checks},
        )

    def _check_dependencies(self, descriptor: ServiceDescriptor) -> None:
        for dependency_id in descriptor.dependencies:
            dependency = self._registry.find(dependency_id)
            runtime = self._services.get(dependency_id)
            if dependency is not None and dependency.externally_managed:
                if runtime is None or runtime.state != ServiceState.EXTERNAL:
                    raise DependencyNotReadyError(
                        descriptor.id, dependency_id, "external and healthy"
                    )
            elif runtime is None or not runtime.is_running_and_healthy:
                raise DependencyNotReadyError(descriptor.id, dependency_id, "running and healthy")

    def _is_busy(self, service_id: str, runtime: ServiceRuntimeState) -> bool:
        return (
            service_id in self._guard
            or runtime.state in (ServiceState.STARTING, ServiceState.RUNNING)
            or runtime.warmup.is_in_warmup
        )

    def _start_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch(), name="supervisor-events")

    async def _stop_dispatcher(self) -> None:
        dispatcher = self._dispatcher
        if dispatcher is None:
            return
        if not dispatcher.done():
            await self._events.join()
            dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await dispatcher
        self._dispatcher = None

    async def _dispatch(self) -> None:
        while True:
            event = await self._events.get()
            try:
                with service_scope(event.service_id):
                    await self._handle_event(event)
            except Exception:
                logger.exception(
                    "Failed to handle supervisor event",
                    extra={"service_id": event.service_id, "kind": event.kind.value},
                )
            finally:
                self._events.task_done()

    async def _handle_event(self, event: SupervisorEvent) -> None:
        runtime = self._services.get(event.service_id)
        if runtime is None:
            return

        if event.kind is SupervisorEventKind.STATE_CHANGE:
            await self._persist(runtime)
            await self._publish(
                EventType.STATE_CHANGE,
                event.service_id,
                {
                    "state": event.state.value if event.state else None,
                    "previous_state": event.previous_state.value if event.previous_state else None,
                    "healthy": event.healthy,
                },
            )
            if (
                event.state == ServiceState.RUNNING
                and event.healthy
                and runtime.is_running_and_healthy
            ):
                self._on_running_and_healthy(event.service_id, runtime)
        elif event.kind is SupervisorEventKind.PROCESS_EXIT:
            await self._publish(
                EventType.PROCESS_EXIT,
                event.service_id,
                {
                    "exit_code": event.exit_code,
                    "signal": event.signal,
                    "expected": event.expected,
                },
            )
            if not event.expected:
                await self._on_unexpected_exit(event.service_id, runtime)
        elif event.kind is SupervisorEventKind.PROCESS_ERROR:
            await self._publish(EventType.PROCESS_ERROR, event.service_id, {"error": event.error})

    def _on_running_and_healthy(self, service_id: str, runtime: ServiceRuntimeState) -> None:
        if runtime.auto_restore_attempts:
            logger.info(
                "Service recovered, auto-restart counter reset",
                extra={"attempts": runtime.auto_restore_attempts},
            )
            runtime.auto_restore_attempts = 0
        if not self._shutting_down and self._registry.dependents_of(service_id):
            self._spawn_background(self._start_dependents(service_id), name=f"cascade:{service_id}")

    async def _start_dependents(self, service_id: str) -> None:
        max_attempts = self._settings.auto_restart.max_attempts
        for dependent_id in self._registry.dependents_of(service_id):
            descriptor = self._registry.get(dependent_id)
            runtime = self._services[dependent_id]
            if not descriptor.auto_start_eligible or self._is_busy(dependent_id, runtime):
                continue
            exhausted = runtime.auto_restore_attempts >= max_attempts
            if runtime.state == ServiceState.ERROR and exhausted:
                continue
            logger.info(
                "Dependency became healthy, starting dependent",
                extra={"service_id": dependent_id, "dependency": service_id},
            )
            try:
                await self.start_service(dependent_id)
            except OrchestratorError as exc:
                logger.info(
                    "Dependent not started",
                    extra={"service_id": dependent_id, "reason": str(exc)},
                )

    async def _on_unexpected_exit(self, service_id: str, runtime: ServiceRuntimeState) -> None:
        descriptor = self._registry.find(service_id)
        if self._shutting_down or descriptor is None or not descriptor.auto_start_eligible:
            return

        policy = self._settings.auto_restart
        attempts = runtime.auto_restore_attempts
        if attempts >= policy.max_attempts:
            await self._give_up(runtime)
            return
        delay = policy.delay_for(attempts)
        logger.info(
            "Scheduling auto-restart",
            extra={"attempt": attempts + 1, "delay_seconds": delay},
        )
        self._schedule_restart(service_id, delay)

    async def _give_up(self, runtime: ServiceRuntimeState) -> None:
        runtime.set_state(ServiceState.ERROR)
        await self._persist(runtime)
        logger.error(
            "Auto-restart attempts exhausted, manual restart required",
            extra={"attempts": runtime.auto_restore_attempts},
        )

    def _schedule_restart(self, service_id: str, delay: float) -> None:
        self._cancel_restart(service_id)
        task = asyncio.create_task(
            self._restart_after(service_id, delay), name=f"auto-restart:{service_id}"
        )
        self._restart_tasks[service_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._restart_tasks.get(service_id) is done:
                del self._restart_tasks[service_id]

        task.add_done_callback(_forget)

    def _cancel_restart(self, service_id: str) -> None:
        task = self._restart_tasks.pop(service_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.info("Cancelled pending auto-restart", extra={"service_id": service_id})

    async def _restart_after(self, service_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._restart_tasks.get(service_id) is asyncio.current_task():
            del self._restart_tasks[service_id]
        runtime = self._services.get(service_id)
        if runtime is None or self._shutting_down:
            return

        policy = self._settings.auto_restart
        runtime.auto_restore_attempts += 1
        attempt = runtime.auto_restore_attempts
        with service_scope(service_id):
            logger.info(
                "Auto-restarting service",
                extra={"attempt": attempt, "max_attempts": policy.max_attempts},
            )
            try:
                await self._start(service_id, cancel_pending_restart=False)
            except ConcurrencyConflictError as exc:
                logger.info("Auto-restart skipped", extra={"reason": str(exc)})
                return
            except OrchestratorError as exc:
                logger.warning(
                    "Auto-restart attempt failed", extra={"attempt": attempt, "error": str(exc)}
                )
                if attempt >= policy.max_attempts:
                    await self._give_up(runtime)
                    return
                self._schedule_restart(service_id, policy.delay_for(attempt))

    async def _persist(self, runtime: ServiceRuntimeState) -> None:
        try:
            await self._store.update_service_state(runtime.service_id, runtime)
        except StateStoreError as exc:
            # The in-memory state stays authoritative; the next write retries.
            logger.error(
                "Failed to persist service state",
                extra={"service_id": runtime.service_id, "error": str(exc)},
            )

    async def _publish(self, event_type: EventType, service_id: str, data: dict[str, Any]) -> None:
        event = OrchestratorEvent(
            type=event_type, service_id=service_id, data=data, timestamp=self._clock()
        )
        await self.bus.publish(event)

    def _spawn_background(self, coro: Any, *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _cancel_background(self) -> None:
        current = asyncio.current_task()
        pending = [
            task
            for task in [*self._restart_tasks.values(), *self._background]
            if not task.done() and task is not current
        ]
        self._restart_tasks.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
