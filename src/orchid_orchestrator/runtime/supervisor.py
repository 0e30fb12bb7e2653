"""Spawns, probes and kills service processes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import signal
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from time import perf_counter
from typing import Any, Literal

from orchid_orchestrator.config.errors import MissingRunConfigError
from orchid_orchestrator.config.models import OrchestratorSettings
from orchid_orchestrator.errors import (
    ExternallyManagedError,
    NoActiveProcessError,
    OrchestratorError,
    ProcessSpawnError,
    ServiceAlreadyActiveError,
)
from orchid_orchestrator.observability import ObservableMixin, service_scope
from orchid_orchestrator.observability.metrics import MetricsRecorder
from orchid_orchestrator.registry import (
    ServiceDescriptor,
    build_service_environment,
    resolve_working_directory,
)
from orchid_orchestrator.runtime.circuit_breaker import BreakerOutcome, CircuitBreakerPolicy
from orchid_orchestrator.runtime.cleanup import OrphanSweeper, Sweeper, SweepReport
from orchid_orchestrator.runtime.events import SupervisorEvent, SupervisorEventKind
from orchid_orchestrator.runtime.guards import InFlightGuard
from orchid_orchestrator.runtime.health import HealthProbe, HealthStatus, HttpHealthProbe
from orchid_orchestrator.runtime.process import (
    ProcessHandle,
    Spawner,
    SpawnRequest,
    process_memory,
    signal_name,
    spawn_process,
    wait_for_death,
)
from orchid_orchestrator.runtime.state import (
    PROBED_STATES,
    HealthInfo,
    KillPhase,
    KillTracking,
    ServiceRuntimeState,
    ServiceState,
    WarmupInfo,
    isoformat,
    utcnow,
)

logger = logging.getLogger(__name__)


def required_checks_for(warmup_seconds: float, interval_seconds: float) -> int:
    """Consecutive successes needed to leave warmup; always at least one."""
    if interval_seconds <= 0:
        return 1
    # Rounding first keeps 0.3 / 0.1 from becoming 4.
    return max(1, math.ceil(round(warmup_seconds / interval_seconds, 6)))


@dataclass(slots=True)
class KillResult:
    """Outcome of the SIGTERM -> SIGKILL protocol."""

    service_id: str
    pid: int | None
    phase: KillPhase
    attempts: int

    @property
    def success(self) -> bool:
        return self.phase != KillPhase.ZOMBIE

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "pid": self.pid,
            "phase": self.phase.value,
            "attempts": self.attempts,
            "success": self.success,
        }


@dataclass(slots=True)
class _TrackedProcess:
    descriptor: ServiceDescriptor
    runtime: ServiceRuntimeState
    handle: ProcessHandle
    generation: int
    stopping: bool = False
    health_task: asyncio.Task[None] | None = None
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    @property
    def service_id(self) -> str:
        return self.descriptor.id


class ProcessSupervisor(ObservableMixin):
    """Owns the live-process table.

    The runtime state objects passed in belong to the orchestrator; the
    supervisor mutates them in place and reports every change as a
    :class:`SupervisorEvent` on ``events``.

    Example usage::

        events: asyncio.Queue[SupervisorEvent] = asyncio.Queue(maxsize=1000)
        supervisor = ProcessSupervisor(settings.orchestrator, events=events)
        await supervisor.start_service(descriptor, runtime)
        result = await supervisor.stop_service(descriptor, runtime)
    """

    _resource_name = "supervisor"

    def __init__(
        self,
        settings: OrchestratorSettings,
        *,
        events: asyncio.Queue[SupervisorEvent],
        spawner: Spawner = spawn_process,
        probe: HealthProbe | None = None,
        sweeper: Sweeper | None = None,
        base_env: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._events = events
        self._spawner = spawner
        self._probe = probe or HttpHealthProbe()
        self._sweeper = sweeper or OrphanSweeper(
            patterns=settings.process.orphan_patterns,
            settle_seconds=settings.process.cleanup_settle_seconds,
            live_pids=self.tracked_pids,
        )
        self._base_env = base_env
        self._clock = clock
        self._metrics = metrics
        self._breaker = CircuitBreakerPolicy(settings.circuit_breaker, clock=clock)
        self._processes: dict[str, _TrackedProcess] = {}
        self._starting = InFlightGuard("supervisor-start")
        self._stopping = InFlightGuard("supervisor-stop")

    @property
    def breaker(self) -> CircuitBreakerPolicy:
        return self._breaker

    def tracked_ids(self) -> list[str]:
        return sorted(self._processes)

    def tracked_pids(self) -> list[int]:
        """Pids of every live tracked process; orphan sweeps never touch these."""
        return [
            tracked.handle.pid
            for tracked in self._processes.values()
            if tracked.handle.pid is not None and tracked.handle.is_alive()
        ]

    def is_service_running(self, service_id: str) -> bool:
        tracked = self._processes.get(service_id)
        return tracked is not None and tracked.handle.is_alive()

    def get_process_info(self, service_id: str) -> dict[str, Any] | None:
        """Live view of the tracked main process, or ``None`` when nothing is tracked."""
        tracked = self._processes.get(service_id)
        if tracked is None:
            return None
        started = tracked.runtime.process.start_time
        uptime = (self._clock() - started).total_seconds() if started else 0.0
        alive = tracked.handle.is_alive()
        memory = process_memory(tracked.handle.pid) if alive else None
        tracked.runtime.process.uptime = max(0.0, uptime)
        tracked.runtime.process.memory = memory
        return {
            "pid": tracked.handle.pid,
            "alive": alive,
            "start_time": isoformat(started),
            "uptime": max(0.0, uptime),
            "memory": memory,
        }

    async def start_service(
        self,
        descriptor: ServiceDescriptor,
        runtime: ServiceRuntimeState,
    ) -> None:
        """Spawn ``descriptor`` and begin warmup.

        Raises:
            ExternallyManagedError: The service is not ours to spawn.
            ConcurrencyConflictError: A start is already running for this id.
            MissingRunConfigError: No command or a required variable is unset.
            ProcessSpawnError: The OS refused to launch the process.
        """
        service_id = descriptor.id
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "started")

        with self._starting.hold(service_id, "start"), service_scope(service_id):
            tracked = self._processes.get(service_id)
            if tracked is not None:
                if tracked.handle.is_alive():
                    raise ServiceAlreadyActiveError(f"Service {service_id} is already running")
                await self._forget(tracked)

            if descriptor.run is None or not descriptor.run.command.strip():
                raise MissingRunConfigError(f"Service {service_id} has no run configuration")
            env = build_service_environment(
                descriptor, os.environ if self._base_env is None else self._base_env
            )
            cwd = resolve_working_directory(descriptor, self._settings.registry.project_root)

            await self._sweep_if_enabled(descriptor)

            previous = runtime.state
            interval = self._settings.health_check.interval_seconds
            runtime.generation += 1
            runtime.set_state(ServiceState.STARTING)
            runtime.health = HealthInfo()
            runtime.warmup = WarmupInfo(
                is_in_warmup=True,
                successful_checks=0,
                required_checks=required_checks_for(descriptor.warmup_time, interval),
                start_time=self._clock(),
            )
            runtime.kill_tracking = KillTracking()
            runtime.process.clear()
            runtime.process.exit_code = None
            await self._emit_state(runtime, previous)

            request = SpawnRequest(
                service_id=service_id,
                command=descriptor.run.command,
                args=descriptor.run.args,
                cwd=cwd,
                env=env,
            )
            try:
                handle = await self._spawner(request)
            except (OSError, ValueError) as exc:
                previous = runtime.state
                runtime.set_state(ServiceState.ERROR)
                runtime.warmup.is_in_warmup = False
                logger.error(
                    "Failed to spawn service process",
                    extra={"command": request.argv, "cwd": str(cwd), "error": str(exc)},
                )
                await self._emit_state(runtime, previous)
                await self._emit(
                    SupervisorEvent(
                        kind=SupervisorEventKind.PROCESS_ERROR,
                        service_id=service_id,
                        state=runtime.state,
                        error=str(exc),
                        generation=runtime.generation,
                    )
                )
                raise ProcessSpawnError(f"Failed to start service {service_id}: {exc}") from exc

            runtime.process.pid = handle.pid
            runtime.process.start_time = self._clock()
            runtime.process.uptime = 0.0

            tracked = _TrackedProcess(
                descriptor=descriptor,
                runtime=runtime,
                handle=handle,
                generation=runtime.generation,
            )
            self._processes[service_id] = tracked
            self._track(tracked, self._pump(tracked, "stdout"))
            self._track(tracked, self._pump(tracked, "stderr"))
            self._track(tracked, self._watch_exit(tracked))
            tracked.health_task = asyncio.create_task(
                self._health_loop(tracked, delay=descriptor.warmup_time),
                name=f"health:{service_id}",
            )
            logger.info(
                "Started service",
                extra={"pid": handle.pid, "required_checks": runtime.warmup.required_checks},
            )

    async def stop_service(
        self,
        descriptor: ServiceDescriptor,
        runtime: ServiceRuntimeState,
    ) -> KillResult:
        """Stop the tracked process with verified SIGTERM -> SIGKILL escalation."""
        service_id = descriptor.id
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "stopped")

        with self._stopping.hold(service_id, "stop"), service_scope(service_id):
            tracked = self._processes.get(service_id)
            if tracked is None:
                previous = runtime.state
                runtime.set_state(ServiceState.STOPPED)
                runtime.warmup.is_in_warmup = False
                runtime.process.clear()
                await self._emit_state(runtime, previous)
                return KillResult(service_id=service_id, pid=None, phase=KillPhase.IDLE, attempts=0)

            tracked.stopping = True
            previous = runtime.state
            runtime.set_state(ServiceState.STOPPING)
            runtime.warmup.is_in_warmup = False
            runtime.health.is_healthy = False
            runtime.kill_tracking = KillTracking(phase=KillPhase.SIGTERM_SENT)
            await self._emit_state(runtime, previous)
            await self._cancel_health(tracked)

            result = await self._terminate(tracked)
            if self._processes.get(service_id) is tracked:
                del self._processes[service_id]

            if result.success:
                logger.info(
                    "Stopped service", extra={"pid": result.pid, "attempts": result.attempts}
                )
            else:
                logger.error(
                    "Process survived SIGTERM and SIGKILL",
                    extra={"pid": result.pid, "attempts": result.attempts},
                )

            await self._sweep_if_enabled(descriptor)
            if descriptor.port is not None and self._settings.process.cleanup_orphans:
                await self._sweeper.ensure_port_free(descriptor.port)

            previous = runtime.state
            runtime.set_state(ServiceState.STOPPED)
            runtime.process.clear()
            await self._emit_state(runtime, previous, force=True)
            return result

    async def kill(
        self,
        descriptor: ServiceDescriptor,
        runtime: ServiceRuntimeState,
        *,
        force: bool = False,
    ) -> dict[str, Any]:
        """Deliver one SIGTERM or SIGKILL outside the stop flow.

        The exit that follows is treated as unexpected.
        """
        service_id = descriptor.id
        if descriptor.externally_managed:
            raise ExternallyManagedError(service_id, "killed")

        tracked = self._processes.get(service_id)
        if tracked is None or not tracked.handle.is_alive():
            raise NoActiveProcessError(f"Service {service_id} has no active process")

        sig = signal.SIGKILL if force else signal.SIGTERM
        tracking = runtime.kill_tracking
        tracking.kill_attempts += 1
        if force:
            tracking.phase = KillPhase.SIGKILL_SENT
            tracking.sigkill_sent_at = self._clock()
        else:
            tracking.phase = KillPhase.SIGTERM_SENT
            tracking.sigterm_sent_at = self._clock()

        with service_scope(service_id):
            try:
                tracked.handle.send_signal(sig)
            except OSError as exc:
                tracking.last_kill_error = f"{signal_name(sig)} failed: {exc}"
                logger.warning("Manual kill failed", extra={"signal": signal_name(sig)})
                raise OrchestratorError(
                    f"Failed to send {signal_name(sig)} to service {service_id}: {exc}"
                ) from exc
            logger.info(
                "Sent signal to service process",
                extra={"pid": tracked.handle.pid, "signal": signal_name(sig)},
            )

        return {
            "service_id": service_id,
            "pid": tracked.handle.pid,
            "signal": signal_name(sig),
            "force": force,
            "kill_tracking": tracking.to_dict(),
        }

    async def sweep(self, descriptor: ServiceDescriptor) -> SweepReport:
        """Manual orphan sweep for the service's port and name patterns."""
        with service_scope(descriptor.id):
            return await self._sweeper.sweep(descriptor.id, descriptor.port)

    async def cleanup(self) -> None:
        """Terminate every tracked process in parallel; best effort."""
        tracked_processes = list(self._processes.values())
        for tracked in tracked_processes:
            await self._cancel_health(tracked)

        results = await asyncio.gather(
            *(self._shutdown_process(tracked) for tracked in tracked_processes),
            return_exceptions=True,
        )
        for tracked, result in zip(tracked_processes, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to terminate service during cleanup",
                    extra={"service_id": tracked.service_id, "error": str(result)},
                )

        for tracked in tracked_processes:
            await self._cancel_tasks(tracked)
        self._processes.clear()
        await self._probe.close()

    async def _shutdown_process(self, tracked: _TrackedProcess) -> None:
        tracked.stopping = True
        runtime = tracked.runtime
        timeout = self._settings.process.kill_timeout_seconds
        interval = self._settings.process.poll_interval_seconds
        previous = runtime.state
        runtime.set_state(ServiceState.STOPPING)
        runtime.warmup.is_in_warmup = False
        runtime.health.is_healthy = False
        await self._emit_state(runtime, previous)

        with contextlib.suppress(ProcessLookupError):
            tracked.handle.send_signal(signal.SIGTERM)
        if not await wait_for_death(tracked.handle, timeout=timeout, interval=interval):
            logger.warning(
                "Service ignored SIGTERM during shutdown, sending SIGKILL",
                extra={"service_id": tracked.service_id, "pid": tracked.handle.pid},
            )
            with contextlib.suppress(ProcessLookupError):
                tracked.handle.send_signal(signal.SIGKILL)
            await wait_for_death(tracked.handle, timeout=timeout, interval=interval)

        previous = runtime.state
        runtime.set_state(ServiceState.STOPPED)
        runtime.process.clear()
        await self._emit_state(runtime, previous)

    async def _terminate(self, tracked: _TrackedProcess) -> KillResult:
        # Each window is half of the configured kill budget.
        runtime = tracked.runtime
        tracking = runtime.kill_tracking
        handle = tracked.handle
        window = self._settings.process.kill_timeout_seconds / 2
        interval = self._settings.process.poll_interval_seconds

        tracking.kill_attempts = 1
        tracking.phase = KillPhase.SIGTERM_SENT
        tracking.sigterm_sent_at = self._clock()
        self._signal(tracked, signal.SIGTERM)

        tracking.phase = KillPhase.SIGTERM_WAIT
        if await wait_for_death(handle, timeout=window, interval=interval):
            tracking.phase = KillPhase.KILLED
            return KillResult(tracked.service_id, handle.pid, KillPhase.KILLED, 1)

        logger.warning(
            "Service did not exit after SIGTERM, escalating to SIGKILL",
            extra={"pid": handle.pid, "waited_seconds": window},
        )
        tracking.kill_attempts = 2
        tracking.phase = KillPhase.SIGKILL_SENT
        tracking.sigkill_sent_at = self._clock()
        self._signal(tracked, signal.SIGKILL)

        if await wait_for_death(handle, timeout=window, interval=interval):
            tracking.phase = KillPhase.KILLED
            return KillResult(tracked.service_id, handle.pid, KillPhase.KILLED, 2)

        tracking.phase = KillPhase.ZOMBIE
        tracking.last_kill_error = (
            f"Process {handle.pid} could not be killed (zombie process detected)"
        )
        return KillResult(tracked.service_id, handle.pid, KillPhase.ZOMBIE, 2)

    def _signal(self, tracked: _TrackedProcess, sig: int) -> None:
        try:
            tracked.handle.send_signal(sig)
        except ProcessLookupError:
            pass
        except OSError as exc:
            tracked.runtime.kill_tracking.last_kill_error = f"{signal_name(sig)} failed: {exc}"
            logger.warning(
                "Failed to deliver signal",
                extra={"pid": tracked.handle.pid, "signal": signal_name(sig), "error": str(exc)},
            )

    async def _watch_exit(self, tracked: _TrackedProcess) -> None:
        returncode = await tracked.handle.wait()
        await self._on_exit(tracked, returncode)

    async def _on_exit(self, tracked: _TrackedProcess, returncode: int | None) -> None:
        service_id = tracked.service_id
        runtime = tracked.runtime
        if self._processes.get(service_id) is tracked:
            del self._processes[service_id]
        await self._cancel_health(tracked)

        if runtime.generation != tracked.generation:
            logger.debug("Ignoring exit of a superseded process", extra={"pid": tracked.handle.pid})
            return

        expected = tracked.stopping or runtime.state == ServiceState.STOPPING
        exit_code = returncode if returncode is not None and returncode >= 0 else None
        exit_signal = -returncode if returncode is not None and returncode < 0 else None

        previous = runtime.state
        runtime.warmup.is_in_warmup = False
        runtime.health.is_healthy = False
        if expected:
            runtime.set_state(ServiceState.STOPPED)
            runtime.process.exit_code = None
        else:
            runtime.set_state(ServiceState.ERROR)
            runtime.process.exit_code = exit_code
            logger.warning(
                "Service exited unexpectedly",
                extra={"pid": tracked.handle.pid, "exit_code": exit_code, "signal": exit_signal},
            )
        runtime.process.clear()

        await self._emit_state(runtime, previous)
        await self._emit(
            SupervisorEvent(
                kind=SupervisorEventKind.PROCESS_EXIT,
                service_id=service_id,
                state=runtime.state,
                previous_state=previous,
                exit_code=exit_code,
                signal=exit_signal,
                expected=expected,
                generation=tracked.generation,
            )
        )

    async def _pump(
        self, tracked: _TrackedProcess, stream_name: Literal["stdout", "stderr"]
    ) -> None:
        stream = tracked.handle.stdout if stream_name == "stdout" else tracked.handle.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the oversized chunk is dropped.
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line.strip():
                tracked.runtime.logs.append(stream_name, line)

    async def _health_loop(self, tracked: _TrackedProcess, *, delay: float) -> None:
        # No probes during the warmup dead zone.
        if delay > 0:
            await asyncio.sleep(delay)
        interval = self._settings.health_check.interval_seconds
        while True:
            try:
                await self.check_health(tracked.service_id)
            except Exception:
                logger.exception("Health check tick failed")
            await asyncio.sleep(interval)

    async def check_health(self, service_id: str) -> HealthStatus | None:
        """Run one probe for ``service_id`` and apply it; ``None`` if it was discarded."""
        tracked = self._processes.get(service_id)
        if tracked is None:
            return None
        runtime = tracked.runtime
        generation = tracked.generation
        descriptor = tracked.descriptor

        started = perf_counter()
        if not tracked.handle.is_alive():
            status = HealthStatus(healthy=False, latency_ms=0.0, message="Process is not running")
        elif descriptor.port is None:
            status = HealthStatus(healthy=True, latency_ms=0.0, message="No port; liveness only")
        else:
            host = self._settings.health_check.host
            url = f"http://{host}:{descriptor.port}{descriptor.health_endpoint}"
            status = await self._probe.probe(
                url, timeout_seconds=self._settings.health_check.timeout_seconds
            )
        self._metrics_recorder().observe_health_check(
            service_id=service_id,
            duration_seconds=perf_counter() - started,
            healthy=status.healthy,
        )

        # The service may have been stopped or respawned while the probe was in flight.
        if (
            runtime.generation != generation
            or self._processes.get(service_id) is not tracked
            or runtime.state not in PROBED_STATES
        ):
            return None

        with service_scope(service_id):
            await self._apply_health(runtime, status)
        return status

    async def _apply_health(self, runtime: ServiceRuntimeState, status: HealthStatus) -> None:
        health = runtime.health
        was_healthy = health.is_healthy
        previous = runtime.state

        health.last_check = self._clock()
        health.response_time_ms = round(status.latency_ms, 3)
        if status.healthy:
            health.is_healthy = True
            health.consecutive_successes += 1
            health.consecutive_failures = 0
            health.error = None
        else:
            health.is_healthy = False
            health.consecutive_failures += 1
            health.consecutive_successes = 0
            health.error = status.message or "Health check failed"

        warmup = runtime.warmup
        if warmup.is_in_warmup:
            # Failures during warmup only reset progress; the breaker is not fed.
            if status.healthy:
                warmup.successful_checks += 1
                if warmup.successful_checks >= warmup.required_checks:
                    warmup.is_in_warmup = False
                    runtime.set_state(ServiceState.RUNNING)
                    logger.info(
                        "Service completed warmup",
                        extra={"checks": warmup.successful_checks},
                    )
            else:
                warmup.successful_checks = 0
        else:
            if status.healthy and runtime.state == ServiceState.UNHEALTHY:
                runtime.set_state(ServiceState.RUNNING)
                logger.warning("Service recovered", extra={"state": runtime.state.value})
            elif not status.healthy and runtime.state == ServiceState.RUNNING:
                runtime.set_state(ServiceState.UNHEALTHY)
                logger.warning("Service became unhealthy", extra={"error": health.error})

            outcome = self._breaker.record(runtime.circuit_breaker, success=status.healthy)
            if outcome in (BreakerOutcome.OPENED, BreakerOutcome.REOPENED):
                runtime.set_state(ServiceState.CIRCUIT_OPEN)
                logger.warning(
                    "Circuit breaker opened",
                    extra={
                        "failures": runtime.circuit_breaker.failures,
                        "backoff_seconds": runtime.circuit_breaker.backoff_seconds,
                    },
                )
            elif outcome == BreakerOutcome.HALF_OPENED:
                logger.info("Circuit breaker half-open")
            elif outcome == BreakerOutcome.CLOSED:
                runtime.set_state(ServiceState.RUNNING)
                logger.info("Circuit breaker closed")

        if runtime.state != previous or health.is_healthy != was_healthy:
            await self._emit_state(runtime, previous, force=True)

    async def _sweep_if_enabled(self, descriptor: ServiceDescriptor) -> None:
        if not self._settings.process.cleanup_orphans:
            return
        try:
            await self._sweeper.sweep(descriptor.id, descriptor.port)
        except Exception:
            # A failed sweep must not block the lifecycle action.
            logger.warning("Orphan sweep failed", exc_info=True)

    async def _emit_state(
        self,
        runtime: ServiceRuntimeState,
        previous: ServiceState,
        *,
        force: bool = False,
    ) -> None:
        if not force and runtime.state == previous:
            return
        self._metrics_recorder().observe_service_state(
            service_id=runtime.service_id, state=runtime.state.value
        )
        await self._emit(
            SupervisorEvent(
                kind=SupervisorEventKind.STATE_CHANGE,
                service_id=runtime.service_id,
                state=runtime.state,
                previous_state=previous,
                healthy=runtime.health.is_healthy,
                generation=runtime.generation,
            )
        )

    async def _emit(self, event: SupervisorEvent) -> None:
        await self._events.put(event)

    def _track(self, tracked: _TrackedProcess, coro: Any) -> None:
        task = asyncio.create_task(coro)
        tracked.tasks.add(task)
        task.add_done_callback(tracked.tasks.discard)

    async def _cancel_health(self, tracked: _TrackedProcess) -> None:
        task = tracked.health_task
        tracked.health_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _cancel_tasks(self, tracked: _TrackedProcess) -> None:
        current = asyncio.current_task()
        pending = [task for task in tracked.tasks if not task.done() and task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _forget(self, tracked: _TrackedProcess) -> None:
        await self._cancel_health(tracked)
        await self._cancel_tasks(tracked)
        if self._processes.get(tracked.service_id) is tracked:
            del self._processes[tracked.service_id]
