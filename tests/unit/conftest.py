"""Shared fakes for supervisor and orchestrator tests."""

from __future__ import annotations

import asyncio
import signal
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import pytest

from orchid_orchestrator.config.models import (
    AutoRestartSettings,
    CircuitBreakerSettings,
    HealthCheckSettings,
    OrchestratorSettings,
    ProcessSettings,
    RegistrySettings,
    StateSettings,
)
from orchid_orchestrator.observability.metrics import reset_metrics_recorder
from orchid_orchestrator.persistence import PersistedServiceState, runtime_to_persisted
from orchid_orchestrator.registry import ServiceRegistry
from orchid_orchestrator.runtime.cleanup import SweepReport
from orchid_orchestrator.runtime.health import HealthStatus
from orchid_orchestrator.runtime.orchestrator import Orchestrator
from orchid_orchestrator.runtime.process import SpawnRequest
from orchid_orchestrator.runtime.state import ServiceRuntimeState


class FakeProcess:
    """In-memory process honouring (or ignoring) SIGTERM and SIGKILL."""

    def __init__(
        self,
        pid: int,
        *,
        ignore_sigterm: bool = False,
        ignore_sigkill: bool = False,
        stdout_lines: Iterable[str] = (),
        stderr_lines: Iterable[str] = (),
    ) -> None:
        self._pid = pid
        self._returncode: int | None = None
        self.ignore_sigterm = ignore_sigterm
        self.ignore_sigkill = ignore_sigkill
        self.signals: list[int] = []
        self._exited = asyncio.Event()
        self._stdout = asyncio.StreamReader()
        self._stderr = asyncio.StreamReader()
        for line in stdout_lines:
            self._stdout.feed_data(f"{line}\n".encode())
        for line in stderr_lines:
            self._stderr.feed_data(f"{line}\n".encode())
        self._stdout.feed_eof()
        self._stderr.feed_eof()

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self._stderr

    def send_signal(self, sig: int) -> None:
        if self._returncode is not None:
            raise ProcessLookupError(self._pid)
        self.signals.append(sig)
        if sig == signal.SIGTERM and not self.ignore_sigterm:
            self.exit(-signal.SIGTERM)
        elif sig == signal.SIGKILL and not self.ignore_sigkill:
            self.exit(-signal.SIGKILL)

    def is_alive(self) -> bool:
        return self._returncode is None

    async def wait(self) -> int:
        await self._exited.wait()
        assert self._returncode is not None
        return self._returncode

    def exit(self, code: int) -> None:
        if self._returncode is None:
            self._returncode = code
            self._exited.set()


class FakeSpawner:
    """Records spawn requests and hands out :class:`FakeProcess` objects."""

    def __init__(self) -> None:
        self.requests: list[SpawnRequest] = []
        self.processes: dict[str, list[FakeProcess]] = defaultdict(list)
        self.options: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, Exception] = {}
        self.delay = 0.0
        self._next_pid = 40_000

    async def __call__(self, request: SpawnRequest) -> FakeProcess:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.failures.get(request.service_id)
        if failure is not None:
            raise failure
        self._next_pid += 1
        process = FakeProcess(self._next_pid, **self.options.get(request.service_id, {}))
        self.processes[request.service_id].append(process)
        return process

    def spawn_count(self, service_id: str) -> int:
        return len(self.processes[service_id])

    def latest(self, service_id: str) -> FakeProcess:
        return self.processes[service_id][-1]


class FakeProbe:
    """Scripted health results keyed by port; unscripted ports use ``default``."""

    def __init__(self, *, default: bool = True) -> None:
        self.default = default
        self.healthy: dict[int, bool] = {}
        self.scripted: dict[int, deque[bool]] = defaultdict(deque)
        self.urls: list[str] = []
        self.closed = False

    def script(self, port: int, results: Iterable[bool]) -> None:
        self.scripted[port].extend(results)

    async def probe(self, url: str, *, timeout_seconds: float) -> HealthStatus:
        self.urls.append(url)
        port = urlsplit(url).port or 0
        if self.scripted[port]:
            healthy = self.scripted[port].popleft()
        else:
            healthy = self.healthy.get(port, self.default)
        return HealthStatus(
            healthy=healthy,
            latency_ms=1.0,
            message=None if healthy else "HTTP 503",
        )

    async def close(self) -> None:
        self.closed = True


class FakeSweeper:
    def __init__(self) -> None:
        self.sweeps: list[tuple[str, int | None]] = []
        self.freed_ports: list[int] = []

    async def sweep(self, service_id: str, port: int | None) -> SweepReport:
        self.sweeps.append((service_id, port))
        return SweepReport(service_id=service_id)

    async def ensure_port_free(self, port: int) -> list[int]:
        self.freed_ports.append(port)
        return []


class MemoryStateStore:
    """StateStore keeping JSON-mode snapshots in a dict."""

    def __init__(self, preloaded: Mapping[str, dict[str, Any]] | None = None) -> None:
        self.entries: dict[str, dict[str, Any]] = dict(preloaded or {})
        self.writes = 0
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.closed = True

    async def load(self) -> dict[str, PersistedServiceState]:
        return {
            sid: PersistedServiceState.model_validate({"service_id": sid, **entry})
            for sid, entry in self.entries.items()
        }

    async def update_service_state(self, service_id: str, runtime: ServiceRuntimeState) -> None:
        self.entries[service_id] = runtime_to_persisted(runtime)
        self.writes += 1

    async def save_state(self, states: Mapping[str, ServiceRuntimeState]) -> None:
        self.entries = {sid: runtime_to_persisted(runtime) for sid, runtime in states.items()}
        self.writes += 1

    async def health_check(self) -> HealthStatus:
        return HealthStatus(healthy=True, latency_ms=0.0)


def service(
    service_id: str,
    *,
    port: int | None = None,
    dependencies: Iterable[str] = (),
    criticality: str = "optional",
    auto_start: bool | None = None,
    external: bool = False,
    warmup_time: float = 40.0,
    **extra: Any,
) -> dict[str, Any]:
    """Registry entry in the camelCase shape used by registry files."""
    run: dict[str, Any] = {"managed": "external"} if external else {"command": f"run-{service_id}"}
    if auto_start is not None:
        run["autoStart"] = auto_start
    entry: dict[str, Any] = {
        "id": service_id,
        "criticality": criticality,
        "dependencies": list(dependencies),
        "warmupTime": warmup_time,
        "run": run,
        **extra,
    }
    if port is not None:
        entry["port"] = port
    return entry


async def wait_until(
    predicate: Callable[[], bool],
    *,
    timeout: float = 2.0,
    interval: float = 0.005,
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def complete_warmup(orchestrator: Orchestrator, service_id: str) -> None:
    """Feed successful checks until ``service_id`` leaves warmup, then drain events."""
    runtime = orchestrator.runtime(service_id)
    for _ in range(runtime.warmup.required_checks):
        if await orchestrator.supervisor.check_health(service_id) is None:
            raise AssertionError(f"{service_id} is not being probed")
    assert not runtime.warmup.is_in_warmup, f"{service_id} is still warming up"
    await orchestrator.drain_events()


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    reset_metrics_recorder()


@pytest.fixture()
def settings(tmp_path: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        registry=RegistrySettings(path=tmp_path / "services.json", project_root=tmp_path),
        # Slow ticks keep the background health loop idle; tests drive check_health().
        health_check=HealthCheckSettings(interval_ms=20_000, timeout_ms=50),
        circuit_breaker=CircuitBreakerSettings(
            threshold=3, initial_backoff_seconds=30.0, max_backoff_seconds=120.0
        ),
        process=ProcessSettings(kill_timeout_ms=100, poll_interval_ms=5, log_lines=10),
        auto_restart=AutoRestartSettings(
            base_delay_seconds=0.01, max_delay_seconds=0.04, max_attempts=3
        ),
        state=StateSettings(path=tmp_path / "state.json"),
    )


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture()
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture()
def sweeper() -> FakeSweeper:
    return FakeSweeper()


@pytest.fixture()
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture()
def fakes() -> Any:
    """Namespace exposing the fake classes to test modules."""

    class _Fakes:
        Process = FakeProcess
        Spawner = FakeSpawner
        Probe = FakeProbe
        Sweeper = FakeSweeper
        Store = MemoryStateStore
        entry = staticmethod(service)
        until = staticmethod(wait_until)
        warm = staticmethod(complete_warmup)

    return _Fakes


OrchestratorFactory = Callable[..., Awaitable[Orchestrator]]


@pytest.fixture()
async def make_orchestrator(
    settings: OrchestratorSettings,
    spawner: FakeSpawner,
    probe: FakeProbe,
    sweeper: FakeSweeper,
    store: MemoryStateStore,
) -> AsyncIterator[OrchestratorFactory]:
    """Build and initialize orchestrators over the fakes; shut them down afterwards."""
    created: list[Orchestrator] = []

    async def factory(
        services: list[dict[str, Any]],
        *,
        auto_start: bool = False,
        **overrides: Any,
    ) -> Orchestrator:
        orchestrator = Orchestrator(
            overrides.pop("settings", settings),
            registry_loader=lambda: ServiceRegistry.from_data({"services": services}),
            store=overrides.pop("store", store),
            spawner=spawner,
            probe=probe,
            sweeper=sweeper,
            base_env={},
            **overrides,
        )
        created.append(orchestrator)
        await orchestrator.initialize(auto_start=auto_start)
        return orchestrator

    yield factory

    for orchestrator in created:
        if orchestrator.is_initialized:
            await orchestrator.shutdown()
