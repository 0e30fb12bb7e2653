"""Durable whole-snapshot persistence of runtime state."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from time import perf_counter
from typing import Any, Protocol, runtime_checkable

import aiosqlite

from orchid_orchestrator.config.models import StateSettings
from orchid_orchestrator.errors import StateStoreError
from orchid_orchestrator.observability import ObservableMixin
from orchid_orchestrator.observability.metrics import MetricsRecorder
from orchid_orchestrator.persistence.snapshot import (
    SNAPSHOT_VERSION,
    PersistedServiceState,
    parse_services,
    runtime_to_persisted,
)
from orchid_orchestrator.runtime.health import HealthStatus
from orchid_orchestrator.runtime.state import ServiceRuntimeState, isoformat, utcnow

logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """Contract for runtime snapshot persistence."""

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def load(self) -> dict[str, PersistedServiceState]:
        """Return validated snapshot entries keyed by service id."""
        ...

    async def update_service_state(self, service_id: str, runtime: ServiceRuntimeState) -> None:
        """Replace one entry and rewrite the whole snapshot."""
        ...

    async def save_state(self, states: Mapping[str, ServiceRuntimeState]) -> None:
        """Replace the whole snapshot with ``states``."""
        ...

    async def health_check(self) -> HealthStatus: ...


class _SnapshotStore(ObservableMixin, ABC):
    """Keeps the last written snapshot in memory; every write replaces all of it."""

    def __init__(self, *, metrics: MetricsRecorder | None = None) -> None:
        self._metrics = metrics
        self._entries: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def update_service_state(self, service_id: str, runtime: ServiceRuntimeState) -> None:
        async with self._lock:
            self._entries[service_id] = runtime_to_persisted(runtime)
            await self._observed_write("update_service_state", dict(self._entries))

    async def save_state(self, states: Mapping[str, ServiceRuntimeState]) -> None:
        async with self._lock:
            self._entries = {sid: runtime_to_persisted(runtime) for sid, runtime in states.items()}
            await self._observed_write("save_state", dict(self._entries))

    async def _observed_write(self, operation: str, entries: dict[str, dict[str, Any]]) -> None:
        started = perf_counter()
        try:
            await self._write(entries)
        except Exception as exc:
            self._observe_error(operation, started, exc)
            raise StateStoreError(f"Failed to persist runtime state: {exc}") from exc
        self._observe_operation(operation, started, success=True)

    def _remember(self, services: dict[str, PersistedServiceState]) -> None:
        self._entries = {sid: entry.model_dump(mode="json") for sid, entry in services.items()}

    @abstractmethod
    async def _write(self, entries: dict[str, dict[str, Any]]) -> None:
        """Durably replace the stored snapshot with ``entries``."""


class JsonStateStore(_SnapshotStore):
    """Single JSON document replaced atomically (temp file + ``os.replace``).

    Document shape::

        {"version": 1, "saved_at": "...", "services": {"api": {...}}}
    """

    _resource_name = "state_store_json"

    def __init__(self, path: Path | str, *, metrics: MetricsRecorder | None = None) -> None:
        super().__init__(metrics=metrics)
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        await asyncio.to_thread(self._path.parent.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        return None

    async def load(self) -> dict[str, PersistedServiceState]:
        if not self._path.exists():
            return {}
        try:
            text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
            document = json.loads(text)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "State file unreadable, starting from an empty snapshot",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return {}

        raw_services = document.get("services") if isinstance(document, dict) else None
        services = parse_services(raw_services, source=str(self._path))
        self._remember(services)
        return services

    async def health_check(self) -> HealthStatus:
        started = perf_counter()
        directory = self._path.parent
        writable = await asyncio.to_thread(os.access, directory, os.W_OK)
        latency_ms = (perf_counter() - started) * 1000
        if not writable:
            return HealthStatus(
                healthy=False,
                latency_ms=latency_ms,
                message=f"State directory {directory} is not writable",
            )
        return HealthStatus(healthy=True, latency_ms=latency_ms, details={"backend": "json"})

    async def _write(self, entries: dict[str, dict[str, Any]]) -> None:
        document = {
            "version": SNAPSHOT_VERSION,
            "saved_at": isoformat(utcnow()),
            "services": entries,
        }
        text = json.dumps(document, indent=2, sort_keys=True)
        await asyncio.to_thread(_atomic_write_text, self._path, text)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS service_state (
    service_id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    payload TEXT NOT NULL,
    saved_at TEXT NOT NULL
)
"""


class SqliteStateStore(_SnapshotStore):
    """One row per service; every write replaces all rows in one transaction.

    Uses a single shared connection, which suits the orchestrator's single
    writer.
    """

    _resource_name = "state_store_sqlite"

    def __init__(self, path: Path | str, *, metrics: MetricsRecorder | None = None) -> None:
        super().__init__(metrics=metrics)
        self._path = Path(path)
        self._connection: aiosqlite.Connection | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def open(self) -> None:
        await self._connect()

    async def close(self) -> None:
        started = perf_counter()
        if self._connection is not None:
            try:
                await self._connection.close()
                self._connection = None
            except Exception as exc:
                self._observe_error("close", started, exc)
                raise
        self._observe_operation("close", started, success=True)

    async def load(self) -> dict[str, PersistedServiceState]:
        connection = await self._connect()
        raw: dict[str, Any] = {}
        async with connection.execute(
            "SELECT service_id, payload FROM service_state ORDER BY service_id"
        ) as cursor:
            async for service_id, payload in cursor:
                try:
                    raw[service_id] = json.loads(payload)
                except json.JSONDecodeError:
                    logger.warning(
                        "Skipping unreadable snapshot row", extra={"service_id": service_id}
                    )
        services = parse_services(raw, source=str(self._path))
        self._remember(services)
        return services

    async def health_check(self) -> HealthStatus:
        """Probe the database using a lightweight query."""
        started = perf_counter()
        try:
            connection = await self._connect()
            await connection.execute("SELECT 1")
            latency_ms = (perf_counter() - started) * 1000
            return HealthStatus(healthy=True, latency_ms=latency_ms, details={"backend": "sqlite"})
        except Exception as exc:
            latency_ms = (perf_counter() - started) * 1000
            return HealthStatus(healthy=False, latency_ms=latency_ms, message=str(exc))

    async def _connect(self) -> aiosqlite.Connection:
        if self._connection is not None:
            return self._connection

        started = perf_counter()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            connection = await aiosqlite.connect(self._path)
            await connection.execute(_SQLITE_SCHEMA)
            await connection.commit()
            self._connection = connection
        except Exception as exc:
            self._observe_error("connect", started, exc)
            raise StateStoreError(f"Cannot open state database {self._path}: {exc}") from exc

        self._observe_operation("connect", started, success=True)
        return self._connection

    async def _write(self, entries: dict[str, dict[str, Any]]) -> None:
        connection = await self._connect()
        saved_at = isoformat(utcnow())
        rows = [
            (service_id, str(entry.get("state", "stopped")), json.dumps(entry), saved_at)
            for service_id, entry in entries.items()
        ]
        await connection.execute("BEGIN")
        try:
            await connection.execute("DELETE FROM service_state")
            await connection.executemany(
                "INSERT INTO service_state (service_id, state, payload, saved_at) "
                "VALUES (?, ?, ?, ?)",
                rows,
            )
        except Exception:
            await connection.rollback()
            raise
        else:
            await connection.commit()


def create_state_store(
    settings: StateSettings,
    *,
    metrics: MetricsRecorder | None = None,
) -> StateStore:
    """Build the configured backend; a ``.json`` path becomes ``.db`` for sqlite."""
    if settings.backend == "sqlite":
        path = settings.path
        if path.suffix == ".json":
            path = path.with_suffix(".db")
        return SqliteStateStore(path, metrics=metrics)
    return JsonStateStore(settings.path, metrics=metrics)
