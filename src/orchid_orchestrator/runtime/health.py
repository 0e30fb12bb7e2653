"""Health primitives: service probes and the orchestrator's own readiness report."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Literal, Protocol, runtime_checkable

import aiohttp


@dataclass(slots=True)
class HealthStatus:
    """Result of one health check."""

    healthy: bool
    latency_ms: float
    message: str | None = None
    details: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        payload: dict[str, Any] = {
            "healthy": self.healthy,
            "latency_ms": max(0.0, float(self.latency_ms)),
        }
        if self.message is not None:
            payload["message"] = self.message
        if self.details:
            payload["details"] = dict(self.details)
        return payload


@dataclass(slots=True, frozen=True)
class HealthSummary:
    total: int
    healthy: int
    unhealthy: int

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "healthy": self.healthy, "unhealthy": self.unhealthy}


@dataclass(slots=True)
class HealthReport:
    """Aggregated readiness report across the orchestrator's components."""

    status: Literal["ok", "degraded", "down"]
    healthy: bool
    latency_ms: float
    checks: dict[str, HealthStatus]
    summary: HealthSummary

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable payload suitable for `/health` endpoints."""
        return {
            "status": self.status,
            "healthy": self.healthy,
            "latency_ms": max(0.0, float(self.latency_ms)),
            "summary": self.summary.to_dict(),
            "checks": {name: status.to_dict() for name, status in self.checks.items()},
        }


HealthCheck = Callable[[], Awaitable[HealthStatus]]


async def aggregate_health_checks(
    checks: Mapping[str, HealthCheck],
    *,
    timeout_seconds: float | None = None,
) -> HealthReport:
    """Run health checks concurrently and aggregate their status."""
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0")

    started = perf_counter()
    names = list(checks.keys())
    results = await asyncio.gather(
        *(_run_health_check(name, checks[name], timeout_seconds) for name in names)
    )
    statuses = dict(zip(names, results, strict=True))

    total = len(statuses)
    healthy_count = sum(1 for status in statuses.values() if status.healthy)
    aggregate_status: Literal["ok", "degraded", "down"]
    if healthy_count == total:
        aggregate_status = "ok"
    elif healthy_count > 0:
        aggregate_status = "degraded"
    else:
        aggregate_status = "down"

    return HealthReport(
        status=aggregate_status,
        healthy=healthy_count == total,
        latency_ms=(perf_counter() - started) * 1000,
        checks=statuses,
        summary=HealthSummary(total=total, healthy=healthy_count, unhealthy=total - healthy_count),
    )


async def _run_health_check(
    check_name: str,
    check: HealthCheck,
    timeout_seconds: float | None,
) -> HealthStatus:
    started = perf_counter()
    try:
        awaitable = check()
        status = (
            await awaitable
            if timeout_seconds is None
            else await asyncio.wait_for(awaitable, timeout=timeout_seconds)
        )
        if not isinstance(status, HealthStatus):
            raise TypeError(
                f"health_check for '{check_name}' returned {type(status).__name__}, "
                "expected HealthStatus"
            )
        return status
    except Exception as exc:
        return HealthStatus(
            healthy=False,
            latency_ms=(perf_counter() - started) * 1000,
            message=str(exc),
            details={"error_type": type(exc).__name__},
        )


@runtime_checkable
class HealthProbe(Protocol):
    """Checks one service endpoint; never raises for an unhealthy service."""

    async def probe(self, url: str, *, timeout_seconds: float) -> HealthStatus: ...

    async def close(self) -> None: ...


class HttpHealthProbe:
    """``GET`` probe over a shared :class:`aiohttp.ClientSession`.

    Any 2xx answer within the timeout counts as healthy.
    """

    def __init__(self, *, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session
        self._owns_session = session is None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def probe(self, url: str, *, timeout_seconds: float) -> HealthStatus:
        started = perf_counter()
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        try:
            async with self._client().get(url, timeout=timeout) as response:
                await response.read()
                latency_ms = (perf_counter() - started) * 1000
                if 200 <= response.status < 300:
                    return HealthStatus(healthy=True, latency_ms=latency_ms)
                return HealthStatus(
                    healthy=False,
                    latency_ms=latency_ms,
                    message=f"HTTP {response.status}",
                    details={"status": str(response.status)},
                )
        except TimeoutError:
            return HealthStatus(
                healthy=False,
                latency_ms=(perf_counter() - started) * 1000,
                message=f"Health check timed out after {timeout_seconds:g}s",
                details={"error_type": "TimeoutError"},
            )
        except aiohttp.ClientError as exc:
            return HealthStatus(
                healthy=False,
                latency_ms=(perf_counter() - started) * 1000,
                message=str(exc) or type(exc).__name__,
                details={"error_type": type(exc).__name__},
            )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
