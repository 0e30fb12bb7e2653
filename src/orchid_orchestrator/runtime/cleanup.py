"""Sweeps stale service processes left behind by a previous run."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)

# Grace period between SIGTERM and SIGKILL for name-pattern matches.
_PATTERN_GRACE_SECONDS = 0.5


@dataclass(slots=True)
class SweepReport:
    """Pids terminated by one sweep, grouped by why they matched."""

    service_id: str
    port_pids: list[int] = field(default_factory=list)
    pattern_pids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def killed(self) -> list[int]:
        return sorted({*self.port_pids, *self.pattern_pids})

    def to_dict(self) -> dict[str, object]:
        return {
            "service_id": self.service_id,
            "port_pids": list(self.port_pids),
            "pattern_pids": list(self.pattern_pids),
            "errors": list(self.errors),
        }


class Sweeper(Protocol):
    """Contract used by the supervisor; tests substitute a recording fake."""

    async def sweep(self, service_id: str, port: int | None) -> SweepReport: ...

    async def ensure_port_free(self, port: int) -> list[int]: ...


class OrphanSweeper:
    """psutil-backed sweeper for listening ports and command-line patterns.

    A pattern matches only when it ends at a path or argument boundary, so
    ``services/api`` never matches ``services/api-gateway``. The orchestrator's
    own pid, its parent, ``protected_pids`` and every pid reported by
    ``live_pids`` (plus their descendants) are never touched. psutil scans
    block, so they run in a worker thread.
    """

    def __init__(
        self,
        *,
        patterns: Iterable[str] = ("services/{service_id}",),
        settle_seconds: float = 1.5,
        protected_pids: Iterable[int] = (),
        live_pids: Callable[[], Iterable[int]] | None = None,
    ) -> None:
        self._patterns = tuple(patterns)
        self._settle_seconds = settle_seconds
        self._protected = {os.getpid(), os.getppid(), *protected_pids}
        self._live_pids = live_pids

    def patterns_for(self, service_id: str) -> list[str]:
        return [pattern.format(service_id=service_id) for pattern in self._patterns]

    def matchers_for(self, service_id: str) -> list[re.Pattern[str]]:
        return [
            re.compile(re.escape(pattern) + r"(?=$|[\s/\\])")
            for pattern in self.patterns_for(service_id)
        ]

    async def sweep(self, service_id: str, port: int | None) -> SweepReport:
        report = SweepReport(service_id=service_id)
        protected = await asyncio.to_thread(self._expand_protected, self._roots())
        if port is not None:
            report.port_pids = await asyncio.to_thread(
                self._kill_port_listeners, port, protected, report
            )
        report.pattern_pids = await asyncio.to_thread(
            self._kill_pattern_matches, self.matchers_for(service_id), protected, report
        )
        if report.killed:
            logger.info(
                "Swept stale processes",
                extra={"service_id": service_id, "pids": report.killed, "port": port},
            )
            if self._settle_seconds > 0:
                await asyncio.sleep(self._settle_seconds)
        return report

    async def ensure_port_free(self, port: int) -> list[int]:
        report = SweepReport(service_id=f"port:{port}")
        protected = await asyncio.to_thread(self._expand_protected, self._roots())
        pids = await asyncio.to_thread(self._kill_port_listeners, port, protected, report)
        if pids:
            logger.warning("Port still held after stop", extra={"port": port, "pids": pids})
        return pids

    def _roots(self) -> set[int]:
        # Read on the event loop; the supervisor's process table is loop-owned.
        live = set(self._live_pids()) if self._live_pids is not None else set()
        return self._protected | live

    def _expand_protected(self, roots: set[int]) -> set[int]:
        protected = set(roots)
        for pid in roots - self._protected:
            try:
                children = psutil.Process(pid).children(recursive=True)
                protected.update(child.pid for child in children)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return protected

    def _port_listeners(self, port: int, protected: set[int]) -> list[psutil.Process]:
        pids: set[int] = set()
        try:
            for conn in psutil.net_connections(kind="inet"):
                if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN:
                    if conn.pid is not None:
                        pids.add(conn.pid)
        except psutil.AccessDenied:
            # Some platforms only allow per-process inspection.
            for proc in psutil.process_iter(["pid"]):
                try:
                    for conn in proc.net_connections(kind="inet"):
                        listening = conn.status == psutil.CONN_LISTEN
                        if listening and conn.laddr and conn.laddr.port == port:
                            pids.add(proc.pid)
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue

        processes = []
        for pid in pids - protected:
            try:
                processes.append(psutil.Process(pid))
            except psutil.NoSuchProcess:
                continue
        return processes

    def _kill_port_listeners(
        self, port: int, protected: set[int], report: SweepReport
    ) -> list[int]:
        killed = []
        for proc in self._port_listeners(port, protected):
            try:
                proc.send_signal(signal.SIGKILL)
                killed.append(proc.pid)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                report.errors.append(f"pid {proc.pid}: {exc}")
        return killed

    def _kill_pattern_matches(
        self,
        matchers: list[re.Pattern[str]],
        protected: set[int],
        report: SweepReport,
    ) -> list[int]:
        matches: list[psutil.Process] = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            if proc.pid in protected:
                continue
            cmdline = " ".join(proc.info.get("cmdline") or ())
            if cmdline and any(matcher.search(cmdline) for matcher in matchers):
                matches.append(proc)

        terminated = []
        for proc in matches:
            try:
                proc.terminate()
                terminated.append(proc)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                report.errors.append(f"pid {proc.pid}: {exc}")

        _, alive = psutil.wait_procs(terminated, timeout=_PATTERN_GRACE_SECONDS)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                report.errors.append(f"pid {proc.pid}: {exc}")
        return [proc.pid for proc in terminated]
