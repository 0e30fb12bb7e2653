"""OS process handles: spawn, signal delivery and liveness probing."""

from __future__ import annotations

import asyncio
import os
import shlex
import signal
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

import psutil


@runtime_checkable
class ProcessHandle(Protocol):
    """Contract for a spawned service process."""

    @property
    def pid(self) -> int:
        """Operating system process id."""
        ...

    @property
    def returncode(self) -> int | None:
        """Exit status once reaped; negative values are terminating signals."""
        ...

    @property
    def stdout(self) -> asyncio.StreamReader | None: ...

    @property
    def stderr(self) -> asyncio.StreamReader | None: ...

    def send_signal(self, sig: int) -> None:
        """Deliver ``sig``; raises ``ProcessLookupError`` when the process is gone."""
        ...

    def is_alive(self) -> bool:
        """Signal-0 style liveness check; zombies count as dead."""
        ...

    async def wait(self) -> int:
        """Block until the process exits and return its exit status."""
        ...


@dataclass(frozen=True, slots=True)
class SpawnRequest:
    """Everything needed to launch one service process."""

    service_id: str
    command: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        if self.args:
            return [self.command, *self.args]
        return shlex.split(self.command)


Spawner = Callable[[SpawnRequest], Awaitable[ProcessHandle]]


def pid_alive(pid: int | None) -> bool:
    """Return whether ``pid`` names a running, non-zombie process."""
    if pid is None or pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


def process_memory(pid: int | None) -> dict[str, int] | None:
    """Return ``{"rss": ..., "vms": ...}`` in bytes, or ``None`` if unavailable."""
    if pid is None:
        return None
    try:
        info = psutil.Process(pid).memory_info()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None
    return {"rss": int(info.rss), "vms": int(info.vms)}


class SubprocessHandle:
    """:class:`ProcessHandle` over :mod:`asyncio.subprocess`.

    The child leads its own session, so signals go to the whole process
    group and take grandchildren (``npm`` wrappers, reloaders) down with it.
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._process.stderr

    def send_signal(self, sig: int) -> None:
        if self._process.returncode is not None:
            raise ProcessLookupError(f"Process {self.pid} already exited")
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            os.kill(self.pid, sig)
        except PermissionError:
            # Group membership changed (setsid in the child); signal the leader only.
            os.kill(self.pid, sig)

    def is_alive(self) -> bool:
        if self._process.returncode is not None:
            return False
        return pid_alive(self.pid)

    async def wait(self) -> int:
        return await self._process.wait()


async def spawn_process(request: SpawnRequest) -> ProcessHandle:
    """Default spawner: piped stdout/stderr, closed stdin, new session."""
    process = await asyncio.create_subprocess_exec(
        *request.argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(request.cwd) if request.cwd is not None else None,
        env=dict(request.env) if request.env else None,
        start_new_session=True,
    )
    return SubprocessHandle(process)


async def wait_for_death(
    handle: ProcessHandle,
    *,
    timeout: float,
    interval: float = 0.1,
) -> bool:
    """Poll ``handle.is_alive()`` every ``interval`` seconds for up to ``timeout``.

    Returns ``True`` as soon as the process is observed dead, ``False`` if it
    is still alive when the window closes.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, timeout)
    while True:
        if not handle.is_alive():
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return not handle.is_alive()
        await asyncio.sleep(min(interval, remaining))


def signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)
