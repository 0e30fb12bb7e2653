"""Per-service mutual exclusion for lifecycle actions."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from orchid_orchestrator.errors import ConcurrencyConflictError

_PROGRESSIVE = {
    "start": "starting",
    "stop": "stopping",
    "restart": "restarting",
}


class InFlightGuard:
    """Set of service ids with an action in flight.

    A second acquisition for the same id fails immediately instead of queueing.

    Example usage::

        guard = InFlightGuard("orchestrator")
        with guard.hold("api", "start"):
            await spawn()
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._active: dict[str, str] = {}

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._active

    def __len__(self) -> int:
        return len(self._active)

    def action_for(self, service_id: str) -> str | None:
        return self._active.get(service_id)

    def acquire(self, service_id: str, action: str) -> None:
        current = self._active.get(service_id)
        if current is not None:
            verb = _PROGRESSIVE.get(current, current)
            raise ConcurrencyConflictError(f"Service {service_id} is already {verb}")
        self._active[service_id] = action

    def release(self, service_id: str) -> None:
        self._active.pop(service_id, None)

    @contextmanager
    def hold(self, service_id: str, action: str) -> Iterator[None]:
        self.acquire(service_id, action)
        try:
            yield
        finally:
            self.release(service_id)
