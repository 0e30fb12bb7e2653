"""Event vocabulary, the supervisor channel and the observer bus."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from orchid_orchestrator.runtime.state import ServiceState, isoformat, utcnow

logger = logging.getLogger(__name__)


class SupervisorEventKind(StrEnum):
    STATE_CHANGE = "state_change"
    PROCESS_EXIT = "process_exit"
    PROCESS_ERROR = "process_error"


@dataclass(frozen=True, slots=True)
class SupervisorEvent:
    """Message sent from the process supervisor to the orchestrator."""

    kind: SupervisorEventKind
    service_id: str
    state: ServiceState | None = None
    previous_state: ServiceState | None = None
    healthy: bool | None = None
    exit_code: int | None = None
    signal: int | None = None
    expected: bool = False
    error: str | None = None
    generation: int = 0


class EventType(StrEnum):
    STATE_CHANGE = "stateChange"
    SERVICE_STARTED = "serviceStarted"
    SERVICE_STOPPED = "serviceStopped"
    SERVICE_RESTARTED = "serviceRestarted"
    PROCESS_EXIT = "processExit"
    PROCESS_ERROR = "processError"
    CIRCUIT_BREAKER_RESET = "circuitBreakerReset"


@dataclass(frozen=True, slots=True)
class OrchestratorEvent:
    """Event published to external observers (control API, SSE clients)."""

    type: EventType
    service_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "service_id": self.service_id,
            "data": dict(self.data),
            "timestamp": isoformat(self.timestamp),
        }


EventCallback = Callable[[OrchestratorEvent], Awaitable[None] | None]


class EventBus:
    """Fan-out of orchestrator events to callbacks and bounded queues.

    Queue subscribers that fall behind lose the oldest events rather than
    blocking the publisher.
    """

    def __init__(self, *, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._callbacks: list[EventCallback] = []
        self._queues: set[asyncio.Queue[OrchestratorEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback``; the returned function unsubscribes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def open_queue(self) -> asyncio.Queue[OrchestratorEvent]:
        queue: asyncio.Queue[OrchestratorEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._queues.add(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue[OrchestratorEvent]) -> None:
        self._queues.discard(queue)

    async def publish(self, event: OrchestratorEvent) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if result is not None:
                    await result
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={"event_type": event.type.value, "service_id": event.service_id},
                )

        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
