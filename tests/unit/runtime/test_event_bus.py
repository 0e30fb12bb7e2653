"""Tests for the orchestrator event bus."""

from __future__ import annotations

import logging

import pytest

from orchid_orchestrator.runtime.events import EventBus, EventType, OrchestratorEvent


def _event(
    service_id: str = "api",
    event_type: EventType = EventType.STATE_CHANGE,
) -> OrchestratorEvent:
    return OrchestratorEvent(type=event_type, service_id=service_id, data={"state": "running"})


class TestEventBus:
    async def test_sync_and_async_callbacks_receive_events(self) -> None:
        bus = EventBus()
        sync_seen: list[str] = []
        async_seen: list[str] = []

        async def on_async(event: OrchestratorEvent) -> None:
            async_seen.append(event.service_id)

        bus.subscribe(lambda event: sync_seen.append(event.service_id))
        bus.subscribe(on_async)

        await bus.publish(_event("auth"))

        assert sync_seen == ["auth"]
        assert async_seen == ["auth"]
        assert bus.subscriber_count == 2

    async def test_unsubscribe(self) -> None:
        bus = EventBus()
        seen: list[OrchestratorEvent] = []
        unsubscribe = bus.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        await bus.publish(_event())

        assert seen == []
        assert bus.subscriber_count == 0

    async def test_failing_callback_does_not_stop_delivery(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        bus = EventBus()
        seen: list[OrchestratorEvent] = []

        def explode(event: OrchestratorEvent) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(explode)
        bus.subscribe(seen.append)

        with caplog.at_level(logging.ERROR, logger="orchid_orchestrator.runtime.events"):
            await bus.publish(_event())

        assert len(seen) == 1
        assert "Event subscriber failed" in caplog.text

    async def test_full_queue_drops_oldest(self) -> None:
        bus = EventBus(queue_size=2)
        queue = bus.open_queue()

        for service_id in ("a", "b", "c"):
            await bus.publish(_event(service_id))

        assert queue.qsize() == 2
        assert queue.get_nowait().service_id == "b"
        assert queue.get_nowait().service_id == "c"

    async def test_closed_queue_stops_receiving(self) -> None:
        bus = EventBus()
        queue = bus.open_queue()
        bus.close_queue(queue)

        await bus.publish(_event())

        assert queue.empty()

    def test_event_to_dict(self) -> None:
        payload = _event("gateway", EventType.SERVICE_STARTED).to_dict()

        assert payload["type"] == "serviceStarted"
        assert payload["service_id"] == "gateway"
        assert payload["data"] == {"state": "running"}
        assert payload["timestamp"].endswith("Z")
