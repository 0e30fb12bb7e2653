"""Tests for ObservableMixin."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any, ClassVar
from unittest.mock import MagicMock

import pytest

from orchid_orchestrator.errors import StateStoreError
from orchid_orchestrator.observability._observable import ObservableMixin
from orchid_orchestrator.observability.metrics import (
    NoopMetricsRecorder,
    get_metrics_recorder,
    set_metrics_recorder,
)
from orchid_orchestrator.persistence import JsonStateStore
from orchid_orchestrator.runtime.state import ServiceRuntimeState

# ── Plain class subclass ──────────────────────────────────────────────


class PlainComponent(ObservableMixin):
    _resource_name = "plain"

    def __init__(self, *, metrics: Any = None) -> None:
        self._metrics = metrics


# ── Dataclass (slots=True) subclass ───────────────────────────────────


@dataclass(slots=True)
class SlottedComponent(ObservableMixin):
    _resource_name: ClassVar[str] = "slotted"

    name: str
    _metrics: Any = None


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture()
def recorder() -> MagicMock:
    return MagicMock(spec=NoopMetricsRecorder)


# ── _metrics_recorder tests ──────────────────────────────────────────


class TestMetricsRecorder:
    def test_returns_injected_recorder(self, recorder: MagicMock) -> None:
        component = PlainComponent(metrics=recorder)
        assert component._metrics_recorder() is recorder

    def test_falls_back_to_process_recorder(self, recorder: MagicMock) -> None:
        component = PlainComponent()
        assert component._metrics_recorder() is get_metrics_recorder()

        set_metrics_recorder(recorder)
        assert component._metrics_recorder() is recorder

    def test_slotted_returns_injected(self, recorder: MagicMock) -> None:
        component = SlottedComponent(name="test", _metrics=recorder)
        assert component._metrics_recorder() is recorder


# ── _observe_operation / _observe_error ──────────────────────────────


class TestObserve:
    def test_records_success(self, recorder: MagicMock) -> None:
        component = PlainComponent(metrics=recorder)

        component._observe_operation("start_service", perf_counter(), success=True)

        call_kwargs = recorder.observe_operation.call_args.kwargs
        assert call_kwargs["resource"] == "plain"
        assert call_kwargs["operation"] == "start_service"
        assert call_kwargs["success"] is True
        assert call_kwargs["duration_seconds"] >= 0

    def test_error_records_failed_operation_and_error_type(self, recorder: MagicMock) -> None:
        component = SlottedComponent(name="test", _metrics=recorder)

        component._observe_error("stop_service", perf_counter(), TimeoutError("slow"))

        op_call = recorder.observe_operation.call_args
        assert op_call.kwargs["resource"] == "slotted"
        assert op_call.kwargs["success"] is False
        err_call = recorder.observe_error.call_args
        assert err_call.kwargs["operation"] == "stop_service"
        assert err_call.kwargs["error_type"] == "TimeoutError"

    def test_instance_resource_name_overrides_class(self, recorder: MagicMock) -> None:
        component = PlainComponent(metrics=recorder)
        component._resource_name = "custom"

        component._observe_operation("ping", perf_counter(), success=True)

        assert recorder.observe_operation.call_args.kwargs["resource"] == "custom"


# ── Components built on the mixin ────────────────────────────────────


class TestStateStoreObservation:
    async def test_successful_write_is_observed(self, recorder: MagicMock, tmp_path: Path) -> None:
        store = JsonStateStore(tmp_path / "state.json", metrics=recorder)

        await store.save_state({"api": ServiceRuntimeState(service_id="api")})

        call_kwargs = recorder.observe_operation.call_args.kwargs
        assert call_kwargs["resource"] == "state_store_json"
        assert call_kwargs["operation"] == "save_state"
        assert call_kwargs["success"] is True

    async def test_failed_write_is_observed_and_wrapped(
        self, recorder: MagicMock, tmp_path: Path
    ) -> None:
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("", encoding="utf-8")
        store = JsonStateStore(blocker / "state.json", metrics=recorder)

        with pytest.raises(StateStoreError):
            await store.update_service_state("api", ServiceRuntimeState(service_id="api"))

        err_call = recorder.observe_error.call_args
        assert err_call.kwargs["resource"] == "state_store_json"
        assert err_call.kwargs["operation"] == "update_service_state"
