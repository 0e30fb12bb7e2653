"""Tests for the ``python -m orchid_orchestrator`` entry point."""

from __future__ import annotations

from pathlib import Path

import pytest

from orchid_orchestrator.__main__ import _parse_args, build_application, main
from orchid_orchestrator.api import METRICS_KEY, ORCHESTRATOR_KEY, SETTINGS_KEY
from orchid_orchestrator.config import AppSettings


def test_parse_args_defaults() -> None:
    args = _parse_args([])

    assert args.config_dir == Path("config")
    assert args.env is None


def test_parse_args_overrides() -> None:
    args = _parse_args(["--config-dir", "/etc/orchestrator", "--env", "production"])

    assert args.config_dir == Path("/etc/orchestrator")
    assert args.env == "production"


def test_main_fails_fast_on_missing_config(tmp_path: Path) -> None:
    assert main(["--config-dir", str(tmp_path / "missing")]) == 2


async def test_build_application_wires_orchestrator() -> None:
    settings = AppSettings()

    app = build_application(settings)

    assert app[SETTINGS_KEY] is settings
    assert app[ORCHESTRATOR_KEY].version == settings.service.version
    assert METRICS_KEY not in app


async def test_build_application_with_metrics() -> None:
    pytest.importorskip("prometheus_client")
    settings = AppSettings.model_validate({"metrics": {"enabled": True, "prefix": "entry_test"}})

    app = build_application(settings)

    assert app[METRICS_KEY] is not None
