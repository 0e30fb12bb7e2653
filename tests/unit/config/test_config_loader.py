"""Tests for configuration loader module."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from orchid_orchestrator.config import (
    AppSettings,
    AutoRestartSettings,
    CircuitBreakerSettings,
    ConfigFileNotFoundError,
    ConfigValidationError,
    PlaceholderResolutionError,
    deep_merge,
    load_config,
)

FIXTURES_DIR = Path(__file__).resolve().parents[2] / "fixtures" / "config"
REPO_CONFIG_DIR = Path(__file__).resolve().parents[3] / "config"


class TestDeepMerge:
    """Tests for deep_merge function."""

    def test_simple_merge(self) -> None:
        result = deep_merge({"a": 1, "b": 2}, {"b": 3, "c": 4})
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self) -> None:
        base = {"orchestrator": {"process": {"kill_timeout_ms": 5000, "log_lines": 1000}}}
        override = {"orchestrator": {"process": {"log_lines": 50}}}

        result = deep_merge(base, override)

        assert result == {"orchestrator": {"process": {"kill_timeout_ms": 5000, "log_lines": 50}}}

    def test_override_dict_with_scalar(self) -> None:
        assert deep_merge({"a": {"x": 1}}, {"a": "replaced"}) == {"a": "replaced"}

    def test_does_not_mutate_original(self) -> None:
        base = {"a": {"x": 1}}
        deep_merge(base, {"a": {"y": 2}})
        assert base == {"a": {"x": 1}}


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_base_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_STATE_PATH", raising=False)

        settings = load_config(config_dir=FIXTURES_DIR, env="nonexistent")

        assert settings.service.name == "test-orchestrator"
        assert settings.service.port == 6130
        assert settings.orchestrator.health_check.interval_ms == 1000
        assert settings.orchestrator.health_check.interval_seconds == 1.0
        assert settings.orchestrator.process.kill_timeout_seconds == 2.0
        assert settings.orchestrator.state.path == Path("data/test-state.json")

    def test_environment_overlay_is_merged(self) -> None:
        settings = load_config(config_dir=FIXTURES_DIR, env="testing")

        assert settings.logging.level == "DEBUG"
        assert settings.logging.format == "text"
        assert settings.orchestrator.health_check.interval_ms == 50
        # Untouched keys survive the overlay.
        assert settings.orchestrator.health_check.timeout_ms == 500

    def test_env_selected_from_environment_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ORCHESTRATOR_ENV", "testing")

        settings = load_config(config_dir=FIXTURES_DIR)

        assert settings.logging.level == "DEBUG"

    def test_placeholder_resolved_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TEST_STATE_PATH", "/var/lib/orchestrator/state.json")

        settings = load_config(config_dir=FIXTURES_DIR, env="nonexistent")

        assert settings.orchestrator.state.path == Path("/var/lib/orchestrator/state.json")

    def test_strict_placeholder_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_REQUIRED_STATE_PATH", raising=False)

        with pytest.raises(PlaceholderResolutionError) as exc_info:
            load_config(config_dir=FIXTURES_DIR, env="strict")

        assert exc_info.value.key_path == "orchestrator.state.path"

    def test_lenient_placeholder_kept_verbatim(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_REQUIRED_STATE_PATH", raising=False)

        settings = load_config(config_dir=FIXTURES_DIR, env="strict", strict_placeholders=False)

        assert str(settings.orchestrator.state.path) == "${TEST_REQUIRED_STATE_PATH}"

    def test_missing_base_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigFileNotFoundError):
            load_config(config_dir=tmp_path)

    def test_missing_base_file_allowed_falls_back_to_defaults(self, tmp_path: Path) -> None:
        settings = load_config(config_dir=tmp_path, env="none", require_base_file=False)

        assert settings == AppSettings()
        assert settings.service.host == "127.0.0.1"
        assert settings.orchestrator.auto_restart.max_attempts == 10

    def test_invalid_json_reports_location(self, tmp_path: Path) -> None:
        (tmp_path / "appsettings.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(ConfigValidationError) as exc_info:
            load_config(config_dir=tmp_path)

        assert "appsettings.json" in str(exc_info.value)

    def test_non_object_document_rejected(self, tmp_path: Path) -> None:
        (tmp_path / "appsettings.json").write_text("[1, 2]", encoding="utf-8")

        with pytest.raises(ConfigValidationError, match="top-level value must be an object"):
            load_config(config_dir=tmp_path)

    def test_invalid_values_raise_validation_error(self, tmp_path: Path) -> None:
        (tmp_path / "appsettings.json").write_text(
            '{"orchestrator": {"health_check": {"interval_ms": 1}}}', encoding="utf-8"
        )

        with pytest.raises(ConfigValidationError) as exc_info:
            load_config(config_dir=tmp_path)

        locations = [error["loc"] for error in exc_info.value.errors]
        assert "orchestrator -> health_check -> interval_ms" in locations

    @pytest.mark.parametrize("env", ["development", "production"])
    def test_shipped_configuration_validates(
        self, env: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("ORCHESTRATOR_STATE_PATH", raising=False)

        settings = load_config(config_dir=REPO_CONFIG_DIR, env=env)

        assert settings.service.name == "orchestrator"


class TestSettingsModels:
    def test_settings_are_frozen(self) -> None:
        settings = AppSettings()

        with pytest.raises(ValidationError):
            settings.service.port = 1  # type: ignore[misc]

    def test_circuit_breaker_rejects_inverted_backoff_bounds(self) -> None:
        with pytest.raises(ValidationError, match="max_backoff_seconds"):
            CircuitBreakerSettings(initial_backoff_seconds=10.0, max_backoff_seconds=5.0)

    @pytest.mark.parametrize(
        ("attempt", "expected"),
        [(0, 5.0), (1, 10.0), (2, 20.0), (3, 40.0), (4, 60.0), (9, 60.0)],
    )
    def test_auto_restart_delay_doubles_up_to_ceiling(self, attempt: int, expected: float) -> None:
        policy = AutoRestartSettings(base_delay_seconds=5.0, max_delay_seconds=60.0)

        assert policy.delay_for(attempt) == expected
