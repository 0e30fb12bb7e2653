"""Configuration loader with hierarchical merge and validation."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from orchid_orchestrator.config.errors import (
    ConfigFileNotFoundError,
    ConfigValidationError,
)
from orchid_orchestrator.config.models import AppSettings
from orchid_orchestrator.config.placeholders import resolve_placeholders

DEFAULT_CONFIG_DIR = Path("config")
DEFAULT_BASE_FILE = "appsettings.json"
ENV_VAR_NAME = "ORCHESTRATOR_ENV"
DEFAULT_ENV = "development"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries. Override values take precedence."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any]:
    """Load and parse a JSON configuration file.

    Raises:
        ConfigFileNotFoundError: If the file does not exist.
        ConfigValidationError: If the file is not a JSON object.
    """
    if not path.exists():
        raise ConfigFileNotFoundError(str(path))

    with path.open(encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigValidationError(
                [{"loc": f"{path}:{exc.lineno}", "msg": exc.msg}], source=str(path)
            ) from exc

    if not isinstance(data, dict):
        raise ConfigValidationError(
            [{"loc": str(path), "msg": "top-level value must be an object"}], source=str(path)
        )
    return data


def load_config(
    *,
    config_dir: Path | str | None = None,
    env: str | None = None,
    strict_placeholders: bool = True,
    require_base_file: bool = True,
) -> AppSettings:
    """Load application configuration with hierarchical merging.

    Configuration is loaded in the following order (later sources override earlier):
    1. config/appsettings.json (base configuration)
    2. config/appsettings.<environment>.json (environment-specific overrides)
    3. Environment variable placeholder resolution

    Args:
        config_dir: Directory containing configuration files. Defaults to "config".
        env: Environment name. Defaults to ORCHESTRATOR_ENV or "development".
        strict_placeholders: If True, raise error for unresolved placeholders.
        require_base_file: If False, a missing base file falls back to defaults.

    Raises:
        ConfigFileNotFoundError: If the base file is required and missing.
        ConfigValidationError: If configuration validation fails.
        PlaceholderResolutionError: If strict_placeholders=True and a placeholder
            cannot be resolved.
    """
    config_dir = DEFAULT_CONFIG_DIR if config_dir is None else Path(config_dir)

    if env is None:
        env = os.environ.get(ENV_VAR_NAME, DEFAULT_ENV)

    base_path = config_dir / DEFAULT_BASE_FILE
    if base_path.exists() or require_base_file:
        config = load_json_file(base_path)
    else:
        config = {}

    env_path = config_dir / f"appsettings.{env}.json"
    if env_path.exists():
        config = deep_merge(config, load_json_file(env_path))

    config = resolve_placeholders(config, strict=strict_placeholders)

    try:
        return AppSettings.model_validate(config)
    except ValidationError as e:
        errors = [
            {"loc": " -> ".join(str(loc) for loc in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise ConfigValidationError(errors) from e
