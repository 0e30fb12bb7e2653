"""HTTP control API."""

from orchid_orchestrator.api.app import create_app
from orchid_orchestrator.api.routes import METRICS_KEY, ORCHESTRATOR_KEY, SETTINGS_KEY

__all__ = [
    "METRICS_KEY",
    "ORCHESTRATOR_KEY",
    "SETTINGS_KEY",
    "create_app",
]
