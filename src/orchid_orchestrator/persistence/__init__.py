"""Runtime state persistence."""

from orchid_orchestrator.persistence.snapshot import (
    PersistedServiceState,
    persisted_to_runtime,
    runtime_to_persisted,
)
from orchid_orchestrator.persistence.store import (
    JsonStateStore,
    SqliteStateStore,
    StateStore,
    create_state_store,
)

__all__ = [
    "JsonStateStore",
    "PersistedServiceState",
    "SqliteStateStore",
    "StateStore",
    "create_state_store",
    "persisted_to_runtime",
    "runtime_to_persisted",
]
