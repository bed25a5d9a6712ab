"""SQLite persistence: run snapshots for status queries across processes."""

from conduit_ci.persistence.run_store import RunStore, RunSummary
from conduit_ci.persistence.state_db import StateDB, StateDBBusyError, StateDBError, StateDBSchemaError

__all__ = [
    "RunStore",
    "RunSummary",
    "StateDB",
    "StateDBBusyError",
    "StateDBError",
    "StateDBSchemaError",
]
