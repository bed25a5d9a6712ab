"""Stable constants shared across the orchestrator packages."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_STORE_SCHEMA_VERSION: Final[int] = 1
ARTIFACT_INDEX_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DB_PATH: Final[PurePosixPath] = PurePosixPath(".conduit/state.sqlite")
ARTIFACTS_DIR: Final[PurePosixPath] = PurePosixPath(".conduit/artifacts")
LOGS_DIR: Final[PurePosixPath] = PurePosixPath(".conduit/logs")
INPUTS_DIR: Final[PurePosixPath] = PurePosixPath(".conduit/inputs")

# Environment variables exported to stage subprocesses.
ENV_RUN_ID: Final[str] = "CONDUIT_RUN_ID"
ENV_STAGE_ID: Final[str] = "CONDUIT_STAGE_ID"
ENV_SOURCE_REF: Final[str] = "CONDUIT_SOURCE_REF"
ENV_TRIGGER: Final[str] = "CONDUIT_TRIGGER"
ENV_INPUTS_DIR: Final[str] = "CONDUIT_INPUTS_DIR"

# Relative weight of finding severities; higher is more severe.
SEVERITY_WEIGHT: Final[dict[str, int]] = {
    "critical": 4,
    "high": 3,
    "medium": 2,
    "low": 1,
    "unknown": 0,
}

__all__ = [
    "ARTIFACTS_DIR",
    "ARTIFACT_INDEX_SCHEMA_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "ENV_INPUTS_DIR",
    "ENV_RUN_ID",
    "ENV_SOURCE_REF",
    "ENV_STAGE_ID",
    "ENV_TRIGGER",
    "INPUTS_DIR",
    "LOGS_DIR",
    "RUN_STORE_SCHEMA_VERSION",
    "SEVERITY_WEIGHT",
    "STATE_DB_PATH",
]
