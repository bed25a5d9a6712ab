"""SQLite run store keeping the latest JSON snapshot of each pipeline run."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from conduit_ci.constants import RUN_STORE_SCHEMA_VERSION
from conduit_ci.domain.errors import UnknownRunError
from conduit_ci.domain.models import TERMINAL_RUN_STATES, PipelineRun, RunState, RunStatusReport
from conduit_ci.persistence.state_db import DEFAULT_BUSY_TIMEOUT_MS, StateDB, canonical_json, utc_now_iso

_SCHEMA: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        pipeline TEXT NOT NULL,
        state TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        snapshot_json TEXT NOT NULL,
        cancel_requested INTEGER NOT NULL DEFAULT 0 CHECK (cancel_requested IN (0, 1))
    )
    """,
    "CREATE INDEX IF NOT EXISTS runs_pipeline_state ON runs(pipeline, state)",
)

_ACTIVE_STATES: Final[tuple[str, ...]] = tuple(
    sorted(state.value for state in RunState if state not in TERMINAL_RUN_STATES)
)


@dataclass(frozen=True, slots=True)
class RunSummary:
    run_id: str
    pipeline: str
    state: RunState
    created_at: str
    updated_at: str


class RunStore:
    """Persist run snapshots so status queries work across processes."""

    def __init__(self, path: str | Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self._db = StateDB(
            path,
            component="run_store",
            schema_version=RUN_STORE_SCHEMA_VERSION,
            schema=_SCHEMA,
            busy_timeout_ms=busy_timeout_ms,
        )

    @property
    def path(self) -> Path:
        return self._db.path

    def save(self, run: PipelineRun) -> None:
        payload = run.to_dict()
        snapshot = canonical_json(payload)
        created_at = payload["created_at"]
        self._db.execute(
            """
            INSERT INTO runs(run_id, pipeline, state, created_at, updated_at, snapshot_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                state = excluded.state,
                updated_at = excluded.updated_at,
                snapshot_json = excluded.snapshot_json
            """,
            (run.run_id, run.pipeline, run.state.value, str(created_at), utc_now_iso(), snapshot),
        )

    def load(self, run_id: str) -> PipelineRun:
        row = self._db.query_one(
            "SELECT snapshot_json, cancel_requested FROM runs WHERE run_id = ?",
            (run_id,),
        )
        if row is None:
            raise UnknownRunError(f"unknown run: {run_id}")
        run = PipelineRun.from_dict(json.loads(row["snapshot_json"]))
        if row["cancel_requested"] and not run.is_terminal:
            run.cancel_requested = True
        return run

    def status(self, run_id: str) -> RunStatusReport:
        return RunStatusReport.from_run(self.load(run_id))

    def exists(self, run_id: str) -> bool:
        return self._db.query_one("SELECT 1 FROM runs WHERE run_id = ?", (run_id,)) is not None

    def list_runs(self, *, pipeline: str | None = None, limit: int | None = None) -> list[RunSummary]:
        """Newest first."""

        sql = "SELECT run_id, pipeline, state, created_at, updated_at FROM runs"
        params: list[str | int] = []
        if pipeline is not None:
            sql += " WHERE pipeline = ?"
            params.append(pipeline)
        sql += " ORDER BY created_at DESC, run_id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [
            RunSummary(
                run_id=row["run_id"],
                pipeline=row["pipeline"],
                state=RunState(row["state"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in self._db.query_all(sql, params)
        ]

    def active_run_ids(self, pipeline: str) -> tuple[str, ...]:
        placeholders = ",".join("?" for _ in _ACTIVE_STATES)
        rows = self._db.query_all(
            f"SELECT run_id FROM runs WHERE pipeline = ? AND state IN ({placeholders}) ORDER BY created_at",
            (pipeline, *_ACTIVE_STATES),
        )
        return tuple(row["run_id"] for row in rows)

    def request_cancel(self, run_id: str) -> bool:
        """
        Flag ``run_id`` for cancellation by whichever process drives it.

        Stored outside the snapshot; ``save`` never clears it. Returns
        ``False`` when the run already finished.
        """

        row = self._db.query_one("SELECT state FROM runs WHERE run_id = ?", (run_id,))
        if row is None:
            raise UnknownRunError(f"unknown run: {run_id}")
        if RunState(row["state"]) in TERMINAL_RUN_STATES:
            return False
        self._db.execute("UPDATE runs SET cancel_requested = 1 WHERE run_id = ?", (run_id,))
        return True

    def is_cancel_requested(self, run_id: str) -> bool:
        row = self._db.query_one("SELECT cancel_requested FROM runs WHERE run_id = ?", (run_id,))
        return bool(row is not None and row["cancel_requested"])

    def delete(self, run_id: str) -> bool:
        return self._db.execute("DELETE FROM runs WHERE run_id = ?", (run_id,)) > 0


__all__ = ["RunStore", "RunSummary"]
