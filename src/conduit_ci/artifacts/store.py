"""
Content-addressed artifact store.

Blobs live under ``<root>/blobs/<aa>/<sha256>`` and are shared across runs, so
re-running an unchanged stage stores nothing new. A SQLite index maps each
``(run, stage, name)`` slot to a digest; slots are write-once.

Retention: ``gc`` drops index entries for runs older than the TTL and runs
beyond the newest ``max_runs``, then deletes blobs no remaining entry
references. Pinned runs (in flight) are never collected.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Final

import structlog

from conduit_ci.constants import ARTIFACT_INDEX_SCHEMA_VERSION
from conduit_ci.domain.errors import ArtifactConflictError, ArtifactNotFoundError
from conduit_ci.domain.models import ArtifactRef
from conduit_ci.persistence.state_db import StateDB
from conduit_ci.utils.fs import atomic_write, iter_files, safe_relative_path
from conduit_ci.utils.hashing import is_sha256_hex, sha256_bytes

DEFAULT_TTL_HOURS: Final[int] = 168
DEFAULT_MAX_RUNS: Final[int] = 50
INDEX_FILE_NAME: Final[str] = "index.sqlite"

_SCHEMA: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS artifact_runs (
        run_id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL,
        pinned INTEGER NOT NULL DEFAULT 0 CHECK (pinned IN (0, 1))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS artifacts (
        run_id TEXT NOT NULL,
        stage_id TEXT NOT NULL,
        name TEXT NOT NULL,
        digest TEXT NOT NULL CHECK (length(digest) = 64),
        size INTEGER NOT NULL CHECK (size >= 0),
        created_at TEXT NOT NULL,
        PRIMARY KEY (run_id, stage_id, name)
    )
    """,
    "CREATE INDEX IF NOT EXISTS artifacts_digest ON artifacts(digest)",
)


@dataclass(frozen=True, slots=True)
class GcReport:
    removed_runs: tuple[str, ...]
    removed_blobs: int
    freed_bytes: int
    kept_pinned: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "removed_runs": list(self.removed_runs),
            "removed_blobs": self.removed_blobs,
            "freed_bytes": self.freed_bytes,
            "kept_pinned": list(self.kept_pinned),
        }


class ArtifactStore:
    """Write-once, content-addressed artifact storage keyed by run and stage."""

    def __init__(
        self,
        root: str | Path,
        *,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        max_runs: int = DEFAULT_MAX_RUNS,
        logger: Any | None = None,
    ) -> None:
        if ttl_hours < 0:
            raise ValueError("ttl_hours must be >= 0")
        if max_runs < 1:
            raise ValueError("max_runs must be >= 1")
        self._root = Path(root)
        self._blobs = self._root / "blobs"
        self._ttl = timedelta(hours=ttl_hours)
        self._max_runs = max_runs
        self._db = StateDB(
            self._root / INDEX_FILE_NAME,
            component="artifact_index",
            schema_version=ARTIFACT_INDEX_SCHEMA_VERSION,
            schema=_SCHEMA,
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    def blob_path(self, digest: str) -> Path:
        if not is_sha256_hex(digest):
            raise ValueError(f"invalid sha256 digest: {digest!r}")
        return self._blobs / digest[:2] / digest

    # ------------------------------------------------------------------
    # Write / read
    # ------------------------------------------------------------------

    def put(self, run_id: str, stage_id: str, name: str, data: bytes) -> ArtifactRef:
        """
        Store ``data`` under ``(run_id, stage_id, name)``.

        Re-putting identical bytes returns the existing ref; different bytes
        for an occupied slot raise ``ArtifactConflictError``.
        """

        safe_relative_path(name)
        payload = bytes(data)
        digest = sha256_bytes(payload)
        ref = ArtifactRef(run_id=run_id, stage_id=stage_id, name=name, digest=digest, size=len(payload))

        # Index row first: gc never removes a blob the index references.
        now = _now_iso()
        inserted = False
        with self._db.transaction() as conn:
            existing = self._db.run(
                conn,
                "SELECT digest FROM artifacts WHERE run_id = ? AND stage_id = ? AND name = ?",
                (run_id, stage_id, name),
            ).fetchone()
            if existing is not None:
                if existing["digest"] != digest:
                    raise ArtifactConflictError(
                        f"artifact {run_id}/{stage_id}/{name} already stored with digest "
                        f"{existing['digest'][:12]}; refusing different content {digest[:12]}"
                    )
            else:
                self._db.run(
                    conn,
                    "INSERT OR IGNORE INTO artifact_runs(run_id, created_at, pinned) VALUES (?, ?, 0)",
                    (run_id, now),
                )
                self._db.run(
                    conn,
                    """
                    INSERT INTO artifacts(run_id, stage_id, name, digest, size, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, stage_id, name, digest, len(payload), now),
                )
                inserted = True

        blob = self.blob_path(digest)
        if not blob.exists():
            try:
                atomic_write(blob, payload, make_parents=True)
            except Exception:
                if inserted:
                    self._db.execute(
                        "DELETE FROM artifacts WHERE run_id = ? AND stage_id = ? AND name = ?",
                        (run_id, stage_id, name),
                    )
                raise

        if inserted:
            self._logger.debug(
                "artifact_stored",
                run_id=run_id,
                stage_id=stage_id,
                artifact=name,
                digest=digest,
                size=len(payload),
            )
        return ref

    def get(self, ref: ArtifactRef) -> bytes:
        if not self.exists(ref):
            raise ArtifactNotFoundError(f"artifact not found: {ref.run_id}/{ref.stage_id}/{ref.name}")
        try:
            data = self.blob_path(ref.digest).read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactNotFoundError(f"artifact blob missing: {ref.digest}") from exc
        if sha256_bytes(data) != ref.digest:
            raise ArtifactNotFoundError(f"artifact blob corrupted: {ref.digest}")
        return data

    async def aput(self, run_id: str, stage_id: str, name: str, data: bytes) -> ArtifactRef:
        return await asyncio.to_thread(self.put, run_id, stage_id, name, data)

    async def aget(self, ref: ArtifactRef) -> bytes:
        return await asyncio.to_thread(self.get, ref)

    def exists(self, ref: ArtifactRef) -> bool:
        row = self._db.query_one(
            "SELECT 1 FROM artifacts WHERE run_id = ? AND stage_id = ? AND name = ? AND digest = ?",
            (ref.run_id, ref.stage_id, ref.name, ref.digest),
        )
        return row is not None

    def lookup(self, run_id: str, stage_id: str, name: str) -> ArtifactRef:
        row = self._db.query_one(
            "SELECT run_id, stage_id, name, digest, size FROM artifacts "
            "WHERE run_id = ? AND stage_id = ? AND name = ?",
            (run_id, stage_id, name),
        )
        if row is None:
            raise ArtifactNotFoundError(f"artifact not found: {run_id}/{stage_id}/{name}")
        return _row_to_ref(row)

    def list_for_run(self, run_id: str, *, stage_id: str | None = None) -> tuple[ArtifactRef, ...]:
        sql = "SELECT run_id, stage_id, name, digest, size FROM artifacts WHERE run_id = ?"
        params: list[str] = [run_id]
        if stage_id is not None:
            sql += " AND stage_id = ?"
            params.append(stage_id)
        sql += " ORDER BY stage_id, name"
        return tuple(_row_to_ref(row) for row in self._db.query_all(sql, params))

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def pin_run(self, run_id: str) -> None:
        """Protect ``run_id`` from collection until ``unpin_run``."""

        self._db.execute(
            """
            INSERT INTO artifact_runs(run_id, created_at, pinned) VALUES (?, ?, 1)
            ON CONFLICT(run_id) DO UPDATE SET pinned = 1
            """,
            (run_id, _now_iso()),
        )

    def unpin_run(self, run_id: str) -> None:
        self._db.execute("UPDATE artifact_runs SET pinned = 0 WHERE run_id = ?", (run_id,))

    def pinned_runs(self) -> tuple[str, ...]:
        rows = self._db.query_all("SELECT run_id FROM artifact_runs WHERE pinned = 1 ORDER BY run_id")
        return tuple(row["run_id"] for row in rows)

    def gc(self, now: datetime | None = None) -> GcReport:
        current = (now or datetime.now(UTC)).astimezone(UTC)
        cutoff = _to_iso(current - self._ttl)

        removed: list[str] = []
        kept_pinned: list[str] = []
        with self._db.transaction() as conn:
            rows = self._db.run(
                conn,
                "SELECT run_id, created_at, pinned FROM artifact_runs ORDER BY created_at DESC, run_id DESC",
            ).fetchall()
            for rank, row in enumerate(rows):
                expired = row["created_at"] < cutoff or rank >= self._max_runs
                if not expired:
                    continue
                if row["pinned"]:
                    kept_pinned.append(row["run_id"])
                    continue
                removed.append(row["run_id"])
                self._db.run(conn, "DELETE FROM artifacts WHERE run_id = ?", (row["run_id"],))
                self._db.run(conn, "DELETE FROM artifact_runs WHERE run_id = ?", (row["run_id"],))

            referenced = {
                row["digest"] for row in self._db.run(conn, "SELECT DISTINCT digest FROM artifacts").fetchall()
            }

            # Swept under the write lock so no put can index a digest mid-sweep.
            removed_blobs = 0
            freed_bytes = 0
            if self._blobs.is_dir():
                for blob in iter_files(self._blobs):
                    # In-progress atomic writes start with a dot.
                    if blob.name in referenced or blob.name.startswith("."):
                        continue
                    size = blob.stat().st_size
                    blob.unlink(missing_ok=True)
                    removed_blobs += 1
                    freed_bytes += size

        report = GcReport(
            removed_runs=tuple(sorted(removed)),
            removed_blobs=removed_blobs,
            freed_bytes=freed_bytes,
            kept_pinned=tuple(sorted(kept_pinned)),
        )
        self._logger.info("artifact_gc", **report.to_dict())
        return report


def _row_to_ref(row: Any) -> ArtifactRef:
    return ArtifactRef(
        run_id=row["run_id"],
        stage_id=row["stage_id"],
        name=row["name"],
        digest=row["digest"],
        size=int(row["size"]),
    )


def _to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _now_iso() -> str:
    return _to_iso(datetime.now(UTC))


__all__ = [
    "DEFAULT_MAX_RUNS",
    "DEFAULT_TTL_HOURS",
    "ArtifactStore",
    "GcReport",
]
