"""
SQLite connection lifecycle shared by the run store and the artifact index.

Connections are short-lived and opened per operation so status queries from
another process never wait on a long-held lock. Schema creation is idempotent
and recorded in a ``schema_versions`` table.
"""

from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset({5, 6})
_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = ("database is locked", "database table is locked", "busy")

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    component TEXT PRIMARY KEY,
    version INTEGER NOT NULL CHECK (version > 0),
    applied_at TEXT NOT NULL
)
"""


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when SQLite stays locked after all retries."""


class StateDBSchemaError(StateDBError):
    """Raised when the on-disk schema is newer than this runtime understands."""


class StateDB:
    """Thin SQLite wrapper: busy timeout, WAL, retrying execute, transactions."""

    def __init__(
        self,
        path: str | Path,
        *,
        component: str,
        schema_version: int,
        schema: Sequence[str],
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        self._path = Path(path)
        self._component = component
        self._schema_version = schema_version
        self._schema = tuple(schema)
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._schema_ready = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        self.ensure_schema()
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements inside one ``BEGIN IMMEDIATE`` transaction."""

        with self.connection() as conn:
            self._execute_with_retry(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
                raise
            else:
                self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def ensure_schema(self) -> int:
        """Create tables idempotently and return the recorded schema version."""

        if self._schema_ready:
            return self._schema_version

        conn = self.connect()
        try:
            self._execute_with_retry(conn, "BEGIN IMMEDIATE", (), operation="begin schema")
            try:
                self._execute_with_retry(conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions")
                row = self._execute_with_retry(
                    conn,
                    "SELECT version FROM schema_versions WHERE component = ?",
                    (self._component,),
                    operation="read schema version",
                ).fetchone()
                found = int(row["version"]) if row is not None else None
                if found is not None and found > self._schema_version:
                    raise StateDBSchemaError(
                        f"{self._path} has {self._component} schema version {found}; "
                        f"this runtime supports up to {self._schema_version}"
                    )
                for statement in self._schema:
                    self._execute_with_retry(conn, statement, (), operation=f"create {self._component} schema")
                if found is None:
                    self._execute_with_retry(
                        conn,
                        "INSERT INTO schema_versions(component, version, applied_at) VALUES (?, ?, ?)",
                        (self._component, self._schema_version, utc_now_iso()),
                        operation="record schema version",
                    )
            except Exception:
                self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback schema")
                raise
            self._execute_with_retry(conn, "COMMIT", (), operation="commit schema")
        finally:
            conn.close()

        self._schema_ready = True
        return self._schema_version

    def execute(self, sql: str, params: SQLParams = ()) -> int:
        with self.connection() as conn:
            return self._execute_with_retry(conn, sql, params, operation="execute").rowcount

    def query_all(self, sql: str, params: SQLParams = ()) -> list[sqlite3.Row]:
        with self.connection() as conn:
            return list(self._execute_with_retry(conn, sql, params, operation="query").fetchall())

    def query_one(self, sql: str, params: SQLParams = ()) -> sqlite3.Row | None:
        with self.connection() as conn:
            row: sqlite3.Row | None = self._execute_with_retry(conn, sql, params, operation="query").fetchone()
            return row

    def run(self, conn: sqlite3.Connection, sql: str, params: SQLParams = ()) -> sqlite3.Cursor:
        """Execute on an already-open connection (inside ``transaction``)."""

        return self._execute_with_retry(conn, sql, params, operation="execute")

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                if self._is_busy_error(exc):
                    raise StateDBBusyError(
                        f"{operation} hit SQLITE_BUSY for {self._path} after "
                        f"{self._busy_retry_limit + 1} attempt(s): {exc}"
                    ) from exc
                raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    @staticmethod
    def _is_busy_error(exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBError",
    "StateDBSchemaError",
    "canonical_json",
    "utc_now_iso",
]
