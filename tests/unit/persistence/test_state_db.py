"""Unit tests for SQLite schema bookkeeping and transactions."""

from __future__ import annotations

from pathlib import Path

import pytest

from conduit_ci.persistence.state_db import StateDB, StateDBError, StateDBSchemaError

_SCHEMA = ("CREATE TABLE IF NOT EXISTS items (name TEXT PRIMARY KEY, value INTEGER NOT NULL)",)


def _db(path: Path, version: int = 1) -> StateDB:
    return StateDB(path, component="items", schema_version=version, schema=_SCHEMA)


def test_schema_is_created_once_and_version_recorded(tmp_path: Path) -> None:
    db = _db(tmp_path / "nested" / "state.sqlite")

    assert db.ensure_schema() == 1
    assert db.ensure_schema() == 1
    row = db.query_one("SELECT version FROM schema_versions WHERE component = ?", ("items",))
    assert row is not None
    assert row["version"] == 1


def test_newer_on_disk_schema_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "state.sqlite"
    _db(path, version=3).ensure_schema()

    with pytest.raises(StateDBSchemaError, match="supports up to 1"):
        _db(path, version=1).ensure_schema()


def test_transaction_rolls_back_on_error(tmp_path: Path) -> None:
    db = _db(tmp_path / "state.sqlite")
    db.execute("INSERT INTO items(name, value) VALUES (?, ?)", ("a", 1))

    with pytest.raises(RuntimeError), db.transaction() as conn:
        db.run(conn, "UPDATE items SET value = 2 WHERE name = ?", ("a",))
        raise RuntimeError("abort")

    row = db.query_one("SELECT value FROM items WHERE name = ?", ("a",))
    assert row is not None
    assert row["value"] == 1


def test_sql_errors_are_wrapped(tmp_path: Path) -> None:
    db = _db(tmp_path / "state.sqlite")

    with pytest.raises(StateDBError, match="query failed"):
        db.query_all("SELECT * FROM missing_table")
