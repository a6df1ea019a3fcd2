"""Connection handle configuration, transactions, introspection, and error typing."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

import pytest

from posguard.persistence import (
    DatabaseClosedError,
    DatabaseCorruptionError,
    DatabaseError,
    DatabaseHandle,
)
from posguard.persistence.database import is_busy_error, is_corruption_error

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.unit
def test_open_configures_foreign_keys_busy_timeout_and_wal(db_path: Path) -> None:
    with DatabaseHandle.open(db_path, busy_timeout_ms=1_234) as handle:
        assert handle.scalar("PRAGMA foreign_keys") == 1
        assert handle.scalar("PRAGMA busy_timeout") == 1_234
        assert str(handle.scalar("PRAGMA journal_mode")).lower() == "wal"
        assert handle.path == db_path

    assert db_path.exists()


@pytest.mark.unit
def test_open_without_wal_keeps_rollback_journal(db_path: Path) -> None:
    with DatabaseHandle.open(db_path, wal=False) as handle:
        handle.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
        assert str(handle.scalar("PRAGMA journal_mode")).lower() == "delete"


@pytest.mark.unit
def test_negative_busy_timeout_is_rejected(db_path: Path) -> None:
    with pytest.raises(ValueError, match="busy_timeout_ms"):
        DatabaseHandle.open(db_path, busy_timeout_ms=-1)


@pytest.mark.unit
def test_close_is_idempotent_and_closed_handle_refuses_use(db_path: Path) -> None:
    handle = DatabaseHandle.open(db_path)
    handle.close()
    handle.close()

    assert handle.closed
    with pytest.raises(DatabaseClosedError):
        handle.execute("SELECT 1")


@pytest.mark.unit
def test_transaction_commits_and_rolls_back(db_path: Path) -> None:
    with DatabaseHandle.open(db_path) as handle:
        handle.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL)")

        with handle.transaction():
            handle.execute("INSERT INTO items (name) VALUES (?)", ("kept",))

        with pytest.raises(RuntimeError, match="boom"), handle.transaction():
            handle.execute("INSERT INTO items (name) VALUES (?)", ("discarded",))
            raise RuntimeError("boom")

        names = [row["name"] for row in handle.query_all("SELECT name FROM items ORDER BY id")]
        assert names == ["kept"]


@pytest.mark.unit
def test_nested_transaction_rolls_back_only_the_savepoint(db_path: Path) -> None:
    with DatabaseHandle.open(db_path) as handle:
        handle.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL)")

        with handle.transaction():
            handle.execute("INSERT INTO items (name) VALUES ('outer')")
            with pytest.raises(ValueError), handle.transaction():
                handle.execute("INSERT INTO items (name) VALUES ('inner')")
                raise ValueError("inner failure")

        names = [row["name"] for row in handle.query_all("SELECT name FROM items")]
        assert names == ["outer"]


@pytest.mark.unit
def test_introspection_reports_tables_columns_and_indexes(db_path: Path) -> None:
    with DatabaseHandle.open(db_path) as handle:
        handle.execute("CREATE TABLE widgets (id INTEGER PRIMARY KEY, sku TEXT, label TEXT)")
        handle.execute("CREATE INDEX idx_widgets_sku ON widgets(sku)")

        assert handle.table_exists("widgets")
        assert not handle.table_exists("gadgets")
        assert handle.user_tables() == ("widgets",)
        assert handle.column_names("widgets") == frozenset({"id", "sku", "label"})
        assert "idx_widgets_sku" in handle.index_names("widgets")
        assert "idx_widgets_sku" in handle.index_names()
        assert handle.column_names("gadgets") == frozenset()


@pytest.mark.unit
def test_maintenance_pragmas_on_healthy_database(db_path: Path) -> None:
    with DatabaseHandle.open(db_path) as handle:
        handle.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
        assert handle.integrity_check() == ()
        assert handle.quick_check() == ()
        busy, _, _ = handle.wal_checkpoint("truncate")
        assert busy == 0
        handle.reindex()
        handle.vacuum()
        assert handle.foreign_key_violations() == []

        with pytest.raises(ValueError, match="checkpoint mode"):
            handle.wal_checkpoint("EVERYTHING")
        with pytest.raises(ValueError, match="max_errors"):
            handle.integrity_check(max_errors=0)


@pytest.mark.unit
def test_sql_errors_are_wrapped_with_operation_context(db_path: Path) -> None:
    with DatabaseHandle.open(db_path) as handle:
        with pytest.raises(DatabaseError, match="execute statement failed") as excinfo:
            handle.execute("SELECT * FROM missing_table")
        assert isinstance(excinfo.value.__cause__, sqlite3.Error)


@pytest.mark.unit
def test_opening_a_non_database_raises_corruption_error(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_path.write_bytes(b"this is definitely not sqlite" * 64)

    with pytest.raises(DatabaseCorruptionError):
        DatabaseHandle.open(db_path)


@pytest.mark.unit
def test_error_classifiers_fall_back_to_message_text() -> None:
    assert is_busy_error(sqlite3.OperationalError("database is locked"))
    assert not is_busy_error(sqlite3.OperationalError("no such table: x"))
    assert is_corruption_error(sqlite3.DatabaseError("file is not a database"))
    assert is_corruption_error(sqlite3.DatabaseError("database disk image is malformed"))
    assert not is_corruption_error(sqlite3.OperationalError("no such column: y"))
