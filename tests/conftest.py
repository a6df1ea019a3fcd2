"""Shared fixtures for posguard tests: recording logger, fixed clocks, database builders."""

from __future__ import annotations

import shutil
import sqlite3
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from posguard.migrations import MigrationRunner, default_registry
from posguard.persistence import DatabaseHandle, create_baseline_schema

FIXED_NOW = datetime(2026, 3, 14, 9, 26, 53, tzinfo=UTC)
RECEIPTS_TABLE = "wal_receipts"


class RecordingLogger:
    """Structlog-compatible stand-in that keeps every ``(level, event, fields)``."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def _record(self, level: str, event: str, **fields: Any) -> None:
        self.records.append((level, event, fields))

    def debug(self, event: str, **fields: Any) -> None:
        self._record("debug", event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._record("info", event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._record("warning", event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._record("error", event, **fields)

    def events(self, level: str | None = None) -> list[str]:
        return [event for lvl, event, _ in self.records if level is None or lvl == level]

    def fields_for(self, event: str) -> list[dict[str, Any]]:
        return [fields for _, name, fields in self.records if name == event]


class SteppingClock:
    """Clock that advances one second per call, starting at ``start``."""

    def __init__(self, start: datetime = FIXED_NOW, *, step_seconds: int = 1) -> None:
        self._current = start
        self._step = timedelta(seconds=step_seconds)

    def __call__(self) -> datetime:
        value = self._current
        self._current += self._step
        return value


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def stepping_clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "pos_system.db"


@pytest.fixture
def make_current_database() -> Callable[[Path], Path]:
    """Build a database at the latest schema version with one business and user."""

    def build(path: Path) -> Path:
        with DatabaseHandle.open(path) as handle:
            create_baseline_schema(handle)
            MigrationRunner(default_registry(), clock_ms=lambda: 1_700_000_000_000).apply_pending(
                handle
            )
            seed_business_and_user(handle)
            handle.wal_checkpoint("TRUNCATE")
        return path

    return build


@pytest.fixture
def make_baseline_database() -> Callable[[Path], Path]:
    """Build a version-0 database that has data tables but no migration history."""

    def build(path: Path) -> Path:
        with DatabaseHandle.open(path) as handle:
            create_baseline_schema(handle)
            seed_business_and_user(handle)
            handle.wal_checkpoint("TRUNCATE")
        return path

    return build


@pytest.fixture
def make_plain_sqlite() -> Callable[..., Path]:
    """Write a rollback-journal SQLite file with arbitrary statements via sqlite3."""

    def build(path: Path, *statements: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path)
        try:
            for statement in statements or ("CREATE TABLE scratch (id INTEGER PRIMARY KEY)",):
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()
        return path

    return build


@pytest.fixture
def make_crashed_wal_database() -> Callable[..., Path]:
    """Build a current database whose last ``rows`` receipts live only in its ``-wal``.

    The main file and its log are copied while the writer is still connected,
    which is what a killed process leaves on disk.
    """

    def build(path: Path, *, rows: int = 100) -> Path:
        staging = path.parent / "staging" / path.name
        with DatabaseHandle.open(staging) as handle:
            create_baseline_schema(handle)
            MigrationRunner(default_registry()).apply_pending(handle)
            seed_business_and_user(handle)
            handle.execute(f"CREATE TABLE {RECEIPTS_TABLE} (id INTEGER PRIMARY KEY, total INTEGER)")
            handle.wal_checkpoint("TRUNCATE")

        conn = sqlite3.connect(staging, isolation_level=None)
        try:
            conn.execute("PRAGMA wal_autocheckpoint=0")
            conn.execute("BEGIN")
            conn.executemany(
                f"INSERT INTO {RECEIPTS_TABLE} (total) VALUES (?)",
                [(cents,) for cents in range(100, 100 + rows)],
            )
            conn.execute("COMMIT")
            shutil.copyfile(staging, path)
            shutil.copyfile(
                staging.with_name(staging.name + "-wal"), path.with_name(path.name + "-wal")
            )
        finally:
            conn.close()
        shutil.rmtree(staging.parent)
        return path

    return build


@pytest.fixture
def count_receipts() -> Callable[[Path], int]:
    def count(path: Path) -> int:
        conn = sqlite3.connect(path)
        try:
            return int(conn.execute(f"SELECT COUNT(*) FROM {RECEIPTS_TABLE}").fetchone()[0])
        finally:
            conn.close()

    return count


@pytest.fixture
def open_handles() -> Iterator[list[DatabaseHandle]]:
    handles: list[DatabaseHandle] = []
    yield handles
    for handle in handles:
        handle.close()


def seed_business_and_user(
    handle: DatabaseHandle,
    *,
    user_id: str = "user-0001-aaaa",
    email: str = "cashier@example.com",
) -> None:
    stamp = "2024-01-01T00:00:00Z"
    with handle.transaction():
        handle.execute(
            "INSERT OR IGNORE INTO businesses (id, name, created_at, updated_at) "
            "VALUES (?, ?, ?, ?)",
            ("biz-1", "Corner Shop", stamp, stamp),
        )
        handle.execute(
            """
            INSERT INTO users (id, business_id, email, password, role, created_at, updated_at)
            VALUES (?, 'biz-1', ?, 'hashed', 'cashier', ?, ?)
            """,
            (user_id, email, stamp, stamp),
        )


def write_bytes(path: Path, payload: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return path


@pytest.fixture
def seed_user() -> Callable[..., None]:
    return seed_business_and_user


@pytest.fixture
def write_file() -> Callable[[Path, bytes], Path]:
    return write_bytes
