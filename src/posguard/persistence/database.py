"""
posguard - SQLite connection handle.

File: src/posguard/persistence/database.py

Purpose
- Own exactly one open SQLite connection for the startup pipeline and, once the
  pipeline reaches ``ready``, for the rest of the application.

What should be included in this file
- Connection configuration (foreign keys, busy timeout, optional WAL).
- Transaction helper with nested savepoint support.
- Read-only schema introspection used for structural idempotency probes.
- Maintenance pragmas used by the repair ladder.

Functional requirements
- Every sqlite3 failure is re-raised as a typed ``DatabaseError`` subclass,
  classified by SQLite result code before falling back to message text.
- ``close`` is idempotent; a closed handle refuses further use.

Non-functional requirements
- No module-level connection state: callers pass the handle explicitly.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Final, NoReturn

from posguard.constants import DEFAULT_BUSY_TIMEOUT_MS

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)

_CHECKPOINT_MODES: Final[frozenset[str]] = frozenset({"PASSIVE", "FULL", "RESTART", "TRUNCATE"})


class DatabaseError(RuntimeError):
    """Base class for connection-handle errors."""


class DatabaseBusyError(DatabaseError):
    """Raised when SQLite reports the database or a table as locked."""


class DatabaseCorruptionError(DatabaseError):
    """Raised when SQLite reports possible corruption."""


class DatabaseClosedError(DatabaseError):
    """Raised when a closed handle is used."""


class DatabaseHandle:
    """Explicit owner of one configured ``sqlite3.Connection``."""

    def __init__(
        self,
        path: str | Path,
        connection: sqlite3.Connection,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self._path = Path(path)
        self._conn: sqlite3.Connection | None = connection
        self._busy_timeout_ms = busy_timeout_ms
        self._savepoint_counter = 0

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        wal: bool = True,
    ) -> DatabaseHandle:
        """Open and configure a connection.

        ``wal=False`` skips the journal-mode switch, which is the only
        configuration step that reads the file; the repair ladder relies on
        this to get a handle on files SQLite would otherwise refuse.
        """

        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        db_path = Path(path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            db_path,
            timeout=busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        handle = cls(db_path, conn, busy_timeout_ms=busy_timeout_ms)
        try:
            handle._configure(wal=wal)
        except DatabaseError:
            handle.close()
            raise
        return handle

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._conn is None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseClosedError(f"database handle for {self._path} is closed")
        return self._conn

    def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        conn.close()

    def __enter__(self) -> DatabaseHandle:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    @contextmanager
    def transaction(self, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Run statements atomically; nested calls become savepoints."""

        conn = self.connection
        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute(f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except BaseException:
                self._execute(
                    f"ROLLBACK TO SAVEPOINT {savepoint}", (), operation="rollback to savepoint"
                )
                self._execute(f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint")
                raise
            else:
                self._execute(f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint")
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute(begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                self._execute("ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute("COMMIT", (), operation="commit transaction")

    def execute(self, sql: str, params: SQLParams = ()) -> int:
        """Execute a parameterized statement and return affected row count."""

        return self._execute(sql, params, operation="execute statement").rowcount

    def executemany(self, sql: str, params_iter: Iterable[SQLParams]) -> int:
        params_list = [tuple(params) for params in params_iter]
        try:
            cursor = self.connection.executemany(sql, params_list)
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="execute many")
        return cursor.rowcount

    def query_all(self, sql: str, params: SQLParams = ()) -> list[dict[str, RowValue]]:
        cursor = self._execute(sql, params, operation="query all")
        return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(self, sql: str, params: SQLParams = ()) -> dict[str, RowValue] | None:
        cursor = self._execute(sql, params, operation="query one")
        row = cursor.fetchone()
        return None if row is None else _row_to_dict(row)

    def scalar(self, sql: str, params: SQLParams = ()) -> RowValue:
        cursor = self._execute(sql, params, operation="query scalar")
        row = cursor.fetchone()
        return None if row is None else row[0]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def table_exists(self, name: str) -> bool:
        row = self.query_one(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        )
        return row is not None

    def user_tables(self) -> tuple[str, ...]:
        rows = self.query_all(
            """
            SELECT name FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
            ORDER BY name
            """
        )
        return tuple(str(row["name"]) for row in rows)

    def column_names(self, table: str) -> frozenset[str]:
        rows = self.query_all(f"PRAGMA table_info({_quote_identifier(table)})")
        return frozenset(str(row["name"]) for row in rows)

    def index_names(self, table: str | None = None) -> frozenset[str]:
        if table is None:
            rows = self.query_all("SELECT name FROM sqlite_master WHERE type = 'index'")
        else:
            rows = self.query_all(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ?",
                (table,),
            )
        return frozenset(str(row["name"]) for row in rows)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self._execute(
            f"PRAGMA integrity_check({max_errors})", (), operation="integrity check"
        ).fetchall()
        messages = tuple(str(row[0]) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    def quick_check(self) -> tuple[str, ...]:
        rows = self._execute("PRAGMA quick_check", (), operation="quick check").fetchall()
        messages = tuple(str(row[0]) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    def wal_checkpoint(self, mode: str = "TRUNCATE") -> tuple[int, int, int]:
        """Merge the write-ahead log into the main file.

        Returns SQLite's ``(busy, log_frames, checkpointed_frames)`` triple.
        """

        normalized = mode.strip().upper()
        if normalized not in _CHECKPOINT_MODES:
            raise ValueError(f"unsupported checkpoint mode {mode!r}")
        row = self._execute(
            f"PRAGMA wal_checkpoint({normalized})", (), operation="wal checkpoint"
        ).fetchone()
        if row is None:
            return (0, 0, 0)
        return (int(row[0]), int(row[1]), int(row[2]))

    def reindex(self) -> None:
        self._execute("REINDEX", (), operation="reindex")

    def vacuum(self) -> None:
        self._execute("VACUUM", (), operation="vacuum")

    def foreign_key_violations(self) -> list[dict[str, RowValue]]:
        return self.query_all("PRAGMA foreign_key_check")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _configure(self, *, wal: bool) -> None:
        self._execute("PRAGMA foreign_keys=ON", (), operation="configure foreign keys")
        self._execute(
            f"PRAGMA busy_timeout={self._busy_timeout_ms}", (), operation="configure busy timeout"
        )
        if not wal:
            return
        journal_row = self._execute(
            "PRAGMA journal_mode=WAL", (), operation="configure journal mode"
        ).fetchone()
        if journal_row is None:
            raise DatabaseError(f"failed to configure journal_mode for {self._path}")

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute(self, sql: str, params: SQLParams, *, operation: str) -> sqlite3.Cursor:
        try:
            return self.connection.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation=operation)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> NoReturn:
        if is_corruption_error(exc):
            raise DatabaseCorruptionError(f"{operation} failed for {self._path}: {exc}") from exc
        if is_busy_error(exc):
            raise DatabaseBusyError(f"{operation} hit SQLITE_BUSY for {self._path}: {exc}") from exc
        raise DatabaseError(f"{operation} failed for {self._path}: {exc}") from exc


def is_busy_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


def is_corruption_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int):
        # Extended codes carry the primary code in the low byte.
        if code in _SQLITE_CORRUPTION_CODES or (code & 0xFF) in _SQLITE_CORRUPTION_CODES:
            return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    return {str(key): row[key] for key in row.keys()}


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


__all__ = [
    "DatabaseBusyError",
    "DatabaseClosedError",
    "DatabaseCorruptionError",
    "DatabaseError",
    "DatabaseHandle",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "is_busy_error",
    "is_corruption_error",
]
