"""
posguard - migration runner.

File: src/posguard/migrations/runner.py

Purpose
- Apply pending registry entries to an open database, one savepoint-guarded
  transaction per migration, and keep the ``schema_migrations`` history.

Functional requirements
- A failing migration is rolled back, stops the batch, and surfaces as
  ``MigrationError`` chained to its cause; earlier migrations stay applied.
- Re-running with no new registry entries returns ``()`` and writes nothing.
- A database whose recorded version exceeds the registry is refused untouched.
- ``PRAGMA integrity_check`` runs before and after a non-empty batch.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from posguard.constants import MIGRATION_HISTORY_TABLE
from posguard.health.errors import MigrationError
from posguard.migrations.registry import (
    Migration,
    MigrationApplicationRecord,
    MigrationOutcome,
    MigrationRegistry,
)
from posguard.persistence.database import DatabaseError

if TYPE_CHECKING:
    from posguard.persistence.database import DatabaseHandle

HISTORY_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {MIGRATION_HISTORY_TABLE} (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    applied_at INTEGER NOT NULL
)
"""


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class MigrationRunner:
    def __init__(
        self,
        registry: MigrationRegistry,
        *,
        clock_ms: Callable[[], int] | None = None,
        logger: Any | None = None,
    ) -> None:
        registry.require_valid()
        self._registry = registry
        self._clock_ms = clock_ms if clock_ms is not None else _epoch_ms
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    def ensure_history_table(self, handle: DatabaseHandle) -> None:
        handle.execute(HISTORY_TABLE_SQL)

    def current_version(self, handle: DatabaseHandle) -> int:
        """Highest recorded version, or 0 when nothing has been recorded."""

        if not handle.table_exists(MIGRATION_HISTORY_TABLE):
            return 0
        value = handle.scalar(f"SELECT COALESCE(MAX(version), 0) FROM {MIGRATION_HISTORY_TABLE}")
        return int(value or 0)

    def history(self, handle: DatabaseHandle) -> tuple[MigrationApplicationRecord, ...]:
        if not handle.table_exists(MIGRATION_HISTORY_TABLE):
            return ()
        rows = handle.query_all(
            f"SELECT version, name, applied_at FROM {MIGRATION_HISTORY_TABLE} ORDER BY version"
        )
        return tuple(
            MigrationApplicationRecord(
                version=int(row["version"] or 0),
                name=str(row["name"]),
                applied_at_epoch_ms=int(row["applied_at"] or 0),
            )
            for row in rows
        )

    def pending(self, handle: DatabaseHandle) -> tuple[Migration, ...]:
        return self._registry.pending(self.current_version(handle))

    def apply_pending(
        self, handle: DatabaseHandle, current_version: int | None = None
    ) -> tuple[MigrationApplicationRecord, ...]:
        """Apply every migration above ``current_version`` in ascending order."""

        try:
            self.ensure_history_table(handle)
            recorded = self.current_version(handle)
        except DatabaseError as exc:
            raise MigrationError(f"cannot read migration history: {exc}") from exc

        latest = self._registry.latest_version()
        if recorded > latest:
            raise MigrationError(
                "database schema is newer than this release supports "
                f"(database={recorded}, supported={latest})",
                version=recorded,
            )

        start = recorded if current_version is None else max(current_version, recorded)
        pending = self._registry.pending(start)
        if not pending:
            self._logger.info("db_migrations_up_to_date", schema_version=start)
            return ()

        self._logger.info(
            "db_migrations_pending",
            current_version=start,
            target_version=latest,
            pending=[migration.version for migration in pending],
        )
        self._check_integrity(handle, stage="before")

        applied: list[MigrationApplicationRecord] = []
        for migration in pending:
            applied.append(self._apply_one(handle, migration))

        self._check_integrity(handle, stage="after")
        self._logger.info(
            "db_migrations_complete",
            applied=len(applied),
            schema_version=applied[-1].version,
        )
        return tuple(applied)

    def _apply_one(
        self, handle: DatabaseHandle, migration: Migration
    ) -> MigrationApplicationRecord:
        started = time.perf_counter()
        try:
            with handle.transaction(immediate=True):
                if migration.probe(handle):
                    outcome = MigrationOutcome(changed=False, details=("changes already present",))
                else:
                    outcome = migration.apply(handle)
                record = MigrationApplicationRecord(
                    version=migration.version,
                    name=migration.name,
                    applied_at_epoch_ms=self._clock_ms(),
                )
                handle.execute(
                    f"INSERT INTO {MIGRATION_HISTORY_TABLE} (version, name, applied_at) "
                    "VALUES (?, ?, ?)",
                    (record.version, record.name, record.applied_at_epoch_ms),
                )
        except Exception as exc:
            self._logger.error(
                "db_migration_failed",
                version=migration.version,
                migration_name=migration.name,
                error=str(exc),
            )
            raise MigrationError(
                f"migration {migration.version} ({migration.name}) failed: {exc}",
                version=migration.version,
                name=migration.name,
            ) from exc

        self._logger.info(
            "db_migration_applied",
            version=migration.version,
            migration_name=migration.name,
            changed=outcome.changed,
            details=list(outcome.details),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        return record

    def _check_integrity(self, handle: DatabaseHandle, *, stage: str) -> None:
        try:
            problems = handle.integrity_check()
        except DatabaseError as exc:
            raise MigrationError(f"integrity check {stage} migrations failed: {exc}") from exc
        if problems:
            raise MigrationError(
                f"integrity check {stage} migrations reported: {'; '.join(problems[:5])}"
            )


__all__ = ["HISTORY_TABLE_SQL", "MigrationRunner"]
