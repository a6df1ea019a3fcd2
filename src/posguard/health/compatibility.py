"""
posguard - schema compatibility classification.

File: src/posguard/health/compatibility.py

Purpose
- Decide, read-only, whether an open database can be brought to this
  release's schema by migrations, or needs a fresh start.

Functional requirements
- A database with user tables but no migration history predates migration
  tracking and requires a fresh database; the reason carries its age.
- A recorded version above the registry's latest means a newer release wrote
  it; that is incompatible but never grounds for discarding the data.
- Any SQLite failure is reported as incompatible, requiring a fresh database.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from posguard.constants import APP_VERSION_TABLE, MIGRATION_HISTORY_TABLE
from posguard.health.app_version import is_downgrade, read_app_version
from posguard.health.file_validator import database_age_ms, format_database_age
from posguard.health.results import CompatibilityResult
from posguard.persistence.database import DatabaseError

if TYPE_CHECKING:
    from posguard.migrations.registry import MigrationRegistry
    from posguard.persistence.database import DatabaseHandle

_BOOKKEEPING_TABLES = frozenset({MIGRATION_HISTORY_TABLE, APP_VERSION_TABLE})


def data_tables(handle: DatabaseHandle) -> tuple[str, ...]:
    """User tables other than the pipeline's own bookkeeping tables."""

    return tuple(name for name in handle.user_tables() if name not in _BOOKKEEPING_TABLES)


class CompatibilityChecker:
    def __init__(
        self,
        app_version: str,
        *,
        registry: MigrationRegistry | None = None,
        now: Callable[[], float] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._app_version = app_version
        self._registry = registry
        self._now = now if now is not None else time.time
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def check(self, handle: DatabaseHandle, path: str | Path | None = None) -> CompatibilityResult:
        db_path = Path(path) if path is not None else handle.path
        age_ms = database_age_ms(db_path, now=self._now())
        try:
            result = self._check(handle, age_ms)
        except DatabaseError as exc:
            result = CompatibilityResult(
                compatible=False,
                app_version=self._app_version,
                reason=f"Database could not be inspected: {exc}",
                can_migrate=False,
                database_age_ms=age_ms,
                migration_path_exists=False,
                requires_fresh_database=True,
            )
        self._logger.info(
            "db_compatibility_result",
            path=str(db_path),
            compatible=result.compatible,
            reason=result.reason,
            schema_version=result.database_schema_version,
            can_migrate=result.can_migrate,
            requires_fresh_database=result.requires_fresh_database,
        )
        return result

    def _check(self, handle: DatabaseHandle, age_ms: int | None) -> CompatibilityResult:
        self._warn_on_downgrade(handle)

        if not handle.table_exists(MIGRATION_HISTORY_TABLE):
            if not data_tables(handle):
                return CompatibilityResult(
                    compatible=True,
                    app_version=self._app_version,
                    reason="Fresh database",
                    can_migrate=True,
                    database_schema_version="0",
                    database_age_ms=age_ms,
                    migration_path_exists=True,
                    requires_fresh_database=False,
                )
            age_text = format_database_age(age_ms) if age_ms is not None else "an unknown time"
            return CompatibilityResult(
                compatible=False,
                app_version=self._app_version,
                reason=(
                    f"Database was created {age_text} ago by a release that did not track "
                    "schema migrations; it cannot be upgraded automatically"
                ),
                can_migrate=False,
                database_age_ms=age_ms,
                migration_path_exists=False,
                requires_fresh_database=True,
            )

        try:
            handle.query_one(
                f"SELECT version, name, applied_at FROM {MIGRATION_HISTORY_TABLE} LIMIT 1"
            )
        except DatabaseError as exc:
            return CompatibilityResult(
                compatible=False,
                app_version=self._app_version,
                reason=f"Migration history failed its self-test: {exc}",
                can_migrate=False,
                database_age_ms=age_ms,
                migration_path_exists=False,
                requires_fresh_database=True,
            )

        recorded = int(handle.scalar(f"SELECT COUNT(*) FROM {MIGRATION_HISTORY_TABLE}") or 0)
        if recorded == 0:
            return CompatibilityResult(
                compatible=True,
                app_version=self._app_version,
                reason="No migrations recorded yet",
                can_migrate=True,
                database_schema_version="0",
                database_age_ms=age_ms,
                migration_path_exists=True,
                requires_fresh_database=False,
            )

        schema_version = int(
            handle.scalar(f"SELECT COALESCE(MAX(version), 0) FROM {MIGRATION_HISTORY_TABLE}") or 0
        )
        latest = self._registry.latest_version() if self._registry is not None else None
        if latest is not None and schema_version > latest:
            return CompatibilityResult(
                compatible=False,
                app_version=self._app_version,
                reason=(
                    f"Database schema version {schema_version} is newer than this release "
                    f"supports ({latest}); update the application"
                ),
                can_migrate=False,
                database_schema_version=str(schema_version),
                database_age_ms=age_ms,
                migration_path_exists=False,
                requires_fresh_database=False,
            )

        return CompatibilityResult(
            compatible=True,
            app_version=self._app_version,
            reason=f"Schema version {schema_version}",
            can_migrate=True,
            database_schema_version=str(schema_version),
            database_age_ms=age_ms,
            migration_path_exists=True,
            requires_fresh_database=False,
        )

    def _warn_on_downgrade(self, handle: DatabaseHandle) -> None:
        recorded = read_app_version(handle)
        if is_downgrade(recorded, self._app_version):
            self._logger.warning(
                "db_app_downgrade_detected",
                recorded_app_version=recorded,
                app_version=self._app_version,
            )


__all__ = ["CompatibilityChecker", "data_tables"]
