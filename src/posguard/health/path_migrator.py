"""
posguard - relocation of the database from its legacy path.

File: src/posguard/health/path_migrator.py

Purpose
- Move a database written by older releases under ``<user_data>/<AppDir>/``
  to the canonical ``<user_data>/pos_system.db`` without ever risking the only
  copy of the data.

Functional requirements
- The legacy file is never deleted or truncated unless the canonical copy
  validated and the caller asked for removal.
- A valid, non-empty canonical database is never overwritten.
- An invalid canonical file is set aside as ``<name>.invalid.<ts>.db``.
- The legacy ``-wal`` is checkpointed into the main file before anything is
  copied; when that cannot be done the move is abandoned.
- Sidecars travel with the file they belong to: an invalid canonical file is
  set aside together with its ``-wal``/``-shm``, and removing the legacy file
  removes its sidecars.
- All ``OSError``, ``BackupError`` and ``DatabaseError`` failures become an
  unsuccessful result.
"""

from __future__ import annotations

import shutil
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from posguard.constants import PATH_MIGRATION_RECENT_WINDOW_SECONDS
from posguard.health.backups import (
    BackupManager,
    fold_write_ahead_log,
    invalid_file_path,
    move_with_sidecars,
    sidecar_paths,
)
from posguard.health.errors import BackupError, PathMigrationError
from posguard.health.file_validator import validate_database_file
from posguard.health.results import PathMigrationResult, ValidationResult
from posguard.paths import PathProvider
from posguard.persistence.database import DatabaseError

Validator = Callable[[Path], ValidationResult]


class PathMigrator:
    def __init__(
        self,
        provider: PathProvider,
        backups: BackupManager,
        *,
        recent_window_seconds: float = PATH_MIGRATION_RECENT_WINDOW_SECONDS,
        validator: Validator | None = None,
        now: Callable[[], float] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._provider = provider
        self._backups = backups
        self._recent_window_seconds = recent_window_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._validator = validator if validator is not None else self._validate
        self._now = now if now is not None else time.time

    def _validate(self, path: Path) -> ValidationResult:
        return validate_database_file(path, logger=self._logger)

    @property
    def legacy_path(self) -> Path | None:
        return self._provider.legacy_path()

    def should_migrate(self) -> bool:
        legacy = self._provider.legacy_path()
        if legacy is None or not legacy.exists():
            return False
        canonical = self._provider.canonical_path()
        if not canonical.exists():
            return True

        canonical_result = self._validator(canonical)
        if not canonical_result.valid or canonical_result.is_empty:
            return True

        try:
            legacy_mtime = legacy.stat().st_mtime
            canonical_mtime = canonical.stat().st_mtime
        except OSError as exc:
            self._logger.warning("db_path_migration_stat_failed", error=str(exc))
            return False
        recently_used = (self._now() - legacy_mtime) <= self._recent_window_seconds
        return legacy_mtime > canonical_mtime and recently_used

    def migrate(self, *, remove_old: bool = False) -> PathMigrationResult:
        legacy = self._provider.legacy_path()
        canonical = self._provider.canonical_path()
        try:
            result = self._migrate(legacy, canonical, remove_old=remove_old)
        except (OSError, BackupError, DatabaseError, PathMigrationError) as exc:
            self._logger.error(
                "db_path_migration_failed",
                old_path=str(legacy),
                new_path=str(canonical),
                error=str(exc),
            )
            return PathMigrationResult(
                migrated=False,
                old_path=legacy,
                new_path=canonical,
                reason=f"Path migration failed: {exc}",
            )
        self._logger.info(
            "db_path_migration_result",
            migrated=result.migrated,
            old_path=str(result.old_path) if result.old_path else None,
            new_path=str(result.new_path) if result.new_path else None,
            backup_path=str(result.backup_path) if result.backup_path else None,
            reason=result.reason,
        )
        return result

    def _migrate(
        self, legacy: Path | None, canonical: Path, *, remove_old: bool
    ) -> PathMigrationResult:
        if legacy is None:
            return PathMigrationResult(
                migrated=False, new_path=canonical, reason="No legacy path configured"
            )
        if not legacy.exists():
            return PathMigrationResult(
                migrated=False,
                old_path=legacy,
                new_path=canonical,
                reason="No database found at the legacy path",
            )

        if not fold_write_ahead_log(legacy):
            raise PathMigrationError(
                "the legacy write-ahead log could not be checkpointed; it may still be in use"
            )
        legacy_result = self._validator(legacy)
        if not legacy_result.valid or legacy_result.is_empty:
            return PathMigrationResult(
                migrated=False,
                old_path=legacy,
                new_path=canonical,
                reason=f"Legacy database is not valid: {legacy_result.reason}",
            )

        backup_path = self._backups.create_backup(legacy, "path-migration")

        if canonical.exists():
            canonical_result = self._validator(canonical)
            if canonical_result.valid and not canonical_result.is_empty:
                return PathMigrationResult(
                    migrated=False,
                    old_path=legacy,
                    new_path=canonical,
                    backup_path=backup_path,
                    reason=(
                        "A valid database already exists at the canonical path; "
                        "it was left in place"
                    ),
                )
            set_aside = move_with_sidecars(
                canonical, invalid_file_path(canonical, self._backups.now())
            )
            self._logger.warning(
                "db_invalid_file_set_aside", path=str(canonical), moved_to=str(set_aside)
            )
        else:
            self._set_aside_orphan_sidecars(canonical)

        canonical.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(legacy, canonical)

        copied = self._validator(canonical)
        if not copied.valid or copied.is_empty:
            canonical.unlink(missing_ok=True)
            raise PathMigrationError(
                f"copied database failed validation and was rolled back: {copied.reason}"
            )

        if remove_old:
            self._remove_legacy(legacy)

        return PathMigrationResult(
            migrated=True,
            old_path=legacy,
            new_path=canonical,
            backup_path=backup_path,
            reason="Database moved to the canonical location",
        )

    def _set_aside_orphan_sidecars(self, canonical: Path) -> None:
        """Sidecars with no main file would be replayed onto the copy; move them off."""

        stamp_path = invalid_file_path(canonical, self._backups.now())
        for orphan, target in zip(sidecar_paths(canonical), sidecar_paths(stamp_path), strict=True):
            if orphan.exists():
                orphan.rename(target)
                self._logger.warning(
                    "db_orphan_sidecar_set_aside", path=str(orphan), moved_to=str(target)
                )

    def _remove_legacy(self, legacy: Path) -> None:
        try:
            legacy.unlink()
            for sidecar in sidecar_paths(legacy):
                sidecar.unlink(missing_ok=True)
        except OSError as exc:
            self._logger.warning("db_legacy_remove_failed", path=str(legacy), error=str(exc))
            return
        directory = legacy.parent
        try:
            # Backups written during the move keep the directory non-empty.
            if not any(directory.iterdir()):
                directory.rmdir()
        except OSError as exc:
            self._logger.info("db_legacy_dir_kept", directory=str(directory), error=str(exc))


__all__ = ["PathMigrator", "Validator"]
