"""
posguard - verified file backups.

File: src/posguard/health/backups.py

Purpose
- Produce byte-for-byte copies of the database before any destructive step and
  prove they landed on disk before the caller proceeds.

What should be included in this file
- Naming: ``<app>-<operation>-backup-<YYYYMMDD-HHMMSS>.db`` in a ``backups/``
  directory beside the database, ``-N`` suffix on same-second collisions.
- Retention: only the newest ``max_backups`` matching files survive.
- Restore of the newest backup over the live file.

Functional requirements
- A backup that does not exist or whose size differs from its source raises
  ``BackupError``.
- Retention failures are logged and never propagate.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from posguard.constants import (
    BACKUP_DIR_NAME,
    DEFAULT_APP_NAME,
    DEFAULT_MAX_BACKUPS,
    SHM_SUFFIX,
    WAL_SUFFIX,
)
from posguard.health.errors import BackupError
from posguard.persistence.database import DatabaseError, DatabaseHandle

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def backup_directory_for(db_path: str | Path) -> Path:
    return Path(db_path).parent / BACKUP_DIR_NAME


def invalid_file_path(db_path: str | Path, moment: datetime) -> Path:
    """Destination used to set aside an invalid file: ``<name>.invalid.<ts>.db``."""

    path = Path(db_path)
    return path.with_name(f"{path.name}.invalid.{format_timestamp(moment)}.db")


def sidecar_paths(db_path: str | Path) -> tuple[Path, Path]:
    path = Path(db_path)
    return (path.with_name(path.name + WAL_SUFFIX), path.with_name(path.name + SHM_SUFFIX))


def fold_write_ahead_log(db_path: str | Path) -> bool:
    """Checkpoint committed ``-wal`` frames of a closed database into its main file.

    Returns True when nothing is left in a ``-wal`` beside the main file, so a
    copy of the main file alone holds every committed row. Raises
    ``DatabaseError`` when SQLite cannot open the file.
    """

    path = Path(db_path)
    wal, _ = sidecar_paths(path)
    if not wal.exists() or not path.exists():
        return not wal.exists() or wal.stat().st_size == 0
    with DatabaseHandle.open(path, wal=False) as handle:
        busy, _, _ = handle.wal_checkpoint("TRUNCATE")
    return busy == 0 and (not wal.exists() or wal.stat().st_size == 0)


def move_with_sidecars(source: str | Path, target: str | Path) -> Path:
    """Rename ``source`` to ``target``, carrying its ``-wal`` and ``-shm`` along."""

    old, new = Path(source), Path(target)
    old.rename(new)
    for old_sidecar, new_sidecar in zip(sidecar_paths(old), sidecar_paths(new), strict=True):
        if old_sidecar.exists():
            old_sidecar.rename(new_sidecar)
    return new


class BackupManager:
    """Creates, lists, prunes, and restores database backups for one app name."""

    def __init__(
        self,
        app_name: str = DEFAULT_APP_NAME,
        *,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        clock: Clock | None = None,
        logger: Any | None = None,
    ) -> None:
        if not app_name.strip():
            raise ValueError("app_name must not be empty")
        if max_backups < 1:
            raise ValueError("max_backups must be >= 1")
        self._app_name = app_name
        self._max_backups = max_backups
        self._clock = clock if clock is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._name_pattern = re.compile(
            rf"^{re.escape(app_name)}-(?P<operation>[a-z0-9-]+?)-backup-"
            r"(?P<stamp>\d{8}-\d{6})(?:-(?P<seq>\d+))?\.db$"
        )

    @property
    def app_name(self) -> str:
        return self._app_name

    @property
    def max_backups(self) -> int:
        return self._max_backups

    def now(self) -> datetime:
        return self._clock()

    def backup_name(self, operation: str, moment: datetime, *, sequence: int = 0) -> str:
        suffix = f"-{sequence}" if sequence else ""
        return f"{self._app_name}-{operation}-backup-{format_timestamp(moment)}{suffix}.db"

    def create_backup(
        self,
        db_path: str | Path,
        operation: str,
        *,
        handle: DatabaseHandle | None = None,
        backup_dir: str | Path | None = None,
    ) -> Path:
        """Copy ``db_path`` into the backups directory and verify the copy.

        When ``handle`` is given its write-ahead log is checkpointed first so
        the copied main file is self-contained; checkpoint failures are logged
        and tolerated.
        """

        source = Path(db_path)
        if handle is not None:
            self._checkpoint_before_copy(handle)

        try:
            source_size = source.stat().st_size
        except OSError as exc:
            raise BackupError(f"cannot back up {source}: {exc}") from exc

        target_dir = Path(backup_dir) if backup_dir is not None else backup_directory_for(source)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            target = self._unique_target(target_dir, operation)
            shutil.copy2(source, target)
        except OSError as exc:
            raise BackupError(f"backup of {source} failed: {exc}") from exc

        self._verify(target, expected_size=source_size)
        self._logger.info(
            "db_backup_created",
            operation=operation,
            source=str(source),
            backup_path=str(target),
            size_bytes=source_size,
        )
        self.prune(target_dir)
        return target

    def list_backups(
        self, db_path: str | Path, *, backup_dir: str | Path | None = None
    ) -> list[Path]:
        """Backups belonging to this app, newest first."""

        directory = Path(backup_dir) if backup_dir is not None else backup_directory_for(db_path)
        return self._sorted_backups(directory)

    def latest_backup(
        self, db_path: str | Path, *, backup_dir: str | Path | None = None
    ) -> Path | None:
        backups = self.list_backups(db_path, backup_dir=backup_dir)
        return backups[0] if backups else None

    def prune(self, backup_dir: str | Path) -> tuple[Path, ...]:
        """Delete all but the newest ``max_backups`` backups; never raises."""

        directory = Path(backup_dir)
        try:
            backups = self._sorted_backups(directory)
        except OSError as exc:
            self._logger.warning(
                "db_backup_cleanup_failed", directory=str(directory), error=str(exc)
            )
            return ()

        removed: list[Path] = []
        for stale in backups[self._max_backups :]:
            try:
                stale.unlink()
            except OSError as exc:
                self._logger.warning("db_backup_cleanup_failed", path=str(stale), error=str(exc))
                continue
            removed.append(stale)
        if removed:
            self._logger.info(
                "db_backup_cleanup",
                directory=str(directory),
                removed=len(removed),
                kept=min(len(backups), self._max_backups),
            )
        return tuple(removed)

    def restore(self, backup_path: str | Path, db_path: str | Path) -> Path:
        """Copy ``backup_path`` over ``db_path``, discarding stale sidecars."""

        source = Path(backup_path)
        target = Path(db_path)
        try:
            expected_size = source.stat().st_size
            for sidecar in sidecar_paths(target):
                sidecar.unlink(missing_ok=True)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        except OSError as exc:
            raise BackupError(f"restore of {source} over {target} failed: {exc}") from exc
        self._verify(target, expected_size=expected_size)
        self._logger.info("db_backup_restored", backup_path=str(source), path=str(target))
        return target

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _checkpoint_before_copy(self, handle: DatabaseHandle) -> None:
        try:
            handle.wal_checkpoint("TRUNCATE")
        except DatabaseError as exc:
            self._logger.warning(
                "db_backup_checkpoint_failed", path=str(handle.path), error=str(exc)
            )

    def _unique_target(self, directory: Path, operation: str) -> Path:
        moment = self._clock()
        sequence = 0
        while True:
            candidate = directory / self.backup_name(operation, moment, sequence=sequence)
            if not candidate.exists():
                return candidate
            sequence += 1

    def _verify(self, target: Path, *, expected_size: int) -> None:
        try:
            actual_size = target.stat().st_size
        except OSError as exc:
            raise BackupError(f"backup {target} was not written: {exc}") from exc
        if actual_size <= 0 or actual_size != expected_size:
            raise BackupError(
                f"backup {target} failed verification "
                f"(expected {expected_size} bytes, found {actual_size})"
            )

    def _sorted_backups(self, directory: Path) -> list[Path]:
        if not directory.is_dir():
            return []
        keyed: list[tuple[str, int, Path]] = []
        for entry in directory.iterdir():
            match = self._name_pattern.match(entry.name)
            if match is None or not entry.is_file():
                continue
            keyed.append((match.group("stamp"), int(match.group("seq") or 0), entry))
        keyed.sort(key=lambda item: (item[0], item[1], item[2].name), reverse=True)
        return [path for _, _, path in keyed]


__all__ = [
    "BackupManager",
    "Clock",
    "TIMESTAMP_FORMAT",
    "backup_directory_for",
    "fold_write_ahead_log",
    "format_timestamp",
    "invalid_file_path",
    "move_with_sidecars",
    "sidecar_paths",
]
