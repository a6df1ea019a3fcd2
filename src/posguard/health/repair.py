"""
posguard - bounded repair ladder.

File: src/posguard/health/repair.py

Purpose
- Attempt in-place recovery of a damaged database, least destructive step
  first, behind a verified backup.

What should be included in this file
- ``RepairEngine.repair``: backup, WAL checkpoint, integrity check, REINDEX,
  VACUUM, final integrity check.
- ``RepairEngine.quick_repair``: checkpoint plus ``PRAGMA quick_check``.
- ``RepairEngine.create_fresh_database``: back up and set aside the old file.

Functional requirements
- Without a verified backup nothing else runs.
- Failures of later steps are recorded and the ladder continues.
- Every attempted step is reported in order on the result.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from posguard.health.backups import (
    BackupManager,
    fold_write_ahead_log,
    format_timestamp,
    move_with_sidecars,
)
from posguard.health.errors import BackupError, RepairStepError
from posguard.health.results import RepairResult, RepairStepReport
from posguard.persistence.database import DatabaseError

if TYPE_CHECKING:
    from posguard.persistence.database import DatabaseHandle

STEP_BACKUP = "backup"
STEP_CHECKPOINT = "wal_checkpoint"
STEP_INTEGRITY = "integrity_check"
STEP_REINDEX = "reindex"
STEP_VACUUM = "vacuum"
STEP_FINAL_INTEGRITY = "final_integrity_check"


class RepairEngine:
    def __init__(self, backups: BackupManager, *, logger: Any | None = None) -> None:
        self._backups = backups
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def repair(self, handle: DatabaseHandle, path: str | Path | None = None) -> RepairResult:
        db_path = Path(path) if path is not None else handle.path
        steps: list[RepairStepReport] = []

        try:
            backup_path = self._backup(handle, db_path)
        except RepairStepError as exc:
            cause = exc.__cause__ or exc
            steps.append(RepairStepReport(step=exc.step, ok=False, detail=str(cause)))
            self._log_step_failure(exc)
            return RepairResult(
                success=False,
                repaired=False,
                reason=f"Could not create a verified backup before repair: {cause}",
                steps=tuple(steps),
            )
        steps.append(RepairStepReport(step=STEP_BACKUP, ok=True, detail=str(backup_path)))

        self._run_step(
            steps,
            STEP_CHECKPOINT,
            lambda: _describe_checkpoint(handle.wal_checkpoint("TRUNCATE")),
        )

        problems = self._run_step(steps, STEP_INTEGRITY, handle.integrity_check)
        if problems == ():
            return self._succeeded(db_path, backup_path, steps)

        self._run_step(steps, STEP_REINDEX, handle.reindex)
        self._run_step(steps, STEP_VACUUM, handle.vacuum)

        final_problems = self._run_step(steps, STEP_FINAL_INTEGRITY, handle.integrity_check)
        if final_problems == ():
            return self._succeeded(db_path, backup_path, steps)

        if final_problems is None:
            reason = f"Final integrity check could not run: {steps[-1].detail}"
        else:
            reason = "Database still has integrity issues after repair: " + "; ".join(
                final_problems[:5]
            )
        self._logger.error(
            "db_repair_failed", path=str(db_path), reason=reason, backup_path=str(backup_path)
        )
        return RepairResult(
            success=False,
            repaired=False,
            reason=reason,
            backup_path=backup_path,
            steps=tuple(steps),
        )

    def quick_repair(self, handle: DatabaseHandle) -> bool:
        """Checkpoint and run ``PRAGMA quick_check``; never raises."""

        try:
            handle.wal_checkpoint("TRUNCATE")
            ok = handle.quick_check() == ()
        except DatabaseError as exc:
            self._logger.error("db_quick_repair_failed", path=str(handle.path), error=str(exc))
            return False
        self._logger.info("db_quick_repair_result", path=str(handle.path), ok=ok)
        return ok

    def create_fresh_database(self, path: str | Path) -> Path | None:
        """Back up the file at ``path`` and move it aside so a new one can be created.

        Returns the verified backup path, or None when there was no file. The
        caller must have closed every connection to ``path`` first. Committed
        ``-wal`` frames are folded in before the copy when SQLite can still read
        the file; either way the sidecars move with the set-aside file.
        """

        db_path = Path(path)
        if db_path.exists():
            self._fold_before_copy(db_path)
        try:
            size = db_path.stat().st_size
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise BackupError(f"cannot inspect {db_path}: {exc}") from exc
        # An empty file holds no data worth copying.
        backup_path = self._backups.create_backup(db_path, "fresh-start") if size > 0 else None
        stamp = format_timestamp(self._backups.now())
        moved_to = db_path.with_name(f"{db_path.name}.old.{stamp}")
        sequence = 1
        while moved_to.exists():
            moved_to = db_path.with_name(f"{db_path.name}.old.{stamp}-{sequence}")
            sequence += 1
        try:
            move_with_sidecars(db_path, moved_to)
        except OSError as exc:
            raise BackupError(f"could not set aside {db_path}: {exc}") from exc
        self._logger.warning(
            "db_fresh_start",
            path=str(db_path),
            moved_to=str(moved_to),
            backup_path=str(backup_path) if backup_path is not None else None,
        )
        return backup_path

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _succeeded(
        self, db_path: Path, backup_path: Path, steps: list[RepairStepReport]
    ) -> RepairResult:
        self._logger.info("db_repair_complete", path=str(db_path), backup_path=str(backup_path))
        return RepairResult(
            success=True, repaired=True, backup_path=backup_path, steps=tuple(steps)
        )

    def _fold_before_copy(self, db_path: Path) -> None:
        try:
            folded = fold_write_ahead_log(db_path)
        except DatabaseError as exc:
            self._logger.warning(
                "db_fresh_start_checkpoint_failed", path=str(db_path), error=str(exc)
            )
            return
        if not folded:
            self._logger.warning("db_fresh_start_checkpoint_incomplete", path=str(db_path))

    def _backup(self, handle: DatabaseHandle, db_path: Path) -> Path:
        try:
            return self._backups.create_backup(db_path, "repair", handle=handle)
        except BackupError as exc:
            raise RepairStepError(STEP_BACKUP, str(exc), fatal=True) from exc

    def _run_step(self, steps: list[RepairStepReport], step: str, action: Callable[[], Any]) -> Any:
        """Run one non-fatal step; returns its value, or None when it failed."""

        try:
            value = action()
        except DatabaseError as exc:
            failure = RepairStepError(step, str(exc))
            self._log_step_failure(failure)
            steps.append(RepairStepReport(step=step, ok=False, detail=str(exc)))
            return None

        if isinstance(value, tuple) and step in (STEP_INTEGRITY, STEP_FINAL_INTEGRITY):
            ok = value == ()
            detail = "ok" if ok else "; ".join(value[:5])
            steps.append(RepairStepReport(step=step, ok=ok, detail=detail))
            if not ok:
                self._logger.warning(
                    "db_repair_integrity_issues", step=step, issues=list(value[:5])
                )
            return value

        detail = value if isinstance(value, str) else None
        steps.append(RepairStepReport(step=step, ok=True, detail=detail))
        self._logger.info("db_repair_step_ok", step=step)
        return value

    def _log_step_failure(self, exc: RepairStepError) -> None:
        self._logger.warning(
            "repair_step_failed", step=exc.step, fatal=exc.fatal, error=str(exc)
        )


def _describe_checkpoint(result: tuple[int, int, int]) -> str:
    busy, log_frames, checkpointed = result
    return f"busy={busy} log={log_frames} checkpointed={checkpointed}"


__all__ = [
    "RepairEngine",
    "STEP_BACKUP",
    "STEP_CHECKPOINT",
    "STEP_FINAL_INTEGRITY",
    "STEP_INTEGRITY",
    "STEP_REINDEX",
    "STEP_VACUUM",
]
