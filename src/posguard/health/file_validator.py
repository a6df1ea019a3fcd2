"""
posguard - raw database file validation.

File: src/posguard/health/file_validator.py

Purpose
- Decide, before any SQLite connection is opened, whether the file at the
  database path is absent, usable, recoverable, or beyond repair.

What should be included in this file
- Header and size checks against the SQLite file format.
- Staleness-aware lock detection from ``-wal``/``-shm`` sidecars.
- Directory checks, database age, and human-readable age formatting.

Functional requirements
- Never mutates the file under inspection.
- Every file handle opened here is closed on every exit path.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any

import structlog

from posguard.constants import (
    LOCK_STALE_AFTER_SECONDS,
    MIN_DATABASE_SIZE_BYTES,
    SHM_SUFFIX,
    SQLITE_HEADER,
    SQLITE_HEADER_LENGTH,
    WAL_SUFFIX,
)
from posguard.health.results import DirectoryValidationResult, ValidationResult

_PARTIAL_HEADER_MARKER = "SQLite"

_MS_PER_SECOND = 1_000
_MS_PER_MINUTE = 60 * _MS_PER_SECOND
_MS_PER_HOUR = 60 * _MS_PER_MINUTE
_MS_PER_DAY = 24 * _MS_PER_HOUR
_AGE_UNITS: tuple[tuple[str, int], ...] = (
    ("year", 365 * _MS_PER_DAY),
    ("month", 30 * _MS_PER_DAY),
    ("day", _MS_PER_DAY),
    ("hour", _MS_PER_HOUR),
    ("minute", _MS_PER_MINUTE),
    ("second", _MS_PER_SECOND),
)


def validate_database_file(path: str | Path, *, logger: Any | None = None) -> ValidationResult:
    """Classify the database file at ``path`` without opening it as SQLite."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    db_path = Path(path)
    result = _validate(db_path)
    log.info(
        "db_validation_result",
        path=str(db_path),
        valid=result.valid,
        reason=result.reason,
        can_recover=result.can_recover,
        is_corrupted=result.is_corrupted,
        is_empty=result.is_empty,
    )
    return result


def _validate(db_path: Path) -> ValidationResult:
    if not db_path.exists():
        return ValidationResult(
            valid=True,
            reason="Database file does not exist; a new database will be created",
            can_recover=True,
            is_empty=True,
        )

    try:
        size = db_path.stat().st_size
    except OSError as exc:
        return ValidationResult(
            valid=False,
            reason=f"Cannot read database file metadata: {exc}",
            can_recover=False,
        )

    if size == 0:
        return ValidationResult(
            valid=False,
            reason="Database file is empty (0 bytes)",
            can_recover=False,
            file_size_bytes=0,
            is_corrupted=True,
            is_empty=True,
        )

    if size < MIN_DATABASE_SIZE_BYTES:
        return ValidationResult(
            valid=False,
            reason=(
                f"Database file is too small ({size} bytes); "
                f"a valid SQLite database is at least {MIN_DATABASE_SIZE_BYTES} bytes"
            ),
            can_recover=False,
            file_size_bytes=size,
            is_corrupted=True,
        )

    if not os.access(db_path, os.R_OK):
        return ValidationResult(
            valid=False,
            reason="Database file is not readable; check file permissions",
            can_recover=False,
            file_size_bytes=size,
        )

    try:
        with db_path.open("rb") as handle:
            header = handle.read(SQLITE_HEADER_LENGTH)
    except OSError as exc:
        return ValidationResult(
            valid=False,
            reason=f"Cannot read database header: {exc}",
            can_recover=False,
            file_size_bytes=size,
        )

    if len(header) < SQLITE_HEADER_LENGTH:
        return ValidationResult(
            valid=False,
            reason="Database header is truncated",
            can_recover=False,
            file_size_bytes=size,
            is_corrupted=True,
        )

    if header != SQLITE_HEADER:
        prefix = header[: SQLITE_HEADER_LENGTH - 1].decode("utf-8", errors="replace")
        if _PARTIAL_HEADER_MARKER in prefix:
            return ValidationResult(
                valid=False,
                reason="Database header is damaged but recognisable; repair may succeed",
                can_recover=True,
                file_size_bytes=size,
                is_corrupted=True,
            )
        return ValidationResult(
            valid=False,
            reason="File is not a SQLite database (header mismatch)",
            can_recover=False,
            file_size_bytes=size,
            is_corrupted=True,
        )

    if not os.access(db_path, os.W_OK):
        return ValidationResult(
            valid=False,
            reason="Database file is not writable; check file permissions",
            can_recover=False,
            file_size_bytes=size,
        )

    return ValidationResult(valid=True, can_recover=True, file_size_bytes=size)


def is_database_locked(
    path: str | Path,
    *,
    stale_after_seconds: float = LOCK_STALE_AFTER_SECONDS,
    now: float | None = None,
    logger: Any | None = None,
) -> bool:
    """Return True when another live process appears to hold the database.

    A fresh ``-wal`` or ``-shm`` sidecar is only a hint; it is confirmed by
    trying to open the primary file for read-write.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    db_path = Path(path)
    current = time.time() if now is None else now
    try:
        if not db_path.exists():
            return False
        fresh_sidecar: Path | None = None
        for suffix in (WAL_SUFFIX, SHM_SUFFIX):
            sidecar = db_path.with_name(db_path.name + suffix)
            if not sidecar.exists():
                continue
            age_seconds = current - sidecar.stat().st_mtime
            if age_seconds < stale_after_seconds:
                fresh_sidecar = sidecar
                break
        if fresh_sidecar is None:
            return False
    except OSError as exc:
        log.warning("db_lock_probe_failed", path=str(db_path), error=str(exc))
        return False

    try:
        with db_path.open("r+b"):
            pass
    except OSError as exc:
        log.warning(
            "db_lock_detected",
            path=str(db_path),
            sidecar=str(fresh_sidecar),
            error=str(exc),
        )
        return True

    log.info("db_lock_stale", path=str(db_path), sidecar=str(fresh_sidecar))
    return False


def validate_database_directory(path: str | Path) -> DirectoryValidationResult:
    """Check that the directory that will hold ``path`` exists and is writable."""

    directory = Path(path).parent
    if not directory.exists():
        return DirectoryValidationResult(
            valid=False, directory=directory, reason="Database directory does not exist"
        )
    if not directory.is_dir():
        return DirectoryValidationResult(
            valid=False, directory=directory, reason="Database directory path is not a directory"
        )
    if not os.access(directory, os.W_OK):
        return DirectoryValidationResult(
            valid=False, directory=directory, reason="Database directory is not writable"
        )
    return DirectoryValidationResult(valid=True, directory=directory)


def database_age_ms(path: str | Path, *, now: float | None = None) -> int | None:
    """Milliseconds since the file was created (or last modified, where birth time is unknown)."""

    try:
        stat = Path(path).stat()
    except OSError:
        return None
    created = getattr(stat, "st_birthtime", None)
    if not isinstance(created, (int, float)):
        created = stat.st_mtime
    current = time.time() if now is None else now
    return max(0, int((current - created) * _MS_PER_SECOND))


def format_database_age(age_ms: int) -> str:
    """Render ``age_ms`` using its largest whole unit, e.g. ``"2 years"``."""

    age_ms = max(0, int(age_ms))
    for unit, unit_ms in _AGE_UNITS:
        count = age_ms // unit_ms
        if count >= 1:
            return f"{count} {unit}" if count == 1 else f"{count} {unit}s"
    return "0 seconds"


__all__ = [
    "database_age_ms",
    "format_database_age",
    "is_database_locked",
    "validate_database_directory",
    "validate_database_file",
]
