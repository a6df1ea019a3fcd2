"""Stable constants shared across the database health pipeline."""

from __future__ import annotations

from typing import Final

# Embedded database file format.
SQLITE_HEADER: Final[bytes] = b"SQLite format 3\x00"
SQLITE_HEADER_LENGTH: Final[int] = 16
MIN_DATABASE_SIZE_BYTES: Final[int] = 512
WAL_SUFFIX: Final[str] = "-wal"
SHM_SUFFIX: Final[str] = "-shm"

# Default names and locations.
DEFAULT_APP_NAME: Final[str] = "posguard"
DEFAULT_APP_DIR_NAME: Final[str] = "PosGuard"
DATABASE_FILENAME: Final[str] = "pos_system.db"
BACKUP_DIR_NAME: Final[str] = "backups"
CONFIG_FILENAME: Final[str] = "posguard.toml"

# Schema bookkeeping tables.
MIGRATION_HISTORY_TABLE: Final[str] = "schema_migrations"
APP_VERSION_TABLE: Final[str] = "app_version"

# Timing thresholds.
LOCK_STALE_AFTER_SECONDS: Final[int] = 5 * 60
PATH_MIGRATION_RECENT_WINDOW_SECONDS: Final[int] = 60 * 60
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000

# Retention and bounds.
DEFAULT_MAX_BACKUPS: Final[int] = 10
DEFAULT_MAX_DECISIONS: Final[int] = 5

__all__ = [
    "APP_VERSION_TABLE",
    "BACKUP_DIR_NAME",
    "CONFIG_FILENAME",
    "DATABASE_FILENAME",
    "DEFAULT_APP_DIR_NAME",
    "DEFAULT_APP_NAME",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "DEFAULT_MAX_BACKUPS",
    "DEFAULT_MAX_DECISIONS",
    "LOCK_STALE_AFTER_SECONDS",
    "MIGRATION_HISTORY_TABLE",
    "MIN_DATABASE_SIZE_BYTES",
    "PATH_MIGRATION_RECENT_WINDOW_SECONDS",
    "SHM_SUFFIX",
    "SQLITE_HEADER",
    "SQLITE_HEADER_LENGTH",
    "WAL_SUFFIX",
]
