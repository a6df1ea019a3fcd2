"""Record of the last application release that opened the database.

Used to warn when an older build opens a database written by a newer one.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from packaging.version import InvalidVersion, Version

from posguard.constants import APP_VERSION_TABLE

if TYPE_CHECKING:
    from posguard.persistence.database import DatabaseHandle

APP_VERSION_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {APP_VERSION_TABLE} (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    version TEXT NOT NULL,
    updated_at INTEGER NOT NULL
)
"""


def read_app_version(handle: DatabaseHandle) -> str | None:
    if not handle.table_exists(APP_VERSION_TABLE):
        return None
    value = handle.scalar(f"SELECT version FROM {APP_VERSION_TABLE} WHERE id = 1")
    return None if value is None else str(value)


def record_app_version(handle: DatabaseHandle, version: str, *, now_ms: int | None = None) -> None:
    updated_at = int(time.time() * 1000) if now_ms is None else now_ms
    handle.execute(APP_VERSION_TABLE_SQL)
    handle.execute(
        f"""
        INSERT INTO {APP_VERSION_TABLE} (id, version, updated_at) VALUES (1, ?, ?)
        ON CONFLICT(id) DO UPDATE SET version = excluded.version, updated_at = excluded.updated_at
        """,
        (version, updated_at),
    )


def is_downgrade(recorded: str | None, current: str) -> bool:
    """True when ``recorded`` parses as a newer release than ``current``.

    Unparseable versions never count as a downgrade.
    """

    if recorded is None:
        return False
    try:
        return Version(recorded) > Version(current)
    except InvalidVersion:
        return False


__all__ = ["APP_VERSION_TABLE_SQL", "is_downgrade", "read_app_version", "record_app_version"]
