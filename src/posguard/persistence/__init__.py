"""Persistence layer: the explicit SQLite connection handle and the baseline schema."""

from posguard.persistence.baseline import BASELINE_TABLES, create_baseline_schema
from posguard.persistence.database import (
    DatabaseBusyError,
    DatabaseClosedError,
    DatabaseCorruptionError,
    DatabaseError,
    DatabaseHandle,
)

__all__ = [
    "BASELINE_TABLES",
    "DatabaseBusyError",
    "DatabaseClosedError",
    "DatabaseCorruptionError",
    "DatabaseError",
    "DatabaseHandle",
    "create_baseline_schema",
]
