"""Versioned schema migrations: registry, runner, and the shipped entries."""

from posguard.migrations.registry import (
    Migration,
    MigrationApplicationRecord,
    MigrationOutcome,
    MigrationRegistry,
)
from posguard.migrations.runner import HISTORY_TABLE_SQL, MigrationRunner
from posguard.migrations.versions import MIGRATIONS, default_registry

__all__ = [
    "HISTORY_TABLE_SQL",
    "MIGRATIONS",
    "Migration",
    "MigrationApplicationRecord",
    "MigrationOutcome",
    "MigrationRegistry",
    "MigrationRunner",
    "default_registry",
]
