"""
posguard - migration registry.

File: src/posguard/migrations/registry.py

Purpose
- Hold the ordered, immutable list of schema migrations that take a baseline
  (version 0) database to the schema this release expects.

Functional requirements
- Versions are unique, start at 1, and are contiguous.
- Every entry carries a non-empty name and description plus callable
  ``probe`` and ``apply`` functions.
- Migration bodies return a ``MigrationOutcome`` and never log.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from posguard.health.errors import MigrationRegistryError

if TYPE_CHECKING:
    from posguard.persistence.database import DatabaseHandle


@dataclass(frozen=True, slots=True)
class MigrationOutcome:
    changed: bool
    details: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MigrationApplicationRecord:
    """Row of the ``schema_migrations`` history table."""

    version: int
    name: str
    applied_at_epoch_ms: int


@dataclass(frozen=True, slots=True)
class Migration:
    """One forward-only schema change.

    ``probe`` returns True when the change is already fully present, in which
    case the runner records the version without calling ``apply``.
    """

    version: int
    name: str
    description: str
    probe: Callable[[DatabaseHandle], bool]
    apply: Callable[[DatabaseHandle], MigrationOutcome]


class MigrationRegistry:
    def __init__(self, migrations: Iterable[Migration]) -> None:
        self._migrations: tuple[Migration, ...] = tuple(
            sorted(migrations, key=lambda migration: migration.version)
        )

    def __iter__(self) -> Iterator[Migration]:
        return iter(self._migrations)

    def __len__(self) -> int:
        return len(self._migrations)

    @property
    def migrations(self) -> tuple[Migration, ...]:
        return self._migrations

    def latest_version(self) -> int:
        return max((migration.version for migration in self._migrations), default=0)

    def get(self, version: int) -> Migration | None:
        for migration in self._migrations:
            if migration.version == version:
                return migration
        return None

    def pending(self, current_version: int) -> tuple[Migration, ...]:
        return tuple(m for m in self._migrations if m.version > current_version)

    def validate(self) -> list[str]:
        """Return human-readable registry problems; an empty list means valid."""

        errors: list[str] = []
        if not self._migrations:
            return errors

        seen: set[int] = set()
        for migration in self._migrations:
            label = f"migration {migration.version}"
            if migration.version in seen:
                errors.append(f"duplicate migration version {migration.version}")
            seen.add(migration.version)
            if not migration.name.strip():
                errors.append(f"{label} has an empty name")
            if not migration.description.strip():
                errors.append(f"{label} has an empty description")
            if not callable(migration.apply):
                errors.append(f"{label} has no apply function")
            if not callable(migration.probe):
                errors.append(f"{label} has no probe function")

        versions = sorted(seen)
        if versions[0] != 1:
            errors.append(f"migration versions must start at 1 (found {versions[0]})")
        for previous, current in zip(versions, versions[1:], strict=False):
            if current != previous + 1:
                errors.append(f"gap in migration versions between {previous} and {current}")
        return errors

    def require_valid(self) -> None:
        errors = self.validate()
        if errors:
            raise MigrationRegistryError(errors)


__all__ = [
    "Migration",
    "MigrationApplicationRecord",
    "MigrationOutcome",
    "MigrationRegistry",
]
