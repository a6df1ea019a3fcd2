"""Typed failures raised by the database health pipeline."""

from __future__ import annotations

from collections.abc import Sequence


class HealthError(RuntimeError):
    """Base class for startup health pipeline errors."""


class ValidationError(HealthError):
    """File-level problem detected before a connection was opened."""

    def __init__(self, message: str, *, can_recover: bool) -> None:
        super().__init__(message)
        self.can_recover = can_recover


class CompatibilityError(HealthError):
    """Schema-level incompatibility between the database and this release."""

    def __init__(self, message: str, *, requires_fresh_database: bool) -> None:
        super().__init__(message)
        self.requires_fresh_database = requires_fresh_database


class BackupError(HealthError):
    """A backup could not be created or verified on disk."""


class RepairStepError(HealthError):
    """One rung of the repair ladder failed."""

    def __init__(self, step: str, message: str, *, fatal: bool = False) -> None:
        super().__init__(f"repair step {step!r} failed: {message}")
        self.step = step
        self.fatal = fatal


class MigrationError(HealthError):
    """A schema migration failed; the pending batch was aborted."""

    def __init__(
        self, message: str, *, version: int | None = None, name: str | None = None
    ) -> None:
        super().__init__(message)
        self.version = version
        self.name = name


class MigrationRegistryError(HealthError):
    """The migration registry is malformed."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = tuple(errors)
        super().__init__("invalid migration registry: " + "; ".join(self.errors))


class PathMigrationError(HealthError):
    """Relocating the database from its legacy path failed; source data untouched."""


__all__ = [
    "BackupError",
    "CompatibilityError",
    "HealthError",
    "MigrationError",
    "MigrationRegistryError",
    "PathMigrationError",
    "RepairStepError",
    "ValidationError",
]
