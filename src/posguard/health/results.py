"""Immutable decision records produced by the startup health pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from posguard.persistence.database import DatabaseHandle


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of inspecting the raw database file before any connection opens."""

    valid: bool
    reason: str | None = None
    can_recover: bool | None = None
    file_size_bytes: int | None = None
    is_corrupted: bool | None = None
    is_empty: bool | None = None


@dataclass(frozen=True, slots=True)
class DirectoryValidationResult:
    valid: bool
    directory: Path | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class CompatibilityResult:
    """Classification of an open database relative to the expected schema."""

    compatible: bool
    app_version: str
    reason: str | None = None
    can_migrate: bool | None = None
    database_schema_version: str | None = None
    database_age_ms: int | None = None
    migration_path_exists: bool | None = None
    requires_fresh_database: bool | None = None


@dataclass(frozen=True, slots=True)
class RepairStepReport:
    step: str
    ok: bool
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class RepairResult:
    success: bool
    repaired: bool
    reason: str | None = None
    backup_path: Path | None = None
    steps: tuple[RepairStepReport, ...] = ()

    @property
    def attempted_steps(self) -> tuple[str, ...]:
        return tuple(report.step for report in self.steps)


@dataclass(frozen=True, slots=True)
class PathMigrationResult:
    migrated: bool
    old_path: Path | None = None
    new_path: Path | None = None
    backup_path: Path | None = None
    reason: str | None = None


class RecoveryDecision(StrEnum):
    """User-facing choices offered when the pipeline cannot proceed on its own."""

    BACKUP_AND_FRESH = "backup-and-fresh"
    REPAIR = "repair"
    RESTORE_FROM_BACKUP = "restore-backup"
    CANCEL = "cancel"


class RecoveryKind(StrEnum):
    CORRUPTED = "corrupted"
    UNRECOVERABLE = "unrecoverable"
    INCOMPATIBLE = "incompatible"
    TOO_OLD = "too_old"
    MIGRATION_FAILED = "migration_failed"
    REPAIR_FAILED = "repair_failed"


@dataclass(frozen=True, slots=True)
class RecoveryContext:
    """Everything a decision provider needs to present one recovery choice."""

    kind: RecoveryKind
    title: str
    message: str
    detail: str
    allowed: tuple[RecoveryDecision, ...]
    backup_path: Path | None = None

    def allows(self, decision: RecoveryDecision) -> bool:
        return decision in self.allowed


class PipelineState(StrEnum):
    START = "start"
    MIGRATING_PATH = "migrating_path"
    VALIDATING = "validating"
    OPENING_CONNECTION = "opening_connection"
    CHECKING_COMPATIBILITY = "checking_compatibility"
    MIGRATING = "migrating"
    REPAIRING = "repairing"
    AWAITING_DECISION = "awaiting_decision"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


TERMINAL_STATES: frozenset[PipelineState] = frozenset({PipelineState.READY, PipelineState.FAILED})


@dataclass(slots=True)
class StartupOutcome:
    """Single handoff object returned to the host application.

    On ``ready`` the caller owns ``handle`` and must close it; on ``failed``
    no handle is ever attached.
    """

    state: PipelineState
    db_path: Path
    handle: DatabaseHandle | None = None
    reason: str | None = None
    schema_version: int | None = None
    backup_path: Path | None = None
    history: tuple[PipelineState, ...] = field(default_factory=tuple)
    decisions: tuple[RecoveryDecision, ...] = field(default_factory=tuple)

    @property
    def ready(self) -> bool:
        return self.state is PipelineState.READY and self.handle is not None


__all__ = [
    "CompatibilityResult",
    "DirectoryValidationResult",
    "PathMigrationResult",
    "PipelineState",
    "RecoveryContext",
    "RecoveryDecision",
    "RecoveryKind",
    "RepairResult",
    "RepairStepReport",
    "StartupOutcome",
    "TERMINAL_STATES",
    "ValidationResult",
]
