"""Startup database health pipeline: validation, relocation, repair, recovery."""

from posguard.health.errors import (
    BackupError,
    CompatibilityError,
    HealthError,
    MigrationError,
    MigrationRegistryError,
    PathMigrationError,
    RepairStepError,
    ValidationError,
)
from posguard.health.results import (
    CompatibilityResult,
    PathMigrationResult,
    PipelineState,
    RecoveryContext,
    RecoveryDecision,
    RecoveryKind,
    RepairResult,
    RepairStepReport,
    StartupOutcome,
    ValidationResult,
)

__all__ = [
    "BackupError",
    "CompatibilityError",
    "CompatibilityResult",
    "HealthError",
    "MigrationError",
    "MigrationRegistryError",
    "PathMigrationError",
    "PathMigrationResult",
    "PipelineState",
    "RecoveryContext",
    "RecoveryDecision",
    "RecoveryKind",
    "RepairResult",
    "RepairStepError",
    "RepairStepReport",
    "StartupOutcome",
    "ValidationError",
    "ValidationResult",
]
