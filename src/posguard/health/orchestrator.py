"""
posguard - startup recovery orchestrator.

File: src/posguard/health/orchestrator.py

Purpose
- Drive the startup pipeline from a database path to either an open,
  verified ``DatabaseHandle`` or a structured failure.

What should be included in this file
- The explicit state machine (``PipelineState``) and one handler per state.
- Recovery contexts offered to the decision provider, with the allowed
  choices for each situation.
- ``open_database``: the single handoff used by the host application.

Functional requirements
- The orchestrator exclusively owns the handle while running; it is moved to
  the outcome only on ``ready`` and closed on every other exit.
- User data is never set aside or overwritten without a verified backup.
- The number of decisions per run is capped; exceeding the cap fails the run.
- A decision outside the offered set is treated as cancel.

Non-functional requirements
- Single-threaded and sequential; no retries with backoff.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from posguard import __version__
from posguard.constants import (
    DEFAULT_APP_NAME,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_MAX_BACKUPS,
    DEFAULT_MAX_DECISIONS,
    LOCK_STALE_AFTER_SECONDS,
    PATH_MIGRATION_RECENT_WINDOW_SECONDS,
)
from posguard.health.app_version import record_app_version
from posguard.health.backups import BackupManager, Clock
from posguard.health.compatibility import CompatibilityChecker, data_tables
from posguard.health.decisions import DecisionProvider, HeadlessDecisionProvider
from posguard.health.errors import BackupError, HealthError, MigrationError
from posguard.health.file_validator import is_database_locked, validate_database_file
from posguard.health.path_migrator import PathMigrator
from posguard.health.repair import RepairEngine
from posguard.health.results import (
    TERMINAL_STATES,
    PipelineState,
    RecoveryContext,
    RecoveryDecision,
    RecoveryKind,
    StartupOutcome,
)
from posguard.migrations.registry import MigrationRegistry
from posguard.migrations.runner import MigrationRunner
from posguard.migrations.versions import default_registry
from posguard.paths import FixedPathProvider, PathProvider, PlatformPathProvider
from posguard.persistence.baseline import create_baseline_schema
from posguard.persistence.database import DatabaseError, DatabaseHandle


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    app_name: str = DEFAULT_APP_NAME
    app_version: str = __version__
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    max_backups: int = DEFAULT_MAX_BACKUPS
    stale_after_seconds: int = LOCK_STALE_AFTER_SECONDS
    path_migration_enabled: bool = True
    recent_window_seconds: int = PATH_MIGRATION_RECENT_WINDOW_SECONDS
    remove_legacy: bool = False
    max_decisions: int = DEFAULT_MAX_DECISIONS

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> PipelineSettings:
        app = config["app"]
        path_migration = config["path_migration"]
        return cls(
            app_name=app["name"],
            app_version=app["version"],
            busy_timeout_ms=config["database"]["busy_timeout_ms"],
            max_backups=config["backups"]["max_backups"],
            stale_after_seconds=config["locks"]["stale_after_seconds"],
            path_migration_enabled=path_migration["enabled"],
            recent_window_seconds=path_migration["recent_window_seconds"],
            remove_legacy=path_migration["remove_legacy"],
            max_decisions=config["recovery"]["max_decisions"],
        )


class RecoveryOrchestrator:
    """Runs the startup pipeline once per ``run`` call."""

    def __init__(
        self,
        path_provider: PathProvider,
        *,
        decision_provider: DecisionProvider | None = None,
        settings: PipelineSettings | None = None,
        registry: MigrationRegistry | None = None,
        clock: Clock | None = None,
        now: Callable[[], float] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings if settings is not None else PipelineSettings()
        self._provider = path_provider
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._decisions = (
            decision_provider
            if decision_provider is not None
            else HeadlessDecisionProvider(logger=self._logger)
        )
        self._registry = registry if registry is not None else default_registry()
        self._now = now if now is not None else time.time
        self._backups = BackupManager(
            self._settings.app_name,
            max_backups=self._settings.max_backups,
            clock=clock,
            logger=self._logger,
        )
        self._repair = RepairEngine(self._backups, logger=self._logger)
        self._runner = MigrationRunner(self._registry, logger=self._logger)
        self._checker = CompatibilityChecker(
            self._settings.app_version,
            registry=self._registry,
            now=self._now,
            logger=self._logger,
        )
        self._path_migrator: PathMigrator | None = None
        if self._settings.path_migration_enabled and path_provider.legacy_path() is not None:
            self._path_migrator = PathMigrator(
                path_provider,
                self._backups,
                recent_window_seconds=self._settings.recent_window_seconds,
                now=self._now,
                logger=self._logger,
            )

        self._handlers: dict[PipelineState, Callable[[], PipelineState]] = {
            PipelineState.START: self._on_start,
            PipelineState.MIGRATING_PATH: self._on_migrating_path,
            PipelineState.VALIDATING: self._on_validating,
            PipelineState.OPENING_CONNECTION: self._on_opening_connection,
            PipelineState.CHECKING_COMPATIBILITY: self._on_checking_compatibility,
            PipelineState.MIGRATING: self._on_migrating,
            PipelineState.REPAIRING: self._on_repairing,
            PipelineState.AWAITING_DECISION: self._on_awaiting_decision,
            PipelineState.INITIALIZING: self._on_initializing,
        }
        self._reset()

    @property
    def backups(self) -> BackupManager:
        return self._backups

    @property
    def db_path(self) -> Path:
        return self._provider.canonical_path()

    def run(self) -> StartupOutcome:
        self._reset()
        state = PipelineState.START
        try:
            while state not in TERMINAL_STATES:
                state = self._step(state)
        except BaseException:
            self._close_handle()
            raise

        if state is PipelineState.READY and self._handle is not None:
            handle, self._handle = self._handle, None
            self._logger.info(
                "db_pipeline_ready",
                path=str(self._path),
                schema_version=self._schema_version,
                decisions=len(self._decision_log),
            )
            return StartupOutcome(
                state=PipelineState.READY,
                db_path=self._path,
                handle=handle,
                schema_version=self._schema_version,
                backup_path=self._backup_path,
                history=tuple(self._history),
                decisions=tuple(self._decision_log),
            )

        self._close_handle()
        self._logger.error("db_pipeline_failed", path=str(self._path), reason=self._reason)
        return StartupOutcome(
            state=PipelineState.FAILED,
            db_path=self._path,
            reason=self._reason,
            backup_path=self._backup_path,
            history=tuple(self._history),
            decisions=tuple(self._decision_log),
        )

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    def _on_start(self) -> PipelineState:
        if is_database_locked(
            self._path,
            stale_after_seconds=self._settings.stale_after_seconds,
            now=self._now(),
            logger=self._logger,
        ):
            return self._fail(
                "Database is in use by another process",
                title="Database locked",
                detail=(
                    f"{self._path} is locked by another running instance. "
                    "Close it and start the application again."
                ),
            )
        if self._path_migrator is None:
            return PipelineState.VALIDATING
        legacy = self._path_migrator.legacy_path
        if legacy is not None and is_database_locked(
            legacy,
            stale_after_seconds=self._settings.stale_after_seconds,
            now=self._now(),
            logger=self._logger,
        ):
            # An older instance still writes there; relocate on a later start.
            self._logger.warning("db_path_migration_skipped_locked", legacy_path=str(legacy))
        elif self._path_migrator.should_migrate():
            return PipelineState.MIGRATING_PATH
        return PipelineState.VALIDATING

    def _on_migrating_path(self) -> PipelineState:
        assert self._path_migrator is not None
        result = self._path_migrator.migrate(remove_old=self._settings.remove_legacy)
        if result.migrated and result.backup_path is not None:
            self._backup_path = result.backup_path
        return PipelineState.VALIDATING

    def _on_validating(self) -> PipelineState:
        result = validate_database_file(self._path, logger=self._logger)
        if result.valid and result.is_empty:
            return PipelineState.INITIALIZING
        if result.valid:
            return PipelineState.OPENING_CONNECTION
        if result.can_recover:
            return PipelineState.REPAIRING
        return self._await(
            RecoveryContext(
                kind=RecoveryKind.UNRECOVERABLE,
                title="Database cannot be used",
                message="The database file is damaged and cannot be repaired.",
                detail=result.reason or "unknown validation failure",
                allowed=(RecoveryDecision.BACKUP_AND_FRESH, RecoveryDecision.CANCEL),
            )
        )

    def _on_opening_connection(self) -> PipelineState:
        self._close_handle()
        try:
            handle = DatabaseHandle.open(self._path, busy_timeout_ms=self._settings.busy_timeout_ms)
        except DatabaseError as exc:
            self._logger.error("db_open_failed", path=str(self._path), error=str(exc))
            return self._await(
                RecoveryContext(
                    kind=RecoveryKind.CORRUPTED,
                    title="Database is corrupted",
                    message="The database could not be opened.",
                    detail=str(exc),
                    allowed=(
                        RecoveryDecision.BACKUP_AND_FRESH,
                        RecoveryDecision.REPAIR,
                        RecoveryDecision.CANCEL,
                    ),
                )
            )
        self._handle = handle
        return PipelineState.CHECKING_COMPATIBILITY

    def _on_checking_compatibility(self) -> PipelineState:
        handle = self._require_handle()
        result = self._checker.check(handle, self._path)
        if result.compatible:
            return PipelineState.MIGRATING

        latest = self._backups.latest_backup(self._path)
        allowed = [RecoveryDecision.REPAIR, RecoveryDecision.BACKUP_AND_FRESH]
        if latest is not None:
            allowed.append(RecoveryDecision.RESTORE_FROM_BACKUP)
        allowed.append(RecoveryDecision.CANCEL)
        too_old = bool(result.requires_fresh_database)
        return self._await(
            RecoveryContext(
                kind=RecoveryKind.TOO_OLD if too_old else RecoveryKind.INCOMPATIBLE,
                title="Database is too old" if too_old else "Database is incompatible",
                message=(
                    "This database cannot be upgraded to the current version."
                    if too_old
                    else "This database was not written by a compatible version."
                ),
                detail=result.reason or "unknown incompatibility",
                allowed=tuple(allowed),
                backup_path=latest,
            )
        )

    def _on_migrating(self) -> PipelineState:
        handle = self._require_handle()
        try:
            if not data_tables(handle):
                create_baseline_schema(handle)
            current = self._runner.current_version(handle)
            if self._registry.pending(current):
                self._backup_path = self._backups.create_backup(
                    self._path, "migration", handle=handle
                )
            self._runner.apply_pending(handle, current)
            record_app_version(handle, self._settings.app_version)
            self._schema_version = self._runner.current_version(handle)
        except (MigrationError, BackupError, DatabaseError) as exc:
            self._logger.error("db_migration_pipeline_failed", path=str(self._path), error=str(exc))
            self._close_handle()
            restore_from = self._backup_path if isinstance(exc, MigrationError) else None
            allowed = [RecoveryDecision.BACKUP_AND_FRESH, RecoveryDecision.CANCEL]
            if restore_from is not None:
                allowed.insert(0, RecoveryDecision.RESTORE_FROM_BACKUP)
            return self._await(
                RecoveryContext(
                    kind=RecoveryKind.MIGRATION_FAILED,
                    title="Database update failed",
                    message="The database could not be updated to the current version.",
                    detail=str(exc),
                    allowed=tuple(allowed),
                    backup_path=restore_from,
                )
            )
        return PipelineState.READY

    def _on_repairing(self) -> PipelineState:
        self._close_handle()
        try:
            handle = DatabaseHandle.open(
                self._path, busy_timeout_ms=self._settings.busy_timeout_ms, wal=False
            )
        except DatabaseError as exc:
            return self._repair_failed(str(exc), backup_path=None)
        try:
            result = self._repair.repair(handle, self._path)
        finally:
            handle.close()
        if result.success:
            self._backup_path = result.backup_path
            return PipelineState.OPENING_CONNECTION
        return self._repair_failed(result.reason or "repair failed", backup_path=result.backup_path)

    def _on_awaiting_decision(self) -> PipelineState:
        context = self._pending_context
        assert context is not None
        self._pending_context = None

        if len(self._decision_log) >= self._settings.max_decisions:
            return self._fail(
                "Too many recovery attempts",
                title=context.title,
                detail=(
                    f"Gave up after {self._settings.max_decisions} recovery decisions. "
                    f"Last problem: {context.detail}"
                ),
            )

        decision = self._decisions.present_recovery_choice(context)
        if not context.allows(decision):
            self._logger.warning(
                "db_recovery_decision_rejected", kind=str(context.kind), decision=str(decision)
            )
            decision = RecoveryDecision.CANCEL
        self._decision_log.append(decision)
        self._logger.info("db_recovery_decision", kind=str(context.kind), decision=str(decision))

        if decision is RecoveryDecision.BACKUP_AND_FRESH:
            self._fresh_requested = True
            return PipelineState.INITIALIZING
        if decision is RecoveryDecision.REPAIR:
            return PipelineState.REPAIRING
        if decision is RecoveryDecision.RESTORE_FROM_BACKUP:
            return self._restore(context)
        self._reason = f"Cancelled by user: {context.message}"
        return PipelineState.FAILED

    def _on_initializing(self) -> PipelineState:
        self._close_handle()
        try:
            if self._path.exists():
                fresh_backup = self._repair.create_fresh_database(self._path)
                if fresh_backup is not None:
                    self._backup_path = fresh_backup
            handle = DatabaseHandle.open(self._path, busy_timeout_ms=self._settings.busy_timeout_ms)
        except (BackupError, DatabaseError, OSError) as exc:
            return self._fail(
                f"Could not start with a fresh database: {exc}",
                title="Database initialization failed",
                detail=str(exc),
            )
        self._handle = handle
        try:
            create_baseline_schema(handle)
            self._runner.apply_pending(handle, 0)
            record_app_version(handle, self._settings.app_version)
            self._schema_version = self._runner.current_version(handle)
        except (MigrationError, DatabaseError) as exc:
            return self._fail(
                f"Could not initialize a fresh database: {exc}",
                title="Database initialization failed",
                detail=str(exc),
            )
        self._logger.info(
            "db_initialized",
            path=str(self._path),
            schema_version=self._schema_version,
            fresh_start=self._fresh_requested,
        )
        return PipelineState.READY

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        self._path = self._provider.canonical_path()
        self._handle: DatabaseHandle | None = None
        self._history: list[PipelineState] = []
        self._decision_log: list[RecoveryDecision] = []
        self._pending_context: RecoveryContext | None = None
        self._reason: str | None = None
        self._backup_path: Path | None = None
        self._schema_version: int | None = None
        self._fresh_requested = False

    def _step(self, state: PipelineState) -> PipelineState:
        self._history.append(state)
        try:
            next_state = self._handlers[state]()
        except (HealthError, DatabaseError, OSError) as exc:
            next_state = self._fail(
                f"Unexpected failure while {state.value.replace('_', ' ')}: {exc}",
                title="Database startup failed",
                detail=str(exc),
            )
        self._logger.debug(
            "db_pipeline_transition", from_state=str(state), to_state=str(next_state)
        )
        if next_state in TERMINAL_STATES:
            self._history.append(next_state)
        return next_state

    def _await(self, context: RecoveryContext) -> PipelineState:
        self._pending_context = context
        return PipelineState.AWAITING_DECISION

    def _fail(self, reason: str, *, title: str, detail: str) -> PipelineState:
        self._close_handle()
        self._reason = reason
        self._decisions.present_fatal_error(title, reason, detail)
        return PipelineState.FAILED

    def _repair_failed(self, reason: str, *, backup_path: Path | None) -> PipelineState:
        if backup_path is not None:
            self._backup_path = backup_path
        return self._await(
            RecoveryContext(
                kind=RecoveryKind.REPAIR_FAILED,
                title="Database repair failed",
                message="The database could not be repaired.",
                detail=reason,
                allowed=(RecoveryDecision.BACKUP_AND_FRESH, RecoveryDecision.CANCEL),
                backup_path=backup_path,
            )
        )

    def _restore(self, context: RecoveryContext) -> PipelineState:
        self._close_handle()
        source = context.backup_path or self._backups.latest_backup(self._path)
        if source is None:
            return self._fail(
                "No backup is available to restore",
                title="Restore failed",
                detail=f"No backups were found next to {self._path}",
            )
        try:
            self._backups.restore(source, self._path)
        except BackupError as exc:
            return self._await(
                RecoveryContext(
                    kind=RecoveryKind.UNRECOVERABLE,
                    title="Restore failed",
                    message="The backup could not be restored.",
                    detail=str(exc),
                    allowed=(RecoveryDecision.BACKUP_AND_FRESH, RecoveryDecision.CANCEL),
                )
            )
        self._backup_path = source
        return PipelineState.OPENING_CONNECTION

    def _require_handle(self) -> DatabaseHandle:
        if self._handle is None:
            raise HealthError("no open database handle in this pipeline state")
        return self._handle

    def _close_handle(self) -> None:
        if self._handle is not None:
            handle, self._handle = self._handle, None
            handle.close()


def open_database(
    target: str | Path | PathProvider | None = None,
    *,
    decision_provider: DecisionProvider | None = None,
    config: Mapping[str, Any] | None = None,
    registry: MigrationRegistry | None = None,
    clock: Clock | None = None,
    logger: Any | None = None,
) -> StartupOutcome:
    """Run the startup pipeline and hand back a ready handle or a failure.

    ``target`` may be a database path, a ``PathProvider``, or None to use the
    platform location (honouring ``database.path`` from ``config``).
    """

    settings = PipelineSettings.from_config(config) if config is not None else PipelineSettings()
    if isinstance(target, PathProvider):
        provider: PathProvider = target
    elif target is not None:
        provider = FixedPathProvider(Path(target).expanduser())
    elif config is not None:
        provider = PlatformPathProvider(
            app_dir_name=config["app"]["dir_name"],
            override=config["database"]["path"],
        )
    else:
        provider = PlatformPathProvider()

    orchestrator = RecoveryOrchestrator(
        provider,
        decision_provider=decision_provider,
        settings=settings,
        registry=registry,
        clock=clock,
        logger=logger,
    )
    return orchestrator.run()


__all__ = ["PipelineSettings", "RecoveryOrchestrator", "open_database"]
