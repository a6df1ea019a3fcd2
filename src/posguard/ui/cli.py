"""Command-line interface router for posguard."""

from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO

from posguard.config import ConfigLoadError, ConfigValidationError, PosGuardConfig, load_config
from posguard.health.backups import BackupManager
from posguard.health.compatibility import CompatibilityChecker
from posguard.health.decisions import DecisionProvider, HeadlessDecisionProvider
from posguard.health.file_validator import (
    database_age_ms,
    format_database_age,
    is_database_locked,
    validate_database_file,
)
from posguard.health.orchestrator import PipelineSettings, open_database
from posguard.health.path_migrator import PathMigrator
from posguard.health.repair import RepairEngine
from posguard.health.results import PipelineState, RecoveryContext, RecoveryDecision
from posguard.migrations import MigrationRunner, default_registry
from posguard.observability.logging import correlation_scope, setup_logging, shutdown_logging
from posguard.paths import PlatformPathProvider
from posguard.persistence.database import DatabaseError, DatabaseHandle
from posguard.ui.render import CLIRenderer, create_renderer

_DECISION_LABELS: Mapping[RecoveryDecision, str] = {
    RecoveryDecision.BACKUP_AND_FRESH: "Back up the current database and start fresh",
    RecoveryDecision.REPAIR: "Try to repair the database",
    RecoveryDecision.RESTORE_FROM_BACKUP: "Restore the most recent backup",
    RecoveryDecision.CANCEL: "Cancel and exit",
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


class ConsoleDecisionProvider:
    """Numbered recovery prompt over stdin/stdout; end of input means cancel."""

    def __init__(
        self,
        *,
        input_fn: Callable[[str], str] = input,
        output: TextIO | None = None,
        max_attempts: int = 3,
    ) -> None:
        self._input = input_fn
        self._output = output if output is not None else sys.stdout
        self._max_attempts = max_attempts

    def present_recovery_choice(self, context: RecoveryContext) -> RecoveryDecision:
        print(f"\n{context.title}", file=self._output)
        print(context.message, file=self._output)
        print(f"Details: {context.detail}", file=self._output)
        if context.backup_path is not None:
            print(f"Backup: {context.backup_path}", file=self._output)
        for index, decision in enumerate(context.allowed, start=1):
            print(f"  {index}. {_DECISION_LABELS[decision]}", file=self._output)

        for _ in range(self._max_attempts):
            try:
                raw = self._input(f"Choose 1-{len(context.allowed)}: ")
            except EOFError:
                return RecoveryDecision.CANCEL
            choice = raw.strip()
            if choice.isdigit() and 1 <= int(choice) <= len(context.allowed):
                return context.allowed[int(choice) - 1]
            print("Please enter one of the listed numbers.", file=self._output)
        return RecoveryDecision.CANCEL

    def present_fatal_error(self, title: str, message: str, detail: str) -> None:
        print(f"\n{title}: {message}", file=sys.stderr)
        if detail and detail != message:
            print(detail, file=sys.stderr)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="posguard",
        description=(
            "posguard - startup health checks for the point-of-sale database.\n\n"
            "Common workflows:\n"
            "  posguard check              Inspect the database without changing it\n"
            "  posguard open --headless    Run the full startup pipeline\n"
            "  posguard backups            List backups next to the database\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to posguard TOML config (default: ./posguard.toml if present).",
    )
    common.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Database file to operate on (overrides database.path).",
    )
    common.add_argument("--json", action="store_true", default=False, help="Emit JSON output.")
    common.add_argument("--no-color", action="store_true", default=False)
    common.add_argument("--verbose", "-v", action="store_true", default=False)

    sub = parser.add_subparsers(dest="command")

    check = sub.add_parser("check", parents=[common], help="Validate without modifying anything.")
    check.set_defaults(handler=_cmd_check)

    open_cmd = sub.add_parser("open", parents=[common], help="Run the full startup pipeline.")
    open_cmd.add_argument(
        "--headless",
        action="store_true",
        default=None,
        help="Never prompt; choose backup-and-fresh when recovery is needed.",
    )
    open_cmd.set_defaults(handler=_cmd_open)

    repair = sub.add_parser("repair", parents=[common], help="Run the repair ladder.")
    repair.set_defaults(handler=_cmd_repair)

    migrate_path = sub.add_parser(
        "migrate-path", parents=[common], help="Move the database from its legacy location."
    )
    migrate_path.add_argument(
        "--remove-old",
        action="store_true",
        default=None,
        help="Delete the legacy file after a verified move.",
    )
    migrate_path.set_defaults(handler=_cmd_migrate_path)

    backups = sub.add_parser("backups", parents=[common], help="List database backups.")
    backups.set_defaults(handler=_cmd_backups)
    return parser


def run_cli(
    argv: Sequence[str] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    decision_provider: DecisionProvider | None = None,
) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    namespace.environ = environ
    namespace.decision_provider = decision_provider
    try:
        config = _load_effective_config(namespace)
        _start_logging(config, namespace.command)
        try:
            with correlation_scope(operation=namespace.command):
                return int(handler(namespace, config))
        finally:
            shutdown_logging()
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_check(args: argparse.Namespace, config: PosGuardConfig) -> int:
    db_path = _db_path(config)
    settings = PipelineSettings.from_config(config)
    payload: dict[str, Any] = {"command": "check", "path": str(db_path)}

    locked = is_database_locked(db_path, stale_after_seconds=settings.stale_after_seconds)
    validation = validate_database_file(db_path)
    payload["locked"] = locked
    payload["validation"] = {
        "valid": validation.valid,
        "reason": validation.reason,
        "can_recover": validation.can_recover,
        "is_corrupted": validation.is_corrupted,
        "is_empty": validation.is_empty,
        "file_size_bytes": validation.file_size_bytes,
    }
    age_ms = database_age_ms(db_path)
    payload["age"] = format_database_age(age_ms) if age_ms is not None else None

    healthy = validation.valid and not locked
    if validation.valid and not validation.is_empty:
        registry = default_registry()
        try:
            with DatabaseHandle.open(
                db_path, busy_timeout_ms=settings.busy_timeout_ms, wal=False
            ) as handle:
                compat = CompatibilityChecker(settings.app_version, registry=registry).check(
                    handle, db_path
                )
                runner = MigrationRunner(registry)
                current = runner.current_version(handle) if compat.compatible else None
        except DatabaseError as exc:
            raise CLIError(f"could not open {db_path}: {exc}") from exc
        pending = [m.version for m in registry.pending(current)] if current is not None else []
        payload["compatibility"] = {
            "compatible": compat.compatible,
            "reason": compat.reason,
            "schema_version": compat.database_schema_version,
            "requires_fresh_database": compat.requires_fresh_database,
        }
        payload["pending_migrations"] = pending
        healthy = healthy and compat.compatible

    payload["healthy"] = healthy
    if args.json:
        _emit_json(payload)
        return 0 if healthy else 1

    renderer = _get_renderer(args)
    renderer.heading(f"Database: {db_path}")
    if locked:
        renderer.fail("in use by another process")
    else:
        renderer.ok("not locked")
    if validation.valid:
        renderer.ok("file does not exist yet" if validation.is_empty else "file header and size")
    else:
        renderer.fail(validation.reason or "invalid file")
    compat_payload = payload.get("compatibility")
    if compat_payload is not None:
        label = f"schema version {compat_payload['schema_version']}: {compat_payload['reason']}"
        (renderer.ok if compat_payload["compatible"] else renderer.fail)(label)
        if payload["pending_migrations"]:
            renderer.kv("Pending migrations", ", ".join(map(str, payload["pending_migrations"])))
    if payload["age"] is not None:
        renderer.kv("Age", payload["age"])
    return 0 if healthy else 1


def _cmd_open(args: argparse.Namespace, config: PosGuardConfig) -> int:
    headless = config["recovery"]["headless"] if args.headless is None else args.headless
    provider: DecisionProvider
    if args.decision_provider is not None:
        provider = args.decision_provider
    elif headless:
        provider = HeadlessDecisionProvider()
    else:
        provider = ConsoleDecisionProvider()

    outcome = open_database(None, decision_provider=provider, config=config)
    try:
        payload = {
            "command": "open",
            "path": str(outcome.db_path),
            "state": str(outcome.state),
            "reason": outcome.reason,
            "schema_version": outcome.schema_version,
            "backup_path": str(outcome.backup_path) if outcome.backup_path else None,
            "history": [str(state) for state in outcome.history],
            "decisions": [str(decision) for decision in outcome.decisions],
        }
    finally:
        if outcome.handle is not None:
            outcome.handle.close()

    if args.json:
        _emit_json(payload)
    else:
        renderer = _get_renderer(args)
        renderer.heading(f"Database: {outcome.db_path}")
        if outcome.state is PipelineState.READY:
            renderer.ok(f"ready at schema version {outcome.schema_version}")
        else:
            renderer.fail(outcome.reason or "startup failed")
        if outcome.backup_path is not None:
            renderer.kv("Backup", outcome.backup_path)
        if args.verbose:
            renderer.kv("States", " -> ".join(payload["history"]))
    return 0 if outcome.state is PipelineState.READY else 1


def _cmd_repair(args: argparse.Namespace, config: PosGuardConfig) -> int:
    db_path = _db_path(config)
    settings = PipelineSettings.from_config(config)
    if not db_path.exists():
        raise CLIError(f"no database at {db_path}")

    engine = RepairEngine(BackupManager(settings.app_name, max_backups=settings.max_backups))
    try:
        with DatabaseHandle.open(
            db_path, busy_timeout_ms=settings.busy_timeout_ms, wal=False
        ) as handle:
            result = engine.repair(handle, db_path)
    except DatabaseError as exc:
        raise CLIError(f"could not open {db_path}: {exc}") from exc

    if args.json:
        _emit_json(
            {
                "command": "repair",
                "path": str(db_path),
                "success": result.success,
                "reason": result.reason,
                "backup_path": str(result.backup_path) if result.backup_path else None,
                "steps": [
                    {"step": report.step, "ok": report.ok, "detail": report.detail}
                    for report in result.steps
                ],
            }
        )
        return 0 if result.success else 1

    renderer = _get_renderer(args)
    renderer.heading(f"Repairing {db_path}")
    for report in result.steps:
        label = report.step if not report.detail else f"{report.step}: {report.detail}"
        (renderer.ok if report.ok else renderer.fail)(label)
    if result.backup_path is not None:
        renderer.kv("Backup", result.backup_path)
    if not result.success:
        renderer.warning(result.reason or "repair failed")
    return 0 if result.success else 1


def _cmd_migrate_path(args: argparse.Namespace, config: PosGuardConfig) -> int:
    settings = PipelineSettings.from_config(config)
    provider = _path_provider(config)
    remove_old = settings.remove_legacy if args.remove_old is None else args.remove_old
    migrator = PathMigrator(
        provider,
        BackupManager(settings.app_name, max_backups=settings.max_backups),
        recent_window_seconds=settings.recent_window_seconds,
    )
    legacy = provider.legacy_path()
    result = migrator.migrate(remove_old=remove_old)
    nothing_to_do = legacy is None or (not result.migrated and not legacy.exists())
    succeeded = result.migrated or nothing_to_do

    if args.json:
        _emit_json(
            {
                "command": "migrate-path",
                "migrated": result.migrated,
                "old_path": str(result.old_path) if result.old_path else None,
                "new_path": str(result.new_path) if result.new_path else None,
                "backup_path": str(result.backup_path) if result.backup_path else None,
                "reason": result.reason,
            }
        )
        return 0 if succeeded else 1

    renderer = _get_renderer(args)
    (renderer.ok if succeeded else renderer.fail)(result.reason or "")
    if result.backup_path is not None:
        renderer.kv("Backup", result.backup_path)
    return 0 if succeeded else 1


def _cmd_backups(args: argparse.Namespace, config: PosGuardConfig) -> int:
    db_path = _db_path(config)
    manager = BackupManager(config["app"]["name"], max_backups=config["backups"]["max_backups"])
    backups = manager.list_backups(db_path)
    rows = []
    for path in backups:
        try:
            size = path.stat().st_size
        except OSError:
            size = -1
        rows.append((path.name, str(size)))

    if args.json:
        _emit_json(
            {
                "command": "backups",
                "path": str(db_path),
                "backups": [{"name": name, "size_bytes": int(size)} for name, size in rows],
            }
        )
        return 0

    renderer = _get_renderer(args)
    if not rows:
        renderer.text(f"No backups found for {db_path}")
        return 0
    renderer.table(("Backup", "Bytes"), rows, title=f"Backups for {db_path}")
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> PosGuardConfig:
    overrides: dict[str, object] = {}
    if args.db_path is not None:
        overrides["database.path"] = str(Path(args.db_path).expanduser().resolve())
    try:
        return load_config(args.config_path, cli_overrides=overrides, environ=args.environ)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _start_logging(config: PosGuardConfig, command: str) -> None:
    observability = dict(config["observability"])
    if observability.get("log_dir") is None:
        observability["log_dir"] = str(_db_path(config).parent / "logs")
    session_id = f"{datetime.now(tz=UTC).strftime('%Y%m%dT%H%M%SZ')}-{os.getpid()}-{command}"
    try:
        setup_logging(observability, session_id=session_id)
    except OSError as exc:
        raise CLIError(f"cannot create log directory: {exc}", exit_code=2) from exc


def _path_provider(config: PosGuardConfig) -> PlatformPathProvider:
    return PlatformPathProvider(
        app_dir_name=config["app"]["dir_name"],
        override=config["database"]["path"],
    )


def _db_path(config: PosGuardConfig) -> Path:
    return _path_provider(config).canonical_path()


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=args.no_color, verbose=args.verbose)


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False))


__all__ = ["CLIError", "ConsoleDecisionProvider", "build_parser", "main", "run_cli"]
