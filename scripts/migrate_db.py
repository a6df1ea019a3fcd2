"""
posguard - migrate the point-of-sale database schema.

Purpose
- Bring a database file up to this release's schema without starting the
  application, backing it up first when migrations are pending.
- ``--dry-run`` only reports: which migrations are applied, pending, or were
  written by a newer release.

Exit status is 0 when the file is (or would be) current, 1 otherwise.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

if TYPE_CHECKING:
    from collections.abc import Sequence

    from posguard.migrations import MigrationApplicationRecord, MigrationRegistry

APPLIED = "applied"
PENDING = "pending"
UNKNOWN = "unknown_to_release"


@dataclass(frozen=True, slots=True)
class MigrationStatus:
    version: int
    name: str
    status: str
    applied_at_epoch_ms: int | None = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Apply or inspect point-of-sale database migrations.",
    )
    parser.add_argument("--db", type=Path, required=True, help="Path to the SQLite database file.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report migration status without touching the database.",
    )
    parser.add_argument("--json", action="store_true", help="Print one JSON object on stdout.")
    return parser


def migration_statuses(
    registry: MigrationRegistry, history: Sequence[MigrationApplicationRecord]
) -> list[MigrationStatus]:
    """Registry entries and history rows merged by version, oldest first."""

    by_version = {
        migration.version: MigrationStatus(migration.version, migration.name, PENDING)
        for migration in registry
    }
    for record in history:
        known = record.version in by_version
        by_version[record.version] = MigrationStatus(
            record.version,
            record.name,
            APPLIED if known else UNKNOWN,
            record.applied_at_epoch_ms,
        )
    return [by_version[version] for version in sorted(by_version)]


def _inspect(
    db_path: Path, registry: MigrationRegistry, *, dry_run: bool
) -> tuple[dict[str, object], list[MigrationStatus]]:
    from posguard.health.backups import BackupManager
    from posguard.health.compatibility import data_tables
    from posguard.health.file_validator import validate_database_file
    from posguard.migrations import MigrationRunner
    from posguard.persistence import DatabaseHandle, create_baseline_schema

    validation = validate_database_file(db_path)
    if not validation.valid:
        raise RuntimeError(validation.reason or "database file is not valid")

    runner = MigrationRunner(registry)
    backup_path: Path | None = None
    history: tuple[MigrationApplicationRecord, ...] = ()
    if dry_run:
        if not validation.is_empty:
            with DatabaseHandle.open(db_path, wal=False) as handle:
                history = runner.history(handle)
    else:
        with DatabaseHandle.open(db_path) as handle:
            if not data_tables(handle):
                create_baseline_schema(handle)
            elif registry.pending(runner.current_version(handle)):
                backup_path = BackupManager().create_backup(db_path, "migration", handle=handle)
            runner.apply_pending(handle)
            history = runner.history(handle)

    statuses = migration_statuses(registry, history)
    pending = [row for row in statuses if row.status == PENDING]
    unknown = [row for row in statuses if row.status == UNKNOWN]
    summary: dict[str, object] = {
        "db_path": db_path.as_posix(),
        "dry_run": dry_run,
        "schema_version": max((record.version for record in history), default=0),
        "target_schema_version": registry.latest_version(),
        "up_to_date": not pending and not unknown,
        "pending_migrations": len(pending),
        "unknown_to_release_count": len(unknown),
        "backup_path": backup_path,
    }
    return summary, statuses


def _print_report(summary: dict[str, object], statuses: list[MigrationStatus]) -> None:
    from posguard.ui.render import CLIRenderer

    renderer = CLIRenderer(no_color=True)
    for key in ("db_path", "dry_run", "schema_version", "target_schema_version", "up_to_date"):
        renderer.kv(key, summary[key])
    if isinstance(summary["backup_path"], Path):
        renderer.kv("backup_path", summary["backup_path"].as_posix())
    renderer.text("migrations:")
    for row in statuses:
        renderer.text(f"  v{row.version}: {row.status} ({row.name})")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    db_path = args.db.expanduser().resolve()

    from posguard.migrations import default_registry
    from posguard.observability.logging import configure_structlog, to_json

    # Pipeline events go to stdlib logging; stdout carries only the report.
    configure_structlog()

    try:
        summary, statuses = _inspect(db_path, default_registry(), dry_run=args.dry_run)
    except Exception as exc:  # noqa: BLE001 - script boundary
        if args.json:
            failure = {"db_path": db_path.as_posix(), "dry_run": args.dry_run, "error": str(exc)}
            print(json.dumps(failure, sort_keys=True, separators=(",", ":")))
        else:
            print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.json:
        payload = {**summary, "migrations": [asdict(row) for row in statuses]}
        print(json.dumps(to_json(payload), sort_keys=True, separators=(",", ":")))
    else:
        _print_report(summary, statuses)
    return 0 if summary["unknown_to_release_count"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
