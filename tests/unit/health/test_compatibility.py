"""Schema compatibility classification and the application version record."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import pytest

from posguard.health.app_version import is_downgrade, read_app_version, record_app_version
from posguard.health.compatibility import CompatibilityChecker, data_tables
from posguard.migrations import MigrationRunner, default_registry
from posguard.persistence import DatabaseHandle, create_baseline_schema

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path


@pytest.fixture
def handle(db_path: Path) -> Iterator[DatabaseHandle]:
    with DatabaseHandle.open(db_path) as opened:
        yield opened


def _checker(logger: Any, *, now: float | None = None) -> CompatibilityChecker:
    return CompatibilityChecker(
        "1.0.0",
        registry=default_registry(),
        now=(lambda: now) if now is not None else None,
        logger=logger,
    )


@pytest.mark.unit
def test_fresh_database_is_compatible(handle: DatabaseHandle, recording_logger: Any) -> None:
    result = _checker(recording_logger).check(handle)

    assert result.compatible
    assert result.reason == "Fresh database"
    assert result.database_schema_version == "0"
    assert result.requires_fresh_database is False
    assert "db_compatibility_result" in recording_logger.events()


@pytest.mark.unit
def test_untracked_database_is_too_old_and_reports_age(
    handle: DatabaseHandle, recording_logger: Any
) -> None:
    create_baseline_schema(handle)

    result = _checker(recording_logger, now=time.time() + 3 * 86_400).check(handle)

    assert not result.compatible
    assert result.requires_fresh_database is True
    assert result.can_migrate is False
    assert "created 3 days ago" in (result.reason or "")


@pytest.mark.unit
def test_empty_history_is_compatible(handle: DatabaseHandle, recording_logger: Any) -> None:
    create_baseline_schema(handle)
    MigrationRunner(default_registry(), logger=recording_logger).ensure_history_table(handle)

    result = _checker(recording_logger).check(handle)

    assert result.compatible
    assert result.reason == "No migrations recorded yet"


@pytest.mark.unit
def test_migrated_database_reports_schema_version(
    handle: DatabaseHandle, recording_logger: Any
) -> None:
    create_baseline_schema(handle)
    MigrationRunner(default_registry(), logger=recording_logger).apply_pending(handle)

    result = _checker(recording_logger).check(handle)

    assert result.compatible
    assert result.database_schema_version == str(default_registry().latest_version())
    assert result.migration_path_exists is True


@pytest.mark.unit
def test_schema_newer_than_registry_is_incompatible_but_not_fresh(
    handle: DatabaseHandle, recording_logger: Any
) -> None:
    create_baseline_schema(handle)
    runner = MigrationRunner(default_registry(), logger=recording_logger)
    runner.apply_pending(handle)
    handle.execute(
        "INSERT INTO schema_migrations (version, name, applied_at) VALUES (99, 'future', 0)"
    )

    result = _checker(recording_logger).check(handle)

    assert not result.compatible
    assert result.requires_fresh_database is False
    assert result.database_schema_version == "99"
    assert "newer than this release" in (result.reason or "")


@pytest.mark.unit
def test_unreadable_database_requires_fresh_start(
    db_path: Path, write_file: Callable[[Path, bytes], Path], recording_logger: Any
) -> None:
    write_file(db_path, b"garbage that is not sqlite" * 100)
    handle = DatabaseHandle.open(db_path, wal=False)
    try:
        result = _checker(recording_logger).check(handle)
    finally:
        handle.close()

    assert not result.compatible
    assert result.requires_fresh_database is True
    assert "could not be inspected" in (result.reason or "")


@pytest.mark.unit
@pytest.mark.parametrize("with_row", [True, False])
def test_history_table_with_wrong_columns_requires_fresh_start(
    handle: DatabaseHandle, recording_logger: Any, with_row: bool
) -> None:
    create_baseline_schema(handle)
    handle.execute("CREATE TABLE schema_migrations (version INTEGER, note TEXT)")
    if with_row:
        handle.execute("INSERT INTO schema_migrations (version, note) VALUES (3, 'hand edited')")

    result = _checker(recording_logger).check(handle)

    assert not result.compatible
    assert result.requires_fresh_database is True
    assert result.can_migrate is False
    assert "failed its self-test" in (result.reason or "")


@pytest.mark.unit
def test_data_tables_excludes_bookkeeping(handle: DatabaseHandle, recording_logger: Any) -> None:
    MigrationRunner(default_registry(), logger=recording_logger).ensure_history_table(handle)
    record_app_version(handle, "1.0.0", now_ms=1)
    assert data_tables(handle) == ()

    create_baseline_schema(handle)
    assert "users" in data_tables(handle)
    assert "schema_migrations" not in data_tables(handle)


@pytest.mark.unit
def test_app_version_record_is_upserted(handle: DatabaseHandle) -> None:
    assert read_app_version(handle) is None

    record_app_version(handle, "1.0.0", now_ms=10)
    record_app_version(handle, "1.2.0", now_ms=20)

    assert read_app_version(handle) == "1.2.0"
    assert handle.scalar("SELECT COUNT(*) FROM app_version") == 1
    assert handle.scalar("SELECT updated_at FROM app_version") == 20


@pytest.mark.unit
def test_downgrade_is_logged(handle: DatabaseHandle, recording_logger: Any) -> None:
    record_app_version(handle, "9.0.0", now_ms=1)

    _checker(recording_logger).check(handle)

    warnings = recording_logger.fields_for("db_app_downgrade_detected")
    assert warnings == [{"recorded_app_version": "9.0.0", "app_version": "1.0.0"}]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("recorded", "current", "expected"),
    [
        (None, "1.0.0", False),
        ("1.0.0", "1.0.0", False),
        ("0.9.5", "1.0.0", False),
        ("1.10.0", "1.9.0", True),
        ("2.0.0rc1", "1.9.0", True),
        ("not-a-version", "1.0.0", False),
    ],
)
def test_is_downgrade(recorded: str | None, current: str, expected: bool) -> None:
    assert is_downgrade(recorded, current) is expected
