"""Migration runner: ordering, idempotency, rollback and downgrade refusal."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from posguard.health.errors import MigrationError, MigrationRegistryError
from posguard.migrations import (
    MIGRATIONS,
    Migration,
    MigrationOutcome,
    MigrationRegistry,
    MigrationRunner,
    default_registry,
)
from posguard.persistence import DatabaseHandle, create_baseline_schema

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture
def handle(db_path: Path) -> Iterator[DatabaseHandle]:
    with DatabaseHandle.open(db_path) as opened:
        create_baseline_schema(opened)
        yield opened


def _runner(registry: MigrationRegistry, logger: Any) -> MigrationRunner:
    ticks = iter(range(1_000, 100_000, 10))
    return MigrationRunner(registry, clock_ms=lambda: next(ticks), logger=logger)


@pytest.mark.unit
def test_invalid_registry_is_rejected_up_front(recording_logger: Any) -> None:
    broken = MigrationRegistry([MIGRATIONS[1]])

    with pytest.raises(MigrationRegistryError):
        MigrationRunner(broken, logger=recording_logger)


@pytest.mark.unit
def test_apply_pending_records_history_in_order(
    handle: DatabaseHandle, recording_logger: Any
) -> None:
    runner = _runner(default_registry(), recording_logger)
    assert runner.current_version(handle) == 0
    assert runner.history(handle) == ()

    applied = runner.apply_pending(handle)

    assert [record.version for record in applied] == [1, 2]
    assert [record.applied_at_epoch_ms for record in applied] == [1_000, 1_010]
    assert runner.current_version(handle) == 2
    assert [(r.version, r.name) for r in runner.history(handle)] == [
        (1, "add_suppliers"),
        (2, "add_username_pin_auth"),
    ]
    assert runner.pending(handle) == ()
    assert recording_logger.events().count("db_migration_applied") == 2
    assert "db_migrations_complete" in recording_logger.events()


@pytest.mark.unit
def test_rerun_is_a_no_op(handle: DatabaseHandle, recording_logger: Any) -> None:
    runner = _runner(default_registry(), recording_logger)
    runner.apply_pending(handle)
    before = runner.history(handle)

    assert runner.apply_pending(handle) == ()
    assert runner.history(handle) == before
    assert "db_migrations_up_to_date" in recording_logger.events()


@pytest.mark.unit
def test_change_already_present_is_recorded_without_running_body(
    handle: DatabaseHandle, recording_logger: Any
) -> None:
    calls: list[int] = []

    def apply(h: DatabaseHandle) -> MigrationOutcome:
        calls.append(1)
        return MigrationOutcome(changed=True)

    registry = MigrationRegistry(
        [Migration(1, "already_there", "probe says done", probe=lambda h: True, apply=apply)]
    )

    applied = _runner(registry, recording_logger).apply_pending(handle)

    assert [record.version for record in applied] == [1]
    assert calls == []
    fields = recording_logger.fields_for("db_migration_applied")[0]
    assert fields["changed"] is False
    assert fields["details"] == ["changes already present"]


@pytest.mark.unit
def test_failure_rolls_back_and_keeps_earlier_migrations(
    handle: DatabaseHandle, recording_logger: Any
) -> None:
    def explode(h: DatabaseHandle) -> MigrationOutcome:
        h.execute("CREATE TABLE partial (id INTEGER)")
        raise RuntimeError("boom")

    registry = MigrationRegistry(
        [*MIGRATIONS, Migration(3, "explode", "fails midway", probe=lambda h: False, apply=explode)]
    )
    runner = _runner(registry, recording_logger)

    with pytest.raises(MigrationError) as excinfo:
        runner.apply_pending(handle)

    assert excinfo.value.version == 3
    assert excinfo.value.name == "explode"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert "boom" in str(excinfo.value)
    assert not handle.table_exists("partial")
    assert runner.current_version(handle) == 2
    assert recording_logger.fields_for("db_migration_failed")[0]["migration_name"] == "explode"


@pytest.mark.unit
def test_database_newer_than_registry_is_refused_untouched(
    handle: DatabaseHandle, recording_logger: Any
) -> None:
    runner = _runner(default_registry(), recording_logger)
    runner.apply_pending(handle)
    handle.execute(
        "INSERT INTO schema_migrations (version, name, applied_at) VALUES (5, 'future', 0)"
    )

    with pytest.raises(MigrationError, match="newer than this release"):
        runner.apply_pending(handle)
    assert runner.current_version(handle) == 5


@pytest.mark.unit
def test_explicit_current_version_skips_lower_entries(
    handle: DatabaseHandle, recording_logger: Any
) -> None:
    runner = _runner(default_registry(), recording_logger)

    applied = runner.apply_pending(handle, current_version=1)

    assert [record.version for record in applied] == [2]
    assert not handle.table_exists("suppliers")
