from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from posguard.migrations import MIGRATIONS, MigrationRegistry, MigrationRunner
from posguard.persistence import DatabaseError, DatabaseHandle, create_baseline_schema

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

ADD_SUPPLIERS, ADD_USERNAME_PIN = MIGRATIONS


@pytest.fixture
def handle(db_path: Path) -> Iterator[DatabaseHandle]:
    with DatabaseHandle.open(db_path) as opened:
        create_baseline_schema(opened)
        yield opened


@pytest.mark.unit
def test_suppliers_migration_creates_table_and_indexes(handle: DatabaseHandle) -> None:
    assert not ADD_SUPPLIERS.probe(handle)

    outcome = ADD_SUPPLIERS.apply(handle)

    assert outcome.changed
    assert "created table suppliers" in outcome.details
    assert {"idx_suppliers_business_id", "idx_suppliers_name", "idx_suppliers_is_active"} <= set(
        handle.index_names("suppliers")
    )
    assert ADD_SUPPLIERS.probe(handle)


@pytest.mark.unit
def test_suppliers_migration_completes_a_partial_table(handle: DatabaseHandle) -> None:
    handle.execute(
        "CREATE TABLE suppliers (id TEXT PRIMARY KEY, business_id TEXT, name TEXT, "
        "is_active INTEGER, created_at TEXT, updated_at TEXT)"
    )
    assert not ADD_SUPPLIERS.probe(handle)

    outcome = ADD_SUPPLIERS.apply(handle)

    assert "created table suppliers" not in outcome.details
    assert len(outcome.details) == 3
    assert ADD_SUPPLIERS.probe(handle)


@pytest.mark.unit
def test_username_backfill_from_email_with_collisions(
    handle: DatabaseHandle, seed_user: Callable[..., None]
) -> None:
    seed_user(handle, user_id="u-0001", email="sam@shop.example")
    seed_user(handle, user_id="u-0002", email="sam@other.example")
    seed_user(handle, user_id="u-0003", email="sam@third.example")
    seed_user(handle, user_id="abcdef123456", email="")

    outcome = ADD_USERNAME_PIN.apply(handle)

    rows = handle.query_all("SELECT id, username, pin FROM users ORDER BY id")
    assert {row["id"]: row["username"] for row in rows} == {
        "abcdef123456": "user_abcdef12",
        "u-0001": "sam",
        "u-0002": "sam2",
        "u-0003": "sam3",
    }
    assert all(row["pin"] == "" for row in rows)
    assert "backfilled 4 username(s) from e-mail" in outcome.details
    assert ADD_USERNAME_PIN.probe(handle)


@pytest.mark.unit
def test_username_index_enforces_uniqueness(
    handle: DatabaseHandle, seed_user: Callable[..., None]
) -> None:
    seed_user(handle, user_id="u-0001", email="lee@shop.example")
    ADD_USERNAME_PIN.apply(handle)
    seed_user(handle, user_id="u-0002", email="kim@shop.example")
    handle.execute("UPDATE users SET username = 'other' WHERE id = 'u-0002'")

    with pytest.raises(DatabaseError):
        handle.execute("UPDATE users SET username = 'lee' WHERE id = 'u-0002'")


@pytest.mark.unit
def test_existing_usernames_are_kept(
    handle: DatabaseHandle, seed_user: Callable[..., None], recording_logger: Any
) -> None:
    seed_user(handle, user_id="u-0001", email="pat@shop.example")
    handle.execute("ALTER TABLE users ADD COLUMN username TEXT NOT NULL DEFAULT ''")
    handle.execute("UPDATE users SET username = 'manager' WHERE id = 'u-0001'")
    seed_user(handle, user_id="u-0002", email="manager@shop.example")

    MigrationRunner(MigrationRegistry(MIGRATIONS), logger=recording_logger).apply_pending(handle)

    rows = handle.query_all("SELECT id, username FROM users ORDER BY id")
    names = {row["id"]: row["username"] for row in rows}
    assert names == {"u-0001": "manager", "u-0002": "manager2"}
    assert "pin" in handle.column_names("users")
