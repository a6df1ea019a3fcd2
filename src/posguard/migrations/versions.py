"""Migrations shipped with this release.

Each probe inspects the schema directly (``PRAGMA table_info``,
``sqlite_master``) so a migration whose effect already exists is recorded
without re-running its body.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from posguard.migrations.registry import Migration, MigrationOutcome, MigrationRegistry

if TYPE_CHECKING:
    from posguard.persistence.database import DatabaseHandle

_SUPPLIER_INDEXES: tuple[tuple[str, str], ...] = (
    ("idx_suppliers_business_id", "business_id"),
    ("idx_suppliers_name", "name"),
    ("idx_suppliers_is_active", "is_active"),
)

_USERNAME_INDEX = "users_username_unique"


def _suppliers_present(handle: DatabaseHandle) -> bool:
    if not handle.table_exists("suppliers"):
        return False
    existing = handle.index_names("suppliers")
    return all(name in existing for name, _ in _SUPPLIER_INDEXES)


def _add_suppliers(handle: DatabaseHandle) -> MigrationOutcome:
    details: list[str] = []
    if not handle.table_exists("suppliers"):
        handle.execute(
            """
            CREATE TABLE suppliers (
                id TEXT PRIMARY KEY NOT NULL,
                business_id TEXT NOT NULL,
                name TEXT NOT NULL,
                contact_person TEXT,
                email TEXT,
                phone TEXT,
                address TEXT,
                city TEXT,
                country TEXT,
                tax_id TEXT,
                payment_terms TEXT,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(business_id) REFERENCES businesses(id)
            )
            """
        )
        details.append("created table suppliers")
    existing = handle.index_names("suppliers")
    for index_name, column in _SUPPLIER_INDEXES:
        if index_name in existing:
            continue
        handle.execute(f"CREATE INDEX {index_name} ON suppliers({column})")
        details.append(f"created index {index_name}")
    return MigrationOutcome(changed=bool(details), details=tuple(details))


def _username_pin_present(handle: DatabaseHandle) -> bool:
    if not handle.table_exists("users"):
        return False
    columns = handle.column_names("users")
    if "username" not in columns or "pin" not in columns:
        return False
    return _USERNAME_INDEX in handle.index_names("users")


def _derive_username(email: str | None, user_id: str, taken: set[str]) -> str:
    local_part = (email or "").split("@", 1)[0].strip()
    base = local_part or f"user_{user_id[:8]}"
    candidate = base
    counter = 2
    while candidate in taken:
        candidate = f"{base}{counter}"
        counter += 1
    taken.add(candidate)
    return candidate


def _add_username_pin_auth(handle: DatabaseHandle) -> MigrationOutcome:
    details: list[str] = []
    columns = handle.column_names("users")
    if "username" not in columns:
        handle.execute("ALTER TABLE users ADD COLUMN username TEXT NOT NULL DEFAULT ''")
        details.append("added column users.username")
    if "pin" not in columns:
        handle.execute("ALTER TABLE users ADD COLUMN pin TEXT NOT NULL DEFAULT ''")
        details.append("added column users.pin")

    # Usernames must be unique before the index can exist.
    rows = handle.query_all("SELECT id, email, username FROM users ORDER BY created_at, id")
    taken = {str(row["username"]) for row in rows if row["username"]}
    backfilled = 0
    for row in rows:
        if row["username"]:
            continue
        username = _derive_username(
            None if row["email"] is None else str(row["email"]), str(row["id"]), taken
        )
        handle.execute("UPDATE users SET username = ? WHERE id = ?", (username, str(row["id"])))
        backfilled += 1
    if backfilled:
        details.append(f"backfilled {backfilled} username(s) from e-mail")

    if _USERNAME_INDEX not in handle.index_names("users"):
        handle.execute(f"CREATE UNIQUE INDEX {_USERNAME_INDEX} ON users(username)")
        details.append(f"created index {_USERNAME_INDEX}")
    return MigrationOutcome(changed=bool(details), details=tuple(details))


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        name="add_suppliers",
        description="Add the suppliers table with business, name and active-flag indexes",
        probe=_suppliers_present,
        apply=_add_suppliers,
    ),
    Migration(
        version=2,
        name="add_username_pin_auth",
        description="Add username/PIN login columns to users and backfill usernames",
        probe=_username_pin_present,
        apply=_add_username_pin_auth,
    ),
)


def default_registry() -> MigrationRegistry:
    return MigrationRegistry(MIGRATIONS)


__all__ = ["MIGRATIONS", "default_registry"]
