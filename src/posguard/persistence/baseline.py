"""Version-0 baseline schema created for a fresh point-of-sale database.

Registered migrations start at version 1 and build on these tables.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from posguard.persistence.database import DatabaseHandle

BASELINE_TABLES: Final[tuple[str, ...]] = (
    "businesses",
    "users",
    "categories",
    "products",
    "shifts",
    "transactions",
    "transaction_items",
)

_BASELINE_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS businesses (
        id TEXT PRIMARY KEY NOT NULL,
        name TEXT NOT NULL,
        address TEXT NOT NULL DEFAULT '',
        phone TEXT NOT NULL DEFAULT '',
        vat_number TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY NOT NULL,
        business_id TEXT NOT NULL,
        email TEXT NOT NULL,
        password TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL CHECK (role IN ('admin', 'manager', 'cashier')),
        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY(business_id) REFERENCES businesses(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS categories (
        id TEXT PRIMARY KEY NOT NULL,
        business_id TEXT NOT NULL,
        name TEXT NOT NULL,
        parent_id TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY(business_id) REFERENCES businesses(id),
        FOREIGN KEY(parent_id) REFERENCES categories(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY NOT NULL,
        business_id TEXT NOT NULL,
        category_id TEXT,
        name TEXT NOT NULL,
        sku TEXT NOT NULL,
        plu TEXT,
        price_cents INTEGER NOT NULL CHECK (price_cents >= 0),
        stock_level REAL NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY(business_id) REFERENCES businesses(id),
        FOREIGN KEY(category_id) REFERENCES categories(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shifts (
        id TEXT PRIMARY KEY NOT NULL,
        user_id TEXT NOT NULL,
        business_id TEXT NOT NULL,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        starting_cash_cents INTEGER NOT NULL DEFAULT 0,
        final_cash_cents INTEGER,
        FOREIGN KEY(user_id) REFERENCES users(id),
        FOREIGN KEY(business_id) REFERENCES businesses(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY NOT NULL,
        shift_id TEXT NOT NULL,
        business_id TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('sale', 'refund', 'void')),
        status TEXT NOT NULL,
        total_cents INTEGER NOT NULL,
        payment_method TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY(shift_id) REFERENCES shifts(id),
        FOREIGN KEY(business_id) REFERENCES businesses(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transaction_items (
        id TEXT PRIMARY KEY NOT NULL,
        transaction_id TEXT NOT NULL,
        product_id TEXT NOT NULL,
        quantity REAL NOT NULL CHECK (quantity > 0),
        unit_price_cents INTEGER NOT NULL,
        total_cents INTEGER NOT NULL,
        FOREIGN KEY(transaction_id) REFERENCES transactions(id) ON DELETE CASCADE,
        FOREIGN KEY(product_id) REFERENCES products(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_business ON users(business_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_products_business_sku ON products(business_id, sku)",
    "CREATE INDEX IF NOT EXISTS idx_products_category ON products(category_id)",
    "CREATE INDEX IF NOT EXISTS idx_shifts_user_started ON shifts(user_id, started_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_shift ON transactions(shift_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_transaction_items_tx ON transaction_items(transaction_id)",
)


def create_baseline_schema(handle: DatabaseHandle) -> None:
    """Create every baseline table and index; safe to call repeatedly."""

    with handle.transaction(immediate=True):
        for statement in _BASELINE_STATEMENTS:
            handle.execute(statement)


__all__ = ["BASELINE_TABLES", "create_baseline_schema"]
