"""
Database abstraction layer supporting SQLite and PostgreSQL.

Usage:
    from stockkeeper.database import DatabaseAdapter, DatabaseConfig, ensure_schema

    db = DatabaseAdapter(DatabaseConfig.from_settings(settings))
    await db.connect()
    await ensure_schema(db)

    async with db.transaction() as tx:
        await tx.execute("UPDATE inventory_items SET on_hand = $1 WHERE product_id = $2", 5, "sku-1")
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    Transaction,
    affected_rows,
    create_database,
    placeholders,
)
from .schema import ensure_schema, schema_for

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "Transaction",
    "affected_rows",
    "create_database",
    "placeholders",
    "ensure_schema",
    "schema_for",
]
