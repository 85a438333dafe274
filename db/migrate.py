#!/usr/bin/env python3
"""
Database Migration Runner

Usage:
    python -m db.migrate              # Create missing tables and indexes
    python -m db.migrate --status     # Show table status
    python -m db.migrate --print      # Print the DDL for the configured backend

Environment:
    DATABASE_BACKEND - sqlite (default) or postgresql
    DATABASE_URL     - PostgreSQL connection string
    SQLITE_PATH      - SQLite database file
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from stockkeeper.config import Settings
from stockkeeper.database import DatabaseBackend, create_database, ensure_schema, schema_for
from stockkeeper.errors import PersistenceError

TABLES = (
    "outbox_events",
    "inbox_entries",
    "inventory_items",
    "stock_reservations",
    "stock_movements",
    "low_stock_alerts",
)


def _target(settings: Settings) -> str:
    if settings.database_backend == DatabaseBackend.POSTGRESQL.value:
        url = settings.database_url
        return url.split("@")[1] if "@" in url else url
    return settings.sqlite_path


async def run_migrations(settings: Settings) -> None:
    """Create every table and index that does not exist yet."""
    print("=" * 60)
    print("Stockkeeper Database Migration Runner")
    print("=" * 60)
    print(f"\nBackend: {settings.database_backend}")
    print(f"Database: {_target(settings)}\n")

    db = await create_database(settings)
    try:
        await ensure_schema(db)
    finally:
        await db.disconnect()

    print("Schema is up to date.")


async def show_status(settings: Settings) -> None:
    """Show row counts of the stockkeeper tables."""
    print("=" * 60)
    print("Migration Status")
    print("=" * 60)
    print(f"\nDatabase: {_target(settings)}\n")

    db = await create_database(settings)
    try:
        for table in TABLES:
            try:
                count = await db.fetchval(f"SELECT COUNT(*) FROM {table}")
                print(f"  {table}: {count} row(s)")
            except PersistenceError:
                print(f"  {table}: missing")
    finally:
        await db.disconnect()


def main() -> None:
    parser = argparse.ArgumentParser(description="Stockkeeper schema migrations")
    parser.add_argument("--status", action="store_true", help="Show table status")
    parser.add_argument("--print", dest="print_ddl", action="store_true", help="Print DDL and exit")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    args = parser.parse_args()

    settings = Settings.from_env(args.env_file)

    if args.print_ddl:
        print(schema_for(DatabaseBackend(settings.database_backend)))
        return

    try:
        if args.status:
            asyncio.run(show_status(settings))
        else:
            asyncio.run(run_migrations(settings))
    except PersistenceError as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
