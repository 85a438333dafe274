"""
Schema definitions for the outbox, inbox and reservation tables.

Both dialects describe the same tables; SQLite keeps timestamps as
fixed-width ISO-8601 text so lexical order equals time order.
"""

import logging

from .adapter import DatabaseAdapter, DatabaseBackend

logger = logging.getLogger(__name__)


POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox_events (
    id               TEXT PRIMARY KEY,
    sequence         BIGSERIAL UNIQUE,
    aggregate_id     TEXT NOT NULL,
    aggregate_type   TEXT NOT NULL,
    event_type       TEXT NOT NULL,
    payload          TEXT NOT NULL,
    created_at       TIMESTAMPTZ NOT NULL,
    processed        BOOLEAN NOT NULL DEFAULT FALSE,
    processed_at     TIMESTAMPTZ,
    retry_count      INTEGER NOT NULL DEFAULT 0,
    max_retries      INTEGER NOT NULL,
    last_error       TEXT,
    next_attempt_at  TIMESTAMPTZ,
    claimed_by       TEXT,
    claimed_until    TIMESTAMPTZ,
    dead_lettered_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_outbox_pending
    ON outbox_events (processed, created_at, sequence);
CREATE INDEX IF NOT EXISTS idx_outbox_aggregate
    ON outbox_events (aggregate_type, aggregate_id);

CREATE TABLE IF NOT EXISTS inbox_entries (
    event_id     TEXT NOT NULL,
    consumer_id  TEXT NOT NULL,
    processed_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (event_id, consumer_id)
);

CREATE TABLE IF NOT EXISTS inventory_items (
    product_id    TEXT PRIMARY KEY,
    on_hand       INTEGER NOT NULL DEFAULT 0 CHECK (on_hand >= 0),
    committed     INTEGER NOT NULL DEFAULT 0 CHECK (committed >= 0),
    reorder_level INTEGER NOT NULL DEFAULT 0 CHECK (reorder_level >= 0),
    updated_at    TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS stock_reservations (
    id         TEXT PRIMARY KEY,
    order_id   TEXT NOT NULL,
    product_id TEXT NOT NULL,
    quantity   INTEGER NOT NULL CHECK (quantity > 0),
    status     TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_reservations_order
    ON stock_reservations (order_id);
CREATE INDEX IF NOT EXISTS idx_reservations_product_status
    ON stock_reservations (product_id, status);
CREATE INDEX IF NOT EXISTS idx_reservations_expiry
    ON stock_reservations (status, expires_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_active_line
    ON stock_reservations (order_id, product_id)
    WHERE status IN ('HELD', 'CONFIRMED');

CREATE TABLE IF NOT EXISTS stock_movements (
    id            TEXT PRIMARY KEY,
    product_id    TEXT NOT NULL,
    order_id      TEXT,
    movement_type TEXT NOT NULL,
    quantity      INTEGER NOT NULL,
    created_at    TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_movements_product
    ON stock_movements (product_id, created_at);

CREATE TABLE IF NOT EXISTS low_stock_alerts (
    id              TEXT PRIMARY KEY,
    product_id      TEXT NOT NULL,
    available       INTEGER NOT NULL,
    reorder_level   INTEGER NOT NULL,
    status          TEXT NOT NULL,
    message         TEXT,
    created_at      TIMESTAMPTZ NOT NULL,
    acknowledged_at TIMESTAMPTZ,
    resolved_at     TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_low_stock_alerts_product
    ON low_stock_alerts (product_id, status, created_at);
"""


SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox_events (
    sequence         INTEGER PRIMARY KEY AUTOINCREMENT,
    id               TEXT NOT NULL UNIQUE,
    aggregate_id     TEXT NOT NULL,
    aggregate_type   TEXT NOT NULL,
    event_type       TEXT NOT NULL,
    payload          TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    processed        INTEGER NOT NULL DEFAULT 0,
    processed_at     TEXT,
    retry_count      INTEGER NOT NULL DEFAULT 0,
    max_retries      INTEGER NOT NULL,
    last_error       TEXT,
    next_attempt_at  TEXT,
    claimed_by       TEXT,
    claimed_until    TEXT,
    dead_lettered_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_outbox_pending
    ON outbox_events (processed, created_at, sequence);
CREATE INDEX IF NOT EXISTS idx_outbox_aggregate
    ON outbox_events (aggregate_type, aggregate_id);

CREATE TABLE IF NOT EXISTS inbox_entries (
    event_id     TEXT NOT NULL,
    consumer_id  TEXT NOT NULL,
    processed_at TEXT NOT NULL,
    PRIMARY KEY (event_id, consumer_id)
);

CREATE TABLE IF NOT EXISTS inventory_items (
    product_id    TEXT PRIMARY KEY,
    on_hand       INTEGER NOT NULL DEFAULT 0 CHECK (on_hand >= 0),
    committed     INTEGER NOT NULL DEFAULT 0 CHECK (committed >= 0),
    reorder_level INTEGER NOT NULL DEFAULT 0 CHECK (reorder_level >= 0),
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stock_reservations (
    id         TEXT PRIMARY KEY,
    order_id   TEXT NOT NULL,
    product_id TEXT NOT NULL,
    quantity   INTEGER NOT NULL CHECK (quantity > 0),
    status     TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_reservations_order
    ON stock_reservations (order_id);
CREATE INDEX IF NOT EXISTS idx_reservations_product_status
    ON stock_reservations (product_id, status);
CREATE INDEX IF NOT EXISTS idx_reservations_expiry
    ON stock_reservations (status, expires_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_active_line
    ON stock_reservations (order_id, product_id)
    WHERE status IN ('HELD', 'CONFIRMED');

CREATE TABLE IF NOT EXISTS stock_movements (
    id            TEXT PRIMARY KEY,
    product_id    TEXT NOT NULL,
    order_id      TEXT,
    movement_type TEXT NOT NULL,
    quantity      INTEGER NOT NULL,
    created_at    TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_movements_product
    ON stock_movements (product_id, created_at);

CREATE TABLE IF NOT EXISTS low_stock_alerts (
    id              TEXT PRIMARY KEY,
    product_id      TEXT NOT NULL,
    available       INTEGER NOT NULL,
    reorder_level   INTEGER NOT NULL,
    status          TEXT NOT NULL,
    message         TEXT,
    created_at      TEXT NOT NULL,
    acknowledged_at TEXT,
    resolved_at     TEXT
);
CREATE INDEX IF NOT EXISTS idx_low_stock_alerts_product
    ON low_stock_alerts (product_id, status, created_at);
"""


def schema_for(backend: DatabaseBackend) -> str:
    if backend == DatabaseBackend.POSTGRESQL:
        return POSTGRES_SCHEMA
    return SQLITE_SCHEMA


async def ensure_schema(db: DatabaseAdapter) -> None:
    """Create all tables and indexes if they do not exist yet."""
    await db.execute_script(schema_for(db.backend))
    logger.info(f"Schema ensured for backend {db.backend.value}")
