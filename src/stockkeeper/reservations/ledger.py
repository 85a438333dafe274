"""
Reservation Ledger

Durable per-product record of stock holds, inventory positions and the
stock movement audit trail.

Every method takes the connection to run on: pass the open Transaction
for anything that must commit together with other writes, or leave it
out to read through the adapter.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from ..database.adapter import DatabaseAdapter, Transaction, affected_rows, placeholders
from .models import (
    AlertStatus,
    InventoryItem,
    LowStockAlert,
    ReservationStatus,
    StockMovement,
    StockReservation,
)

logger = logging.getLogger(__name__)

Conn = Union[DatabaseAdapter, Transaction]

_RESERVATION_COLUMNS = (
    "id, order_id, product_id, quantity, status, expires_at, created_at, updated_at"
)

_INVENTORY_COLUMNS = "product_id, on_hand, committed, reorder_level, updated_at"

_ALERT_COLUMNS = (
    "id, product_id, available, reorder_level, status, message, "
    "created_at, acknowledged_at, resolved_at"
)


class ReservationLedger:
    """Queries and writes on the reservation, inventory, movement and alert tables."""

    def __init__(self, db: DatabaseAdapter):
        self._db = db

    def _conn(self, conn: Optional[Conn]) -> Conn:
        return conn if conn is not None else self._db

    # Reservations

    async def for_order(self, order_id: str, conn: Optional[Conn] = None) -> List[StockReservation]:
        """All reservation rows of an order, oldest first."""
        rows = await self._conn(conn).fetch(
            f"""
            SELECT {_RESERVATION_COLUMNS} FROM stock_reservations
            WHERE order_id = $1
            ORDER BY created_at ASC, product_id ASC
            """,
            str(order_id)
        )
        return [StockReservation(**row) for row in rows]

    async def insert(self, tx: Transaction, reservations: Iterable[StockReservation]) -> None:
        for reservation in reservations:
            await tx.execute(
                f"""
                INSERT INTO stock_reservations ({_RESERVATION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                reservation.id,
                reservation.order_id,
                reservation.product_id,
                reservation.quantity,
                reservation.status.value,
                reservation.expires_at,
                reservation.created_at,
                reservation.updated_at
            )

    async def transition(
        self,
        tx: Transaction,
        reservation_ids: List[str],
        target: ReservationStatus,
        now: datetime,
        expired_before: Optional[datetime] = None,
        valid_at: Optional[datetime] = None
    ) -> int:
        """
        Move HELD rows to a terminal status.

        The update is conditional on the row still being HELD, and
        optionally on having expired before / still being valid at a
        given instant. Returns the number of rows that moved.
        """
        if not reservation_ids:
            return 0

        args: List[Any] = [target.value, now, ReservationStatus.HELD.value]
        condition = ""
        if expired_before is not None:
            condition = " AND expires_at < $4"
            args.append(expired_before)
        elif valid_at is not None:
            condition = " AND expires_at >= $4"
            args.append(valid_at)

        status = await tx.execute(
            f"""
            UPDATE stock_reservations
            SET status = $1, updated_at = $2
            WHERE status = $3{condition}
              AND id IN ({placeholders(len(args) + 1, len(reservation_ids))})
            """,
            *args,
            *reservation_ids
        )
        return affected_rows(status)

    async def set_expiry(
        self,
        tx: Transaction,
        reservation_id: str,
        expires_at: datetime,
        now: datetime
    ) -> int:
        status = await tx.execute(
            """
            UPDATE stock_reservations
            SET expires_at = $1, updated_at = $2
            WHERE id = $3 AND status = $4
            """,
            expires_at,
            now,
            reservation_id,
            ReservationStatus.HELD.value
        )
        return affected_rows(status)

    async def find_expired(self, now: datetime, limit: int = 500, conn: Optional[Conn] = None) -> List[StockReservation]:
        """HELD rows whose expires_at lies before now, soonest first."""
        rows = await self._conn(conn).fetch(
            f"""
            SELECT {_RESERVATION_COLUMNS} FROM stock_reservations
            WHERE status = $1 AND expires_at < $2
            ORDER BY expires_at ASC
            LIMIT $3
            """,
            ReservationStatus.HELD.value,
            now,
            limit
        )
        return [StockReservation(**row) for row in rows]

    async def purge_terminal_older_than(self, cutoff: datetime, conn: Optional[Conn] = None) -> int:
        """Delete RELEASED/EXPIRED/CONFIRMED rows last touched before cutoff."""
        status = await self._conn(conn).execute(
            """
            DELETE FROM stock_reservations
            WHERE status IN ($1, $2, $3) AND updated_at < $4
            """,
            ReservationStatus.CONFIRMED.value,
            ReservationStatus.RELEASED.value,
            ReservationStatus.EXPIRED.value,
            cutoff
        )
        return affected_rows(status)

    # Inventory

    async def load_inventory(
        self,
        product_ids: Iterable[str],
        conn: Optional[Conn] = None,
        lock: bool = False
    ) -> Dict[str, InventoryItem]:
        """
        Stock positions with their current held totals.

        With lock=True (inside a transaction) the inventory rows are
        locked FOR UPDATE on PostgreSQL, in product order.
        """
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        conn = self._conn(conn)
        lock_clause = conn.for_update if lock and isinstance(conn, Transaction) else ""

        rows = await conn.fetch(
            f"""
            SELECT {_INVENTORY_COLUMNS}
            FROM inventory_items
            WHERE product_id IN ({placeholders(1, len(ids))})
            ORDER BY product_id{lock_clause}
            """,
            *ids
        )
        return await self._with_held(rows, conn)

    async def inventory_levels(self, conn: Optional[Conn] = None) -> Dict[str, InventoryItem]:
        """Every tracked product with its held total."""
        conn = self._conn(conn)
        rows = await conn.fetch(
            f"SELECT {_INVENTORY_COLUMNS} FROM inventory_items ORDER BY product_id"
        )
        return await self._with_held(rows, conn)

    async def _with_held(self, rows: List[Dict[str, Any]], conn: Conn) -> Dict[str, InventoryItem]:
        items = {row["product_id"]: InventoryItem(**row) for row in rows}
        held = await self.held_quantities(list(items), conn)
        for product_id, quantity in held.items():
            items[product_id].held = quantity
        return items

    async def held_quantities(self, product_ids: List[str], conn: Optional[Conn] = None) -> Dict[str, int]:
        if not product_ids:
            return {}
        rows = await self._conn(conn).fetch(
            f"""
            SELECT product_id, SUM(quantity) AS held
            FROM stock_reservations
            WHERE status = $1 AND product_id IN ({placeholders(2, len(product_ids))})
            GROUP BY product_id
            """,
            ReservationStatus.HELD.value,
            *product_ids
        )
        return {row["product_id"]: int(row["held"] or 0) for row in rows}

    async def ensure_item(self, tx: Transaction, product_id: str, now: datetime) -> None:
        """Create an empty inventory row if the product has none."""
        await tx.execute(
            """
            INSERT INTO inventory_items (product_id, on_hand, committed, updated_at)
            VALUES ($1, 0, 0, $2)
            ON CONFLICT (product_id) DO NOTHING
            """,
            product_id,
            now
        )

    async def commit_stock(self, tx: Transaction, product_id: str, quantity: int, now: datetime) -> None:
        """Take confirmed quantity out of on_hand for good."""
        await tx.execute(
            """
            UPDATE inventory_items
            SET on_hand = on_hand - $1, committed = committed + $2, updated_at = $3
            WHERE product_id = $4
            """,
            quantity,
            quantity,
            now,
            product_id
        )

    async def set_on_hand(self, tx: Transaction, product_id: str, on_hand: int, now: datetime) -> None:
        await tx.execute(
            """
            UPDATE inventory_items
            SET on_hand = $1, updated_at = $2
            WHERE product_id = $3
            """,
            on_hand,
            now,
            product_id
        )

    async def set_reorder_level(self, tx: Transaction, product_id: str, reorder_level: int, now: datetime) -> None:
        await tx.execute(
            """
            UPDATE inventory_items
            SET reorder_level = $1, updated_at = $2
            WHERE product_id = $3
            """,
            reorder_level,
            now,
            product_id
        )

    # Movements

    async def record_movement(self, tx: Transaction, movement: StockMovement) -> None:
        await tx.execute(
            """
            INSERT INTO stock_movements (id, product_id, order_id, movement_type, quantity, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            movement.id,
            movement.product_id,
            movement.order_id,
            movement.movement_type.value,
            movement.quantity,
            movement.created_at
        )

    async def movements(self, product_id: str, conn: Optional[Conn] = None) -> List[StockMovement]:
        rows = await self._conn(conn).fetch(
            """
            SELECT id, product_id, order_id, movement_type, quantity, created_at
            FROM stock_movements
            WHERE product_id = $1
            ORDER BY created_at ASC
            """,
            product_id
        )
        return [StockMovement(**row) for row in rows]

    # Low-stock alerts

    async def insert_alert(self, tx: Transaction, alert: LowStockAlert) -> None:
        await tx.execute(
            f"""
            INSERT INTO low_stock_alerts ({_ALERT_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            alert.id,
            alert.product_id,
            alert.available,
            alert.reorder_level,
            alert.status.value,
            alert.message,
            alert.created_at,
            alert.acknowledged_at,
            alert.resolved_at
        )

    async def latest_alert(
        self,
        product_id: str,
        status: AlertStatus,
        conn: Optional[Conn] = None
    ) -> Optional[LowStockAlert]:
        row = await self._conn(conn).fetchrow(
            f"""
            SELECT {_ALERT_COLUMNS} FROM low_stock_alerts
            WHERE product_id = $1 AND status = $2
            ORDER BY created_at DESC
            LIMIT 1
            """,
            product_id,
            status.value
        )
        return LowStockAlert(**row) if row else None

    async def get_alert(self, alert_id: str, conn: Optional[Conn] = None) -> Optional[LowStockAlert]:
        row = await self._conn(conn).fetchrow(
            f"SELECT {_ALERT_COLUMNS} FROM low_stock_alerts WHERE id = $1",
            alert_id
        )
        return LowStockAlert(**row) if row else None

    async def list_alerts(
        self,
        status: Optional[AlertStatus] = None,
        product_id: Optional[str] = None,
        conn: Optional[Conn] = None
    ) -> List[LowStockAlert]:
        """Alerts newest first, optionally filtered by status and product."""
        conditions = []
        args: List[Any] = []
        if status is not None:
            args.append(status.value)
            conditions.append(f"status = ${len(args)}")
        if product_id is not None:
            args.append(product_id)
            conditions.append(f"product_id = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        rows = await self._conn(conn).fetch(
            f"""
            SELECT {_ALERT_COLUMNS} FROM low_stock_alerts
            {where}
            ORDER BY created_at DESC
            """,
            *args
        )
        return [LowStockAlert(**row) for row in rows]

    async def set_alert_status(
        self,
        alert_id: str,
        target: AlertStatus,
        now: datetime,
        from_statuses: Iterable[AlertStatus],
        conn: Optional[Conn] = None
    ) -> int:
        """Move an alert to target if it is in one of from_statuses."""
        sources = [s.value for s in from_statuses]
        stamp = "acknowledged_at" if target == AlertStatus.ACKNOWLEDGED else "resolved_at"
        status = await self._conn(conn).execute(
            f"""
            UPDATE low_stock_alerts
            SET status = $1, {stamp} = $2
            WHERE id = $3 AND status IN ({placeholders(4, len(sources))})
            """,
            target.value,
            now,
            alert_id,
            *sources
        )
        return affected_rows(status)

    async def alert_counts(self, conn: Optional[Conn] = None) -> Dict[str, int]:
        rows = await self._conn(conn).fetch(
            "SELECT status, COUNT(*) AS count FROM low_stock_alerts GROUP BY status"
        )
        counts = {status.value: 0 for status in AlertStatus}
        for row in rows:
            counts[row["status"]] = int(row["count"])
        counts["total"] = sum(counts.values())
        return counts

    # Reporting

    async def statistics(self, conn: Optional[Conn] = None) -> Dict[str, Any]:
        """Reservation counts and quantities per status, plus inventory totals."""
        conn = self._conn(conn)
        rows = await conn.fetch(
            """
            SELECT status, COUNT(*) AS count, COALESCE(SUM(quantity), 0) AS quantity
            FROM stock_reservations
            GROUP BY status
            """
        )
        by_status = {status.value: {"count": 0, "quantity": 0} for status in ReservationStatus}
        for row in rows:
            by_status[row["status"]] = {"count": int(row["count"]), "quantity": int(row["quantity"])}

        totals = await conn.fetchrow(
            """
            SELECT COUNT(*) AS products,
                   COALESCE(SUM(on_hand), 0) AS on_hand,
                   COALESCE(SUM(committed), 0) AS committed
            FROM inventory_items
            """
        )
        return {
            "reservations": by_status,
            "products": int(totals["products"]) if totals else 0,
            "on_hand": int(totals["on_hand"]) if totals else 0,
            "committed": int(totals["committed"]) if totals else 0,
            "held": by_status[ReservationStatus.HELD.value]["quantity"],
        }
