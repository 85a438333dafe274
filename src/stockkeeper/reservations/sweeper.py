"""
Expiration Sweeper

Periodically expires HELD reservations whose TTL has elapsed and
returns their quantity to availability.
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..errors import PersistenceError
from ..events.taxonomy import AggregateType, StockEventType
from ..observability import create_span, record_counter
from ..outbox.models import utcnow
from ..outbox.store import OutboxStore
from ..scheduling import PeriodicTask
from .ledger import ReservationLedger
from .locks import KeyedLocks
from .models import MovementType, ReservationStatus, StockMovement, StockReservation

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """
    Expires stale holds under the same per-product locks as the coordinator.

    The status change is conditional (still HELD, expired before now), so
    a reservation confirmed a moment earlier is never expired. Sweeps
    never overlap: a call made while one is running returns 0.

    Usage:
        sweeper = ExpirationSweeper(ledger, outbox, coordinator.locks, interval=5.0)
        await sweeper.start()
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        outbox: OutboxStore,
        locks: KeyedLocks,
        interval: float = 5.0,
        batch_size: int = 500,
        retention_days: Optional[int] = 7,
        clock: Callable[[], datetime] = utcnow,
        on_commit: Optional[Callable[[], None]] = None
    ):
        self._ledger = ledger
        self._outbox = outbox
        self._db = outbox.db
        self._locks = locks
        self.batch_size = batch_size
        self.retention = timedelta(days=retention_days) if retention_days else None
        self._clock = clock
        self._on_commit = on_commit
        self._sweep_lock = asyncio.Lock()
        self._task = PeriodicTask("expiration-sweeper", interval, self._tick)

    @property
    def running(self) -> bool:
        return self._task.running

    async def start(self):
        await self._task.start()

    async def stop(self):
        await self._task.stop()

    async def _tick(self, _worker: int) -> int:
        await self.run_once()
        return 0

    async def run_once(self) -> int:
        """
        Expire everything that is due.

        Returns:
            Number of reservations expired (0 if another sweep is running)
        """
        if self._sweep_lock.locked():
            logger.debug("Sweep already in progress, skipping")
            return 0

        async with self._sweep_lock:
            with create_span("reservations.sweep") as span:
                now = self._clock()
                due = await self._ledger.find_expired(now, self.batch_size)

                expired = 0
                for order_id, rows in self._by_order(due).items():
                    try:
                        expired += await self._expire_order(order_id, rows, now)
                    except PersistenceError as e:
                        logger.error(f"Failed to expire reservations of order {order_id}: {e}")

                if self.retention is not None:
                    purged = await self._ledger.purge_terminal_older_than(now - self.retention)
                    if purged:
                        logger.info(f"Purged {purged} terminal reservations")

                span.set_attribute("reservations.expired", expired)

        if expired:
            record_counter("reservations_expired_total", expired)
            logger.info(f"Expired {expired} reservation(s)")
            if self._on_commit is not None:
                self._on_commit()
        return expired

    @staticmethod
    def _by_order(rows: List[StockReservation]) -> Dict[str, List[StockReservation]]:
        grouped: Dict[str, List[StockReservation]] = OrderedDict()
        for row in rows:
            grouped.setdefault(row.order_id, []).append(row)
        return grouped

    async def _expire_order(self, order_id: str, candidates: List[StockReservation], now: datetime) -> int:
        candidate_ids = {r.id for r in candidates}
        products = {r.product_id for r in candidates}

        async with self._locks.acquire_many(products):
            async with self._db.transaction() as tx:
                await self._ledger.load_inventory(products, tx, lock=True)
                # Re-read under the locks: a confirm or release may have won
                rows = [
                    r for r in await self._ledger.for_order(order_id, tx)
                    if r.id in candidate_ids and r.is_expired(now)
                ]
                if not rows:
                    return 0

                count = await self._ledger.transition(
                    tx, [r.id for r in rows], ReservationStatus.EXPIRED, now, expired_before=now
                )
                for row in rows:
                    await self._ledger.record_movement(tx, StockMovement(
                        product_id=row.product_id,
                        order_id=order_id,
                        movement_type=MovementType.RESERVATION_EXPIRED,
                        quantity=row.quantity,
                        created_at=now,
                    ))
                await self._outbox.append(
                    tx,
                    order_id,
                    AggregateType.STOCK_RESERVATION.value,
                    StockEventType.EXPIRED.value,
                    {
                        "order_id": order_id,
                        "items": [
                            {"reservation_id": r.id, "product_id": r.product_id, "quantity": r.quantity}
                            for r in rows
                        ],
                    }
                )

        logger.debug(f"Expired {count} reservation(s) of order {order_id}")
        return count
