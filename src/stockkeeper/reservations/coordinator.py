"""
Reservation Coordinator

Reserve / confirm / release of stock across multiple order lines with
all-or-nothing semantics.

Every path that changes a product's held total runs under that
product's in-process lock and inside one database transaction (with
the inventory rows locked FOR UPDATE on PostgreSQL). The transaction
also records a stock movement and appends the lifecycle event to the
outbox, so state and event commit together.

On PostgreSQL, reserves of one order also take an advisory lock keyed
on the order, and a partial unique index rejects a second HELD or
CONFIRMED row for the same order and product.
"""

import logging
import time
import zlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..errors import DuplicateKeyError, ReservationConflict, ReservationNotFound
from ..events.taxonomy import AggregateType, InventoryEventType, StockEventType
from ..observability import create_span, record_counter, record_histogram
from ..outbox.models import utcnow
from ..outbox.store import OutboxStore
from .ledger import ReservationLedger
from .locks import KeyedLocks
from .models import (
    AvailabilityCheck,
    AvailabilityReport,
    InventoryItem,
    ItemLike,
    ItemShortage,
    MovementType,
    ReservationResult,
    ReservationStatus,
    ShortageReason,
    StockMovement,
    StockStatus,
    StockReservation,
    merge_items,
)

logger = logging.getLogger(__name__)

# Attempts at locking an order whose product set keeps changing
LOCK_ATTEMPTS = 3


def order_lock_key(order_id: str) -> int:
    """Advisory lock key of an order (PostgreSQL)."""
    return zlib.crc32(f"stock_reservation:{order_id}".encode("utf-8"))


class ReservationCoordinator:
    """
    Timed stock holds for orders.

    Usage:
        coordinator = ReservationCoordinator(ledger, outbox)
        result = await coordinator.reserve("order-1", [("sku-1", 2), ("sku-2", 1)], ttl_minutes=15)
        await coordinator.confirm("order-1")      # payment succeeded
        # or
        await coordinator.release("order-1")      # payment failed
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        outbox: OutboxStore,
        locks: Optional[KeyedLocks] = None,
        default_ttl_minutes: int = 15,
        min_ttl_minutes: int = 1,
        max_ttl_minutes: int = 60,
        clock: Callable[[], datetime] = utcnow,
        on_commit: Optional[Callable[[], None]] = None
    ):
        self._ledger = ledger
        self._outbox = outbox
        self._db = outbox.db
        self.locks = locks or KeyedLocks()
        self.default_ttl_minutes = default_ttl_minutes
        self.min_ttl_minutes = min_ttl_minutes
        self.max_ttl_minutes = max_ttl_minutes
        self._clock = clock
        self._on_commit = on_commit

    @classmethod
    def from_settings(cls, settings, ledger: ReservationLedger, outbox: OutboxStore, **kwargs) -> "ReservationCoordinator":
        return cls(
            ledger,
            outbox,
            default_ttl_minutes=settings.reservation_default_ttl_minutes,
            min_ttl_minutes=settings.reservation_min_ttl_minutes,
            max_ttl_minutes=settings.reservation_max_ttl_minutes,
            **kwargs
        )

    @property
    def ledger(self) -> ReservationLedger:
        return self._ledger

    def clamp_ttl(self, ttl_minutes: Optional[int]) -> int:
        """Missing or too short TTL falls back to the default; too long is capped."""
        if ttl_minutes is None or ttl_minutes < self.min_ttl_minutes:
            return self.default_ttl_minutes
        return min(int(ttl_minutes), self.max_ttl_minutes)

    async def reserve(
        self,
        order_id: str,
        items: Iterable[ItemLike],
        ttl_minutes: Optional[int] = None
    ) -> ReservationResult:
        """
        Hold stock for every line of an order, or for none of them.

        Args:
            order_id: The order the holds belong to
            items: (product_id, quantity) lines; same-product lines are merged
            ttl_minutes: Hold lifetime, clamped to the configured bounds

        Returns:
            ReservationResult with one HELD reservation per product

        Raises:
            ReservationConflict: Some line is short (every short line is listed),
                or the order already holds or confirmed a reservation
            ValueError: Empty request or non-positive quantity
        """
        order_id = str(order_id)
        lines = merge_items(items)
        ttl = self.clamp_ttl(ttl_minutes)
        started = time.monotonic()

        with create_span("reservations.reserve", {"order_id": order_id, "items": len(lines)}) as span:
            try:
                async with self.locks.acquire_many(lines):
                    async with self._db.transaction() as tx:
                        # Serializes reserves of one order across processes
                        await tx.advisory_lock(order_lock_key(order_id))
                        existing = await self._ledger.for_order(order_id, tx)
                        if any(r.status in (ReservationStatus.HELD, ReservationStatus.CONFIRMED) for r in existing):
                            raise ReservationConflict(
                                f"Order '{order_id}' already has an active reservation",
                                reason=ReservationConflict.DUPLICATE_RESERVATION
                            )

                        inventory = await self._ledger.load_inventory(lines, tx, lock=True)
                        shortages = self._shortages(lines, inventory)
                        if shortages:
                            raise ReservationConflict(
                                f"Insufficient stock for order '{order_id}': "
                                + ", ".join(s.product_id for s in shortages),
                                shortages=shortages
                            )

                        now = self._clock()
                        expires_at = now + timedelta(minutes=ttl)
                        reservations = [
                            StockReservation(
                                order_id=order_id,
                                product_id=product_id,
                                quantity=quantity,
                                expires_at=expires_at,
                                created_at=now,
                                updated_at=now,
                            )
                            for product_id, quantity in lines.items()
                        ]
                        try:
                            await self._ledger.insert(tx, reservations)
                        except DuplicateKeyError:
                            raise ReservationConflict(
                                f"Order '{order_id}' already has an active reservation",
                                reason=ReservationConflict.DUPLICATE_RESERVATION
                            )
                        await self._record(tx, reservations, MovementType.RESERVATION, now)
                        await self._emit(tx, order_id, StockEventType.RESERVED, {
                            "order_id": order_id,
                            "expires_at": expires_at,
                            "ttl_minutes": ttl,
                            "items": self._lines(reservations),
                        })
            except ReservationConflict as e:
                record_counter("reservations_total", 1, {"operation": "reserve", "outcome": "conflict"})
                if e.reason == ReservationConflict.INSUFFICIENT_STOCK:
                    record_counter("reservation_conflicts_total", 1)
                logger.info(f"Reservation rejected for order {order_id}: {e.message}")
                raise

            span.set_attribute("reservation.expires_at", expires_at.isoformat())

        self._committed()
        record_counter("reservations_total", 1, {"operation": "reserve", "outcome": "held"})
        record_histogram("reservation_duration_seconds", time.monotonic() - started, {"operation": "reserve"})
        logger.info(
            f"Reserved stock for order {order_id}: {len(reservations)} product(s), expires {expires_at.isoformat()}"
        )
        return ReservationResult(order_id=order_id, expires_at=expires_at, reservations=reservations)

    async def confirm(self, order_id: str) -> List[StockReservation]:
        """
        Turn the order's unexpired holds into permanent stock decrements.

        Raises:
            ReservationNotFound: No HELD, unexpired reservation exists (never
                reserved, already confirmed, released or expired)
        """
        order_id = str(order_id)
        started = time.monotonic()

        with create_span("reservations.confirm", {"order_id": order_id}):
            async with self._locked_order(order_id) as (tx, rows):
                now = self._clock()
                held = [
                    r for r in rows
                    if r.status == ReservationStatus.HELD and r.expires_at >= now
                ]
                if not held:
                    record_counter("reservations_total", 1, {"operation": "confirm", "outcome": "not_found"})
                    raise ReservationNotFound(order_id)

                await self._ledger.transition(
                    tx, [r.id for r in held], ReservationStatus.CONFIRMED, now, valid_at=now
                )
                for reservation in held:
                    await self._ledger.commit_stock(tx, reservation.product_id, reservation.quantity, now)
                    reservation.status = ReservationStatus.CONFIRMED
                    reservation.updated_at = now
                await self._record(tx, held, MovementType.OUTBOUND, now)
                await self._emit(tx, order_id, StockEventType.COMMITTED, {
                    "order_id": order_id,
                    "items": self._lines(held),
                })

        self._committed()
        record_counter("reservations_total", 1, {"operation": "confirm", "outcome": "confirmed"})
        record_histogram("reservation_duration_seconds", time.monotonic() - started, {"operation": "confirm"})
        logger.info(f"Confirmed reservation for order {order_id}")
        return held

    async def release(self, order_id: str) -> List[StockReservation]:
        """
        Return the order's held stock to availability.

        Releasing an order whose rows are all RELEASED or EXPIRED is a
        no-op success (empty list).

        Raises:
            ReservationConflict: The order has a CONFIRMED reservation
            ReservationNotFound: The order never reserved anything
        """
        order_id = str(order_id)
        started = time.monotonic()

        with create_span("reservations.release", {"order_id": order_id}):
            async with self._locked_order(order_id) as (tx, rows):
                now = self._clock()
                if not rows:
                    raise ReservationNotFound(order_id, f"No reservation found for order '{order_id}'")
                if any(r.status == ReservationStatus.CONFIRMED for r in rows):
                    raise ReservationConflict(
                        f"Order '{order_id}' is confirmed; confirmed stock cannot be released",
                        reason=ReservationConflict.ILLEGAL_TRANSITION
                    )

                held = [r for r in rows if r.status == ReservationStatus.HELD]
                if not held:
                    logger.debug(f"Release of order {order_id}: nothing held, no-op")
                    return []

                await self._ledger.transition(tx, [r.id for r in held], ReservationStatus.RELEASED, now)
                for reservation in held:
                    reservation.status = ReservationStatus.RELEASED
                    reservation.updated_at = now
                await self._record(tx, held, MovementType.RESERVATION_RELEASE, now)
                await self._emit(tx, order_id, StockEventType.RELEASED, {
                    "order_id": order_id,
                    "items": self._lines(held),
                })

        self._committed()
        record_counter("reservations_total", 1, {"operation": "release", "outcome": "released"})
        record_histogram("reservation_duration_seconds", time.monotonic() - started, {"operation": "release"})
        logger.info(f"Released reservation for order {order_id}")
        return held

    async def extend(self, order_id: str, additional_minutes: int) -> List[StockReservation]:
        """
        Push back the expiry of the order's unexpired holds.

        The new expiry never exceeds created_at + max TTL.

        Raises:
            ValueError: additional_minutes is not positive
            ReservationNotFound: No HELD, unexpired reservation exists
        """
        if additional_minutes is None or additional_minutes <= 0:
            raise ValueError("additional_minutes must be positive")
        order_id = str(order_id)

        async with self._locked_order(order_id) as (tx, rows):
            now = self._clock()
            held = [r for r in rows if r.status == ReservationStatus.HELD and r.expires_at >= now]
            if not held:
                raise ReservationNotFound(order_id)

            for reservation in held:
                ceiling = reservation.created_at + timedelta(minutes=self.max_ttl_minutes)
                reservation.expires_at = min(
                    reservation.expires_at + timedelta(minutes=additional_minutes), ceiling
                )
                reservation.updated_at = now
                await self._ledger.set_expiry(tx, reservation.id, reservation.expires_at, now)

            await self._emit(tx, order_id, StockEventType.EXTENDED, {
                "order_id": order_id,
                "expires_at": max(r.expires_at for r in held),
            })

        self._committed()
        logger.info(f"Extended reservation for order {order_id} by up to {additional_minutes} minute(s)")
        return held

    async def adjust_stock(self, product_id: str, delta: int, reason: Optional[str] = None) -> InventoryItem:
        """
        Receive (positive delta) or write off (negative delta) stock.

        Raises:
            ReservationConflict: The adjustment would drop on_hand below zero
                or below the quantity currently held
        """
        product_id = str(product_id)
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValueError("delta must be a non-zero integer")

        async with self.locks.acquire(product_id):
            async with self._db.transaction() as tx:
                now = self._clock()
                await self._ledger.ensure_item(tx, product_id, now)
                item = (await self._ledger.load_inventory([product_id], tx, lock=True))[product_id]

                on_hand = item.on_hand + delta
                if on_hand < 0 or on_hand < item.held:
                    raise ReservationConflict(
                        f"Adjustment of {delta} for product '{product_id}' would leave "
                        f"on_hand={on_hand} with {item.held} held",
                        reason=ReservationConflict.INVALID_ADJUSTMENT
                    )

                await self._ledger.set_on_hand(tx, product_id, on_hand, now)
                await self._ledger.record_movement(tx, StockMovement(
                    product_id=product_id,
                    movement_type=MovementType.ADJUSTMENT,
                    quantity=delta,
                    created_at=now,
                ))
                await self._outbox.append(
                    tx,
                    product_id,
                    AggregateType.INVENTORY.value,
                    InventoryEventType.ADJUSTED.value,
                    {"product_id": product_id, "delta": delta, "on_hand": on_hand, "reason": reason}
                )
                item.on_hand = on_hand
                item.updated_at = now

        self._committed()
        logger.info(f"Adjusted stock of {product_id} by {delta} (on_hand={item.on_hand})")
        return item

    async def availability(self, product_id: str) -> Optional[InventoryItem]:
        """Current stock position of a product, or None if unknown."""
        items = await self._ledger.load_inventory([str(product_id)])
        return items.get(str(product_id))

    async def check_availability(
        self,
        items: Union[Dict[str, int], Iterable[ItemLike]]
    ) -> AvailabilityReport:
        """
        Report, per product, whether the requested quantity could be held now.

        Read-only: nothing is reserved, and a later reserve() may still
        find less stock.

        Args:
            items: {product_id: quantity} or (product_id, quantity) lines

        Raises:
            ValueError: Empty request or non-positive quantity
        """
        if isinstance(items, dict):
            items = list(items.items())
        lines = merge_items(items)
        inventory = await self._ledger.load_inventory(lines)

        checks: Dict[str, AvailabilityCheck] = {}
        for product_id, quantity in lines.items():
            item = inventory.get(product_id)
            if item is None:
                checks[product_id] = AvailabilityCheck(
                    product_id=product_id,
                    requested=quantity,
                    available=False,
                    stock_status=StockStatus.NOT_TRACKED,
                    message="Product inventory not tracked",
                )
                continue

            available_quantity = max(item.available, 0)
            ok = available_quantity >= quantity
            checks[product_id] = AvailabilityCheck(
                product_id=product_id,
                requested=quantity,
                available=ok,
                available_quantity=available_quantity,
                on_hand=item.on_hand,
                held=item.held,
                stock_status=item.stock_status,
                suggested_quantity=quantity if ok else available_quantity,
                message="Stock available" if ok else "Insufficient stock",
            )

        report = AvailabilityReport(items=checks)
        logger.debug(f"Availability check of {len(checks)} product(s): unavailable={report.unavailable}")
        return report

    async def set_reorder_level(self, product_id: str, reorder_level: int) -> InventoryItem:
        """Set the available quantity at or below which the product is low on stock."""
        product_id = str(product_id)
        if isinstance(reorder_level, bool) or not isinstance(reorder_level, int) or reorder_level < 0:
            raise ValueError("reorder_level must be a non-negative integer")

        async with self.locks.acquire(product_id):
            async with self._db.transaction() as tx:
                now = self._clock()
                await self._ledger.ensure_item(tx, product_id, now)
                await self._ledger.set_reorder_level(tx, product_id, reorder_level, now)
                item = (await self._ledger.load_inventory([product_id], tx))[product_id]

        logger.info(f"Reorder level of {product_id} set to {reorder_level}")
        return item

    async def get_reservations(self, order_id: str) -> List[StockReservation]:
        return await self._ledger.for_order(str(order_id))

    async def get_statistics(self) -> Dict[str, Any]:
        return await self._ledger.statistics()

    # Internals

    async def _order_products(self, order_id: str) -> List[str]:
        """Products an order touches, read without locks."""
        return sorted({r.product_id for r in await self._ledger.for_order(order_id)})

    @asynccontextmanager
    async def _locked_order(self, order_id: str):
        """
        Transaction over an order's rows with every touched product locked.

        The product set is read before locking. A release followed by a
        re-reserve with other products can change it in between, so the
        rows are re-read under the locks and the attempt is repeated with
        the wider set when they name a product that is not locked.

        Yields:
            (transaction, reservation rows of the order)
        """
        products = await self._order_products(order_id)
        for attempt in range(LOCK_ATTEMPTS):
            async with self.locks.acquire_many(products):
                async with self._db.transaction() as tx:
                    await self._ledger.load_inventory(products, tx, lock=True)
                    rows = await self._ledger.for_order(order_id, tx)
                    touched = {r.product_id for r in rows}
                    if touched <= set(products):
                        yield tx, rows
                        return
            logger.debug(
                f"Order {order_id} changed products while locking "
                f"(attempt {attempt + 1}): {sorted(touched - set(products))}"
            )
            products = sorted(set(products) | touched)

        raise ReservationConflict(
            f"Order '{order_id}' kept changing while its products were being locked",
            reason=ReservationConflict.CONCURRENT_UPDATE
        )

    @staticmethod
    def _shortages(lines: Dict[str, int], inventory: Dict[str, InventoryItem]) -> List[ItemShortage]:
        shortages = []
        for product_id, quantity in lines.items():
            item = inventory.get(product_id)
            if item is None:
                shortages.append(ItemShortage(
                    product_id=product_id,
                    requested=quantity,
                    available=0,
                    reason=ShortageReason.PRODUCT_NOT_FOUND,
                ))
            elif item.available < quantity:
                shortages.append(ItemShortage(
                    product_id=product_id,
                    requested=quantity,
                    available=max(item.available, 0),
                ))
        return shortages

    @staticmethod
    def _lines(reservations: List[StockReservation]) -> List[Dict[str, Any]]:
        return [
            {"reservation_id": r.id, "product_id": r.product_id, "quantity": r.quantity}
            for r in reservations
        ]

    async def _record(self, tx, reservations: List[StockReservation], kind: MovementType, now: datetime):
        for reservation in reservations:
            await self._ledger.record_movement(tx, StockMovement(
                product_id=reservation.product_id,
                order_id=reservation.order_id,
                movement_type=kind,
                quantity=reservation.quantity,
                created_at=now,
            ))

    async def _emit(self, tx, order_id: str, event_type: StockEventType, payload: Dict[str, Any]):
        await self._outbox.append(
            tx,
            order_id,
            AggregateType.STOCK_RESERVATION.value,
            event_type.value,
            payload
        )

    def _committed(self):
        if self._on_commit is not None:
            self._on_commit()
