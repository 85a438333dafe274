"""
Low-Stock Monitor

Periodically scans inventory for products whose available quantity
fell to or below their reorder level, records an alert and emits
inventory.low_stock through the outbox.

A product with a PENDING alert younger than the alert window is not
alerted again; acknowledging or resolving the alert re-arms it.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..events.taxonomy import AggregateType, InventoryEventType
from ..observability import create_span, record_counter
from ..outbox.models import utcnow
from ..outbox.store import OutboxStore
from ..scheduling import PeriodicTask
from .ledger import ReservationLedger
from .models import AlertStatus, InventoryItem, LowStockAlert

logger = logging.getLogger(__name__)

LOW_STOCK_LOCK_KEY = 7_340_002


class LowStockMonitor:
    """
    Raises low-stock alerts for products at or below their reorder level.

    The effective threshold of a product is its own reorder_level, or
    default_threshold when that is higher; products whose threshold is
    0 are never alerted.

    Usage:
        monitor = LowStockMonitor(ledger, outbox, interval=1800)
        await monitor.start()
        ...
        for alert in await monitor.alerts(AlertStatus.PENDING):
            await monitor.acknowledge(alert.id)
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        outbox: OutboxStore,
        interval: float = 1800.0,
        alert_window_minutes: int = 1440,
        default_threshold: int = 0,
        clock: Callable[[], datetime] = utcnow,
        on_commit: Optional[Callable[[], None]] = None
    ):
        self._ledger = ledger
        self._outbox = outbox
        self._db = outbox.db
        self.alert_window = timedelta(minutes=alert_window_minutes)
        self.default_threshold = default_threshold
        self._clock = clock
        self._on_commit = on_commit
        self._task = PeriodicTask("low-stock-monitor", interval, self._tick)

    @classmethod
    def from_settings(cls, settings, ledger: ReservationLedger, outbox: OutboxStore, **kwargs) -> "LowStockMonitor":
        return cls(
            ledger,
            outbox,
            interval=settings.low_stock_check_interval,
            alert_window_minutes=settings.low_stock_alert_window_minutes,
            default_threshold=settings.low_stock_default_threshold,
            **kwargs
        )

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

    def threshold_for(self, item: InventoryItem) -> int:
        return max(item.reorder_level, self.default_threshold)

    async def run_once(self) -> List[LowStockAlert]:
        """
        Check every tracked product once.

        Returns:
            The alerts raised by this check
        """
        with create_span("inventory.low_stock_check") as span:
            levels = await self._ledger.inventory_levels()
            low = [
                item for item in levels.values()
                if self.threshold_for(item) > 0 and item.available <= self.threshold_for(item)
            ]
            logger.debug(f"Low-stock check found {len(low)} of {len(levels)} product(s) at or below threshold")

            raised = []
            for item in low:
                alert = await self._raise(item)
                if alert is not None:
                    raised.append(alert)
            span.set_attribute("inventory.low_stock_alerts", len(raised))

        if raised:
            record_counter("low_stock_alerts_total", len(raised))
            if self._on_commit is not None:
                self._on_commit()
        return raised

    async def _raise(self, item: InventoryItem) -> Optional[LowStockAlert]:
        threshold = self.threshold_for(item)

        async with self._db.transaction() as tx:
            await tx.advisory_lock(LOW_STOCK_LOCK_KEY)
            now = self._clock()
            recent = await self._ledger.latest_alert(item.product_id, AlertStatus.PENDING, tx)
            if recent is not None and recent.created_at > now - self.alert_window:
                logger.debug(f"Skipping low-stock alert for {item.product_id}: pending alert {recent.id}")
                return None

            alert = LowStockAlert(
                product_id=item.product_id,
                available=item.available,
                reorder_level=threshold,
                message=(
                    f"Low stock: product {item.product_id} has {item.available} "
                    f"available (reorder level {threshold})"
                ),
                created_at=now,
            )
            await self._ledger.insert_alert(tx, alert)
            await self._outbox.append(
                tx,
                item.product_id,
                AggregateType.INVENTORY.value,
                InventoryEventType.LOW_STOCK.value,
                {
                    "alert_id": alert.id,
                    "product_id": item.product_id,
                    "available": item.available,
                    "on_hand": item.on_hand,
                    "held": item.held,
                    "reorder_level": threshold,
                    "stock_status": item.stock_status.value,
                }
            )

        logger.warning(alert.message, extra={"product_id": item.product_id, "alert_id": alert.id})
        return alert

    async def acknowledge(self, alert_id: str) -> bool:
        """Mark a PENDING alert as seen. Returns False if none matched."""
        moved = await self._ledger.set_alert_status(
            alert_id, AlertStatus.ACKNOWLEDGED, self._clock(), [AlertStatus.PENDING]
        )
        if moved:
            logger.info(f"Low-stock alert {alert_id} acknowledged")
        return moved == 1

    async def resolve(self, alert_id: str) -> bool:
        """Close a PENDING or ACKNOWLEDGED alert. Returns False if none matched."""
        moved = await self._ledger.set_alert_status(
            alert_id, AlertStatus.RESOLVED, self._clock(), [AlertStatus.PENDING, AlertStatus.ACKNOWLEDGED]
        )
        if moved:
            logger.info(f"Low-stock alert {alert_id} resolved")
        return moved == 1

    async def alerts(
        self,
        status: Optional[AlertStatus] = None,
        product_id: Optional[str] = None
    ) -> List[LowStockAlert]:
        return await self._ledger.list_alerts(status, product_id)

    async def get_alert(self, alert_id: str) -> Optional[LowStockAlert]:
        return await self._ledger.get_alert(alert_id)

    async def get_statistics(self) -> Dict[str, int]:
        return await self._ledger.alert_counts()
