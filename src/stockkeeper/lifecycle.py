"""
Lifecycle Management

Builds every component from one Settings object and runs the
background workers (dispatcher, expiration sweeper, low-stock monitor,
outbox janitor)
for the lifetime of the context.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Settings
from .database import DatabaseAdapter, create_database, ensure_schema
from .errors import DeadLetter
from .outbox import DLQManager, OutboxDispatcher, OutboxJanitor, OutboxStore, RedisStreamBroker
from .outbox.broker import Broker
from .reservations import (
    ExpirationSweeper,
    LowStockMonitor,
    ReservationCoordinator,
    ReservationLedger,
    ReservationService,
)

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything a process needs, wired together."""
    settings: Settings
    db: DatabaseAdapter
    outbox: OutboxStore
    dispatcher: OutboxDispatcher
    coordinator: ReservationCoordinator
    sweeper: ExpirationSweeper
    monitor: LowStockMonitor
    janitor: OutboxJanitor
    service: ReservationService
    dlq: DLQManager

    @property
    def running(self) -> bool:
        return self.dispatcher.running and self.sweeper.running

    async def health_check(self) -> dict:
        """Return health status for monitoring."""
        return {
            "status": "healthy" if self.running else "unhealthy",
            "dispatcher": self.dispatcher.running,
            "sweeper": self.sweeper.running,
            "low_stock_monitor": self.monitor.running,
            "outbox": await self.outbox.get_stats(),
        }


@asynccontextmanager
async def consistency_lifespan(
    settings: Settings,
    broker: Optional[Broker] = None,
    on_dead_letter: Optional[Callable[[DeadLetter], None]] = None,
    start_workers: bool = True
):
    """
    Lifespan context manager for the outbox and reservation workers.

    Usage with an ASGI app:
        @asynccontextmanager
        async def lifespan(app):
            async with consistency_lifespan(Settings.from_env()) as components:
                app.state.reservations = components.service
                yield
    """
    settings.ensure_valid()

    db = await create_database(settings)
    owns_broker = broker is None
    if owns_broker:
        broker = RedisStreamBroker.from_url(
            settings.broker_url, stream_prefix=settings.broker_stream_prefix
        )

    try:
        await ensure_schema(db)

        outbox = OutboxStore(db, max_retries=settings.outbox_max_retries)
        dispatcher = OutboxDispatcher.from_settings(
            settings, outbox, broker, on_dead_letter=on_dead_letter
        )
        ledger = ReservationLedger(db)
        coordinator = ReservationCoordinator.from_settings(
            settings, ledger, outbox, on_commit=dispatcher.notify
        )
        sweeper = ExpirationSweeper(
            ledger,
            outbox,
            coordinator.locks,
            interval=settings.reservation_sweep_interval,
            retention_days=settings.reservation_retention_days,
            on_commit=dispatcher.notify,
        )
        monitor = LowStockMonitor.from_settings(
            settings, ledger, outbox, on_commit=dispatcher.notify
        )
        janitor = OutboxJanitor(outbox, retention_days=settings.outbox_retention_days)

        components = Components(
            settings=settings,
            db=db,
            outbox=outbox,
            dispatcher=dispatcher,
            coordinator=coordinator,
            sweeper=sweeper,
            monitor=monitor,
            janitor=janitor,
            service=ReservationService(coordinator),
            dlq=DLQManager(db),
        )

        if start_workers:
            logger.info("Starting outbox dispatcher, expiration sweeper and janitor...")
            await dispatcher.start()
            await sweeper.start()
            await janitor.start()
            if settings.low_stock_alerts_enabled:
                await monitor.start()

        try:
            yield components
        finally:
            if start_workers:
                logger.info("Stopping background workers...")
                await monitor.stop()
                await janitor.stop()
                await sweeper.stop()
                await dispatcher.stop()
    finally:
        if owns_broker:
            await broker.close()
        await db.disconnect()
