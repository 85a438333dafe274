"""
Shared test fixtures.

Every test gets a fresh SQLite database in tmp_path, a controllable
clock and an in-memory broker.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set

import pytest
import pytest_asyncio

from stockkeeper.database import DatabaseAdapter, DatabaseBackend, DatabaseConfig, ensure_schema
from stockkeeper.errors import PublishFailure
from stockkeeper.outbox import EventEnvelope, OutboxDispatcher, OutboxStore
from stockkeeper.reservations import (
    ExpirationSweeper,
    LowStockMonitor,
    ReservationCoordinator,
    ReservationLedger,
    ReservationService,
)


class FakeClock:
    """Mutable UTC clock; tests move time with advance()."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0, days: float = 0) -> datetime:
        self.now += timedelta(seconds=seconds, minutes=minutes, days=days)
        return self.now


class RecordingBroker:
    """Broker that keeps every published envelope in memory."""

    def __init__(self):
        self.published: List[EventEnvelope] = []
        self.attempts = 0

    async def publish(self, envelope: EventEnvelope) -> None:
        self.attempts += 1
        self.published.append(envelope)

    def event_ids(self) -> List[str]:
        return [e.event_id for e in self.published]


class FailingBroker(RecordingBroker):
    """
    Fails publishes with PublishFailure.

    fail_first: fail this many attempts overall, then succeed
    fail_events: always fail these event ids
    """

    def __init__(self, fail_first: int = 0, fail_events: Optional[Set[str]] = None, always: bool = False):
        super().__init__()
        self.fail_first = fail_first
        self.fail_events = set(fail_events or ())
        self.always = always
        self.failures = 0

    async def publish(self, envelope: EventEnvelope) -> None:
        self.attempts += 1
        if self.always or envelope.event_id in self.fail_events or self.failures < self.fail_first:
            self.failures += 1
            raise PublishFailure("broker unavailable")
        self.published.append(envelope)


class SlowBroker(RecordingBroker):
    """Never answers within any reasonable timeout."""

    async def publish(self, envelope: EventEnvelope) -> None:
        self.attempts += 1
        await asyncio.sleep(30)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db(tmp_path):
    adapter = DatabaseAdapter(DatabaseConfig(
        backend=DatabaseBackend.SQLITE,
        sqlite_path=str(tmp_path / "stockkeeper-test.db"),
    ))
    await adapter.connect()
    await ensure_schema(adapter)
    yield adapter
    await adapter.disconnect()


@pytest.fixture
def outbox(db, clock) -> OutboxStore:
    return OutboxStore(db, max_retries=3, clock=clock)


@pytest.fixture
def broker() -> RecordingBroker:
    return RecordingBroker()


@pytest.fixture
def dispatcher(outbox, broker) -> OutboxDispatcher:
    return OutboxDispatcher(
        outbox,
        broker,
        batch_size=50,
        workers=1,
        retry_backoff=1.0,
        publish_timeout=1.0,
        instance_id="test",
    )


@pytest.fixture
def ledger(db) -> ReservationLedger:
    return ReservationLedger(db)


@pytest.fixture
def coordinator(ledger, outbox, clock) -> ReservationCoordinator:
    return ReservationCoordinator(ledger, outbox, clock=clock)


@pytest.fixture
def sweeper(ledger, outbox, coordinator, clock) -> ExpirationSweeper:
    return ExpirationSweeper(ledger, outbox, coordinator.locks, clock=clock)


@pytest.fixture
def monitor(ledger, outbox, clock) -> LowStockMonitor:
    return LowStockMonitor(ledger, outbox, alert_window_minutes=60, clock=clock)


@pytest.fixture
def service(coordinator) -> ReservationService:
    return ReservationService(coordinator)


async def append_event(db, outbox, aggregate_id, event_type="stock.reserved", payload=None, aggregate_type="stock_reservation"):
    """Append one event in its own committed transaction."""
    async with db.transaction() as tx:
        return await outbox.append(
            tx,
            aggregate_id,
            aggregate_type,
            event_type,
            payload if payload is not None else {"order_id": aggregate_id},
        )
