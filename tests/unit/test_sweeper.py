"""
Tests for the expiration sweeper.
"""

import asyncio

import pytest

from stockkeeper.reservations import ExpirationSweeper, MovementType, ReservationStatus


async def stock(coordinator, product_id, quantity):
    await coordinator.adjust_stock(product_id, quantity)


class TestExpiry:
    """Returning lapsed holds to availability."""

    @pytest.mark.asyncio
    async def test_expired_hold_frees_stock(self, coordinator, sweeper, clock):
        await stock(coordinator, "sku-1", 5)
        await coordinator.reserve("order-1", [("sku-1", 5)], ttl_minutes=1)

        clock.advance(seconds=61)
        assert await sweeper.run_once() == 1

        rows = await coordinator.get_reservations("order-1")
        assert [r.status for r in rows] == [ReservationStatus.EXPIRED]

        result = await coordinator.reserve("order-2", [("sku-1", 5)])
        assert result.total_quantity == 5

    @pytest.mark.asyncio
    async def test_nothing_due_before_ttl(self, coordinator, sweeper, clock):
        await stock(coordinator, "sku-1", 5)
        await coordinator.reserve("order-1", [("sku-1", 2)], ttl_minutes=1)

        clock.advance(seconds=59)
        assert await sweeper.run_once() == 0

        # Exactly at expires_at the hold is still valid
        clock.advance(seconds=1)
        assert await sweeper.run_once() == 0
        assert (await coordinator.availability("sku-1")).held == 2

    @pytest.mark.asyncio
    async def test_expiry_writes_movement_and_event(self, coordinator, sweeper, ledger, outbox, clock):
        await stock(coordinator, "sku-1", 5)
        await stock(coordinator, "sku-2", 5)
        clock.advance(seconds=1)
        await coordinator.reserve("order-1", [("sku-1", 1), ("sku-2", 2)], ttl_minutes=1)

        clock.advance(minutes=2)
        assert await sweeper.run_once() == 2

        movements = await ledger.movements("sku-2")
        assert movements[-1].movement_type == MovementType.RESERVATION_EXPIRED
        assert movements[-1].quantity == 2
        assert movements[-1].order_id == "order-1"

        events = await outbox.list_for_aggregate("order-1")
        assert events[-1].event_type == "stock.reservation.expired"

    @pytest.mark.asyncio
    async def test_confirmed_hold_is_never_expired(self, coordinator, sweeper, clock):
        await stock(coordinator, "sku-1", 5)
        await coordinator.reserve("order-1", [("sku-1", 3)], ttl_minutes=1)

        clock.advance(seconds=30)
        await coordinator.confirm("order-1")

        clock.advance(minutes=5)
        assert await sweeper.run_once() == 0

        item = await coordinator.availability("sku-1")
        assert item.on_hand == 2
        assert item.committed == 3

    @pytest.mark.asyncio
    async def test_stale_candidates_are_rechecked(self, coordinator, sweeper, ledger, clock):
        await stock(coordinator, "sku-1", 5)
        await coordinator.reserve("order-1", [("sku-1", 3)], ttl_minutes=1)
        clock.advance(minutes=2)

        candidates = await ledger.find_expired(clock())
        assert len(candidates) == 1

        # A release lands between the scan and the expiry
        await coordinator.release("order-1")

        assert await sweeper._expire_order("order-1", candidates, clock()) == 0
        rows = await coordinator.get_reservations("order-1")
        assert rows[0].status == ReservationStatus.RELEASED

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_sweep(self, ledger, outbox, coordinator, clock):
        sweeper = ExpirationSweeper(ledger, outbox, coordinator.locks, batch_size=2, clock=clock)
        await stock(coordinator, "sku-1", 10)
        for n in range(3):
            await coordinator.reserve(f"order-{n}", [("sku-1", 1)], ttl_minutes=1)

        clock.advance(minutes=2)
        assert await sweeper.run_once() == 2
        assert await sweeper.run_once() == 1
        assert (await coordinator.availability("sku-1")).held == 0


class TestSweepControl:
    """Overlap, retention and the background loop."""

    @pytest.mark.asyncio
    async def test_sweeps_never_overlap(self, coordinator, sweeper, clock):
        await stock(coordinator, "sku-1", 5)
        await coordinator.reserve("order-1", [("sku-1", 1)], ttl_minutes=1)
        clock.advance(minutes=2)

        async with sweeper._sweep_lock:
            assert await sweeper.run_once() == 0

        assert await sweeper.run_once() == 1

    @pytest.mark.asyncio
    async def test_terminal_rows_purged_after_retention(self, coordinator, sweeper, clock):
        await stock(coordinator, "sku-1", 5)
        await coordinator.reserve("order-1", [("sku-1", 1)])
        await coordinator.release("order-1")
        await coordinator.reserve("order-2", [("sku-1", 1)], ttl_minutes=60)

        clock.advance(days=6)
        await sweeper.run_once()
        assert len(await coordinator.get_reservations("order-1")) == 1

        clock.advance(days=2)
        await sweeper.run_once()
        assert await coordinator.get_reservations("order-1") == []
        # order-2 expired two days ago, still inside the retention window
        assert len(await coordinator.get_reservations("order-2")) == 1

    @pytest.mark.asyncio
    async def test_background_loop(self, ledger, outbox, coordinator, clock):
        sweeper = ExpirationSweeper(ledger, outbox, coordinator.locks, interval=0.01, clock=clock)
        await stock(coordinator, "sku-1", 5)
        await coordinator.reserve("order-1", [("sku-1", 5)], ttl_minutes=1)
        clock.advance(minutes=2)

        await sweeper.start()
        try:
            for _ in range(100):
                if (await coordinator.availability("sku-1")).held == 0:
                    break
                await asyncio.sleep(0.02)
        finally:
            await sweeper.stop()

        assert sweeper.running is False
        assert (await coordinator.availability("sku-1")).held == 0
