"""
Tests for the outbox store.
"""

import asyncio
from datetime import timedelta

import pytest

from stockkeeper.errors import PersistenceError, SerializationError
from stockkeeper.outbox import OutboxStatus

from tests.conftest import append_event


class TestAppend:
    """Appending events inside business transactions."""

    @pytest.mark.asyncio
    async def test_append_requires_transaction(self, outbox):
        """Appending without a transaction is refused."""
        with pytest.raises(PersistenceError):
            await outbox.append(None, "order-1", "stock_reservation", "stock.reserved", {})

    @pytest.mark.asyncio
    async def test_append_after_commit_is_refused(self, db, outbox):
        """A finished transaction handle cannot be reused."""
        async with db.transaction() as tx:
            pass

        with pytest.raises(PersistenceError):
            await outbox.append(tx, "order-1", "stock_reservation", "stock.reserved", {})

    @pytest.mark.asyncio
    async def test_rollback_discards_event(self, db, outbox, clock):
        """The event disappears together with the failed business change."""
        with pytest.raises(RuntimeError):
            async with db.transaction() as tx:
                await tx.execute(
                    "INSERT INTO inventory_items (product_id, on_hand, committed, updated_at) VALUES ($1, $2, $3, $4)",
                    "sku-1", 5, 0, clock()
                )
                await outbox.append(tx, "order-1", "stock_reservation", "stock.reserved", {"a": 1})
                raise RuntimeError("business rule violated")

        assert await outbox.fetch_pending(10) == []
        assert await db.fetchval("SELECT COUNT(*) FROM inventory_items") == 0

    @pytest.mark.asyncio
    async def test_commit_persists_event(self, db, outbox):
        event = await append_event(db, outbox, "order-1", payload={"qty": 2})

        stored = await outbox.get(event.id)
        assert stored is not None
        assert stored.processed is False
        assert stored.retry_count == 0
        assert stored.max_retries == 3
        assert stored.payload == '{"qty": 2}'
        assert stored.sequence is not None

    @pytest.mark.asyncio
    async def test_unserializable_payload_rejected(self, db, outbox):
        """Nothing is written when the payload cannot be encoded."""
        async with db.transaction() as tx:
            with pytest.raises(SerializationError):
                await outbox.append(tx, "order-1", "stock_reservation", "stock.reserved", {"bad": object()})

        assert await outbox.fetch_pending(10) == []


class TestFetchPending:
    """Selection of dispatchable events."""

    @pytest.mark.asyncio
    async def test_creation_order_and_limit(self, db, outbox, clock):
        ids = []
        for i in range(5):
            ids.append((await append_event(db, outbox, f"order-{i}")).id)
            clock.advance(seconds=1)

        pending = await outbox.fetch_pending(3)
        assert [e.id for e in pending] == ids[:3]

    @pytest.mark.asyncio
    async def test_same_timestamp_keeps_insertion_order(self, db, outbox):
        ids = [(await append_event(db, outbox, "order-1", payload={"n": i})).id for i in range(4)]

        pending = await outbox.fetch_pending(10)
        assert [e.id for e in pending] == ids

    @pytest.mark.asyncio
    async def test_claimed_aggregate_is_skipped(self, db, outbox):
        """Nothing of an aggregate is handed out while its head is in flight."""
        first = await append_event(db, outbox, "order-A")
        await append_event(db, outbox, "order-A")
        other = await append_event(db, outbox, "order-B")

        claimed = await outbox.claim_pending("worker-1", 1, lease_seconds=30)
        assert [e.id for e in claimed] == [first.id]

        pending = await outbox.fetch_pending(10)
        assert [e.id for e in pending] == [other.id]

    @pytest.mark.asyncio
    async def test_expired_claim_is_reclaimable(self, db, outbox, clock):
        event = await append_event(db, outbox, "order-A")
        await outbox.claim_pending("worker-1", 10, lease_seconds=30)
        assert await outbox.fetch_pending(10) == []

        clock.advance(seconds=31)
        assert [e.id for e in await outbox.fetch_pending(10)] == [event.id]

    @pytest.mark.asyncio
    async def test_expired_claim_passes_to_next_worker(self, db, outbox, clock):
        event = await append_event(db, outbox, "order-A")
        await outbox.claim_pending("worker-1", 10, lease_seconds=5)

        clock.advance(seconds=6)
        taken = await outbox.claim_pending("worker-2", 10, lease_seconds=5)
        assert [e.id for e in taken] == [event.id]

        # The stale holder can no longer renew or settle the event
        assert await outbox.renew_claim(event.id, "worker-1", 5) is False
        assert await outbox.mark_processed(event.id, "worker-1") is False
        assert await outbox.mark_failed(event.id, "late", worker_id="worker-1") is None
        assert await outbox.release_claims([event.id], "worker-1") == 0

        stored = await outbox.get(event.id)
        assert stored.claimed_by == "worker-2"
        assert stored.retry_count == 0

        assert await outbox.renew_claim(event.id, "worker-2", 5) is True
        assert await outbox.mark_processed(event.id, "worker-2") is True

    @pytest.mark.asyncio
    async def test_renew_claim_extends_lease(self, db, outbox, clock):
        event = await append_event(db, outbox, "order-A")
        await outbox.claim_pending("worker-1", 10, lease_seconds=5)

        clock.advance(seconds=4)
        assert await outbox.renew_claim(event.id, "worker-1", 5) is True
        clock.advance(seconds=4)

        # Still leased, so a second worker finds nothing to claim
        assert await outbox.claim_pending("worker-2", 10, lease_seconds=5) == []

    @pytest.mark.asyncio
    async def test_processed_events_excluded(self, db, outbox):
        event = await append_event(db, outbox, "order-A")
        assert await outbox.mark_processed(event.id) is True

        assert await outbox.fetch_pending(10) == []


class TestClaiming:
    """Exclusive claims across concurrent workers."""

    @pytest.mark.asyncio
    async def test_concurrent_claims_are_disjoint(self, db, outbox):
        for i in range(20):
            await append_event(db, outbox, f"order-{i % 7}", payload={"n": i})

        batches = await asyncio.gather(*[
            outbox.claim_pending(f"worker-{n}", 5, lease_seconds=30) for n in range(4)
        ])

        claimed = [e.id for batch in batches for e in batch]
        assert len(claimed) == len(set(claimed))

        # An aggregate never ends up split across two workers
        owners = {}
        for n, batch in enumerate(batches):
            for event in batch:
                assert owners.setdefault(event.aggregate_id, n) == n

    @pytest.mark.asyncio
    async def test_release_claims(self, db, outbox):
        event = await append_event(db, outbox, "order-A")
        await outbox.claim_pending("worker-1", 10, lease_seconds=30)

        assert await outbox.release_claims([event.id], "worker-2") == 0
        assert await outbox.release_claims([event.id], "worker-1") == 1
        assert [e.id for e in await outbox.fetch_pending(10)] == [event.id]


class TestMarking:
    """Outcome recording."""

    @pytest.mark.asyncio
    async def test_mark_processed_is_idempotent(self, db, outbox, clock):
        event = await append_event(db, outbox, "order-A")

        assert await outbox.mark_processed(event.id) is True
        first = await outbox.get(event.id)
        clock.advance(seconds=5)
        assert await outbox.mark_processed(event.id) is False

        second = await outbox.get(event.id)
        assert second.processed is True
        assert second.processed_at == first.processed_at
        assert second.retry_count == 0

    @pytest.mark.asyncio
    async def test_mark_failed_sets_backoff(self, db, outbox, clock):
        event = await append_event(db, outbox, "order-A")

        updated = await outbox.mark_failed(event.id, "boom", backoff_seconds=1.0)
        assert updated.retry_count == 1
        assert updated.last_error == "boom"
        assert updated.next_attempt_at == clock() + timedelta(seconds=1)
        assert updated.dead_lettered is False

        assert await outbox.fetch_pending(10) == []
        clock.advance(seconds=1)
        assert [e.id for e in await outbox.fetch_pending(10)] == [event.id]

    @pytest.mark.asyncio
    async def test_budget_exhaustion_dead_letters(self, db, outbox, clock):
        event = await append_event(db, outbox, "order-A")

        for _ in range(3):
            updated = await outbox.mark_failed(event.id, "boom", backoff_seconds=1.0)
            clock.advance(seconds=1)

        assert updated.dead_lettered is True
        assert updated.dead_lettered_at is not None
        assert await outbox.fetch_pending(10) == []

        stored = await outbox.get(event.id)
        assert stored.status_at(clock()) == OutboxStatus.DEAD

    @pytest.mark.asyncio
    async def test_mark_failed_ignores_processed(self, db, outbox):
        event = await append_event(db, outbox, "order-A")
        await outbox.mark_processed(event.id)

        updated = await outbox.mark_failed(event.id, "late failure")
        assert updated.processed is True
        assert updated.retry_count == 0

    @pytest.mark.asyncio
    async def test_mark_dead_letter(self, db, outbox):
        event = await append_event(db, outbox, "order-A")

        assert await outbox.mark_dead_letter(event.id, "unserializable") is True
        stored = await outbox.get(event.id)
        assert stored.dead_lettered is True
        assert stored.last_error == "unserializable"


class TestPurgeAndStats:
    """Retention and reporting."""

    @pytest.mark.asyncio
    async def test_purge_only_old_processed(self, db, outbox, clock):
        old = await append_event(db, outbox, "order-old")
        await outbox.mark_processed(old.id)
        clock.advance(days=8)

        recent = await append_event(db, outbox, "order-new")
        await outbox.mark_processed(recent.id)
        pending = await append_event(db, outbox, "order-pending")

        purged = await outbox.purge_processed_older_than(clock() - timedelta(days=7))

        assert purged == 1
        assert await outbox.get(old.id) is None
        assert await outbox.get(recent.id) is not None
        assert await outbox.get(pending.id) is not None

    @pytest.mark.asyncio
    async def test_stats(self, db, outbox):
        done = await append_event(db, outbox, "order-1")
        await outbox.mark_processed(done.id)
        dead = await append_event(db, outbox, "order-2")
        await outbox.mark_dead_letter(dead.id, "bad")
        await append_event(db, outbox, "order-3")
        await append_event(db, outbox, "order-4")
        await outbox.claim_pending("worker-1", 1, lease_seconds=30)

        stats = await outbox.get_stats()
        assert stats == {
            "pending": 1,
            "in_flight": 1,
            "processed": 1,
            "dead": 1,
            "total": 4,
        }

    @pytest.mark.asyncio
    async def test_list_for_aggregate(self, db, outbox):
        await append_event(db, outbox, "order-1", event_type="stock.reserved")
        await append_event(db, outbox, "order-1", event_type="stock.reservation.committed")
        await append_event(db, outbox, "order-2")

        events = await outbox.list_for_aggregate("order-1")
        assert [e.event_type for e in events] == ["stock.reserved", "stock.reservation.committed"]
        assert await outbox.list_for_aggregate("order-1", "inventory") == []
