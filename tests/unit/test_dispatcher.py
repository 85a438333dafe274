"""
Tests for the outbox dispatcher.
"""

import asyncio

import pytest

from stockkeeper.errors import DeadLetter
from stockkeeper.outbox import OutboxDispatcher

from tests.conftest import FailingBroker, RecordingBroker, SlowBroker, append_event


def make_dispatcher(outbox, broker, **kwargs):
    options = dict(batch_size=50, workers=1, retry_backoff=1.0, publish_timeout=1.0, instance_id="test")
    options.update(kwargs)
    return OutboxDispatcher(outbox, broker, **options)


class TestDelivery:
    """Happy-path publishing."""

    @pytest.mark.asyncio
    async def test_publishes_and_marks_processed(self, db, outbox, dispatcher, broker):
        event = await append_event(db, outbox, "order-1", payload={"order_id": "order-1", "qty": 3})

        attempted = await dispatcher.run_once()

        assert attempted == 1
        assert len(broker.published) == 1
        envelope = broker.published[0]
        assert envelope.event_id == event.id
        assert envelope.aggregate_id == "order-1"
        assert envelope.event_type == "stock.reserved"
        assert envelope.payload == {"order_id": "order-1", "qty": 3}

        stored = await outbox.get(event.id)
        assert stored.processed is True
        assert stored.processed_at is not None

    @pytest.mark.asyncio
    async def test_idle_run_returns_zero(self, dispatcher, broker):
        assert await dispatcher.run_once() == 0
        assert broker.attempts == 0

    @pytest.mark.asyncio
    async def test_processed_event_not_republished(self, db, outbox, dispatcher, broker):
        await append_event(db, outbox, "order-1")

        await dispatcher.run_once()
        await dispatcher.run_once()

        assert broker.attempts == 1

    @pytest.mark.asyncio
    async def test_envelope_message_fields(self, db, outbox, dispatcher, broker):
        await append_event(db, outbox, "order-1", payload={"b": 1, "a": 2})
        await dispatcher.run_once()

        message = broker.published[0].to_message()
        assert set(message) == {
            "event_id", "aggregate_id", "aggregate_type", "event_type", "payload", "occurred_at"
        }
        assert message["payload"] == '{"a": 2, "b": 1}'


class TestRetries:
    """Failure handling and dead-lettering."""

    @pytest.mark.asyncio
    async def test_three_failures_one_second_apart_dead_letter(self, db, outbox, clock):
        """A permanently failing event is tried three times, then dead-lettered."""
        alerts = []
        broker = FailingBroker(always=True)
        dispatcher = make_dispatcher(outbox, broker, on_dead_letter=alerts.append)
        event = await append_event(db, outbox, "order-1")

        assert await dispatcher.run_once() == 1
        # Backoff not yet elapsed
        assert await dispatcher.run_once() == 0

        clock.advance(seconds=1)
        assert await dispatcher.run_once() == 1
        clock.advance(seconds=1)
        assert await dispatcher.run_once() == 1

        assert broker.attempts == 3
        stored = await outbox.get(event.id)
        assert stored.retry_count == 3
        assert stored.dead_lettered is True
        assert stored.processed is False
        assert stored.last_error == "broker unavailable"

        clock.advance(seconds=60)
        assert await outbox.fetch_pending(10) == []
        assert await dispatcher.run_once() == 0

        assert len(alerts) == 1
        assert isinstance(alerts[0], DeadLetter)
        assert alerts[0].event.id == event.id

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, db, outbox, clock):
        broker = FailingBroker(fail_first=1)
        dispatcher = make_dispatcher(outbox, broker)
        event = await append_event(db, outbox, "order-1")

        await dispatcher.run_once()
        clock.advance(seconds=1)
        await dispatcher.run_once()

        stored = await outbox.get(event.id)
        assert stored.processed is True
        assert stored.retry_count == 1
        assert broker.event_ids() == [event.id]

    @pytest.mark.asyncio
    async def test_publish_timeout_counts_as_failure(self, db, outbox):
        broker = SlowBroker()
        dispatcher = make_dispatcher(outbox, broker, publish_timeout=0.05)
        event = await append_event(db, outbox, "order-1")

        await dispatcher.run_once()

        stored = await outbox.get(event.id)
        assert stored.processed is False
        assert stored.retry_count == 1
        assert "timed out" in stored.last_error

    @pytest.mark.asyncio
    async def test_serialization_error_dead_letters_without_retry(self, db, outbox, clock):
        alerts = []
        broker = RecordingBroker()
        dispatcher = make_dispatcher(outbox, broker, on_dead_letter=alerts.append)
        bad = await append_event(db, outbox, "order-1", payload="{not json")
        good = await append_event(db, outbox, "order-2")

        await dispatcher.run_once()

        stored = await outbox.get(bad.id)
        assert stored.dead_lettered is True
        assert stored.retry_count == stored.max_retries
        assert broker.event_ids() == [good.id]
        assert len(alerts) == 1
        assert "serialization" in alerts[0].reason

    @pytest.mark.asyncio
    async def test_async_hook_and_failing_hook(self, db, outbox):
        seen = []

        async def hook(dead_letter):
            seen.append(dead_letter.event.id)
            raise RuntimeError("pager offline")

        dispatcher = make_dispatcher(outbox, RecordingBroker(), on_dead_letter=hook)
        bad = await append_event(db, outbox, "order-1", payload="[1, 2]")
        good = await append_event(db, outbox, "order-2")

        # A broken hook must not stop the batch
        assert await dispatcher.run_once() == 2
        assert seen == [bad.id]
        assert (await outbox.get(good.id)).processed is True


class TestOrdering:
    """Per-aggregate delivery order."""

    @pytest.mark.asyncio
    async def test_failed_head_holds_back_its_aggregate_only(self, db, outbox, clock):
        first = await append_event(db, outbox, "order-A", payload={"n": 1})
        second = await append_event(db, outbox, "order-A", payload={"n": 2})
        other = await append_event(db, outbox, "order-B", payload={"n": 3})

        broker = FailingBroker(fail_first=1)
        dispatcher = make_dispatcher(outbox, broker)

        assert await dispatcher.run_once() == 2
        assert broker.event_ids() == [other.id]
        assert (await outbox.get(second.id)).claimed_by is None

        # Still backing off: the whole aggregate waits
        assert await dispatcher.run_once() == 0

        clock.advance(seconds=1)
        await dispatcher.run_once()
        assert broker.event_ids() == [other.id, first.id, second.id]

    @pytest.mark.asyncio
    async def test_dead_letter_unblocks_aggregate(self, db, outbox, clock):
        first = await append_event(db, outbox, "order-A", payload={"n": 1})
        second = await append_event(db, outbox, "order-A", payload={"n": 2})

        broker = FailingBroker(fail_events={first.id})
        dispatcher = make_dispatcher(outbox, broker)

        for _ in range(3):
            await dispatcher.run_once()
            clock.advance(seconds=1)
        await dispatcher.run_once()

        assert (await outbox.get(first.id)).dead_lettered is True
        assert broker.event_ids() == [second.id]

    @pytest.mark.asyncio
    async def test_concurrent_workers_preserve_order(self, db, outbox):
        expected = {}
        for i in range(30):
            aggregate = f"order-{i % 5}"
            event = await append_event(db, outbox, aggregate, payload={"n": i})
            expected.setdefault(aggregate, []).append(event.id)

        broker = RecordingBroker()
        dispatcher = make_dispatcher(outbox, broker, batch_size=4)

        for _ in range(20):
            await asyncio.gather(*[dispatcher.run_once(f"test-{n}") for n in range(3)])

        assert len(broker.published) == 30
        assert len(set(broker.event_ids())) == 30
        for aggregate, ids in expected.items():
            delivered = [e.event_id for e in broker.published if e.aggregate_id == aggregate]
            assert delivered == ids


class LeaseEatingBroker(RecordingBroker):
    """Each publish takes most of the publish timeout; a rival worker polls meanwhile."""

    def __init__(self, clock, seconds, rival=None):
        super().__init__()
        self.clock = clock
        self.seconds = seconds
        self.rival = rival
        self.rival_attempts = []

    async def publish(self, envelope):
        await super().publish(envelope)
        self.clock.advance(seconds=self.seconds)
        if self.rival is not None:
            self.rival_attempts.append(await self.rival.run_once("rival-0"))


class TestClaimLease:
    """A worker holds each event it publishes for the whole attempt."""

    @pytest.mark.asyncio
    async def test_slow_publishes_never_hand_a_batch_to_a_second_worker(self, db, outbox, clock):
        ids = [(await append_event(db, outbox, "order-X", payload={"n": i})).id for i in range(8)]

        rival_broker = RecordingBroker()
        rival = make_dispatcher(outbox, rival_broker, batch_size=10, claim_ttl=5.0, instance_id="rival")
        broker = LeaseEatingBroker(clock, seconds=0.9, rival=rival)
        dispatcher = make_dispatcher(outbox, broker, batch_size=10, claim_ttl=5.0)

        # Five publishes bounded by the 1s timeout fit in a 5s lease
        assert dispatcher.claim_limit == 5

        assert await dispatcher.run_once() == 5
        assert await dispatcher.run_once() == 3

        assert rival_broker.published == []
        assert set(broker.rival_attempts) == {0}
        assert broker.event_ids() == ids

    @pytest.mark.asyncio
    async def test_lost_claim_abandons_the_aggregate(self, db, outbox):
        head = await append_event(db, outbox, "order-X", payload={"n": 0})
        stolen = await append_event(db, outbox, "order-X", payload={"n": 1})
        tail = await append_event(db, outbox, "order-X", payload={"n": 2})
        other = await append_event(db, outbox, "order-Y")

        class StealingBroker(RecordingBroker):
            async def publish(self, envelope):
                await super().publish(envelope)
                if envelope.event_id == head.id:
                    await db.execute(
                        "UPDATE outbox_events SET claimed_by = $1 WHERE id = $2",
                        "rival-0",
                        stolen.id
                    )

        broker = StealingBroker()
        dispatcher = make_dispatcher(outbox, broker)

        assert await dispatcher.run_once() == 2
        assert broker.event_ids() == [head.id, other.id]

        # The rival keeps its claim; the tail is handed back
        assert (await outbox.get(stolen.id)).claimed_by == "rival-0"
        assert (await outbox.get(tail.id)).claimed_by is None
        assert (await outbox.get(stolen.id)).processed is False

    @pytest.mark.asyncio
    async def test_claim_limit_follows_lease_and_timeout(self, outbox):
        dispatcher = make_dispatcher(outbox, RecordingBroker(), batch_size=100, publish_timeout=5.0, claim_ttl=600.0)
        assert dispatcher.claim_limit == 100

        dispatcher = make_dispatcher(outbox, RecordingBroker(), batch_size=100, publish_timeout=5.0, claim_ttl=30.0)
        assert dispatcher.claim_limit == 6

        dispatcher = make_dispatcher(outbox, RecordingBroker(), publish_timeout=5.0, claim_ttl=1.0)
        assert dispatcher.claim_limit == 1


class TestLifecycle:
    """Background worker loop."""

    @pytest.mark.asyncio
    async def test_start_notify_stop(self, db, outbox):
        broker = RecordingBroker()
        dispatcher = make_dispatcher(outbox, broker, poll_interval=30.0, workers=2)

        await dispatcher.start()
        assert dispatcher.running is True
        try:
            event = await append_event(db, outbox, "order-1")
            dispatcher.notify()

            for _ in range(100):
                if broker.published:
                    break
                await asyncio.sleep(0.02)
        finally:
            await dispatcher.stop()

        assert dispatcher.running is False
        assert broker.event_ids() == [event.id]
