"""
Outbox Dispatcher

Background worker pool that claims pending outbox events, publishes
them to the broker and records the outcome.

Delivery is at-least-once: a crash between publish and mark_processed
republishes the event once its claim lease runs out. Consumers
deduplicate on event_id (see stockkeeper.inbox).
"""

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional, Union

from ..errors import DeadLetter, PublishFailure, SerializationError
from ..observability import add_event_to_span, create_span, record_counter, record_histogram
from ..scheduling import PeriodicTask
from .broker import Broker
from .models import EventEnvelope, OutboxEvent
from .store import OutboxStore

logger = logging.getLogger(__name__)

DeadLetterHook = Callable[[DeadLetter], Union[None, Awaitable[None]]]


class OutboxDispatcher:
    """
    Delivers outbox events to the broker.

    Features:
    - Claims batches so concurrent workers never publish the same event
    - Renews the claim lease before every publish and abandons an
      aggregate whose claim passed to another worker
    - Preserves creation order per aggregate
    - Fixed backoff between attempts; dead-letters after max_retries
    - Unserializable payloads are dead-lettered without retry
    - Dead letters are reported through an alert hook

    Usage:
        dispatcher = OutboxDispatcher(store, broker, workers=2)
        await dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: OutboxStore,
        broker: Broker,
        batch_size: int = 100,
        poll_interval: float = 1.0,
        workers: int = 2,
        retry_backoff: float = 1.0,
        publish_timeout: float = 5.0,
        claim_ttl: float = 600.0,
        on_dead_letter: Optional[DeadLetterHook] = None,
        instance_id: Optional[str] = None
    ):
        self._store = store
        self._broker = broker
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.workers = workers
        self.retry_backoff = retry_backoff
        self.publish_timeout = publish_timeout
        self.claim_ttl = claim_ttl
        self._on_dead_letter = on_dead_letter
        self.instance_id = instance_id or uuid.uuid4().hex[:8]
        self._task = PeriodicTask(
            "outbox-dispatcher",
            poll_interval,
            self._run_worker,
            concurrency=workers
        )

    @classmethod
    def from_settings(cls, settings, store: OutboxStore, broker: Broker, **kwargs) -> "OutboxDispatcher":
        return cls(
            store,
            broker,
            batch_size=settings.outbox_batch_size,
            poll_interval=settings.outbox_poll_interval,
            workers=settings.outbox_workers,
            retry_backoff=settings.outbox_retry_backoff,
            publish_timeout=settings.broker_publish_timeout,
            claim_ttl=settings.outbox_claim_ttl,
            **kwargs
        )

    @property
    def claim_limit(self) -> int:
        """Largest batch whose publishes all fit inside one claim lease."""
        return max(1, min(self.batch_size, int(self.claim_ttl // self.publish_timeout)))

    @property
    def running(self) -> bool:
        return self._task.running

    async def start(self):
        """Start the dispatcher workers."""
        await self._task.start()

    async def stop(self):
        """Stop the dispatcher workers."""
        await self._task.stop()

    def notify(self):
        """Hint that new events were committed; wakes idle workers."""
        self._task.trigger()

    async def _run_worker(self, index: int) -> int:
        return await self.run_once(f"{self.instance_id}-{index}")

    async def run_once(self, worker_id: Optional[str] = None) -> int:
        """
        Claim and dispatch one batch.

        Args:
            worker_id: Claim owner; defaults to this instance's first worker

        Returns:
            Number of publish attempts made
        """
        worker_id = worker_id or f"{self.instance_id}-0"
        started = time.monotonic()

        with create_span("outbox.dispatch_batch", {"worker_id": worker_id}) as span:
            events = await self._store.claim_pending(worker_id, self.claim_limit, self.claim_ttl)
            if not events:
                return 0

            blocked = set()
            skipped = []
            attempted = 0

            for event in events:
                if event.aggregate_id in blocked:
                    skipped.append(event.id)
                    continue
                if not await self._store.renew_claim(event.id, worker_id, self.claim_ttl):
                    # Another worker owns this aggregate now
                    logger.warning(
                        f"Worker {worker_id} lost its claim on outbox event {event.id}, "
                        f"skipping aggregate {event.aggregate_id}"
                    )
                    blocked.add(event.aggregate_id)
                    skipped.append(event.id)
                    continue
                attempted += 1
                if not await self._dispatch(event, worker_id):
                    # Later events of this aggregate wait for the retry
                    blocked.add(event.aggregate_id)

            if skipped:
                await self._store.release_claims(skipped, worker_id)

            span.set_attribute("outbox.claimed", len(events))
            span.set_attribute("outbox.attempted", attempted)

        record_histogram("outbox_dispatch_duration_seconds", time.monotonic() - started)
        return attempted

    async def _dispatch(self, event: OutboxEvent, worker_id: str) -> bool:
        """
        Publish one event and record the outcome.

        Returns:
            True when the event is settled (processed or dead-lettered),
            False when it stays pending for another attempt
        """
        attributes = {"event_type": event.event_type, "aggregate_type": event.aggregate_type}

        with create_span("outbox.publish", {"event_id": event.id, **attributes}):
            try:
                envelope = EventEnvelope.from_event(event)
                await asyncio.wait_for(self._broker.publish(envelope), timeout=self.publish_timeout)
            except SerializationError as e:
                await self._store.mark_dead_letter(event.id, str(e))
                await self._alert(event, f"serialization error: {e}")
                return True
            except asyncio.TimeoutError:
                return await self._record_failure(
                    event, worker_id, f"publish timed out after {self.publish_timeout}s", attributes
                )
            except PublishFailure as e:
                return await self._record_failure(event, worker_id, str(e), attributes)
            except Exception as e:
                logger.error(f"Unexpected broker error for event {event.id}: {e}", exc_info=True)
                return await self._record_failure(event, worker_id, f"{type(e).__name__}: {e}", attributes)

        if not await self._store.mark_processed(event.id, worker_id):
            logger.warning(f"Outbox event {event.id} was published after worker {worker_id} lost its claim")
            return False
        record_counter("outbox_published_total", 1, attributes)
        logger.debug(f"Delivered outbox event {event.id} ({event.event_type})")
        return True

    async def _record_failure(self, event: OutboxEvent, worker_id: str, error: str, attributes: dict) -> bool:
        record_counter("outbox_failed_total", 1, attributes)
        updated = await self._store.mark_failed(event.id, error, self.retry_backoff, worker_id)
        if updated is None:
            return False

        if updated is not None and updated.dead_lettered:
            await self._alert(updated, f"retries exhausted after {updated.retry_count} attempts: {error}")
            return True

        logger.warning(
            f"Outbox event {event.id} failed (attempt {updated.retry_count}), "
            f"retry in {self.retry_backoff}s: {error}"
        )
        return False

    async def _alert(self, event: OutboxEvent, reason: str):
        """Report a dead letter through the log, metrics and the hook."""
        record_counter("dlq_entries_total", 1, {"event_type": event.event_type})
        add_event_to_span("outbox.dead_letter", {"event_id": event.id, "reason": reason})
        logger.error(
            f"Outbox event {event.id} moved to dead letter: {reason}",
            extra={"event_id": event.id, "aggregate_id": event.aggregate_id}
        )

        if self._on_dead_letter is None:
            return

        try:
            result: Any = self._on_dead_letter(DeadLetter(event, reason))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Dead-letter hook failed for event {event.id}: {e}", exc_info=True)
