"""
Outbox Store

Durable, append-only record of domain events. Events are written inside
the caller's business transaction and later claimed, published and
marked by the dispatcher.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..database.adapter import DatabaseAdapter, Transaction, affected_rows, placeholders
from ..errors import PersistenceError
from ..events.taxonomy import validate_event_type
from .models import OutboxEvent, OutboxStatus, encode_payload, utcnow

logger = logging.getLogger(__name__)

# Key for pg_advisory_xact_lock guarding the claim step across processes
OUTBOX_CLAIM_LOCK_KEY = 7_340_001

_COLUMNS = (
    "id, sequence, aggregate_id, aggregate_type, event_type, payload, created_at, "
    "processed, processed_at, retry_count, max_retries, last_error, next_attempt_at, "
    "claimed_by, claimed_until, dead_lettered_at"
)


class OutboxStore:
    """
    Persistence operations on the outbox table.

    Usage:
        store = OutboxStore(db, max_retries=3)

        async with db.transaction() as tx:
            await tx.execute("UPDATE orders SET status = $1 WHERE id = $2", "CONFIRMED", order_id)
            await store.append(tx, order_id, "order", "order.confirmed", {"order_id": order_id})
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        max_retries: int = 3,
        scan_factor: int = 10,
        clock: Callable[[], datetime] = utcnow
    ):
        self._db = db
        self.max_retries = max_retries
        self.scan_factor = scan_factor
        self._clock = clock
        self._claim_lock = asyncio.Lock()

    @property
    def db(self) -> DatabaseAdapter:
        return self._db

    async def append(
        self,
        tx: Transaction,
        aggregate_id: str,
        aggregate_type: str,
        event_type: str,
        payload: Any,
        max_retries: Optional[int] = None
    ) -> OutboxEvent:
        """
        Write an event to the outbox inside an open transaction.

        Args:
            tx: The business transaction the event belongs to
            aggregate_id: ID of the aggregate (e.g., the order id)
            aggregate_type: Type of aggregate (e.g., "order")
            event_type: Event type from the taxonomy
            payload: Dict (JSON-encoded here) or pre-serialized text
            max_retries: Override of the store-wide retry budget

        Returns:
            The created OutboxEvent

        Raises:
            PersistenceError: If no active transaction is supplied
            SerializationError: If the payload cannot be encoded
        """
        if not isinstance(tx, Transaction) or not tx.active:
            raise PersistenceError(
                "Outbox events must be appended inside an active transaction"
            )

        if not validate_event_type(event_type):
            logger.warning(f"Unknown event type: {event_type} - appending anyway")

        event = OutboxEvent(
            aggregate_id=str(aggregate_id),
            aggregate_type=aggregate_type,
            event_type=event_type,
            payload=encode_payload(payload),
            created_at=self._clock(),
            max_retries=max_retries if max_retries is not None else self.max_retries,
        )

        await tx.execute(
            """
            INSERT INTO outbox_events (
                id, aggregate_id, aggregate_type, event_type, payload,
                created_at, processed, retry_count, max_retries
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            event.id,
            event.aggregate_id,
            event.aggregate_type,
            event.event_type,
            event.payload,
            event.created_at,
            False,
            0,
            event.max_retries
        )

        logger.debug(
            "Appended outbox event: id=%s type=%s aggregate=%s/%s",
            event.id, event.event_type, event.aggregate_type, event.aggregate_id
        )

        return event

    async def get(self, event_id: str) -> Optional[OutboxEvent]:
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM outbox_events WHERE id = $1",
            event_id
        )
        return OutboxEvent(**row) if row else None

    async def list_for_aggregate(
        self,
        aggregate_id: str,
        aggregate_type: Optional[str] = None
    ) -> List[OutboxEvent]:
        """All events of an aggregate in creation order."""
        if aggregate_type is None:
            rows = await self._db.fetch(
                f"""
                SELECT {_COLUMNS} FROM outbox_events
                WHERE aggregate_id = $1
                ORDER BY created_at ASC, sequence ASC
                """,
                str(aggregate_id)
            )
        else:
            rows = await self._db.fetch(
                f"""
                SELECT {_COLUMNS} FROM outbox_events
                WHERE aggregate_id = $1 AND aggregate_type = $2
                ORDER BY created_at ASC, sequence ASC
                """,
                str(aggregate_id),
                aggregate_type
            )
        return [OutboxEvent(**row) for row in rows]

    async def fetch_pending(self, limit: int, conn: Optional[Transaction] = None) -> List[OutboxEvent]:
        """
        Events ready for dispatch, in creation order.

        An aggregate whose earliest pending event is claimed by a worker
        or waiting out its retry backoff contributes nothing, so every
        aggregate yields a creation-ordered prefix of its pending events.
        """
        now = self._clock()
        rows = await (conn or self._db).fetch(
            f"""
            SELECT {_COLUMNS} FROM outbox_events
            WHERE processed = FALSE AND retry_count < max_retries
            ORDER BY created_at ASC, sequence ASC
            LIMIT $1
            """,
            max(limit, 1) * self.scan_factor
        )
        return self._select_ready((OutboxEvent(**row) for row in rows), now, limit)

    @staticmethod
    def _select_ready(events: Iterable[OutboxEvent], now: datetime, limit: int) -> List[OutboxEvent]:
        blocked = set()
        selected: List[OutboxEvent] = []
        for event in events:
            if len(selected) >= limit:
                break
            if event.aggregate_id in blocked:
                continue
            in_flight = event.claimed_until is not None and event.claimed_until > now
            backing_off = event.next_attempt_at is not None and event.next_attempt_at > now
            if in_flight or backing_off:
                blocked.add(event.aggregate_id)
                continue
            selected.append(event)
        return selected

    async def claim_pending(self, worker_id: str, limit: int, lease_seconds: float) -> List[OutboxEvent]:
        """
        Select and claim a batch of pending events for one worker.

        Selection and claim happen under an exclusive lock (in-process lock
        plus an advisory transaction lock on PostgreSQL), so two workers can
        never hold the same event, nor split one aggregate between them.
        """
        async with self._claim_lock:
            async with self._db.transaction() as tx:
                await tx.advisory_lock(OUTBOX_CLAIM_LOCK_KEY)
                events = await self.fetch_pending(limit, conn=tx)
                if not events:
                    return []

                now = self._clock()
                claimed_until = now + timedelta(seconds=lease_seconds)
                ids = [event.id for event in events]
                await tx.execute(
                    f"""
                    UPDATE outbox_events
                    SET claimed_by = $1, claimed_until = $2
                    WHERE processed = FALSE
                      AND (claimed_until IS NULL OR claimed_until <= $3)
                      AND id IN ({placeholders(4, len(ids))})
                    """,
                    worker_id,
                    claimed_until,
                    now,
                    *ids
                )

        for event in events:
            event.claimed_by = worker_id
            event.claimed_until = claimed_until

        logger.debug(f"Worker {worker_id} claimed {len(events)} outbox events")
        return events

    async def release_claims(self, event_ids: List[str], worker_id: str) -> int:
        """Give back claims on events a worker did not attempt."""
        if not event_ids:
            return 0
        status = await self._db.execute(
            f"""
            UPDATE outbox_events
            SET claimed_by = NULL, claimed_until = NULL
            WHERE claimed_by = $1 AND processed = FALSE
              AND id IN ({placeholders(2, len(event_ids))})
            """,
            worker_id,
            *event_ids
        )
        return affected_rows(status)

    async def renew_claim(self, event_id: str, worker_id: str, lease_seconds: float) -> bool:
        """
        Extend a worker's lease on one event before publishing it.

        Returns False when the event is processed or now belongs to
        another worker; the caller must not publish it.
        """
        status = await self._db.execute(
            """
            UPDATE outbox_events
            SET claimed_until = $1
            WHERE id = $2 AND claimed_by = $3 AND processed = FALSE
            """,
            self._clock() + timedelta(seconds=lease_seconds),
            event_id,
            worker_id
        )
        return affected_rows(status) == 1

    async def mark_processed(self, event_id: str, worker_id: Optional[str] = None) -> bool:
        """
        Mark an event as delivered.

        Idempotent: returns False (and changes nothing) when the event
        was already processed. With worker_id, only the current claim
        holder may settle the event.
        """
        owner_clause = " AND claimed_by = $3" if worker_id is not None else ""
        params = [self._clock(), event_id]
        if worker_id is not None:
            params.append(worker_id)
        status = await self._db.execute(
            f"""
            UPDATE outbox_events
            SET processed = TRUE, processed_at = $1,
                claimed_by = NULL, claimed_until = NULL, last_error = NULL
            WHERE id = $2 AND processed = FALSE{owner_clause}
            """,
            *params
        )
        updated = affected_rows(status) == 1
        if updated:
            logger.debug(f"Marked outbox event {event_id} processed")
        return updated

    async def mark_failed(
        self,
        event_id: str,
        error: str = "",
        backoff_seconds: float = 1.0,
        worker_id: Optional[str] = None
    ) -> Optional[OutboxEvent]:
        """
        Record a failed delivery attempt.

        Increments retry_count and gates the next attempt behind the
        backoff. When the budget is exhausted the event is dead-lettered:
        excluded from fetch_pending, retained for inspection.

        Returns:
            The updated event, or None if it does not exist or (with
            worker_id) is claimed by another worker
        """
        now = self._clock()
        async with self._db.transaction() as tx:
            row = await tx.fetchrow(
                f"SELECT {_COLUMNS} FROM outbox_events WHERE id = $1{tx.for_update}",
                event_id
            )
            if row is None:
                return None

            event = OutboxEvent(**row)
            if worker_id is not None and event.claimed_by != worker_id:
                logger.warning(f"Worker {worker_id} lost its claim on outbox event {event_id}")
                return None
            if event.processed or event.dead_lettered:
                return event

            event.retry_count += 1
            event.last_error = (error or "")[:500]
            event.next_attempt_at = now + timedelta(seconds=backoff_seconds)
            event.claimed_by = None
            event.claimed_until = None
            if event.dead_lettered:
                event.dead_lettered_at = now

            await tx.execute(
                """
                UPDATE outbox_events
                SET retry_count = $1, last_error = $2, next_attempt_at = $3,
                    claimed_by = NULL, claimed_until = NULL, dead_lettered_at = $4
                WHERE id = $5
                """,
                event.retry_count,
                event.last_error,
                event.next_attempt_at,
                event.dead_lettered_at,
                event_id
            )

        return event

    async def mark_dead_letter(self, event_id: str, error: str) -> bool:
        """Dead-letter an event immediately (no further attempts)."""
        status = await self._db.execute(
            """
            UPDATE outbox_events
            SET retry_count = CASE WHEN retry_count > max_retries THEN retry_count ELSE max_retries END,
                last_error = $1, dead_lettered_at = $2,
                claimed_by = NULL, claimed_until = NULL
            WHERE id = $3 AND processed = FALSE
            """,
            (error or "")[:500],
            self._clock(),
            event_id
        )
        return affected_rows(status) == 1

    async def purge_processed_older_than(self, cutoff: datetime) -> int:
        """Delete processed events whose processed_at predates cutoff."""
        status = await self._db.execute(
            """
            DELETE FROM outbox_events
            WHERE processed = TRUE AND processed_at < $1
            """,
            cutoff
        )
        count = affected_rows(status)
        if count:
            logger.info(f"Purged {count} processed outbox events older than {cutoff.isoformat()}")
        return count

    async def get_stats(self) -> Dict[str, int]:
        """Get outbox statistics."""
        now = self._clock()
        row = await self._db.fetchrow(
            """
            SELECT
                COALESCE(SUM(CASE WHEN processed = FALSE AND retry_count < max_retries
                                   AND (claimed_until IS NULL OR claimed_until <= $1)
                              THEN 1 ELSE 0 END), 0) AS pending,
                COALESCE(SUM(CASE WHEN processed = FALSE AND retry_count < max_retries
                                   AND claimed_until > $2
                              THEN 1 ELSE 0 END), 0) AS in_flight,
                COALESCE(SUM(CASE WHEN processed = TRUE THEN 1 ELSE 0 END), 0) AS processed,
                COALESCE(SUM(CASE WHEN processed = FALSE AND retry_count >= max_retries
                              THEN 1 ELSE 0 END), 0) AS dead,
                COUNT(*) AS total
            FROM outbox_events
            """,
            now,
            now
        )

        stats = {status.value: 0 for status in OutboxStatus}
        stats["total"] = 0
        if row:
            for key in stats:
                stats[key] = int(row.get(key) or 0)
        return stats
