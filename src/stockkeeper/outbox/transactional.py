"""
Transactional Event Publisher

Combines business writes with outbox appends in a single transaction:
either both commit or neither does.
"""

from contextlib import asynccontextmanager
from typing import Any, Callable, List, Optional, Tuple

from ..database.adapter import DatabaseAdapter, Transaction
from ..errors import PersistenceError
from .models import OutboxEvent
from .store import OutboxStore


class TransactionalPublisher:
    """
    Publishes events transactionally with business operations.

    Usage:
        async with TransactionalPublisher(db, store) as txn:
            await txn.tx.execute("UPDATE orders SET status = $1 WHERE id = $2", "PAID", order_id)
            await txn.emit(order_id, "order", "order.payment.completed", {"order_id": order_id})
        # Both commit together or both roll back
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        store: OutboxStore,
        on_commit: Optional[Callable[[], None]] = None
    ):
        self.db = db
        self._store = store
        self._on_commit = on_commit
        self._tx_cm = None
        self.tx: Optional[Transaction] = None
        self._events: List[OutboxEvent] = []

    async def __aenter__(self):
        self._tx_cm = self.db.transaction()
        self.tx = await self._tx_cm.__aenter__()
        self._events = []
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            await self._tx_cm.__aexit__(exc_type, exc_val, exc_tb)
        except BaseException:
            self._events = []
            raise
        finally:
            self.tx = None
            self._tx_cm = None

        if exc_type is not None:
            # Rolled back; nothing was written
            self._events = []
        elif self._events and self._on_commit is not None:
            self._on_commit()
        return False

    async def emit(
        self,
        aggregate_id: str,
        aggregate_type: str,
        event_type: str,
        payload: Any
    ) -> OutboxEvent:
        """
        Append an event to the outbox in the current transaction.

        Returns:
            The created OutboxEvent
        """
        if self.tx is None:
            raise PersistenceError("emit() called outside of the publisher context")
        event = await self._store.append(self.tx, aggregate_id, aggregate_type, event_type, payload)
        self._events.append(event)
        return event

    async def emit_batch(self, events: List[Tuple[str, str, str, Any]]) -> List[OutboxEvent]:
        """
        Emit multiple events in the same transaction.

        Args:
            events: List of (aggregate_id, aggregate_type, event_type, payload) tuples
        """
        return [await self.emit(*event) for event in events]

    @property
    def emitted_events(self) -> List[OutboxEvent]:
        """Events written by this transaction (empty after a rollback)."""
        return self._events.copy()


@asynccontextmanager
async def transactional_publish(
    db: DatabaseAdapter,
    store: OutboxStore,
    on_commit: Optional[Callable[[], None]] = None
):
    """
    Context manager for transactional event publishing.

    Usage:
        async with transactional_publish(db, store, dispatcher.notify) as txn:
            await txn.tx.execute("INSERT INTO orders ...")
            await txn.emit(order_id, "order", "order.created", {...})
    """
    publisher = TransactionalPublisher(db, store, on_commit)
    async with publisher:
        yield publisher
