"""
Outbox Pattern Implementation

Transactional event publishing with at-least-once delivery.

Usage:
    from stockkeeper.outbox import OutboxStore, OutboxDispatcher

    async with db.transaction() as tx:
        await tx.execute("UPDATE ...")
        await store.append(tx, order_id, "order", "order.confirmed", {"order_id": order_id})
    dispatcher.notify()
"""

from .models import EventEnvelope, OutboxEvent, OutboxStatus, encode_payload, utcnow
from .store import OutboxStore
from .broker import Broker, RedisStreamBroker
from .dispatcher import OutboxDispatcher
from .transactional import TransactionalPublisher, transactional_publish
from .dlq import DLQManager, DLQEntry, DLQAction
from .retention import OutboxJanitor

__all__ = [
    "EventEnvelope",
    "OutboxEvent",
    "OutboxStatus",
    "encode_payload",
    "utcnow",
    "OutboxStore",
    "Broker",
    "RedisStreamBroker",
    "OutboxDispatcher",
    "TransactionalPublisher",
    "transactional_publish",
    "DLQManager",
    "DLQEntry",
    "DLQAction",
    "OutboxJanitor",
]
