"""
Stockkeeper Event Taxonomy

Usage:
    from stockkeeper.events import StockEventType, AggregateType

    await outbox.append(
        tx,
        aggregate_id=order_id,
        aggregate_type=AggregateType.STOCK_RESERVATION.value,
        event_type=StockEventType.RESERVED.value,
        payload={"order_id": order_id},
    )
"""

from .taxonomy import (
    EventDomain,
    AggregateType,
    OrderEventType,
    StockEventType,
    InventoryEventType,
    validate_event_type,
    get_domain,
    ALL_EVENT_TYPES,
)

__all__ = [
    "EventDomain",
    "AggregateType",
    "OrderEventType",
    "StockEventType",
    "InventoryEventType",
    "validate_event_type",
    "get_domain",
    "ALL_EVENT_TYPES",
]
