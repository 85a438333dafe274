"""
Stockkeeper Event Taxonomy

Event naming convention: {domain}.{action}
- domain: order, stock, inventory, payment
- action: past tense verb (created, reserved, released, expired)
"""

from enum import Enum
from typing import Dict


class EventDomain(str, Enum):
    """Top-level event domains."""
    ORDER = "order"
    STOCK = "stock"
    INVENTORY = "inventory"
    PAYMENT = "payment"


class AggregateType(str, Enum):
    """Aggregates whose events are delivered in creation order."""
    ORDER = "order"
    STOCK_RESERVATION = "stock_reservation"
    INVENTORY = "inventory"


class OrderEventType(str, Enum):
    """Order lifecycle events."""
    CREATED = "order.created"
    CONFIRMED = "order.confirmed"
    CANCELLED = "order.cancelled"
    PAYMENT_COMPLETED = "order.payment.completed"
    PAYMENT_FAILED = "order.payment.failed"


class StockEventType(str, Enum):
    """Stock reservation events."""
    RESERVED = "stock.reserved"
    COMMITTED = "stock.reservation.committed"
    RELEASED = "stock.reservation.released"
    EXPIRED = "stock.reservation.expired"
    EXTENDED = "stock.reservation.extended"


class InventoryEventType(str, Enum):
    """Inventory level events."""
    ADJUSTED = "inventory.adjusted"
    LOW_STOCK = "inventory.low_stock"


# Combined lookup for all event types
ALL_EVENT_TYPES: Dict[str, str] = {
    **{e.value: e.name for e in OrderEventType},
    **{e.value: e.name for e in StockEventType},
    **{e.value: e.name for e in InventoryEventType},
}


def validate_event_type(event_type: str) -> bool:
    """Check if event type is known."""
    return event_type in ALL_EVENT_TYPES


def get_domain(event_type: str) -> str:
    """Extract domain from event type."""
    return event_type.split(".")[0] if "." in event_type else "unknown"
