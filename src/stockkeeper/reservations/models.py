"""
Reservation Models
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from ..outbox.models import utcnow


class ReservationStatus(str, Enum):
    """Lifecycle of a stock hold. Everything but HELD is terminal."""
    HELD = "HELD"
    CONFIRMED = "CONFIRMED"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"

    @property
    def terminal(self) -> bool:
        return self != ReservationStatus.HELD


class MovementType(str, Enum):
    """Kinds of audited stock changes."""
    RESERVATION = "RESERVATION"
    RESERVATION_RELEASE = "RESERVATION_RELEASE"
    RESERVATION_EXPIRED = "RESERVATION_EXPIRED"
    OUTBOUND = "OUTBOUND"
    ADJUSTMENT = "ADJUSTMENT"


class ShortageReason(str, Enum):
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"


class StockStatus(str, Enum):
    IN_STOCK = "IN_STOCK"
    LOW_STOCK = "LOW_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    NOT_TRACKED = "NOT_TRACKED"


class AlertStatus(str, Enum):
    """Low-stock alert workflow."""
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class ReservationItem(BaseModel):
    """One requested line: product and quantity."""
    product_id: str
    quantity: int


class ItemShortage(BaseModel):
    """A line that could not be satisfied."""
    product_id: str
    requested: int
    available: int
    reason: ShortageReason = ShortageReason.INSUFFICIENT_STOCK


class StockReservation(BaseModel):
    """A hold of a quantity of one product for one order."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    order_id: str
    product_id: str
    quantity: int
    status: ReservationStatus = ReservationStatus.HELD
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.status == ReservationStatus.HELD and self.expires_at < now


class ReservationResult(BaseModel):
    """Holds created by a successful reserve()."""
    order_id: str
    expires_at: datetime
    reservations: List[StockReservation]

    @property
    def total_quantity(self) -> int:
        return sum(r.quantity for r in self.reservations)


class InventoryItem(BaseModel):
    """
    Stock position of a product.

    on_hand is physical stock not yet shipped; committed is the
    confirmed quantity already taken out of on_hand. reorder_level is
    the available quantity at or below which the product counts as
    low on stock (0 disables the check).
    """

    product_id: str
    on_hand: int = 0
    committed: int = 0
    held: int = 0
    reorder_level: int = 0
    updated_at: Optional[datetime] = None

    @property
    def available(self) -> int:
        return self.on_hand - self.held

    @property
    def stock_status(self) -> StockStatus:
        if self.available <= 0:
            return StockStatus.OUT_OF_STOCK
        if self.available <= self.reorder_level:
            return StockStatus.LOW_STOCK
        return StockStatus.IN_STOCK

    @property
    def received(self) -> int:
        return self.on_hand + self.committed


class AvailabilityCheck(BaseModel):
    """Availability of one requested line."""
    product_id: str
    requested: int
    available: bool
    available_quantity: int = 0
    on_hand: int = 0
    held: int = 0
    stock_status: StockStatus = StockStatus.NOT_TRACKED
    suggested_quantity: int = 0
    message: str = ""


class AvailabilityReport(BaseModel):
    """Per-product availability of a multi-line request."""
    items: Dict[str, AvailabilityCheck]

    @property
    def all_available(self) -> bool:
        return all(check.available for check in self.items.values())

    @property
    def unavailable(self) -> List[str]:
        return [product_id for product_id, check in self.items.items() if not check.available]


class LowStockAlert(BaseModel):
    """A product that fell to or below its reorder level."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    product_id: str
    available: int
    reorder_level: int
    status: AlertStatus = AlertStatus.PENDING
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class StockMovement(BaseModel):
    """Append-only audit row of a stock change."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    product_id: str
    order_id: Optional[str] = None
    movement_type: MovementType
    quantity: int
    created_at: datetime = Field(default_factory=utcnow)


ItemLike = Union[ReservationItem, Tuple[str, int], Dict[str, Any]]


def merge_items(items: Iterable[ItemLike]) -> Dict[str, int]:
    """
    Normalize request lines to {product_id: quantity}.

    Lines for the same product are summed; insertion order is kept.

    Raises:
        ValueError: Empty request or a non-positive quantity
    """
    merged: Dict[str, int] = {}
    for item in items or []:
        if isinstance(item, ReservationItem):
            product_id, quantity = item.product_id, item.quantity
        elif isinstance(item, dict):
            product_id, quantity = item["product_id"], item["quantity"]
        else:
            product_id, quantity = item

        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValueError(f"Quantity for product {product_id} must be a positive integer")

        product_id = str(product_id)
        merged[product_id] = merged.get(product_id, 0) + quantity

    if not merged:
        raise ValueError("At least one item is required")
    return merged
