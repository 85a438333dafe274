"""
Stock Reservations

Timed, all-or-nothing stock holds with confirm/release, background
expiry and low-stock alerting.

Usage:
    from stockkeeper.reservations import ReservationCoordinator, ReservationLedger

    coordinator = ReservationCoordinator(ReservationLedger(db), outbox)
    await coordinator.reserve("order-1", [("sku-1", 2)], ttl_minutes=15)
"""

from .models import (
    AlertStatus,
    AvailabilityCheck,
    AvailabilityReport,
    InventoryItem,
    ItemShortage,
    LowStockAlert,
    MovementType,
    ReservationItem,
    ReservationResult,
    ReservationStatus,
    ShortageReason,
    StockMovement,
    StockReservation,
    StockStatus,
    merge_items,
)
from .locks import KeyedLocks
from .ledger import ReservationLedger
from .coordinator import ReservationCoordinator
from .sweeper import ExpirationSweeper
from .low_stock import LowStockMonitor
from .service import ConfirmResponse, ReleaseResponse, ReservationService, ReserveResponse

__all__ = [
    "AlertStatus",
    "AvailabilityCheck",
    "AvailabilityReport",
    "InventoryItem",
    "ItemShortage",
    "LowStockAlert",
    "MovementType",
    "ReservationItem",
    "ReservationResult",
    "ReservationStatus",
    "ShortageReason",
    "StockMovement",
    "StockReservation",
    "StockStatus",
    "merge_items",
    "KeyedLocks",
    "ReservationLedger",
    "ReservationCoordinator",
    "ExpirationSweeper",
    "LowStockMonitor",
    "ReservationService",
    "ReserveResponse",
    "ConfirmResponse",
    "ReleaseResponse",
]
