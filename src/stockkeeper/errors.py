"""
Stockkeeper Exception Classes

Domain and infrastructure errors raised by the outbox and the
reservation coordinator.
"""

from typing import Any, List, Optional


class StockkeeperError(Exception):
    """Base exception for all stockkeeper errors."""


class PersistenceError(StockkeeperError):
    """
    Underlying store unavailable or a statement failed.

    The surrounding transaction is rolled back, so the operation
    has no side effect.
    """


class DuplicateKeyError(PersistenceError):
    """A unique constraint rejected the write."""


class SerializationError(StockkeeperError):
    """Event payload cannot be encoded or decoded. Never retried."""


class PublishFailure(StockkeeperError):
    """Transient broker error. Retried by the dispatcher."""


class DeadLetter(StockkeeperError):
    """
    An outbox event exhausted its retry budget (or was unpublishable).

    Passed to the dispatcher's alert hook; the row is kept for
    operator inspection through the DLQ manager.
    """

    def __init__(self, event: Any, reason: str):
        self.event = event
        self.reason = reason
        super().__init__(f"Outbox event {getattr(event, 'id', event)} dead-lettered: {reason}")


class ReservationConflict(StockkeeperError):
    """
    Insufficient stock, duplicate reservation, illegal state transition
    or an order that changed while its locks were being taken.

    Attributes:
        reason: Machine-readable reason code
        shortages: Per-item shortages (for insufficient stock)
    """

    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    DUPLICATE_RESERVATION = "DUPLICATE_RESERVATION"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    INVALID_ADJUSTMENT = "INVALID_ADJUSTMENT"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"

    def __init__(
        self,
        message: str,
        reason: str = INSUFFICIENT_STOCK,
        shortages: Optional[List[Any]] = None
    ):
        self.message = message
        self.reason = reason
        self.shortages = list(shortages or [])
        super().__init__(message)


class ReservationNotFound(StockkeeperError):
    """No HELD reservation matches the order."""

    def __init__(self, order_id: str, message: Optional[str] = None):
        self.order_id = order_id
        super().__init__(message or f"No held reservation found for order '{order_id}'")
