"""
Reservation Service

Boundary over the coordinator for checkout callers: conflicts and
missing reservations come back as result objects instead of
exceptions.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel

from ..errors import ReservationConflict, ReservationNotFound
from .coordinator import ReservationCoordinator
from .models import ItemLike, ItemShortage, StockReservation

logger = logging.getLogger(__name__)


class ReserveResponse(BaseModel):
    success: bool
    order_id: str
    expires_at: Optional[datetime] = None
    reservations: List[StockReservation] = []
    failed_items: List[ItemShortage] = []
    error: Optional[str] = None


class ConfirmResponse(BaseModel):
    success: bool
    order_id: str
    not_found: bool = False
    error: Optional[str] = None


class ReleaseResponse(BaseModel):
    success: bool
    order_id: str
    released: int = 0
    error: Optional[str] = None


class ReservationService:
    """
    Checkout-facing API.

    Usage:
        service = ReservationService(coordinator)
        response = await service.reserve("order-1", [("sku-1", 2)])
        if not response.success:
            for item in response.failed_items:
                ...
    """

    def __init__(self, coordinator: ReservationCoordinator):
        self._coordinator = coordinator

    async def reserve(
        self,
        order_id: str,
        items: Iterable[ItemLike],
        ttl_minutes: Optional[int] = 15
    ) -> ReserveResponse:
        try:
            result = await self._coordinator.reserve(order_id, items, ttl_minutes)
        except ReservationConflict as e:
            return ReserveResponse(
                success=False,
                order_id=str(order_id),
                failed_items=e.shortages,
                error=e.message,
            )
        except ValueError as e:
            return ReserveResponse(success=False, order_id=str(order_id), error=str(e))

        return ReserveResponse(
            success=True,
            order_id=result.order_id,
            expires_at=result.expires_at,
            reservations=result.reservations,
        )

    async def confirm(self, order_id: str) -> ConfirmResponse:
        try:
            await self._coordinator.confirm(order_id)
        except ReservationNotFound as e:
            return ConfirmResponse(success=False, order_id=str(order_id), not_found=True, error=str(e))
        return ConfirmResponse(success=True, order_id=str(order_id))

    async def release(self, order_id: str) -> ReleaseResponse:
        try:
            released = await self._coordinator.release(order_id)
        except ReservationNotFound as e:
            return ReleaseResponse(success=False, order_id=str(order_id), error=str(e))
        except ReservationConflict as e:
            return ReleaseResponse(success=False, order_id=str(order_id), error=e.message)
        return ReleaseResponse(success=True, order_id=str(order_id), released=len(released))
