"""
Outbox Models
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..errors import SerializationError


def utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxStatus(str, Enum):
    """Derived status of an outbox event."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    PROCESSED = "processed"
    DEAD = "dead"  # Exhausted retries or unpublishable


class OutboxEvent(BaseModel):
    """A row of the outbox table."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    sequence: Optional[int] = None
    aggregate_id: str
    aggregate_type: str
    event_type: str
    payload: str

    created_at: datetime = Field(default_factory=utcnow)
    processed: bool = False
    processed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3

    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None
    dead_lettered_at: Optional[datetime] = None

    @property
    def dead_lettered(self) -> bool:
        return not self.processed and self.retry_count >= self.max_retries

    def status_at(self, now: datetime) -> OutboxStatus:
        if self.processed:
            return OutboxStatus.PROCESSED
        if self.dead_lettered:
            return OutboxStatus.DEAD
        if self.claimed_until is not None and self.claimed_until > now:
            return OutboxStatus.IN_FLIGHT
        return OutboxStatus.PENDING


class EventEnvelope(BaseModel):
    """
    The message handed to the broker.

    Consumers deduplicate on event_id; it is the outbox row id and
    never changes across redeliveries.
    """

    event_id: str
    aggregate_id: str
    aggregate_type: str
    event_type: str
    payload: Dict[str, Any]
    occurred_at: datetime

    @classmethod
    def from_event(cls, event: OutboxEvent) -> "EventEnvelope":
        """Build the envelope, decoding the stored payload."""
        try:
            payload = json.loads(event.payload)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Payload of event {event.id} is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise SerializationError(f"Payload of event {event.id} is not a JSON object")

        return cls(
            event_id=event.id,
            aggregate_id=event.aggregate_id,
            aggregate_type=event.aggregate_type,
            event_type=event.event_type,
            payload=payload,
            occurred_at=event.created_at,
        )

    def to_message(self) -> Dict[str, str]:
        """Flat string fields for the broker."""
        return {
            "event_id": self.event_id,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "event_type": self.event_type,
            "payload": encode_payload(self.payload),
            "occurred_at": self.occurred_at.isoformat(),
        }


def encode_payload(payload: Any) -> str:
    """Serialize an event payload to JSON text."""
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, default=_json_default, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Event payload is not serializable: {e}") from e


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
