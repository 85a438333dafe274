"""
Dead Letter Queue (DLQ) Management

Operator tooling for outbox events that exhausted their retries or
could not be serialized. Dead-lettered rows stay in the outbox table;
this module queries, requeues and purges them.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..database.adapter import DatabaseAdapter, affected_rows
from ..observability import traced
from .models import utcnow

logger = logging.getLogger(__name__)

_DEAD = "processed = FALSE AND retry_count >= max_retries"


class DLQAction(str, Enum):
    """Actions that can be taken on DLQ entries."""
    RETRY = "retry"
    PURGE = "purge"


@dataclass
class DLQEntry:
    """A dead-lettered outbox event."""
    id: str
    aggregate_id: str
    aggregate_type: str
    event_type: str
    payload: Any
    retry_count: int
    max_retries: int
    last_error: Optional[str]
    created_at: datetime
    failed_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "event_type": self.event_type,
            "payload": self.payload,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None
        }


def _decode(payload: str) -> Any:
    # Unserializable payloads end up here too; show them raw
    try:
        return json.loads(payload)
    except (TypeError, ValueError):
        return payload


class DLQManager:
    """
    Manages the Dead Letter Queue.

    Responsibilities:
    - Query DLQ entries
    - Requeue entries for another round of attempts
    - Purge entries
    - Generate DLQ reports
    """

    def __init__(self, db: DatabaseAdapter, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._clock = clock

    async def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        aggregate_id: Optional[str] = None
    ) -> List[DLQEntry]:
        """Get DLQ entries, newest first."""
        columns = """
            id, aggregate_id, aggregate_type, event_type, payload, retry_count,
            max_retries, last_error, created_at, dead_lettered_at
        """
        if aggregate_id:
            rows = await self._db.fetch(
                f"""
                SELECT {columns} FROM outbox_events
                WHERE {_DEAD} AND aggregate_id = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                aggregate_id, limit, offset
            )
        else:
            rows = await self._db.fetch(
                f"""
                SELECT {columns} FROM outbox_events
                WHERE {_DEAD}
                ORDER BY created_at DESC
                LIMIT $1 OFFSET $2
                """,
                limit, offset
            )

        return [
            DLQEntry(
                id=row["id"],
                aggregate_id=row["aggregate_id"],
                aggregate_type=row["aggregate_type"],
                event_type=row["event_type"],
                payload=_decode(row["payload"]),
                retry_count=row["retry_count"],
                max_retries=row["max_retries"],
                last_error=row.get("last_error"),
                created_at=row["created_at"],
                failed_at=row.get("dead_lettered_at")
            )
            for row in rows
        ]

    async def get_count(self, aggregate_id: Optional[str] = None) -> int:
        """Get total DLQ entry count."""
        if aggregate_id:
            count = await self._db.fetchval(
                f"SELECT COUNT(*) FROM outbox_events WHERE {_DEAD} AND aggregate_id = $1",
                aggregate_id
            )
        else:
            count = await self._db.fetchval(f"SELECT COUNT(*) FROM outbox_events WHERE {_DEAD}")
        return int(count or 0)

    @traced("outbox.dlq.retry_entry")
    async def retry_entry(self, entry_id: str, operator_id: Optional[str] = None) -> bool:
        """
        Requeue a DLQ entry with a fresh retry budget.

        Args:
            entry_id: The outbox event ID
            operator_id: ID of operator performing the action

        Returns:
            True if the entry was requeued
        """
        status = await self._db.execute(
            f"""
            UPDATE outbox_events
            SET retry_count = 0, last_error = NULL, next_attempt_at = NULL,
                dead_lettered_at = NULL, claimed_by = NULL, claimed_until = NULL
            WHERE id = $1 AND {_DEAD}
            """,
            entry_id
        )

        success = affected_rows(status) == 1
        if success:
            logger.info(f"DLQ entry {entry_id} reset for retry by {operator_id}")
            self._log_action(entry_id, DLQAction.RETRY, operator_id)
        return success

    @traced("outbox.dlq.retry_all")
    async def retry_all(
        self,
        aggregate_id: Optional[str] = None,
        operator_id: Optional[str] = None
    ) -> int:
        """Requeue all DLQ entries (optionally for one aggregate)."""
        reset = """
            UPDATE outbox_events
            SET retry_count = 0, last_error = NULL, next_attempt_at = NULL,
                dead_lettered_at = NULL, claimed_by = NULL, claimed_until = NULL
        """
        if aggregate_id:
            status = await self._db.execute(
                f"{reset} WHERE {_DEAD} AND aggregate_id = $1",
                aggregate_id
            )
        else:
            status = await self._db.execute(f"{reset} WHERE {_DEAD}")

        count = affected_rows(status)
        logger.info(f"DLQ retry all: reset {count} entries by {operator_id}")
        return count

    async def purge_entry(self, entry_id: str, operator_id: Optional[str] = None) -> bool:
        """Permanently delete a DLQ entry."""
        status = await self._db.execute(
            f"DELETE FROM outbox_events WHERE id = $1 AND {_DEAD}",
            entry_id
        )

        success = affected_rows(status) == 1
        if success:
            self._log_action(entry_id, DLQAction.PURGE, operator_id)
        return success

    async def purge_older_than(self, cutoff: datetime, operator_id: Optional[str] = None) -> int:
        """Delete DLQ entries created before cutoff."""
        status = await self._db.execute(
            f"DELETE FROM outbox_events WHERE {_DEAD} AND created_at < $1",
            cutoff
        )

        count = affected_rows(status)
        logger.info(f"DLQ purged {count} entries older than {cutoff.isoformat()} by {operator_id}")
        return count

    async def get_stats(self) -> Dict[str, Any]:
        """Get DLQ statistics."""
        by_type = await self._db.fetch(
            f"""
            SELECT event_type, COUNT(*) AS count
            FROM outbox_events
            WHERE {_DEAD}
            GROUP BY event_type
            ORDER BY count DESC
            """
        )
        oldest = await self._db.fetchval(
            f"SELECT MIN(created_at) AS oldest_created_at FROM outbox_events WHERE {_DEAD}"
        )

        return {
            "total_count": sum(int(row["count"]) for row in by_type),
            "by_event_type": {row["event_type"]: int(row["count"]) for row in by_type},
            "oldest_entry": oldest.isoformat() if oldest else None
        }

    def _log_action(self, entry_id: str, action: DLQAction, operator_id: Optional[str]):
        logger.info(f"DLQ action: {action.value} on {entry_id} by {operator_id}")
