"""
Inbox Guard

Consumer-side deduplication. The outbox delivers at least once; a
consumer wrapping its handler in InboxGuard processes each event_id
at most once.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from ..database.adapter import DatabaseAdapter, affected_rows
from ..errors import DuplicateKeyError

logger = logging.getLogger(__name__)


class InboxGuard:
    """
    Guards against duplicate event processing.

    Usage:
        async with InboxGuard(db, envelope.event_id, "billing") as guard:
            if guard.should_process:
                await handle(envelope)
            else:
                logger.info("Event already processed, skipping")

    If processing fails (exception raised), the inbox entry is removed
    so a redelivery is handled again.
    """

    def __init__(self, db: DatabaseAdapter, event_id: str, consumer_id: str):
        self._db = db
        self.event_id = str(event_id)
        self.consumer_id = consumer_id
        self.should_process = False

    async def __aenter__(self):
        self.should_process = await mark_processed(self._db, self.event_id, self.consumer_id)
        if self.should_process:
            logger.debug(
                f"InboxGuard: event {self.event_id} marked for processing by {self.consumer_id}"
            )
        else:
            logger.debug(
                f"InboxGuard: event {self.event_id} already processed by {self.consumer_id}"
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and self.should_process:
            await remove_processed(self._db, self.event_id, self.consumer_id)
            logger.warning(
                f"InboxGuard: removed entry for failed processing of event {self.event_id}"
            )
        return False


async def is_processed(db: DatabaseAdapter, event_id: str, consumer_id: str) -> bool:
    """
    Check if an event has been processed by a consumer.

    Returns:
        True if already processed, False otherwise
    """
    row = await db.fetchrow(
        """
        SELECT 1 AS seen FROM inbox_entries
        WHERE event_id = $1 AND consumer_id = $2
        """,
        str(event_id),
        consumer_id
    )
    return row is not None


async def mark_processed(
    db: DatabaseAdapter,
    event_id: str,
    consumer_id: str,
    processed_at: Optional[datetime] = None
) -> bool:
    """
    Mark an event as processed.

    Returns:
        True if marked, False if this consumer already had it
    """
    try:
        await db.execute(
            """
            INSERT INTO inbox_entries (event_id, consumer_id, processed_at)
            VALUES ($1, $2, $3)
            """,
            str(event_id),
            consumer_id,
            processed_at or datetime.now(timezone.utc)
        )
    except DuplicateKeyError:
        return False
    return True


async def remove_processed(db: DatabaseAdapter, event_id: str, consumer_id: str) -> bool:
    """Remove a processed-event record so the event can be handled again."""
    status = await db.execute(
        """
        DELETE FROM inbox_entries
        WHERE event_id = $1 AND consumer_id = $2
        """,
        str(event_id),
        consumer_id
    )
    return affected_rows(status) == 1
