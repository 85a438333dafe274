"""
Inbox Pattern Implementation

Consumer-side deduplication of outbox deliveries.

Usage:
    from stockkeeper.inbox import InboxGuard

    async with InboxGuard(db, envelope.event_id, consumer_id="billing") as guard:
        if guard.should_process:
            await handle(envelope)
"""

from .guard import InboxGuard, is_processed, mark_processed, remove_processed

__all__ = [
    "InboxGuard",
    "is_processed",
    "mark_processed",
    "remove_processed",
]
