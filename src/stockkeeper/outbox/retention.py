"""
Outbox Retention

Deletes processed outbox events once they are older than the retention
period. Pending and dead-lettered events are never touched.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from ..observability import traced
from ..scheduling import PeriodicTask
from .models import utcnow
from .store import OutboxStore

logger = logging.getLogger(__name__)


class OutboxJanitor:
    """Periodic purge of delivered outbox events."""

    def __init__(
        self,
        store: OutboxStore,
        retention_days: int = 7,
        interval: float = 3600.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self._store = store
        self.retention = timedelta(days=retention_days)
        self._clock = clock
        self._task = PeriodicTask("outbox-janitor", interval, self._tick)

    @traced("outbox.purge_processed")
    async def run_once(self) -> int:
        """Purge once; returns the number of deleted events."""
        cutoff = self._clock() - self.retention
        return await self._store.purge_processed_older_than(cutoff)

    async def _tick(self, _worker: int) -> int:
        await self.run_once()
        return 0

    async def start(self):
        await self._task.start()

    async def stop(self):
        await self._task.stop()
