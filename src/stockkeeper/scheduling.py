"""
Periodic Background Tasks

Runs an async action in one or more worker loops. A run that reports
work done is followed immediately by another; an idle run waits for
the interval or an explicit trigger.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Start/stop wrapper around a polling loop.

    Usage:
        task = PeriodicTask("expiration-sweeper", 5.0, lambda worker: sweeper.run_once())
        await task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        action: Callable[[int], Awaitable[int]],
        concurrency: int = 1,
        stop_timeout: float = 10.0
    ):
        self.name = name
        self.interval = interval
        self.concurrency = max(1, concurrency)
        self.stop_timeout = stop_timeout
        self._action = action
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._wake: Optional[asyncio.Event] = None
        self.runs = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the worker loops."""
        if self._running:
            return

        self._running = True
        self._wake = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._run(index), name=f"{self.name}-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"{self.name} started with {self.concurrency} worker(s), interval={self.interval}s")

    async def stop(self):
        """Stop the loops, letting an in-progress run finish first."""
        if not self._running:
            return

        self._running = False
        self._wake.set()

        done, pending = await asyncio.wait(self._tasks, timeout=self.stop_timeout)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._tasks = []
        logger.info(f"{self.name} stopped")

    def trigger(self):
        """Wake idle workers before their interval elapses."""
        if self._wake is not None:
            self._wake.set()

    async def _run(self, index: int):
        while self._running:
            try:
                done = await self._action(index)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                logger.error(f"{self.name} worker {index} error: {e}", exc_info=True)
                done = 0

            self.runs += 1
            if not self._running:
                break
            if done:
                await asyncio.sleep(0)
                continue
            await self._idle()

    async def _idle(self):
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return
        if self._running:
            self._wake.clear()
