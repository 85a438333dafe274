"""
Tests for PeriodicTask.
"""

import asyncio

import pytest

from stockkeeper.scheduling import PeriodicTask


async def wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


class TestPeriodicTask:

    @pytest.mark.asyncio
    async def test_runs_on_interval(self):
        calls = []

        async def action(index):
            calls.append(index)
            return 0

        task = PeriodicTask("test", 0.01, action)
        await task.start()
        assert await wait_for(lambda: len(calls) >= 3)
        await task.stop()

        assert task.running is False
        assert set(calls) == {0}

    @pytest.mark.asyncio
    async def test_busy_runs_repeat_without_waiting(self):
        remaining = [5]

        async def action(index):
            if remaining[0]:
                remaining[0] -= 1
                return 1
            return 0

        task = PeriodicTask("test", 60.0, action)
        await task.start()
        assert await wait_for(lambda: remaining[0] == 0)
        await task.stop()

    @pytest.mark.asyncio
    async def test_trigger_wakes_idle_worker(self):
        calls = []

        async def action(index):
            calls.append(index)
            return 0

        task = PeriodicTask("test", 60.0, action)
        await task.start()
        assert await wait_for(lambda: len(calls) == 1)

        task.trigger()
        assert await wait_for(lambda: len(calls) == 2)
        await task.stop()

    @pytest.mark.asyncio
    async def test_errors_do_not_kill_loop(self):
        calls = []

        async def action(index):
            calls.append(index)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

        task = PeriodicTask("test", 0.01, action)
        await task.start()
        assert await wait_for(lambda: len(calls) >= 2)
        await task.stop()

        assert task.errors == 1
        assert task.runs >= 2

    @pytest.mark.asyncio
    async def test_concurrency_and_stop_timeout(self):
        started = set()

        async def action(index):
            started.add(index)
            await asyncio.sleep(10)
            return 0

        task = PeriodicTask("test", 0.01, action, concurrency=3, stop_timeout=0.05)
        await task.start()
        assert await wait_for(lambda: len(started) == 3)

        # Stuck runs are cancelled once the stop timeout elapses
        await asyncio.wait_for(task.stop(), timeout=2)
        assert started == {0, 1, 2}
        assert task.running is False
