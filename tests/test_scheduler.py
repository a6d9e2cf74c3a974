"""
Tests for PeriodicTask — overlap guard, error isolation, and shutdown.
"""

import asyncio

import pytest

from relay.scheduler import PeriodicTask


class TestTick:
    @pytest.mark.asyncio
    async def test_tick_skipped_while_cycle_in_progress(self):
        release = asyncio.Event()
        calls = 0

        async def slow_cycle():
            nonlocal calls
            calls += 1
            await release.wait()

        task = PeriodicTask("slow", 60, slow_cycle)

        assert task.tick() is True
        await asyncio.sleep(0)
        assert task.cycle_in_progress
        assert task.tick() is False
        assert task.ticks_skipped == 1

        release.set()
        await asyncio.sleep(0.01)
        assert not task.cycle_in_progress
        assert task.tick() is True
        await task.stop()
        assert calls == 2

    @pytest.mark.asyncio
    async def test_cycle_errors_are_contained(self):
        async def broken():
            raise RuntimeError("boom")

        task = PeriodicTask("broken", 60, broken)
        task.tick()
        await task.stop()

        assert task.cycles_started == 1
        assert task.tick() is True
        await task.stop()


class TestLoop:
    @pytest.mark.asyncio
    async def test_runs_immediately_and_periodically(self):
        calls = 0

        async def cycle():
            nonlocal calls
            calls += 1

        task = PeriodicTask("fast", 0.01, cycle)
        task.start()
        assert task.running
        await asyncio.sleep(0.1)
        await task.stop()

        assert not task.running
        assert calls >= 2

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_cycle(self):
        finished = False

        async def cycle():
            nonlocal finished
            await asyncio.sleep(0.05)
            finished = True

        task = PeriodicTask("wait", 60, cycle)
        task.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await task.stop(timeout=5)

        assert finished

    @pytest.mark.asyncio
    async def test_stop_abandons_cycle_after_timeout(self):
        cancelled = False

        async def stuck():
            nonlocal cancelled
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled = True
                raise

        task = PeriodicTask("stuck", 60, stuck)
        task.tick()
        await asyncio.sleep(0)
        await task.stop(timeout=0.05)

        assert cancelled
        assert not task.cycle_in_progress
