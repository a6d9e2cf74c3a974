"""
Periodic task runner with an overlap guard.

Each tick starts one cycle unless the previous cycle is still running,
in which case the tick is skipped.  Slow backends therefore never pile
up concurrent cycles.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("relay.scheduler")


class PeriodicTask:
    """Run ``func`` now and then every ``interval`` seconds.

    Args:
        name: Label used in logs and task names.
        interval: Seconds between ticks.
        func: Coroutine function running one cycle.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
    ) -> None:
        self.name = name
        self.interval = max(0.01, float(interval))
        self._func = func
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._cycle_task: Optional[asyncio.Task[Any]] = None
        self.cycles_started = 0
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run(), name=f"wa-relay-{self.name}")
        logger.info("Scheduled %s every %.1fs", self.name, self.interval)

    def tick(self) -> bool:
        """Start a cycle unless one is in progress.  Returns True if started."""
        if self.cycle_in_progress:
            self.ticks_skipped += 1
            logger.debug("%s: previous cycle still running; tick skipped", self.name)
            return False
        self.cycles_started += 1
        self._cycle_task = asyncio.create_task(
            self._guarded(), name=f"wa-relay-{self.name}-cycle"
        )
        return True

    async def _guarded(self) -> None:
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s cycle failed", self.name)

    async def _run(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop ticking and give an in-flight cycle *timeout* seconds to finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        cycle = self._cycle_task
        if cycle is not None and not cycle.done():
            try:
                await asyncio.wait_for(asyncio.shield(cycle), timeout)
            except asyncio.TimeoutError:
                logger.warning("%s: abandoning in-flight cycle after %.1fs", self.name, timeout)
                cycle.cancel()
                try:
                    await cycle
                except asyncio.CancelledError:
                    pass
        self._cycle_task = None
