"""
Scheduler Poller

Time does not emit events, so scheduled triggers are re-checked on a fixed
period. On start the poller waits for board state to settle, runs one
initialization pass (catching triggers that came due while offline), then
ticks every `interval_seconds` until stopped. A failing tick is logged and
the next one still runs.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable

from loguru import logger

Tick = Callable[[], Awaitable[object]]


class SchedulerPoller:

    def __init__(
        self,
        tick: Tick,
        interval_seconds: float = 60.0,
        startup_delay_seconds: float = 1.0,
        initialize: Tick | None = None,
    ):
        self.tick = tick
        self.initialize = initialize
        self.interval_seconds = interval_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self.tick_count = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever())
        logger.info(f"[POLLER] Started (every {self.interval_seconds:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("[POLLER] Stopped")

    async def run_forever(self) -> None:
        if self.startup_delay_seconds > 0:
            await asyncio.sleep(self.startup_delay_seconds)
        if self.initialize is not None:
            await self._guarded(self.initialize, "initialization")
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    async def run_once(self) -> None:
        self.tick_count += 1
        await self._guarded(self.tick, f"tick #{self.tick_count}")

    @staticmethod
    async def _guarded(fn: Tick, label: str) -> None:
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[POLLER] Error during {label}: {e}")
