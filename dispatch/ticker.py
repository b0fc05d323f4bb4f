"""
Continuation Ticker — in-process periodic trigger for the sweeper.

Deployments with an external scheduler (cron hitting
POST /api/v1/dispatches/continue, or scripts/continue_dispatch.py) leave
scheduler.enabled off and never start this. Runs as a background task
inside the FastAPI lifespan.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from dispatch.service import DispatchService

logger = structlog.get_logger()


class ContinuationTicker:

    def __init__(self, service: DispatchService, interval_s: float = 30):
        self.service = service
        self.interval_s = interval_s
        self.ticks: int = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._tick_loop(), name="continuation_ticker")
        logger.info("continuation_ticker_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("continuation_ticker_stopped", ticks=self.ticks)

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                await self.service.continue_jobs()
                self.ticks += 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("continuation_tick_error", error=str(e))

            await asyncio.sleep(self.interval_s)
