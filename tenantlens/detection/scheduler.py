"""Periodic background scans."""

import asyncio
import logging
from typing import Optional

from .orchestrator import FindingsOrchestrator

logger = logging.getLogger(__name__)


class ScanScheduler:
    """
    Calls orchestrator.run_all() every `interval` seconds.

    The first scan runs one interval after start(). A failed scan is
    logged and the schedule continues.
    """

    def __init__(self, orchestrator: FindingsOrchestrator, interval: float):
        if interval <= 0:
            raise ValueError(f"Scan interval must be positive, got {interval}")
        self.orchestrator = orchestrator
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scan scheduler started (every {self.interval:.0f}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scan scheduler stopped")

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                records = await self.orchestrator.run_all()
                logger.info(f"Scheduled scan finished with {len(records)} findings")
            except Exception as e:
                logger.error(f"Scheduled scan failed: {e}")
            self.runs += 1
