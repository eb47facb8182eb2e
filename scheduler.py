"""Periodic overdue sweep.

Runs ``BorrowingManager.sweep_overdue`` on a fixed interval as an asyncio task.
Each sweep runs in a worker thread, so the event loop keeps serving requests while
sqlite does the work.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from circulation import BorrowingManager
from config import settings

logger = logging.getLogger(__name__)


class OverdueSweeper:
    def __init__(self, manager: BorrowingManager, interval_seconds: Optional[float] = None) -> None:
        self.manager = manager
        self.interval = settings.sweep_interval_seconds if interval_seconds is None else interval_seconds
        self.last_run: Optional[datetime] = None
        self.last_count: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    def run_once(self, now: Optional[datetime] = None) -> int:
        count = self.manager.sweep_overdue(now)
        self.last_run = self.manager.now()
        self.last_count = count
        return count

    async def run_forever(self) -> None:
        if self._stopping is None:
            self._stopping = asyncio.Event()
        logger.info(f"Overdue sweeper started (every {self.interval:g}s)")
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                # A failed tick must not kill the schedule; the next tick retries.
                logger.exception("Overdue sweep failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Overdue sweeper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if not self.running:
            self._stopping = asyncio.Event()
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self, timeout: float = 10.0) -> None:
        """Ask the loop to finish its current sweep and exit; cancel it after ``timeout``."""
        if self._task is None:
            return
        if self._stopping is not None:
            self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        finally:
            self._task = None
            self._stopping = None
