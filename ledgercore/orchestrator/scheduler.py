"""
Scheduler

Runs a periodic async job (ledger maintenance) at a fixed interval.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """
    Interval scheduler for one async job.

    A failing job is logged and the next tick still fires.

    Example:
        >>> scheduler = Scheduler(interval_minutes=15)
        >>> scheduler.start(orchestrator.run_maintenance)
    """

    def __init__(self, interval_minutes: float = 15, name: str = "maintenance"):
        self.name = name
        self.interval_seconds = interval_minutes * 60

        self._running = False
        self._paused = False
        self._task: Optional[asyncio.Task] = None
        self._job: Optional[Job] = None

        self.next_run_at: Optional[datetime] = None
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.run_count = 0
        self.error_count = 0

    @property
    def interval_minutes(self) -> float:
        return self.interval_seconds / 60

    def start(self, job: Job):
        """
        Start ticking. Must be called from a running event loop.

        Args:
            job: Coroutine function invoked on each tick
        """
        if self._running:
            logger.warning(f"Scheduler '{self.name}' already running")
            return

        self._job = job
        self._running = True
        self._paused = False
        self._update_next_run()

        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduler '{self.name}' started, every {self.interval_minutes:g} minutes")

    def stop(self):
        """Stop the scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        self.next_run_at = None
        logger.info(f"Scheduler '{self.name}' stopped")

    def pause(self):
        self._paused = True
        logger.info(f"Scheduler '{self.name}' paused")

    def resume(self):
        self._paused = False
        self._update_next_run()
        logger.info(f"Scheduler '{self.name}' resumed")

    def is_running(self) -> bool:
        return self._running

    def is_paused(self) -> bool:
        return self._paused

    def set_interval(self, minutes: float):
        """Change the interval; applies from the next tick."""
        self.interval_seconds = minutes * 60
        self._update_next_run()
        logger.info(f"Scheduler '{self.name}' interval set to {minutes:g} minutes")

    def _update_next_run(self):
        if self._running and not self._paused:
            self.next_run_at = _utcnow() + timedelta(seconds=self.interval_seconds)

    async def _loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info(f"Scheduler '{self.name}' task cancelled")
                break

            if not self._running:
                break
            if self._paused:
                continue

            await self._invoke("scheduled")
            self._update_next_run()

    async def run_now(self) -> bool:
        """
        Run the job immediately.

        Returns:
            True if the job ran without raising
        """
        if not self._job:
            logger.warning(f"Scheduler '{self.name}' has no job configured")
            return False
        return await self._invoke("manual")

    async def _invoke(self, trigger: str) -> bool:
        self.last_run_at = _utcnow()
        self.run_count += 1
        logger.info(f"{trigger.capitalize()} {self.name} run #{self.run_count} starting")

        try:
            await self._job()
        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            logger.error(f"{self.name} run #{self.run_count} failed: {e}")
            return False

        self.last_error = None
        return True

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "name": self.name,
            "running": self._running,
            "paused": self._paused,
            "interval_minutes": self.interval_minutes,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }
