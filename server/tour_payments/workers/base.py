"""Periodic background worker loop."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from ..core.observability import metrics_collector

logger = logging.getLogger(__name__)


class BaseWorker(ABC):
    """
    Runs ``process`` every ``interval_seconds`` until stopped.

    A failing iteration is logged and retried after an interval that doubles
    per consecutive failure, capped at ``max_backoff_seconds``, so a gateway
    outage does not turn the sweep into a retry storm.
    """

    def __init__(self, name: str, interval_seconds: int = 60, max_backoff_seconds: int = 3600):
        self.name = name
        self.interval_seconds = interval_seconds
        self.max_backoff_seconds = max(max_backoff_seconds, interval_seconds)
        self.consecutive_failures = 0
        self.last_success_at: Optional[datetime] = None
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @abstractmethod
    async def process(self) -> None:
        """Process one iteration of the background task."""

    async def run_once(self) -> bool:
        """Run one iteration, recording its outcome. Returns False if it failed."""
        started = time.monotonic()
        try:
            await self.process()
        except Exception:
            self.consecutive_failures += 1
            metrics_collector.record_worker_run(self.name, "error")
            logger.exception(
                f"{self.name} worker iteration failed",
                extra={"worker": self.name, "consecutive_failures": self.consecutive_failures}
            )
            return False

        self.consecutive_failures = 0
        self.last_success_at = datetime.now(timezone.utc)
        metrics_collector.record_worker_run(self.name, "ok")
        logger.debug(
            f"{self.name} worker iteration completed",
            extra={"worker": self.name, "duration_seconds": time.monotonic() - started}
        )
        return True

    def next_delay(self) -> float:
        if self.consecutive_failures == 0:
            return self.interval_seconds
        return min(self.interval_seconds * 2 ** self.consecutive_failures, self.max_backoff_seconds)

    async def start(self) -> None:
        if self.running:
            logger.warning(f"{self.name} worker is already running")
            return

        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name=f"worker:{self.name}")
        logger.info(f"{self.name} worker started with {self.interval_seconds}s interval")

    async def stop(self) -> None:
        """Signal the loop and wait for the current iteration to finish."""
        if not self.running:
            return

        self._stopping.set()
        await self._task
        logger.info(f"{self.name} worker stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass
