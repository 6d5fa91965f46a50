"""Starts and stops the background workers with the application."""

import asyncio
import logging
from typing import Any, Dict

from ..core.config import Settings, settings
from .base import BaseWorker
from .pending_payment_worker import IdempotencyCleanupWorker, PendingPaymentSweepWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """
    Owns the configured background workers.

    Idempotency cleanup always runs. The pending payment sweep calls the
    payment gateways and only runs when ``SWEEP_ENABLED`` is set.
    """

    def __init__(self, config: Settings = settings):
        self.workers: Dict[str, BaseWorker] = {
            "idempotency_cleanup": IdempotencyCleanupWorker(interval_seconds=3600),
        }
        if config.sweep_enabled:
            self.workers["pending_payment_sweep"] = PendingPaymentSweepWorker(
                interval_seconds=config.sweep_interval_seconds,
                min_age_seconds=config.sweep_min_age_seconds,
                config=config,
            )

    async def start_all(self) -> None:
        for worker in self.workers.values():
            await worker.start()
        logger.info("Background workers started", extra={"workers": list(self.workers)})

    async def stop_all(self) -> None:
        results = await asyncio.gather(
            *(worker.stop() for worker in self.workers.values()),
            return_exceptions=True,
        )
        for name, result in zip(self.workers, results):
            if isinstance(result, Exception):
                logger.error(f"Error stopping worker {name}", exc_info=result)
        logger.info("Background workers stopped")

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Running state, last success and failure streak per worker."""
        return {
            name: {
                "running": worker.running,
                "last_success_at": worker.last_success_at.isoformat() if worker.last_success_at else None,
                "consecutive_failures": worker.consecutive_failures,
            }
            for name, worker in self.workers.items()
        }


# Global worker manager instance
worker_manager = WorkerManager()
