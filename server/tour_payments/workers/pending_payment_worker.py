"""Background workers for stale pending payments and expired idempotency records."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, settings
from ..core.database import async_session_factory
from ..core.exceptions import ProblemDetailsException
from ..gateways.registry import GatewayRegistry
from ..services.booking_store import BookingStore
from ..services.idempotency_service import IdempotencyService
from ..services.reconciliation_service import CallbackReconciler, ReconciliationOutcome
from .base import BaseWorker

logger = logging.getLogger(__name__)


class PendingPaymentSweepWorker(BaseWorker):
    """
    Re-verifies bookings stuck in pending payment.

    Covers callbacks that never arrived: any pending booking with a tracking
    id older than ``min_age_seconds`` is checked with its gateway and the
    answer applied through the reconciler.
    """

    def __init__(
        self,
        interval_seconds: int = 300,
        min_age_seconds: int = 600,
        batch_size: int = 50,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        gateways: Optional[GatewayRegistry] = None,
        config: Settings = settings,
    ):
        super().__init__(name="PendingPaymentSweep", interval_seconds=interval_seconds)
        self.min_age_seconds = min_age_seconds
        self.batch_size = batch_size
        self.session_factory = session_factory
        self.gateways = gateways or GatewayRegistry.from_settings(config)
        self.config = config

    async def sweep_once(self) -> dict[str, int]:
        """
        Verify one batch of stale pending bookings.

        Returns:
            Count of bookings per reconciliation outcome, plus ``errors``
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.min_age_seconds)
        counts: dict[str, int] = {}

        async with self.session_factory() as db:
            stale = await BookingStore(db).list_stale_pending(cutoff, limit=self.batch_size)
            booking_ids = [booking.id for booking in stale]

        for booking_id in booking_ids:
            # One session per booking so a failure cannot poison the batch
            async with self.session_factory() as db:
                reconciler = CallbackReconciler(db, self.gateways, self.config)
                try:
                    result = await reconciler.verify_booking(booking_id)
                    outcome = result.outcome.value
                except ProblemDetailsException as e:
                    logger.warning(
                        "Pending booking could not be verified",
                        extra={"booking_id": booking_id, "error_code": e.code, "worker": self.name}
                    )
                    outcome = "errors"
                except Exception:
                    logger.exception(
                        "Unexpected error verifying pending booking",
                        extra={"booking_id": booking_id, "worker": self.name}
                    )
                    outcome = "errors"
            counts[outcome] = counts.get(outcome, 0) + 1

        if booking_ids:
            logger.info(
                f"Swept {len(booking_ids)} pending bookings",
                extra={
                    "worker": self.name,
                    "applied": counts.get(ReconciliationOutcome.APPLIED.value, 0),
                    "counts": counts,
                }
            )
        return counts

    async def process(self) -> None:
        await self.sweep_once()


class IdempotencyCleanupWorker(BaseWorker):
    """Deletes idempotency records past their expiry."""

    def __init__(
        self,
        interval_seconds: int = 3600,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    ):
        super().__init__(name="IdempotencyCleanup", interval_seconds=interval_seconds)
        self.session_factory = session_factory

    async def process(self) -> None:
        async with self.session_factory() as db:
            try:
                await IdempotencyService(db).cleanup_expired_records()
            except Exception:
                await db.rollback()
                raise
