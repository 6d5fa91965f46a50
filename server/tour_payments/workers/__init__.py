"""Background workers for the tour payments service."""

from .pending_payment_worker import IdempotencyCleanupWorker, PendingPaymentSweepWorker

__all__ = ["IdempotencyCleanupWorker", "PendingPaymentSweepWorker"]
