"""Service layer package."""

from .booking_store import BookingStore
from .idempotency_service import IdempotencyService
from .payment_service import InitiationResult, PaymentInitiationService
from .pricing_service import PriceQuote, PricingResolver
from .reconciliation_service import (
    CallbackReconciler,
    GatewayNotification,
    ReconciliationOutcome,
    ReconciliationResult,
)

__all__ = [
    "BookingStore",
    "CallbackReconciler",
    "GatewayNotification",
    "IdempotencyService",
    "InitiationResult",
    "PaymentInitiationService",
    "PriceQuote",
    "PricingResolver",
    "ReconciliationOutcome",
    "ReconciliationResult",
]
