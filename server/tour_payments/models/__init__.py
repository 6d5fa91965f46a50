"""SQLAlchemy models for the tour payments service."""

from .booking import (
    Booking,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    RateClass,
)
from .destination import Destination
from .idempotency import IdempotencyRecord

__all__ = [
    "Booking",
    "BookingStatus",
    "Destination",
    "IdempotencyRecord",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentTransaction",
    "RateClass",
]
