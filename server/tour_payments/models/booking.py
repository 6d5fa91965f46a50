"""Booking and payment transaction model definitions."""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    """Payment status enumeration."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentMethod(str, Enum):
    """Payment method chosen by the customer; selects the gateway adapter."""
    CARD = "card"
    MPESA = "mpesa"
    PESAPAL = "pesapal"
    BANK_TRANSFER = "bank_transfer"


class RateClass(str, Enum):
    """Pricing tier the customer qualifies for."""
    CITIZEN = "citizen"
    RESIDENT = "resident"
    NON_RESIDENT = "non_resident"


class Booking(Base):
    """
    One customer's request to purchase a destination.

    The booking id doubles as the merchant reference handed to gateways.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )

    destination_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("destinations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Customer details
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    # Normalised MSISDN used to correlate mobile-money callbacks
    payer_msisdn: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)

    participants: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    special_requests: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Authoritative pricing at booking time
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_class: Mapped[RateClass] = mapped_column(String(20), nullable=False)
    rate_class_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    payment_method: Mapped[PaymentMethod] = mapped_column(String(20), nullable=False, index=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True
    )
    status: Mapped[BookingStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True
    )

    # Provider tracking id (Stripe session, M-Pesa CheckoutRequestID, PesaPal OrderTrackingId)
    gateway_tracking_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True, index=True)
    # Secondary provider reference (M-Pesa receipt, PesaPal confirmation code)
    gateway_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    review_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("participants > 0", name="ck_booking_participants_positive"),
        CheckConstraint("total_amount >= 0", name="ck_booking_total_non_negative"),
        CheckConstraint(
            "status <> 'confirmed' OR payment_status = 'paid'",
            name="ck_booking_confirmed_requires_paid"
        ),
    )

    @property
    def is_pending_payment(self) -> bool:
        return self.payment_status == PaymentStatus.PENDING

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, method={self.payment_method}, "
            f"payment_status={self.payment_status}, status={self.status})>"
        )


class PaymentTransaction(Base):
    """Audit record of one gateway order attempt, upserted by tracking id."""

    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )

    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    provider: Mapped[PaymentMethod] = mapped_column(String(20), nullable=False)
    tracking_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    merchant_reference: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    # Provider vocabulary, e.g. INITIATED, COMPLETED, FAILED
    status: Mapped[str] = mapped_column(String(40), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(tracking_id={self.tracking_id}, "
            f"booking_id={self.booking_id}, status={self.status})>"
        )
