"""Persistence of bookings and their payment audit trail."""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import PersistenceError
from ..core.observability import metrics_collector
from ..models.booking import (
    Booking,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    RateClass,
)
from .pricing_service import PriceQuote

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStore:
    """
    Booking persistence with conditional state transitions.

    Every transition is an ``UPDATE ... WHERE payment_status = 'pending'`` so
    that concurrent or repeated callbacks apply at most once. Audit writes are
    best-effort and never raise.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_pending(
        self,
        *,
        destination_id: str,
        user_id: str,
        customer_name: str,
        customer_email: str,
        customer_phone: str,
        participants: int,
        quote: PriceQuote,
        payment_method: PaymentMethod,
        payer_msisdn: Optional[str] = None,
        start_date: Optional[date] = None,
        special_requests: Optional[str] = None,
    ) -> Booking:
        """
        Insert a pending booking priced from the quote and commit it.

        Raises:
            PersistenceError: If the insert fails
        """
        booking = Booking(
            destination_id=destination_id,
            user_id=user_id,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer_phone,
            payer_msisdn=payer_msisdn,
            participants=participants,
            start_date=start_date,
            special_requests=special_requests,
            unit_price=quote.unit_price,
            total_amount=quote.total_amount,
            currency=quote.currency,
            rate_class=quote.rate_class.value,
            rate_class_fallback=quote.fallback_applied,
            payment_method=PaymentMethod(payment_method).value,
            payment_status=PaymentStatus.PENDING.value,
            status=BookingStatus.PENDING.value,
        )
        try:
            self.db.add(booking)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to create pending booking",
                extra={"destination_id": destination_id, "user_id": user_id, "error": str(e)}
            )
            raise PersistenceError("create_booking") from e

        logger.info(
            "Pending booking created",
            extra={
                "booking_id": booking.id,
                "destination_id": destination_id,
                "payment_method": booking.payment_method,
                "total_amount": str(booking.total_amount),
                "currency": booking.currency,
                "rate_class": booking.rate_class,
                "rate_class_fallback": booking.rate_class_fallback,
            }
        )
        return booking

    async def get(self, booking_id: str) -> Optional[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_tracking_id(self, tracking_id: str) -> Optional[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.gateway_tracking_id == tracking_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _conditional_update(self, booking_id: str, operation: str, **values: Any) -> bool:
        stmt = (
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.payment_status == PaymentStatus.PENDING.value,
            )
            .values(updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Conditional booking update failed",
                extra={"booking_id": booking_id, "operation": operation, "error": str(e)}
            )
            raise PersistenceError(operation, booking_id) from e
        return result.rowcount == 1

    async def attach_tracking(
        self,
        booking_id: str,
        tracking_id: str,
        gateway_reference: Optional[str] = None,
    ) -> bool:
        """
        Record the provider tracking id on a still-pending booking.

        Returns:
            True if the booking was updated, False if it is no longer pending

        Raises:
            PersistenceError: If the update fails
        """
        values: dict[str, Any] = {"gateway_tracking_id": tracking_id}
        if gateway_reference:
            values["gateway_reference"] = gateway_reference
        return await self._conditional_update(booking_id, "attach_tracking", **values)

    async def transition(
        self,
        booking_id: str,
        payment_status: PaymentStatus,
        booking_status: Optional[BookingStatus] = None,
        gateway_reference: Optional[str] = None,
    ) -> bool:
        """
        Move a pending booking to a final payment state.

        A confirmed booking status is only ever written together with a paid
        payment status.

        Returns:
            True if this call applied the change, False if the booking was
            already out of the pending state

        Raises:
            ValueError: If asked to confirm without payment
            PersistenceError: If the update fails
        """
        if booking_status == BookingStatus.CONFIRMED and payment_status != PaymentStatus.PAID:
            raise ValueError("a booking can only be confirmed once paid")

        values: dict[str, Any] = {"payment_status": PaymentStatus(payment_status).value}
        if booking_status is not None:
            values["status"] = BookingStatus(booking_status).value
        if gateway_reference:
            values["gateway_reference"] = gateway_reference

        applied = await self._conditional_update(booking_id, "transition", **values)
        logger.info(
            "Booking transition applied" if applied else "Booking transition skipped, not pending",
            extra={
                "booking_id": booking_id,
                "payment_status": values["payment_status"],
                "booking_status": values.get("status"),
            }
        )
        return applied

    async def find_pending_by_msisdn(
        self,
        msisdn: str,
        payment_method: PaymentMethod = PaymentMethod.MPESA,
    ) -> Sequence[Booking]:
        stmt = (
            select(Booking)
            .where(
                Booking.payer_msisdn == msisdn,
                Booking.payment_method == PaymentMethod(payment_method).value,
                Booking.payment_status == PaymentStatus.PENDING.value,
            )
            .order_by(Booking.created_at)
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def mark_review(self, booking_ids: Sequence[str], reason: str) -> None:
        """Flag bookings for operator attention without changing their state."""
        if not booking_ids:
            return
        stmt = (
            update(Booking)
            .where(Booking.id.in_(list(booking_ids)))
            .values(review_reason=reason[:255], updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("mark_review") from e

        logger.warning(
            "Bookings flagged for review",
            extra={"booking_ids": list(booking_ids), "reason": reason}
        )

    async def list_stale_pending(self, older_than: datetime, limit: int = 50) -> Sequence[Booking]:
        """Pending bookings with a tracking id created before ``older_than``."""
        stmt = (
            select(Booking)
            .where(
                Booking.payment_status == PaymentStatus.PENDING.value,
                Booking.gateway_tracking_id.is_not(None),
                Booking.payment_method != PaymentMethod.BANK_TRANSFER.value,
                Booking.created_at < older_than,
            )
            .order_by(Booking.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def record_transaction(
        self,
        *,
        booking_id: str,
        provider: PaymentMethod,
        tracking_id: str,
        status: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        payment_method: Optional[str] = None,
        gateway_response: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Upsert the audit transaction for a tracking id.

        The same tracking id with the same status is left untouched. Failures
        are logged and counted, never raised. A failed write rolls the session
        back, which expires every loaded instance; callers must reload any
        booking they keep using after a False return.

        Returns:
            True if the audit row is now in place
        """
        provider_value = PaymentMethod(provider).value
        try:
            stmt = select(PaymentTransaction).where(PaymentTransaction.tracking_id == tracking_id)
            result = await self.db.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing is None:
                self.db.add(PaymentTransaction(
                    booking_id=booking_id,
                    provider=provider_value,
                    tracking_id=tracking_id,
                    merchant_reference=booking_id,
                    amount=amount,
                    currency=currency,
                    status=status,
                    payment_method=payment_method,
                    gateway_response=gateway_response,
                ))
            elif existing.status == status:
                return True
            else:
                existing.status = status
                if amount is not None:
                    existing.amount = amount
                if currency:
                    existing.currency = currency
                if payment_method:
                    existing.payment_method = payment_method
                if gateway_response is not None:
                    existing.gateway_response = gateway_response

            await self.db.commit()
        except (IntegrityError, SQLAlchemyError) as e:
            await self.db.rollback()
            metrics_collector.record_audit_failure(provider_value)
            logger.warning(
                "Payment audit write failed",
                extra={
                    "booking_id": booking_id,
                    "provider": provider_value,
                    "tracking_id": tracking_id,
                    "status": status,
                    "error": str(e),
                }
            )
            return False
        return True
