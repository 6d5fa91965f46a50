"""Reconciliation of gateway callbacks, redirects and manual checks into booking state."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.dependencies import CurrentUser
from ..core.exceptions import (
    ConflictError,
    NotFoundError,
    ReconciliationCorrelationError,
    ValidationError,
)
from ..core.observability import metrics_collector
from ..gateways.base import GatewayClient, NormalizedStatus, VerificationResult
from ..gateways.mpesa import StkCallback, normalize_msisdn
from ..gateways.registry import GatewayRegistry
from ..models.booking import Booking, BookingStatus, PaymentMethod, PaymentStatus
from .booking_store import BookingStore
from .pricing_service import amounts_match

logger = logging.getLogger(__name__)


class ReconciliationOutcome(str, Enum):
    """What a reconciliation attempt did to the booking."""
    APPLIED = "applied"
    NOOP = "noop"
    PENDING = "pending"
    UNMATCHED = "unmatched"
    AMBIGUOUS = "ambiguous"
    REVIEW = "review"


@dataclass(frozen=True)
class GatewayNotification:
    """
    Provider-neutral view of an inbound callback, IPN, webhook or redirect.

    For providers that require server verification only the correlation
    fields are used; ``status`` and ``amount`` are trusted only for providers
    that push their final result server-to-server.
    """

    provider: PaymentMethod
    tracking_id: Optional[str] = None
    merchant_reference: Optional[str] = None
    status: Optional[NormalizedStatus] = None
    provider_status: Optional[str] = None
    amount: Optional[Decimal] = None
    msisdn: Optional[str] = None
    provider_reference: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_stk_callback(cls, callback: StkCallback, raw: Optional[dict[str, Any]] = None) -> "GatewayNotification":
        return cls(
            provider=PaymentMethod.MPESA,
            tracking_id=callback.checkout_request_id,
            status=callback.status,
            provider_status="COMPLETED" if callback.status == NormalizedStatus.COMPLETED else f"FAILED:{callback.result_code}",
            amount=callback.amount,
            msisdn=callback.phone_number,
            provider_reference=callback.receipt_number,
            raw=raw or {},
        )


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    booking_id: Optional[str] = None
    tracking_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    booking_status: Optional[BookingStatus] = None
    detail: Optional[str] = None


class CallbackReconciler:
    """
    Applies gateway outcomes to bookings.

    Every write is a conditional transition out of the pending state, so
    duplicate or concurrent deliveries of the same result change the booking
    at most once.
    """

    def __init__(self, db: AsyncSession, gateways: GatewayRegistry, settings: Settings):
        self.db = db
        self.gateways = gateways
        self.tolerance = settings.amount_tolerance
        self.store = BookingStore(db)

    async def _result(
        self,
        provider: PaymentMethod,
        outcome: ReconciliationOutcome,
        booking_id: Optional[str] = None,
        tracking_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> ReconciliationResult:
        payment_status = booking_status = None
        if booking_id:
            booking = await self.store.get(booking_id)
            if booking is not None:
                payment_status = PaymentStatus(booking.payment_status)
                booking_status = BookingStatus(booking.status)

        metrics_collector.record_reconciliation(provider.value, outcome.value)
        logger.info(
            "Reconciliation finished",
            extra={
                "provider": provider.value,
                "outcome": outcome.value,
                "booking_id": booking_id,
                "tracking_id": tracking_id,
                "payment_status": payment_status.value if payment_status else None,
                "booking_status": booking_status.value if booking_status else None,
                "detail": detail,
            }
        )
        return ReconciliationResult(
            outcome=outcome,
            booking_id=booking_id,
            tracking_id=tracking_id,
            payment_status=payment_status,
            booking_status=booking_status,
            detail=detail,
        )

    async def reconcile(self, notification: GatewayNotification) -> ReconciliationResult:
        """
        Apply one inbound gateway notification.

        Correlation failures are reported as ``unmatched`` rather than raised
        so callback endpoints can always acknowledge.

        Raises:
            GatewayError: If server verification with the provider fails
        """
        client = self.gateways.get(notification.provider)
        try:
            if client.requires_server_verification:
                return await self._reconcile_verified(client, notification)
            return await self._reconcile_pushed(notification)
        except ReconciliationCorrelationError as e:
            logger.warning(
                "Gateway notification not correlated",
                extra={
                    "provider": e.provider,
                    "correlation_key": e.correlation_key,
                    "candidates": e.candidates,
                }
            )
            return await self._result(
                notification.provider,
                ReconciliationOutcome.UNMATCHED,
                tracking_id=notification.tracking_id,
                detail=e.problem_details.get("detail"),
            )

    async def _correlate_by_reference(self, notification: GatewayNotification) -> Booking:
        provider = notification.provider.value
        if notification.tracking_id:
            booking = await self.store.get_by_tracking_id(notification.tracking_id)
            if booking is not None:
                return booking

        if notification.merchant_reference:
            booking = await self.store.get(notification.merchant_reference)
            if booking is not None and booking.payment_method == notification.provider.value:
                # A tracking id we never stored (e.g. submission timed out) may be adopted
                if booking.gateway_tracking_id in (None, notification.tracking_id):
                    return booking
                logger.warning(
                    "Notification tracking id differs from the booking's",
                    extra={
                        "booking_id": booking.id,
                        "stored_tracking_id": booking.gateway_tracking_id,
                        "notified_tracking_id": notification.tracking_id,
                    }
                )

        raise ReconciliationCorrelationError(
            provider, notification.tracking_id or notification.merchant_reference
        )

    async def _reconcile_verified(
        self, client: GatewayClient, notification: GatewayNotification
    ) -> ReconciliationResult:
        if not notification.tracking_id:
            raise ReconciliationCorrelationError(client.provider.value, notification.merchant_reference)

        booking = await self._correlate_by_reference(notification)
        if not booking.is_pending_payment:
            return await self._result(
                client.provider, ReconciliationOutcome.NOOP, booking.id, notification.tracking_id,
                detail="booking already settled",
            )

        verification = await client.verify_status(notification.tracking_id)
        return await self._apply_verification(client.provider, booking, verification)

    async def _apply_verification(
        self,
        provider: PaymentMethod,
        booking: Booking,
        verification: VerificationResult,
    ) -> ReconciliationResult:
        tracking_id = verification.tracking_id

        if verification.merchant_reference and verification.merchant_reference != booking.id:
            reason = f"{provider.value} reports merchant reference {verification.merchant_reference}"
            await self.store.mark_review([booking.id], reason)
            return await self._result(provider, ReconciliationOutcome.REVIEW, booking.id, tracking_id, reason)

        if booking.gateway_tracking_id is None:
            await self.store.attach_tracking(booking.id, tracking_id)
            logger.info(
                "Adopted late tracking id",
                extra={"booking_id": booking.id, "tracking_id": tracking_id}
            )

        booking_id = booking.id
        if not await self._audit(booking, provider, tracking_id, verification.provider_status, verification):
            booking = await self._reload(booking_id)

        if verification.status == NormalizedStatus.COMPLETED:
            mismatch = self._amount_mismatch(booking, verification.amount, verification.currency)
            if mismatch:
                await self.store.mark_review([booking.id], mismatch)
                return await self._result(provider, ReconciliationOutcome.REVIEW, booking.id, tracking_id, mismatch)

        return await self._apply_status(
            provider, booking, verification.status, tracking_id, verification.confirmation_code
        )

    def _amount_mismatch(
        self, booking: Booking, amount: Optional[Decimal], currency: Optional[str] = None
    ) -> Optional[str]:
        if currency and currency.upper() != booking.currency:
            return f"paid in {currency.upper()}, booking priced in {booking.currency}"
        if amount is not None and not amounts_match(amount, booking.total_amount, self.tolerance):
            return f"paid {amount} {booking.currency}, booking total {booking.total_amount}"
        return None

    async def _apply_status(
        self,
        provider: PaymentMethod,
        booking: Booking,
        status: NormalizedStatus,
        tracking_id: Optional[str],
        provider_reference: Optional[str] = None,
    ) -> ReconciliationResult:
        if status == NormalizedStatus.COMPLETED:
            applied = await self.store.transition(
                booking.id, PaymentStatus.PAID, BookingStatus.CONFIRMED, provider_reference
            )
        elif status == NormalizedStatus.FAILED:
            applied = await self.store.transition(booking.id, PaymentStatus.FAILED, gateway_reference=provider_reference)
        elif status == NormalizedStatus.REVERSED:
            reason = f"{provider.value} reported the payment as reversed"
            await self.store.mark_review([booking.id], reason)
            return await self._result(provider, ReconciliationOutcome.REVIEW, booking.id, tracking_id, reason)
        else:
            return await self._result(provider, ReconciliationOutcome.PENDING, booking.id, tracking_id)

        outcome = ReconciliationOutcome.APPLIED if applied else ReconciliationOutcome.NOOP
        return await self._result(provider, outcome, booking.id, tracking_id)

    async def _reconcile_pushed(self, notification: GatewayNotification) -> ReconciliationResult:
        provider = notification.provider
        status = notification.status or NormalizedStatus.PENDING

        booking = None
        correlated = False
        if notification.tracking_id:
            booking = await self.store.get_by_tracking_id(notification.tracking_id)
        if booking is None:
            booking = await self._correlate_by_msisdn(notification)
            if booking is None:
                return await self._result(
                    provider, ReconciliationOutcome.AMBIGUOUS, tracking_id=notification.tracking_id,
                    detail="several pending bookings match this payment",
                )
            correlated = True

        if not booking.is_pending_payment:
            return await self._result(
                provider, ReconciliationOutcome.NOOP, booking.id, notification.tracking_id,
                detail="booking already settled",
            )

        if correlated and notification.tracking_id and booking.gateway_tracking_id is None:
            await self.store.attach_tracking(booking.id, notification.tracking_id)
            logger.info(
                "Adopted tracking id from phone match",
                extra={"booking_id": booking.id, "tracking_id": notification.tracking_id}
            )

        booking_id = booking.id
        audit_id = notification.tracking_id or booking.gateway_tracking_id or notification.provider_reference
        if audit_id:
            recorded = await self.store.record_transaction(
                booking_id=booking_id,
                provider=provider,
                tracking_id=audit_id,
                status=notification.provider_status or status.value.upper(),
                amount=notification.amount,
                currency=booking.currency,
                payment_method=provider.value,
                gateway_response=notification.raw,
            )
            if not recorded:
                booking = await self._reload(booking_id)

        if status == NormalizedStatus.COMPLETED:
            mismatch = self._amount_mismatch(booking, notification.amount)
            if mismatch:
                await self.store.mark_review([booking.id], mismatch)
                return await self._result(
                    provider, ReconciliationOutcome.REVIEW, booking.id, notification.tracking_id, mismatch
                )

        return await self._apply_status(
            provider, booking, status, notification.tracking_id, notification.provider_reference
        )

    async def _correlate_by_msisdn(self, notification: GatewayNotification) -> Optional[Booking]:
        """
        Fallback match on payer phone number, narrowed by amount.

        Returns None after flagging every candidate when more than one matches.

        Raises:
            ReconciliationCorrelationError: If no pending booking matches
        """
        provider = notification.provider.value
        try:
            msisdn = normalize_msisdn(notification.msisdn or "")
        except ValueError:
            raise ReconciliationCorrelationError(provider, notification.tracking_id or notification.msisdn)

        candidates: Sequence[Booking] = await self.store.find_pending_by_msisdn(msisdn, notification.provider)
        if notification.amount is not None:
            candidates = [
                booking for booking in candidates
                if amounts_match(notification.amount, booking.total_amount, self.tolerance)
            ]

        if not candidates:
            raise ReconciliationCorrelationError(provider, notification.tracking_id or msisdn)
        if len(candidates) == 1:
            logger.info(
                "Notification correlated by phone number",
                extra={"booking_id": candidates[0].id, "tracking_id": notification.tracking_id}
            )
            return candidates[0]

        await self.store.mark_review(
            [booking.id for booking in candidates],
            f"ambiguous {provider} payment {notification.provider_reference or notification.tracking_id}",
        )
        return None

    async def _reload(self, booking_id: str) -> Booking:
        booking = await self.store.get(booking_id)
        if booking is None:
            raise NotFoundError(resource_type="booking", resource_id=booking_id)
        return booking

    async def _audit(
        self,
        booking: Booking,
        provider: PaymentMethod,
        tracking_id: str,
        provider_status: str,
        verification: VerificationResult,
    ) -> bool:
        return await self.store.record_transaction(
            booking_id=booking.id,
            provider=provider,
            tracking_id=tracking_id,
            status=provider_status,
            amount=verification.amount,
            currency=verification.currency,
            payment_method=verification.payment_method,
            gateway_response=verification.raw,
        )

    async def verify_booking(self, booking_id: str, tracking_id: Optional[str] = None) -> ReconciliationResult:
        """
        Re-check a booking with its gateway and apply the answer.

        Args:
            booking_id: Booking to verify
            tracking_id: Tracking id learned out of band, adopted if the booking has none

        Raises:
            NotFoundError: If the booking does not exist
            ValidationError: If the booking cannot be verified with a gateway
            ConflictError: If the given tracking id differs from the stored one
            GatewayError: If the provider cannot be reached
        """
        booking = await self.store.get(booking_id)
        if booking is None:
            raise NotFoundError(resource_type="booking", resource_id=booking_id)

        provider = PaymentMethod(booking.payment_method)
        if provider == PaymentMethod.BANK_TRANSFER:
            raise ValidationError(detail="Bank transfers are confirmed manually, not verified with a gateway")

        if tracking_id and booking.gateway_tracking_id and tracking_id != booking.gateway_tracking_id:
            raise ConflictError(
                detail="Booking already has a different tracking id",
                conflicting_resource={"booking_id": booking.id, "tracking_id": booking.gateway_tracking_id},
            )
        effective_tracking_id = booking.gateway_tracking_id or tracking_id
        if not effective_tracking_id:
            raise ValidationError(
                detail="Booking has no gateway tracking id; supply one to verify",
                errors={"tracking_id": None},
            )

        if not booking.is_pending_payment:
            return await self._result(
                provider, ReconciliationOutcome.NOOP, booking.id, effective_tracking_id,
                detail="booking already settled",
            )

        client = self.gateways.get(provider)
        verification = await client.verify_status(effective_tracking_id)
        return await self._apply_verification(provider, booking, verification)

    async def confirm_bank_transfer(
        self, booking_id: str, reference: str, admin: CurrentUser
    ) -> ReconciliationResult:
        """
        Record an administrator's confirmation that a bank transfer arrived.

        Raises:
            NotFoundError: If the booking does not exist
            ValidationError: If the booking is not a bank transfer booking
        """
        booking = await self.store.get(booking_id)
        if booking is None:
            raise NotFoundError(resource_type="booking", resource_id=booking_id)
        if booking.payment_method != PaymentMethod.BANK_TRANSFER.value:
            raise ValidationError(
                detail="Only bank transfer bookings can be confirmed manually",
                errors={"payment_method": booking.payment_method},
            )

        provider = PaymentMethod.BANK_TRANSFER
        tracking_id = booking.gateway_tracking_id
        applied = await self.store.transition(
            booking_id, PaymentStatus.PAID, BookingStatus.CONFIRMED, gateway_reference=reference
        )
        if applied:
            await self.store.record_transaction(
                booking_id=booking_id,
                provider=provider,
                tracking_id=tracking_id or reference,
                status="CONFIRMED",
                amount=booking.total_amount,
                currency=booking.currency,
                payment_method=provider.value,
                gateway_response={"reference": reference, "confirmed_by": admin.user_id},
            )

        outcome = ReconciliationOutcome.APPLIED if applied else ReconciliationOutcome.NOOP
        return await self._result(provider, outcome, booking_id, tracking_id)
