"""Payment initiation for new bookings."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import BankTransferConfig, Settings
from ..core.dependencies import CurrentUser
from ..core.exceptions import (
    AmountMismatchError,
    GatewayError,
    NotFoundError,
    PersistenceError,
    ProblemDetailsException,
    ValidationError,
)
from ..core.observability import metrics_collector
from ..gateways.base import GatewayOrder
from ..gateways.mpesa import normalize_msisdn
from ..gateways.registry import GatewayRegistry
from ..models.booking import Booking, PaymentMethod, PaymentStatus
from ..schemas.payment import BankDetails, InitiatePaymentRequest
from .booking_store import BookingStore
from .pricing_service import PriceQuote, PricingResolver, amounts_match

logger = logging.getLogger(__name__)

INITIATED_STATUS = "INITIATED"
AWAITING_TRANSFER_STATUS = "AWAITING_TRANSFER"


@dataclass(frozen=True)
class InitiationResult:
    """What the client needs to complete payment for a pending booking."""

    booking_id: str
    payment_method: PaymentMethod
    quote: PriceQuote
    tracking_id: Optional[str] = None
    redirect_url: Optional[str] = None
    provider_request_id: Optional[str] = None
    bank_details: Optional[BankDetails] = None
    success: bool = True


def bank_reference_for(booking_id: str) -> str:
    """Reference the customer quotes on their transfer."""
    return "BANK-" + booking_id.replace("-", "")[:12].upper()


def bank_details(
    config: BankTransferConfig,
    amount: Optional[Decimal] = None,
    currency: Optional[str] = None,
    reference: Optional[str] = None,
) -> BankDetails:
    return BankDetails(
        account_number=config.account_number,
        bank_name=config.bank_name,
        account_name=config.account_name,
        swift_code=config.swift_code,
        branch_code=config.branch_code,
        amount=amount,
        currency=currency,
        reference=reference,
    )


class PaymentInitiationService:
    """
    Validates a payment request, records a pending booking and hands it to a gateway.

    The booking is committed before any gateway call so that a callback can
    never arrive for a booking that does not exist yet.
    """

    def __init__(self, db: AsyncSession, gateways: GatewayRegistry, settings: Settings):
        self.db = db
        self.gateways = gateways
        self.settings = settings
        self.store = BookingStore(db)
        self.pricing = PricingResolver(
            db,
            local_currency=settings.local_currency,
            settlement_currency=settings.settlement_currency,
            strict_rate_class=settings.strict_rate_class,
        )

    def _check_declared_amount(self, request: InitiatePaymentRequest, quote: PriceQuote) -> None:
        declared = request.client_declared_amount
        if declared is None:
            return
        if not amounts_match(declared, quote.total_amount, self.settings.amount_tolerance):
            logger.warning(
                "Declared amount does not match authoritative price",
                extra={
                    "destination_id": request.destination_id,
                    "declared_amount": str(declared),
                    "expected_amount": str(quote.total_amount),
                    "currency": quote.currency,
                    "rate_class": quote.rate_class.value,
                }
            )
            raise AmountMismatchError(declared, quote.total_amount, quote.currency)

    def _mpesa_msisdn(self, request: InitiatePaymentRequest, quote: PriceQuote) -> str:
        if quote.currency != self.settings.local_currency:
            raise ValidationError(
                detail=f"M-Pesa payments are only available for {self.settings.local_currency} prices; "
                       "choose card or PesaPal instead",
                errors={"payment_method": PaymentMethod.MPESA.value, "currency": quote.currency},
            )
        if quote.total_amount != quote.total_amount.to_integral_value():
            raise ValidationError(
                detail="M-Pesa can only charge whole amounts",
                errors={"amount": str(quote.total_amount)},
            )
        try:
            return normalize_msisdn(request.customer_phone)
        except ValueError:
            raise ValidationError(
                detail="Enter a valid M-Pesa phone number, e.g. 0712345678",
                errors={"customer_phone": request.customer_phone},
            )

    async def initiate(
        self,
        request: InitiatePaymentRequest,
        provider: PaymentMethod,
        user: CurrentUser,
    ) -> InitiationResult:
        """
        Create a pending booking and start payment with the chosen provider.

        Args:
            request: Validated payment request
            provider: Payment method selecting the gateway
            user: Authenticated customer

        Returns:
            InitiationResult with a persisted tracking id for gateway payments

        Raises:
            NotFoundError: If the destination is unknown or inactive
            InvalidRateClassError: If strict rate classes are enforced
            AmountMismatchError: If the declared amount differs from the price
            ValidationError: If the provider cannot take this payment
            GatewayAuthError: If gateway credentials are rejected
            GatewaySubmissionError: If the gateway rejects or fails the order
            PersistenceError: If the booking or its tracking id cannot be saved
        """
        provider = PaymentMethod(provider)
        try:
            quote = await self.pricing.resolve(request.destination_id, request.rate_class, request.participants)
            self._check_declared_amount(request, quote)

            payer_msisdn = None
            if provider == PaymentMethod.MPESA:
                payer_msisdn = self._mpesa_msisdn(request, quote)

            client = None if provider == PaymentMethod.BANK_TRANSFER else self.gateways.get(provider)
        except ProblemDetailsException as e:
            metrics_collector.record_initiation(provider.value, (e.code or "rejected").lower())
            raise

        booking = await self.store.create_pending(
            destination_id=request.destination_id,
            user_id=user.user_id,
            customer_name=request.customer_name,
            customer_email=str(request.customer_email),
            customer_phone=request.customer_phone,
            participants=request.participants,
            quote=quote,
            payment_method=provider,
            payer_msisdn=payer_msisdn,
            start_date=request.start_date,
            special_requests=request.special_requests,
        )

        booking_id = booking.id
        if client is None:
            return await self._initiate_bank_transfer(booking_id, quote)

        order = GatewayOrder(
            merchant_reference=booking_id,
            amount=quote.total_amount,
            currency=quote.currency,
            description=f"Payment for {quote.item_title}" if quote.item_title else "Tour booking",
            customer_name=request.customer_name,
            customer_email=str(request.customer_email),
            customer_phone=request.customer_phone,
            payer_msisdn=payer_msisdn,
            start_date=request.start_date,
        )

        try:
            token = await client.authenticate()
            callback_id = await client.prepare(token)
            submission = await client.submit(order, token, callback_id)
        except GatewayError as e:
            logger.error(
                "Gateway initiation failed, booking left pending",
                extra={
                    "booking_id": booking_id,
                    "provider": provider.value,
                    "error_code": e.code,
                    "internal_detail": e.internal_detail,
                }
            )
            metrics_collector.record_initiation(provider.value, e.code.lower())
            e.problem_details["booking_id"] = booking_id
            raise

        try:
            attached = await self.store.attach_tracking(
                booking_id, submission.tracking_id, submission.secondary_reference
            )
        except PersistenceError:
            attached = False
        if not attached and not await self._settled_during_submission(booking_id):
            # The provider holds an order we could not record; operators need the id
            logger.error(
                "Tracking id could not be persisted after gateway submission",
                extra={
                    "booking_id": booking_id,
                    "provider": provider.value,
                    "tracking_id": submission.tracking_id,
                }
            )
            metrics_collector.record_initiation(provider.value, "persistence_failed")
            raise PersistenceError("attach_tracking", booking_id)

        # A failed audit write expires the session's instances; only locals are used below
        await self.store.record_transaction(
            booking_id=booking_id,
            provider=provider,
            tracking_id=submission.tracking_id,
            status=INITIATED_STATUS,
            amount=quote.total_amount,
            currency=quote.currency,
            gateway_response=submission.raw,
        )

        metrics_collector.record_initiation(provider.value, "success")
        logger.info(
            "Payment initiated",
            extra={
                "booking_id": booking_id,
                "provider": provider.value,
                "tracking_id": submission.tracking_id,
                "total_amount": str(quote.total_amount),
                "currency": quote.currency,
            }
        )
        return InitiationResult(
            booking_id=booking_id,
            payment_method=provider,
            quote=quote,
            tracking_id=submission.tracking_id,
            redirect_url=submission.redirect_url,
            provider_request_id=submission.provider_request_id,
        )

    async def _settled_during_submission(self, booking_id: str) -> bool:
        """True when a provider callback paid the booking before its tracking id was saved."""
        try:
            booking = await self.store.get(booking_id)
        except SQLAlchemyError:
            return False
        if booking is None or booking.payment_status != PaymentStatus.PAID:
            return False
        logger.info(
            "Booking settled by callback before tracking id was attached",
            extra={"booking_id": booking_id, "tracking_id": booking.gateway_tracking_id}
        )
        return True

    async def _initiate_bank_transfer(self, booking_id: str, quote: PriceQuote) -> InitiationResult:
        reference = bank_reference_for(booking_id)
        if not await self.store.attach_tracking(booking_id, reference):
            raise PersistenceError("attach_tracking", booking_id)

        await self.store.record_transaction(
            booking_id=booking_id,
            provider=PaymentMethod.BANK_TRANSFER,
            tracking_id=reference,
            status=AWAITING_TRANSFER_STATUS,
            amount=quote.total_amount,
            currency=quote.currency,
        )

        metrics_collector.record_initiation(PaymentMethod.BANK_TRANSFER.value, "success")
        logger.info(
            "Bank transfer booking recorded",
            extra={"booking_id": booking_id, "reference": reference}
        )
        return InitiationResult(
            booking_id=booking_id,
            payment_method=PaymentMethod.BANK_TRANSFER,
            quote=quote,
            tracking_id=reference,
            bank_details=bank_details(
                self.gateways.bank or self.settings.bank_config(),
                amount=quote.total_amount,
                currency=quote.currency,
                reference=reference,
            ),
        )

    async def get_booking_for_user(self, booking_id: str, user: CurrentUser) -> Booking:
        """
        Return a booking visible to the user.

        Raises:
            NotFoundError: If the booking does not exist or belongs to someone else
        """
        booking = await self.store.get(booking_id)
        if booking is None or (booking.user_id != user.user_id and not user.is_admin):
            raise NotFoundError(resource_type="booking", resource_id=booking_id)
        return booking
