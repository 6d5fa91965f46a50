"""Payment-related Pydantic schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, model_validator

from ..models.booking import BookingStatus, PaymentMethod, PaymentStatus

# Methods whose price is shown to the customer before redirecting to the gateway
DECLARED_AMOUNT_REQUIRED = (PaymentMethod.CARD, PaymentMethod.PESAPAL)


class InitiatePaymentRequest(BaseModel):
    """Request schema for starting a payment for a new booking."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    destination_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("destination_id", "item_id", "tour_id"),
        description="Destination being booked",
    )
    participants: int = Field(..., ge=1, le=100, description="Number of participants")
    customer_name: str = Field(..., min_length=1, max_length=255, description="Full name of the customer")
    customer_email: EmailStr = Field(..., description="Customer email address")
    customer_phone: str = Field(..., min_length=7, max_length=32, description="Customer phone number")
    start_date: Optional[date] = Field(None, description="Requested start date")
    special_requests: Optional[str] = Field(None, max_length=2000, description="Free-text requests")
    rate_class: Optional[str] = Field(
        None,
        max_length=32,
        validation_alias=AliasChoices("rate_class", "residency", "residency_type"),
        description="citizen, resident or non_resident",
    )
    client_declared_amount: Optional[Decimal] = Field(
        None,
        ge=0,
        max_digits=14,
        decimal_places=2,
        validation_alias=AliasChoices("client_declared_amount", "amount"),
        description="Total the client displayed; checked against the authoritative price",
    )
    payment_method: PaymentMethod = Field(..., description="Gateway to pay through")

    @model_validator(mode="after")
    def require_declared_amount(self) -> "InitiatePaymentRequest":
        if self.payment_method in DECLARED_AMOUNT_REQUIRED and self.client_declared_amount is None:
            raise ValueError(f"client_declared_amount is required for {self.payment_method.value} payments")
        return self


class BankDetails(BaseModel):
    """Bank transfer instructions."""

    account_number: str
    bank_name: str
    account_name: str
    swift_code: str
    branch_code: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    reference: Optional[str] = Field(None, description="Reference to quote on the transfer")


class InitiatePaymentResponse(BaseModel):
    """Response schema for a successful payment initiation."""

    success: bool = True
    booking_id: str = Field(..., description="Booking id, also the merchant reference")
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    amount: Decimal = Field(..., description="Authoritative total")
    currency: str
    rate_class: str
    rate_class_fallback: bool = False
    tracking_id: Optional[str] = Field(None, description="Gateway tracking id")
    redirect_url: Optional[str] = Field(None, description="Hosted checkout URL (card, PesaPal)")
    provider_request_id: Optional[str] = Field(None, description="Provider request id (M-Pesa CheckoutRequestID)")
    bank_details: Optional[BankDetails] = None


class PaymentStatusResponse(BaseModel):
    """Current payment and booking state."""

    model_config = ConfigDict(from_attributes=True)

    booking_id: str = Field(..., validation_alias=AliasChoices("booking_id", "id"))
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    status: BookingStatus
    total_amount: Decimal
    currency: str
    tracking_id: Optional[str] = Field(None, validation_alias=AliasChoices("tracking_id", "gateway_tracking_id"))
    review_required: bool = False
    updated_at: datetime


class VerifyBookingRequest(BaseModel):
    """Admin request to re-verify a booking with its gateway."""

    tracking_id: Optional[str] = Field(
        None,
        max_length=128,
        description="Tracking id learned out of band, adopted when the booking has none",
    )


class ConfirmBankTransferRequest(BaseModel):
    """Admin confirmation that a bank transfer was received."""

    reference: str = Field(..., min_length=1, max_length=128, description="Bank transaction reference")


class ReconciliationResponse(BaseModel):
    """Outcome of applying a gateway result to a booking."""

    outcome: str
    booking_id: Optional[str] = None
    tracking_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    booking_status: Optional[BookingStatus] = None
