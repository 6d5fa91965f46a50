"""Stripe Checkout adapter for card payments, spoken over Stripe's REST API."""

from decimal import Decimal
from typing import Any, Optional
from urllib.parse import quote

from ..core.config import StripeConfig
from ..core.exceptions import GatewayAuthError
from ..models.booking import PaymentMethod
from .base import (
    GatewayClient,
    GatewayOrder,
    NormalizedStatus,
    SubmissionResult,
    VerificationResult,
)

# Currencies Stripe treats as having no minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1")))
    return int((amount * 100).quantize(Decimal("1")))


def from_minor_units(value: Any, currency: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    amount = Decimal(int(value))
    if currency and currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return amount
    return amount / 100


def normalize_checkout_session(session: dict[str, Any]) -> NormalizedStatus:
    """Paid sessions are completed, expired ones failed; anything else is still open."""
    if session.get("payment_status") in ("paid", "no_payment_required"):
        return NormalizedStatus.COMPLETED
    if session.get("status") == "expired":
        return NormalizedStatus.FAILED
    return NormalizedStatus.PENDING


class StripeCheckoutGateway(GatewayClient):
    """Hosted Stripe Checkout sessions; the secret key is the bearer credential."""

    provider = PaymentMethod.CARD
    requires_server_verification = True

    def __init__(self, config: StripeConfig):
        self.config = config
        super().__init__(config.timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.config.secret_key)

    async def authenticate(self) -> str:
        if not self.configured:
            raise GatewayAuthError(self.provider.value, "Stripe secret key not configured")
        return self.config.secret_key

    async def submit(
        self, order: GatewayOrder, token: str, callback_id: Optional[str] = None
    ) -> SubmissionResult:
        form = {
            "mode": "payment",
            "success_url": self.config.success_url,
            "cancel_url": self.config.cancel_url,
            "client_reference_id": order.merchant_reference,
            "customer_email": order.customer_email,
            "metadata[booking_id]": order.merchant_reference,
            "payment_intent_data[metadata][booking_id]": order.merchant_reference,
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": order.currency.lower(),
            "line_items[0][price_data][unit_amount]": str(to_minor_units(order.amount, order.currency)),
            "line_items[0][price_data][product_data][name]": order.description[:250],
        }
        response = await self._send(
            "POST",
            f"{self.config.base_url}/v1/checkout/sessions",
            "create_checkout_session",
            data=form,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "create_checkout_session")

        session_id = data.get("id")
        url = data.get("url")
        if not session_id or not url:
            raise self._reject("create_checkout_session", "missing session id/url")

        self.log.info(
            "Checkout session created",
            merchant_reference=order.merchant_reference,
            session_id=session_id,
        )
        return SubmissionResult(
            tracking_id=session_id,
            redirect_url=url,
            secondary_reference=data.get("payment_intent"),
            raw={key: data.get(key) for key in ("id", "status", "payment_status", "amount_total", "currency")},
        )

    async def verify_status(self, tracking_id: str, token: Optional[str] = None) -> VerificationResult:
        token = token or await self.authenticate()
        response = await self._send(
            "GET",
            f"{self.config.base_url}/v1/checkout/sessions/{quote(tracking_id, safe='')}",
            "retrieve_checkout_session",
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "retrieve_checkout_session")

        currency = (data.get("currency") or "").upper() or None
        metadata = data.get("metadata") or {}
        return VerificationResult(
            tracking_id=tracking_id,
            status=normalize_checkout_session(data),
            provider_status=str(data.get("payment_status") or data.get("status") or "unknown").upper(),
            merchant_reference=data.get("client_reference_id") or metadata.get("booking_id"),
            amount=from_minor_units(data.get("amount_total"), currency),
            currency=currency,
            payment_method=PaymentMethod.CARD.value,
            confirmation_code=data.get("payment_intent") if isinstance(data.get("payment_intent"), str) else None,
            raw={key: data.get(key) for key in ("id", "status", "payment_status", "amount_total", "currency")},
        )
