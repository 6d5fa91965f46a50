"""PesaPal v3 order API adapter."""

from typing import Any, Optional

from ..core.config import PesapalConfig
from ..core.exceptions import GatewayAuthError, GatewayError
from ..models.booking import PaymentMethod
from .base import (
    GatewayClient,
    GatewayOrder,
    NormalizedStatus,
    SubmissionResult,
    VerificationResult,
    to_decimal,
)

# GetTransactionStatus status_code values
STATUS_INVALID = 0
STATUS_COMPLETED = 1
STATUS_FAILED = 2
STATUS_REVERSED = 3


def normalize_pesapal_status(description: Optional[str], status_code: Any) -> NormalizedStatus:
    """
    Map PesaPal's description/status_code pair to a normalized status.

    The description wins when present. A bare status_code 0 without a
    description is how sandbox reports orders the customer has not paid yet,
    so it stays pending.
    """
    text = (description or "").strip().upper()
    if text == "COMPLETED":
        return NormalizedStatus.COMPLETED
    if text in ("FAILED", "INVALID"):
        return NormalizedStatus.FAILED
    if text == "REVERSED":
        return NormalizedStatus.REVERSED
    if text:
        return NormalizedStatus.PENDING

    try:
        code = int(status_code)
    except (TypeError, ValueError):
        return NormalizedStatus.PENDING
    return {
        STATUS_COMPLETED: NormalizedStatus.COMPLETED,
        STATUS_FAILED: NormalizedStatus.FAILED,
        STATUS_REVERSED: NormalizedStatus.REVERSED,
    }.get(code, NormalizedStatus.PENDING)


def _error_message(error: Any) -> Optional[str]:
    # Successful responses carry "error": null or an object of nulls
    if not error:
        return None
    if isinstance(error, dict):
        message = error.get("message") or error.get("code")
        return str(message) if message else None
    return str(error)


class PesapalGateway(GatewayClient):
    """Hosted-checkout orders; the customer is redirected to PesaPal to pay."""

    provider = PaymentMethod.PESAPAL
    requires_server_verification = True

    def __init__(self, config: PesapalConfig):
        self.config = config
        super().__init__(config.timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.config.consumer_key and self.config.consumer_secret)

    def _headers(self, token: Optional[str] = None) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def authenticate(self) -> str:
        if not self.configured:
            raise GatewayAuthError(self.provider.value, "PesaPal consumer key/secret not configured")

        response = await self._send(
            "POST",
            f"{self.config.base_url}/api/Auth/RequestToken",
            "request_token",
            auth_call=True,
            json={
                "consumer_key": self.config.consumer_key,
                "consumer_secret": self.config.consumer_secret,
            },
            headers=self._headers(),
        )
        try:
            data = self._json(response, "request_token")
        except GatewayError as e:
            raise GatewayAuthError(self.provider.value, e.internal_detail) from e

        token = data.get("token")
        if not token:
            error = data.get("error") or data
            self.log.error("PesaPal token response carried no token", error=str(error))
            raise GatewayAuthError(self.provider.value, f"no token in response: {error}")
        return token

    async def prepare(self, token: str) -> Optional[str]:
        """Return the IPN id to attach to orders, registering the IPN URL when none is configured."""
        if self.config.ipn_id:
            return self.config.ipn_id
        if not self.config.ipn_url:
            return None
        try:
            response = await self._send(
                "POST",
                f"{self.config.base_url}/api/URLSetup/RegisterIPN",
                "register_ipn",
                json={"url": self.config.ipn_url, "ipn_notification_type": "POST"},
                headers=self._headers(token),
            )
            data = self._json(response, "register_ipn")
        except GatewayError as e:
            self.log.warning(
                "IPN registration failed, continuing without IPN",
                error=e.internal_detail,
            )
            return None

        ipn_id = data.get("ipn_id")
        if not ipn_id:
            self.log.warning("IPN registration returned no ipn_id, continuing without IPN", response=str(data)[:500])
            return None
        self.log.info("IPN registered", ipn_id=ipn_id)
        return ipn_id

    async def submit(
        self, order: GatewayOrder, token: str, callback_id: Optional[str] = None
    ) -> SubmissionResult:
        payload: dict[str, Any] = {
            "id": order.merchant_reference,
            "currency": order.currency,
            "amount": float(order.amount),
            "description": order.description[:100],
            "callback_url": self.config.callback_url,
            "billing_address": {
                "email_address": order.customer_email,
                "phone_number": order.customer_phone,
                "first_name": order.first_name,
                "last_name": order.last_name,
            },
        }
        if callback_id:
            payload["notification_id"] = callback_id

        response = await self._send(
            "POST",
            f"{self.config.base_url}/api/Transactions/SubmitOrderRequest",
            "submit_order",
            json=payload,
            headers=self._headers(token),
        )
        data = self._json(response, "submit_order")

        # PesaPal reports business errors with HTTP 200 and an "error" object
        message = _error_message(data.get("error"))
        if message:
            raise self._reject("submit_order", message)

        tracking_id = data.get("order_tracking_id")
        redirect_url = data.get("redirect_url")
        if not tracking_id or not redirect_url:
            raise self._reject("submit_order", f"missing order_tracking_id/redirect_url in {data!r}")

        self.log.info(
            "PesaPal order submitted",
            merchant_reference=order.merchant_reference,
            order_tracking_id=tracking_id,
        )
        return SubmissionResult(
            tracking_id=tracking_id,
            redirect_url=redirect_url,
            secondary_reference=data.get("merchant_reference"),
            raw=data,
        )

    async def verify_status(self, tracking_id: str, token: Optional[str] = None) -> VerificationResult:
        token = token or await self.authenticate()
        response = await self._send(
            "GET",
            f"{self.config.base_url}/api/Transactions/GetTransactionStatus",
            "get_transaction_status",
            params={"orderTrackingId": tracking_id},
            headers=self._headers(token),
        )
        data = self._json(response, "get_transaction_status")

        message = _error_message(data.get("error"))
        if message:
            raise self._reject("get_transaction_status", message)

        description = data.get("payment_status_description")
        status = normalize_pesapal_status(description, data.get("status_code"))
        return VerificationResult(
            tracking_id=tracking_id,
            status=status,
            provider_status=(description or str(data.get("status_code", ""))).upper() or "UNKNOWN",
            merchant_reference=data.get("merchant_reference"),
            amount=to_decimal(data.get("amount")),
            currency=data.get("currency"),
            payment_method=data.get("payment_method"),
            confirmation_code=data.get("confirmation_code"),
            raw=data,
        )
