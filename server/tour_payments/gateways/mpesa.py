"""Safaricom Daraja (M-Pesa) STK push adapter."""

import base64
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from ..core.config import MpesaConfig
from ..core.exceptions import GatewayAuthError, GatewayError, GatewayUnavailableError
from ..core.observability import metrics_collector
from ..models.booking import PaymentMethod
from .base import (
    GatewayClient,
    GatewayOrder,
    NormalizedStatus,
    SubmissionResult,
    VerificationResult,
    to_decimal,
)

# Daraja timestamps are in East Africa Time
EAT = timezone(timedelta(hours=3))

# stkpushquery answers HTTP 500 with this errorCode while the customer has not responded
STILL_PROCESSING_ERROR_CODE = "500.001.1001"

_MSISDN_PATTERN = re.compile(r"^254[17]\d{8}$")


def normalize_msisdn(phone: str) -> str:
    """
    Normalize a Kenyan phone number to the 2547XXXXXXXX form Daraja expects.

    Accepts ``+2547...``, ``2547...``, ``07...`` and bare ``7...`` inputs with
    spaces or dashes. Raises ValueError for anything else.
    """
    digits = re.sub(r"[\s\-()]", "", phone or "")
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits

    if not _MSISDN_PATTERN.match(digits):
        raise ValueError(f"'{phone}' is not a valid M-Pesa phone number")
    return digits


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def stk_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(EAT)).astimezone(EAT).strftime("%Y%m%d%H%M%S")


def normalize_result_code(result_code: Any) -> NormalizedStatus:
    """ResultCode 0 is a completed payment; every other final code is a failure."""
    try:
        return NormalizedStatus.COMPLETED if int(result_code) == 0 else NormalizedStatus.FAILED
    except (TypeError, ValueError):
        return NormalizedStatus.FAILED


@dataclass(frozen=True)
class StkCallback:
    """Fields extracted from an STK push result callback."""

    merchant_request_id: Optional[str]
    checkout_request_id: Optional[str]
    result_code: int
    result_desc: str
    amount: Optional[Decimal] = None
    receipt_number: Optional[str] = None
    phone_number: Optional[str] = None
    transaction_date: Optional[str] = None

    @property
    def status(self) -> NormalizedStatus:
        return normalize_result_code(self.result_code)


def parse_stk_callback(payload: dict[str, Any]) -> StkCallback:
    """
    Extract an STK callback from the ``{"Body": {"stkCallback": ...}}`` envelope.

    Raises:
        ValueError: If the envelope or its ResultCode is missing
    """
    try:
        callback = payload["Body"]["stkCallback"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"malformed STK callback: {e}") from e

    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    metadata = {
        item.get("Name"): item.get("Value")
        for item in items
        if isinstance(item, dict)
    }

    phone = metadata.get("PhoneNumber")
    return StkCallback(
        merchant_request_id=callback.get("MerchantRequestID"),
        checkout_request_id=callback.get("CheckoutRequestID"),
        result_code=result_code,
        result_desc=str(callback.get("ResultDesc", "")),
        amount=to_decimal(metadata.get("Amount")),
        receipt_number=metadata.get("MpesaReceiptNumber"),
        phone_number=str(phone) if phone is not None else None,
        transaction_date=str(metadata["TransactionDate"]) if metadata.get("TransactionDate") else None,
    )


class MpesaGateway(GatewayClient):
    """
    Lipa Na M-Pesa Online (STK push).

    Safaricom posts the final result straight to our callback URL from its
    own servers, so callbacks are applied without a second status query.
    """

    provider = PaymentMethod.MPESA
    requires_server_verification = False

    def __init__(self, config: MpesaConfig):
        self.config = config
        super().__init__(config.timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.config.consumer_key and self.config.consumer_secret and self.config.passkey)

    async def authenticate(self) -> str:
        if not self.configured:
            raise GatewayAuthError(self.provider.value, "M-Pesa consumer key/secret/passkey not configured")

        basic = base64.b64encode(
            f"{self.config.consumer_key}:{self.config.consumer_secret}".encode()
        ).decode()
        response = await self._send(
            "GET",
            f"{self.config.base_url}/oauth/v1/generate",
            "oauth_token",
            auth_call=True,
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {basic}"},
        )
        try:
            data = self._json(response, "oauth_token")
        except GatewayError as e:
            raise GatewayAuthError(self.provider.value, e.internal_detail) from e

        token = data.get("access_token")
        if not token:
            raise GatewayAuthError(self.provider.value, "no access_token in OAuth response")
        return token

    def _credentials(self, now: Optional[datetime] = None) -> dict[str, str]:
        timestamp = stk_timestamp(now)
        return {
            "BusinessShortCode": self.config.business_shortcode,
            "Password": stk_password(self.config.business_shortcode, self.config.passkey or "", timestamp),
            "Timestamp": timestamp,
        }

    async def submit(
        self, order: GatewayOrder, token: str, callback_id: Optional[str] = None
    ) -> SubmissionResult:
        if order.amount != order.amount.to_integral_value():
            raise self._reject("stk_push", f"amount {order.amount} is not a whole number")
        msisdn = order.payer_msisdn or normalize_msisdn(order.customer_phone)

        payload = {
            **self._credentials(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(order.amount),
            "PartyA": msisdn,
            "PartyB": self.config.business_shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.config.callback_url,
            "AccountReference": order.merchant_reference,
            "TransactionDesc": order.description[:13] or "Tour booking",
        }
        response = await self._send(
            "POST",
            f"{self.config.base_url}/mpesa/stkpush/v1/processrequest",
            "stk_push",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "stk_push")

        if str(data.get("ResponseCode", "")) != "0":
            raise self._reject(
                "stk_push",
                f"{data.get('ResponseCode') or data.get('errorCode')}: "
                f"{data.get('ResponseDescription') or data.get('errorMessage')}",
            )
        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise self._reject("stk_push", "missing CheckoutRequestID")

        self.log.info(
            "STK push accepted",
            merchant_reference=order.merchant_reference,
            checkout_request_id=checkout_request_id,
        )
        return SubmissionResult(
            tracking_id=checkout_request_id,
            provider_request_id=checkout_request_id,
            secondary_reference=data.get("MerchantRequestID"),
            raw=data,
        )

    async def verify_status(self, tracking_id: str, token: Optional[str] = None) -> VerificationResult:
        token = token or await self.authenticate()
        response = await self._send(
            "POST",
            f"{self.config.base_url}/mpesa/stkpushquery/v1/query",
            "stk_query",
            accept_statuses=(500,),
            json={**self._credentials(), "CheckoutRequestID": tracking_id},
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "stk_query")

        error_code = data.get("errorCode")
        if error_code == STILL_PROCESSING_ERROR_CODE:
            status = NormalizedStatus.PENDING
            provider_status = "PROCESSING"
        elif response.status_code >= 500:
            metrics_collector.record_gateway_error(self.provider.value, "server")
            raise GatewayUnavailableError(
                self.provider.value, f"stk_query returned {response.status_code}: {str(data)[:500]}", response.status_code
            )
        elif error_code:
            raise self._reject("stk_query", f"{error_code}: {data.get('errorMessage')}")
        else:
            status = normalize_result_code(data.get("ResultCode"))
            provider_status = "COMPLETED" if status == NormalizedStatus.COMPLETED else "FAILED"

        return VerificationResult(
            tracking_id=tracking_id,
            status=status,
            provider_status=provider_status,
            payment_method=PaymentMethod.MPESA.value,
            raw=data,
        )
