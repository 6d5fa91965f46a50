"""Common contract and HTTP plumbing for payment gateway adapters."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import httpx

from ..core.exceptions import (
    GatewayAuthError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from ..core.observability import get_logger, metrics_collector
from ..models.booking import PaymentMethod


class NormalizedStatus(str, Enum):
    """Provider-independent payment outcome."""
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    REVERSED = "reversed"


@dataclass(frozen=True)
class GatewayOrder:
    """What a gateway needs to charge for one booking."""

    merchant_reference: str
    amount: Decimal
    currency: str
    description: str
    customer_name: str
    customer_email: str
    customer_phone: str
    payer_msisdn: Optional[str] = None
    start_date: Optional[date] = None

    @property
    def first_name(self) -> str:
        return self.customer_name.split(" ")[0]

    @property
    def last_name(self) -> str:
        return " ".join(self.customer_name.split(" ")[1:]) or "Valued Customer"


@dataclass(frozen=True)
class SubmissionResult:
    """Provider answer to an order/charge submission."""

    tracking_id: str
    redirect_url: Optional[str] = None
    provider_request_id: Optional[str] = None
    secondary_reference: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationResult:
    """Provider answer to a server-to-server status query."""

    tracking_id: str
    status: NormalizedStatus
    provider_status: str
    merchant_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    confirmation_code: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


class GatewayClient(ABC):
    """
    One external payment provider.

    ``requires_server_verification`` tells the reconciler whether an inbound
    notification may be trusted as-is or must be confirmed with
    ``verify_status`` before any booking state changes.
    """

    provider: PaymentMethod
    requires_server_verification: bool = True

    def __init__(self, timeout_seconds: float):
        self.timeout = timeout_seconds
        self.log = get_logger(__name__).with_context(provider=self.provider.value)

    @property
    def configured(self) -> bool:
        """True when credentials are present; calls would fail auth otherwise."""
        return True

    @abstractmethod
    async def authenticate(self) -> str:
        """Exchange credentials for a short-lived token; never persisted."""

    async def prepare(self, token: str) -> Optional[str]:
        """
        Optional capability registration (e.g. a callback URL).

        Returns an id to pass to ``submit`` or None. Failures are logged and
        swallowed: registration must never block submission.
        """
        return None

    @abstractmethod
    async def submit(
        self, order: GatewayOrder, token: str, callback_id: Optional[str] = None
    ) -> SubmissionResult:
        """Submit the order and return the provider tracking identifier."""

    @abstractmethod
    async def verify_status(self, tracking_id: str, token: Optional[str] = None) -> VerificationResult:
        """Ask the provider for the authoritative status of one tracking id."""

    async def _send(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        auth_call: bool = False,
        accept_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Perform one bounded HTTP call and map transport failures.

        Timeouts become GatewayTimeoutError, other transport errors and 5xx
        become GatewayUnavailableError and 4xx become GatewayRejectedError.
        On credential endpoints every failure is a GatewayAuthError. Statuses
        listed in ``accept_statuses`` are returned to the caller unmapped.
        """
        provider = self.provider.value
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            metrics_collector.record_gateway_error(provider, "timeout")
            self.log.warning("Gateway call timed out", operation=operation)
            if auth_call:
                raise GatewayAuthError(provider, f"{operation} timed out") from e
            raise GatewayTimeoutError(provider, f"{operation} timed out") from e
        except httpx.TransportError as e:
            metrics_collector.record_gateway_error(provider, "network")
            self.log.warning("Gateway call failed at transport level", operation=operation, error=str(e))
            if auth_call:
                raise GatewayAuthError(provider, f"{operation} transport error: {e}") from e
            raise GatewayUnavailableError(provider, f"{operation} transport error: {e}") from e
        finally:
            metrics_collector.observe_gateway_call(provider, operation, time.monotonic() - started)

        if response.is_success or response.status_code in accept_statuses:
            return response

        body = response.text[:2000]
        if auth_call:
            metrics_collector.record_gateway_error(provider, "auth")
            self.log.error("Gateway authentication failed", operation=operation, status_code=response.status_code, body=body)
            raise GatewayAuthError(provider, f"{operation} returned {response.status_code}: {body}", response.status_code)
        if response.status_code >= 500:
            metrics_collector.record_gateway_error(provider, "server")
            self.log.error("Gateway server error", operation=operation, status_code=response.status_code, body=body)
            raise GatewayUnavailableError(provider, f"{operation} returned {response.status_code}: {body}", response.status_code)

        metrics_collector.record_gateway_error(provider, "rejected")
        self.log.warning("Gateway rejected request", operation=operation, status_code=response.status_code, body=body)
        raise GatewayRejectedError(provider, f"{operation} returned {response.status_code}: {body}", response.status_code)

    def _json(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        """Decode a JSON object body or treat the answer as a server fault."""
        try:
            data = response.json()
        except ValueError as e:
            metrics_collector.record_gateway_error(self.provider.value, "malformed")
            raise GatewayUnavailableError(
                self.provider.value, f"{operation} returned non-JSON body: {response.text[:500]}"
            ) from e
        if not isinstance(data, dict):
            raise GatewayUnavailableError(self.provider.value, f"{operation} returned unexpected body: {data!r}")
        return data

    def _reject(self, operation: str, detail: str) -> GatewayRejectedError:
        metrics_collector.record_gateway_error(self.provider.value, "rejected")
        self.log.warning("Gateway reported a business error", operation=operation, detail=detail)
        return GatewayRejectedError(self.provider.value, f"{operation}: {detail}")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a provider amount to Decimal without passing through float."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None
