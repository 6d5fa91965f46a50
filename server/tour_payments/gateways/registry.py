"""Selection of the gateway adapter for a payment method."""

from typing import Iterable, Optional

from ..core.config import BankTransferConfig, Settings
from ..core.exceptions import ValidationError
from ..models.booking import PaymentMethod
from .base import GatewayClient
from .mpesa import MpesaGateway
from .pesapal import PesapalGateway
from .stripe import StripeCheckoutGateway


class GatewayRegistry:
    """
    Read-only map of payment method to adapter.

    Bank transfer has no adapter; its account details travel with the
    registry so callers have one place to look for payment instructions.
    """

    def __init__(
        self,
        clients: Iterable[GatewayClient],
        bank: Optional[BankTransferConfig] = None,
    ):
        self._clients = {client.provider: client for client in clients}
        self.bank = bank

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayRegistry":
        return cls(
            [
                StripeCheckoutGateway(settings.stripe_config()),
                MpesaGateway(settings.mpesa_config()),
                PesapalGateway(settings.pesapal_config()),
            ],
            bank=settings.bank_config(),
        )

    def get(self, method: PaymentMethod) -> GatewayClient:
        client = self._clients.get(PaymentMethod(method))
        if client is None:
            raise ValidationError(
                detail=f"Payment method '{PaymentMethod(method).value}' has no online gateway",
                errors={"payment_method": method},
            )
        return client

    def has(self, method: PaymentMethod) -> bool:
        return PaymentMethod(method) in self._clients

    def availability(self) -> dict[str, bool]:
        """Payment method to whether it can currently take payments."""
        available = {method.value: client.configured for method, client in self._clients.items()}
        available[PaymentMethod.BANK_TRANSFER.value] = self.bank is not None
        return available
