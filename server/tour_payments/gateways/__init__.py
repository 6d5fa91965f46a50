"""Payment gateway adapters."""

from .base import (
    GatewayClient,
    GatewayOrder,
    NormalizedStatus,
    SubmissionResult,
    VerificationResult,
)
from .mpesa import MpesaGateway
from .pesapal import PesapalGateway
from .registry import GatewayRegistry
from .stripe import StripeCheckoutGateway

__all__ = [
    "GatewayClient",
    "GatewayOrder",
    "GatewayRegistry",
    "MpesaGateway",
    "NormalizedStatus",
    "PesapalGateway",
    "StripeCheckoutGateway",
    "SubmissionResult",
    "VerificationResult",
]
