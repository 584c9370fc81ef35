"""Peach Payments gateway integration."""

from paysub.modules.gateway.client import PeachGatewayClient
from paysub.modules.gateway.interface import (
    CardDetails,
    CheckoutRequest,
    CheckoutResult,
    GatewayPaymentStatus,
    RecurringChargeRequest,
)
from paysub.modules.gateway.signature import (
    SignatureMode,
    SignatureVerifier,
    canonical_payload,
)

__all__ = [
    "PeachGatewayClient",
    "CardDetails",
    "CheckoutRequest",
    "CheckoutResult",
    "GatewayPaymentStatus",
    "RecurringChargeRequest",
    "SignatureMode",
    "SignatureVerifier",
    "canonical_payload",
]
