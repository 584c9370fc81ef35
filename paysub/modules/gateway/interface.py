"""Data transfer objects exchanged with the Peach Payments API."""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from paysub.core.exceptions import GatewayError


@dataclass
class CheckoutRequest:
    """Data transfer object for creating a hosted checkout."""
    amount: Decimal
    merchant_transaction_id: str
    customer_id: str
    currency: str = "ZAR"
    payment_brand: Optional[str] = None
    create_registration: bool = False
    custom_parameters: dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutResult:
    """Result from checkout creation."""
    checkout_id: str
    merchant_transaction_id: str
    entity_id: str
    checkout_url: Optional[str] = None
    gateway_response: Optional[dict] = None


@dataclass
class RecurringChargeRequest:
    """Registration-based charge initiated by the merchant."""
    registration_id: str
    amount: Decimal
    merchant_transaction_id: str
    customer_id: str
    currency: str = "ZAR"
    initial_transaction_id: Optional[str] = None


@dataclass
class CardDetails:
    """Card attributes echoed back by the gateway (never the full PAN)."""
    bin: Optional[str] = None
    last_four: Optional[str] = None
    holder: Optional[str] = None
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None

    @property
    def expiry(self) -> Optional[str]:
        if self.expiry_month and self.expiry_year:
            return f"{self.expiry_month}/{self.expiry_year}"
        return None


@dataclass
class GatewayPaymentStatus:
    """Status of a checkout or payment as reported by the gateway."""
    result_code: str
    result_description: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    merchant_transaction_id: Optional[str] = None
    registration_id: Optional[str] = None
    payment_brand: Optional[str] = None
    amount: Optional[Decimal] = None
    card: Optional[CardDetails] = None
    gateway_response: Optional[dict] = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "GatewayPaymentStatus":
        """Build from a gateway JSON body; a body without ``result.code`` is malformed."""
        result = data.get("result") or {}
        code = result.get("code") if isinstance(result, dict) else None
        if not code:
            raise GatewayError("Gateway response has no result code", indeterminate=True)

        card = None
        card_data = data.get("card")
        if isinstance(card_data, dict):
            card = CardDetails(
                bin=card_data.get("bin"),
                last_four=card_data.get("last4Digits"),
                holder=card_data.get("holder"),
                expiry_month=card_data.get("expiryMonth"),
                expiry_year=card_data.get("expiryYear"),
            )

        amount = None
        if data.get("amount") is not None:
            try:
                amount = Decimal(str(data["amount"]))
            except InvalidOperation:
                amount = None

        return cls(
            result_code=str(code),
            result_description=result.get("description"),
            gateway_payment_id=data.get("id"),
            merchant_transaction_id=data.get("merchantTransactionId"),
            registration_id=data.get("registrationId"),
            payment_brand=data.get("paymentBrand"),
            amount=amount,
            card=card,
            gateway_response=data,
        )
