"""Payment domain model and the payment state machine.

A Payment moves Pending -> {Completed, Failed, Cancelled} and
Completed -> {Refunded, PartiallyRefunded}. Nothing ever moves back to
Pending. The gateway result code is translated to a target status by
``status_from_result_code`` and by nothing else.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from paysub.core.ids import PaymentId, PaymentMethodId, SubscriptionId, UserId, utcnow

TXN_PREFIX = "TXN"
RENEWAL_PREFIX = "RENEWAL"

USER_CANCELLED_CODE = "100.396.104"
SUCCESS_PREFIXES = ("000.000", "000.100")
PENDING_PREFIX = "000.200"


class PaymentStatus(str, Enum):
    """Payment status values."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(str, Enum):
    """Payment methods offered at checkout."""
    CARD = "card"
    EFT = "eft"
    ONE_VOUCHER = "one_voucher"
    SCAN_TO_PAY = "scan_to_pay"

    @property
    def gateway_brand(self) -> Optional[str]:
        """Brand the checkout must be pinned to; cards let the shopper choose."""
        return _GATEWAY_BRANDS.get(self)

    @property
    def supports_recurring(self) -> bool:
        return self is PaymentMethod.CARD


_GATEWAY_BRANDS = {
    PaymentMethod.EFT: "EFT",
    PaymentMethod.ONE_VOUCHER: "1VOUCHER",
    PaymentMethod.SCAN_TO_PAY: "SCAN_TO_PAY",
}


ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.COMPLETED: frozenset({
        PaymentStatus.REFUNDED,
        PaymentStatus.PARTIALLY_REFUNDED,
    }),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({
        PaymentStatus.REFUNDED,
        PaymentStatus.PARTIALLY_REFUNDED,
    }),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

REFUND_STATUSES = frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED})


def status_from_result_code(code: str) -> PaymentStatus:
    """Map a gateway result code to the payment status it implies.

    000.000.* and 000.100.* are successful, 000.200.* is still pending,
    everything else (including the shopper-cancelled 100.396.104) failed.
    """
    code = (code or "").strip()
    if code.startswith(SUCCESS_PREFIXES):
        return PaymentStatus.COMPLETED
    if code.startswith(PENDING_PREFIX):
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED


def is_user_cancellation(code: str) -> bool:
    return (code or "").strip() == USER_CANCELLED_CODE


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def new_merchant_transaction_id(prefix: str = TXN_PREFIX) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


@dataclass
class Payment:
    """A single charge attempt. Never deleted."""
    id: PaymentId
    user_id: UserId
    amount: Decimal
    payment_method: PaymentMethod
    merchant_transaction_id: str
    subscription_id: Optional[SubscriptionId] = None
    currency: str = "ZAR"
    status: PaymentStatus = PaymentStatus.PENDING
    checkout_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    registration_id: Optional[str] = None
    payment_brand: Optional[str] = None
    # Charged against a stored registration rather than a shopper checkout
    is_recurring: bool = False
    # Checkout asked the gateway to tokenize the card
    enable_recurring: bool = False
    # One-time side effect guards, flipped by compare-and-set
    method_storage_claimed: bool = False
    subscription_credited: bool = False
    refunded_amount: Decimal = Decimal("0")
    result_code: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - self.refunded_amount


@dataclass
class PaymentMethodDetail:
    """A stored recurring token (gateway registration) owned by a user."""
    id: PaymentMethodId
    user_id: UserId
    registration_id: str
    payment_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    card_expiry: Optional[str] = None
    card_holder: Optional[str] = None
    source_payment_id: Optional[PaymentId] = None
    is_default: bool = True
    is_active: bool = True
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TransitionResult:
    """Outcome of ApplyStatus: the stored payment and whether anything moved."""
    payment: Payment
    previous_status: PaymentStatus
    applied: bool
