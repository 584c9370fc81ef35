"""Subscription domain model.

Lifecycle: Pending -> Active on the first completed payment; Active -> Grace
once the end date passes; Grace -> Suspended (awaiting payment) or Expired
once the grace window closes; Active <-> Suspended for pause/resume; any
non-terminal state -> Cancelled. Expired and Cancelled are terminal.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from paysub.core.exceptions import ValidationError
from paysub.core.ids import SubscriptionId, UserId, utcnow

CENT = Decimal("0.01")


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    PENDING = "pending"
    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED})
RENEWABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE})


@dataclass(frozen=True)
class Plan:
    name: str
    price: Decimal
    duration_days: int

    @property
    def daily_rate(self) -> Decimal:
        return self.price / Decimal(self.duration_days)


PLANS: dict[str, Plan] = {
    "monthly": Plan("monthly", Decimal("100.00"), 30),
    "annual": Plan("annual", Decimal("1000.00"), 365),
}


def get_plan(name: str) -> Plan:
    plan = PLANS.get((name or "").lower())
    if plan is None:
        raise ValidationError(f"Unknown plan '{name}'. Available: {', '.join(PLANS)}")
    return plan


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class Subscription:
    id: SubscriptionId
    user_id: UserId
    plan_name: str
    price: Decimal
    duration_days: int
    currency: str = "ZAR"
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    grace_end_date: Optional[datetime] = None
    billing_cycle_anchor: Optional[datetime] = None
    auto_renew: bool = True
    renewal_attempts: int = 0
    max_renewal_attempts: int = 5
    paused_at: Optional[datetime] = None
    last_payment_method: Optional[str] = None
    last_payment_brand: Optional[str] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    cancelled_at: Optional[datetime] = None

    @property
    def is_paused(self) -> bool:
        return self.status == SubscriptionStatus.SUSPENDED and self.paused_at is not None

    @property
    def daily_rate(self) -> Decimal:
        return self.price / Decimal(self.duration_days)

    @property
    def renewal_attempts_exhausted(self) -> bool:
        return self.renewal_attempts >= self.max_renewal_attempts


@dataclass
class ProrationCalculation:
    current_plan_refund: Decimal
    new_plan_charge: Decimal
    net_amount: Decimal
    effective_date: datetime
    days_used: int
    days_remaining: int


def lapse_status(sub: Subscription, now: datetime) -> Optional[SubscriptionStatus]:
    """Date-driven status for an Active or Grace subscription, or None if unchanged.

    Comparisons are strict: at exactly ``end_date`` the subscription is still
    Active. Past the grace window a subscription that still wants to renew is
    Suspended (a late payment reactivates it); one with auto-renew off Expires.
    """
    if sub.status not in RENEWABLE_STATUSES or sub.end_date is None:
        return None
    if sub.grace_end_date is not None and now > sub.grace_end_date:
        return SubscriptionStatus.SUSPENDED if sub.auto_renew else SubscriptionStatus.EXPIRED
    if sub.status == SubscriptionStatus.ACTIVE and now > sub.end_date:
        return SubscriptionStatus.GRACE
    return None
