"""Pydantic schemas for the subscription API."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field

from paysub.modules.subscription.models import SubscriptionStatus


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps from clients are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class SubscriptionCreate(BaseModel):
    user_id: uuid.UUID
    plan_name: str = Field(..., description="Plan name, e.g. monthly or annual")
    auto_renew: bool = True
    billing_cycle_anchor: Optional[UtcDatetime] = Field(
        None, description="First period starts here instead of at activation"
    )


class SubscriptionResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    plan_name: str
    price: Decimal
    duration_days: int
    currency: str
    status: SubscriptionStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    grace_end_date: Optional[datetime] = None
    billing_cycle_anchor: Optional[datetime] = None
    auto_renew: bool
    renewal_attempts: int
    max_renewal_attempts: int
    paused_at: Optional[datetime] = None
    last_payment_method: Optional[str] = None
    last_payment_brand: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RenewalInfoResponse(BaseModel):
    """Where a subscription sits in its billing cycle."""
    subscription_id: uuid.UUID
    status: SubscriptionStatus
    end_date: Optional[datetime] = None
    grace_end_date: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    days_until_grace_end: Optional[int] = None
    renewal_attempts: int
    max_renewal_attempts: int
    can_renew_manually: bool

    class Config:
        from_attributes = True


class ActivateSubscriptionRequest(BaseModel):
    subscription_id: uuid.UUID


class ChangePlanRequest(BaseModel):
    plan_name: str
    effective_date: Optional[UtcDatetime] = None


class ChangeBillingDateRequest(BaseModel):
    new_billing_date: UtcDatetime


class ProrationResponse(BaseModel):
    current_plan_refund: Decimal
    new_plan_charge: Decimal
    net_amount: Decimal
    effective_date: datetime
    days_used: int
    days_remaining: int

    class Config:
        from_attributes = True


class PlanResponse(BaseModel):
    name: str
    price: Decimal
    duration_days: int
    daily_rate: Decimal
