"""Pydantic schemas for the payment API."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from paysub.modules.payment.models import PaymentMethod, PaymentStatus


# ==================== Checkout ====================

class InitiatePaymentRequest(BaseModel):
    """Start a hosted checkout for a subscription."""
    user_id: uuid.UUID
    subscription_id: uuid.UUID
    payment_method: PaymentMethod = PaymentMethod.CARD
    enable_recurring: bool = Field(
        True, description="Tokenize the card for automatic renewals (cards only)"
    )


class InitiatePaymentResponse(BaseModel):
    payment_id: uuid.UUID
    merchant_transaction_id: str
    checkout_id: str
    checkout_url: Optional[str] = None
    entity_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus


# ==================== Payments ====================

class PaymentResponse(BaseModel):
    """Payment record as exposed to clients."""
    id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: Optional[uuid.UUID] = None
    merchant_transaction_id: str
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus
    checkout_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    payment_brand: Optional[str] = None
    is_recurring: bool
    refunded_amount: Decimal
    result_code: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentStatusResponse(BaseModel):
    merchant_transaction_id: str
    status: PaymentStatus
    result_code: Optional[str] = None
    subscription_id: Optional[uuid.UUID] = None
    subscription_action: Optional[str] = None
    note: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(
        None, gt=0, description="Amount to refund; omit for the full remaining amount"
    )


# ==================== Payment methods ====================

class PaymentMethodResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    payment_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    card_expiry: Optional[str] = None
    card_holder: Optional[str] = None
    is_default: bool
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentMethodListResponse(BaseModel):
    methods: list[PaymentMethodResponse]
    total: int


class StorePaymentMethodRequest(BaseModel):
    """Keep the token of a completed card payment."""
    payment_id: uuid.UUID


# ==================== Recurring charges ====================

class RecurringPaymentRequest(BaseModel):
    """Charge one of the user's stored methods for a subscription now."""
    user_id: uuid.UUID
    subscription_id: uuid.UUID
    payment_method_id: uuid.UUID


class RecurringPaymentResponse(BaseModel):
    subscription_id: uuid.UUID
    outcome: str
    payment_id: Optional[uuid.UUID] = None
    merchant_transaction_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    detail: Optional[str] = None
