"""ORM tables backing the payment stores."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum as SAEnum, Index, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from paysub.core.database import Base
from paysub.modules.payment.models import PaymentMethod, PaymentStatus


def _enum_column(enum_cls):
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class PaymentRow(Base):
    """Payment transaction table."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    status: Mapped[PaymentStatus] = mapped_column(_enum_column(PaymentStatus), nullable=False, index=True)
    payment_method: Mapped[PaymentMethod] = mapped_column(_enum_column(PaymentMethod), nullable=False)

    # Correlation key with the gateway (immutable)
    merchant_transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    checkout_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    registration_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payment_brand: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    enable_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    method_storage_claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    subscription_credited: Mapped[bool] = mapped_column(Boolean, default=False)

    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    result_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payments_subscription_status", "subscription_id", "status"),
    )


class PaymentMethodDetailRow(Base):
    """Stored gateway registrations per user."""

    __tablename__ = "payment_method_details"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    registration_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_brand: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    card_last_four: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_expiry: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)
    card_holder: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_payment_methods_user_registration", "user_id", "registration_id", unique=True),
    )
