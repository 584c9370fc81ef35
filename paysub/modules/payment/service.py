"""Payment ledger.

Owns Payment records and their status transitions. Every mutation is an
optimistic compare-and-set against the record's version, so the webhook,
the status poll and the renewal scheduler can all race on the same payment
and still converge.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from paysub.core.exceptions import (
    DuplicateKeyError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from paysub.core.ids import PaymentId, SubscriptionId, UserId, new_id, utcnow
from paysub.core.logging import log_warning
from paysub.core.metrics import PAYMENT_TRANSITIONS_TOTAL
from paysub.core.store import DocumentStore, Filter, mutate_with_retry
from paysub.modules.payment.models import (
    REFUND_STATUSES,
    TXN_PREFIX,
    Payment,
    PaymentMethod,
    PaymentStatus,
    TransitionResult,
    can_transition,
    new_merchant_transaction_id,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class PaymentLedger:
    """Create, look up and transition Payment records."""

    def __init__(self, store: DocumentStore[Payment]):
        self.store = store

    # ==================== Creation ====================

    async def create_payment(
        self,
        user_id: UserId,
        amount: Decimal,
        payment_method: PaymentMethod,
        subscription_id: Optional[SubscriptionId] = None,
        currency: str = "ZAR",
        enable_recurring: bool = False,
        is_recurring: bool = False,
        prefix: str = TXN_PREFIX,
        retry_count: int = 0,
        registration_id: Optional[str] = None,
    ) -> Payment:
        """Record a new Pending payment with a fresh merchant transaction id.

        Raises:
            ValidationError: If amount is negative
        """
        amount = Decimal(amount)
        if amount < 0:
            raise ValidationError(f"Payment amount must not be negative: {amount}")

        for _ in range(3):
            payment = Payment(
                id=PaymentId(new_id()),
                user_id=user_id,
                subscription_id=subscription_id,
                amount=amount.quantize(CENT),
                currency=currency,
                payment_method=payment_method,
                merchant_transaction_id=new_merchant_transaction_id(prefix),
                enable_recurring=enable_recurring,
                is_recurring=is_recurring,
                registration_id=registration_id,
                retry_count=retry_count,
            )
            try:
                created = await self.store.create(payment)
            except DuplicateKeyError:
                logger.warning("Merchant transaction id collision, regenerating")
                continue
            logger.info(
                f"Created payment {created.merchant_transaction_id} "
                f"for user {user_id} amount {created.amount} {currency}"
            )
            return created

        raise DuplicateKeyError("Could not allocate a unique merchant transaction id")

    # ==================== Lookups ====================

    async def get(self, payment_id: PaymentId) -> Payment:
        payment = await self.store.get(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def get_by_merchant_transaction_id(self, merchant_txn_id: str) -> Optional[Payment]:
        return await self.store.get_by("merchant_transaction_id", merchant_txn_id)

    async def get_by_checkout_id(self, checkout_id: str) -> Optional[Payment]:
        return await self.store.get_by("checkout_id", checkout_id)

    async def require(self, merchant_txn_id: str) -> Payment:
        payment = await self.get_by_merchant_transaction_id(merchant_txn_id)
        if payment is None:
            raise NotFoundError(f"No payment with merchant transaction id {merchant_txn_id}")
        return payment

    async def list_for_user(self, user_id: UserId) -> list[Payment]:
        return await self.store.find(
            Filter("user_id", "eq", user_id), order_by="created_at", descending=True
        )

    async def find_pending_recurring(self, subscription_id: SubscriptionId) -> list[Payment]:
        """Automatic charges for a subscription still awaiting an outcome, oldest first."""
        return await self.store.find(
            Filter("subscription_id", "eq", subscription_id),
            Filter("is_recurring", "eq", True),
            Filter("status", "eq", PaymentStatus.PENDING),
            order_by="created_at",
        )

    # ==================== Transitions ====================

    async def attach_checkout(self, merchant_txn_id: str, checkout_id: str) -> Payment:
        """Record the gateway checkout id on a payment.

        Raises:
            NotFoundError: If no payment has that merchant transaction id
        """
        payment = await self.require(merchant_txn_id)

        def mutate(p: Payment) -> bool:
            if p.checkout_id == checkout_id:
                return False
            if p.checkout_id is not None:
                raise ValidationError(
                    f"Payment {merchant_txn_id} already has checkout {p.checkout_id}"
                )
            p.checkout_id = checkout_id
            p.updated_at = utcnow()
            return True

        updated, _ = await mutate_with_retry(self.store, payment.id, mutate, entity="Payment")
        return updated

    async def apply_status(
        self,
        merchant_txn_id: str,
        new_status: PaymentStatus,
        result_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
        gateway_payment_id: Optional[str] = None,
        registration_id: Optional[str] = None,
        payment_brand: Optional[str] = None,
    ) -> TransitionResult:
        """Move a payment to ``new_status``.

        Applying the status a payment already has is a no-op, and so is a
        Pending target or a success redelivered after a refund. Refund
        statuses are only reachable via record_refund.

        Raises:
            NotFoundError: If no payment has that merchant transaction id
            InvalidTransitionError: If the move is not allowed; the record is untouched
        """
        if new_status in REFUND_STATUSES:
            raise InvalidTransitionError("Payment", "any", f"{new_status.value} (use record_refund)")

        payment = await self.require(merchant_txn_id)
        previous: list[PaymentStatus] = []

        def mutate(p: Payment) -> bool:
            previous.append(p.status)
            # A refunded payment was completed first
            redelivered = new_status == PaymentStatus.COMPLETED and p.status in REFUND_STATUSES
            moving = new_status != PaymentStatus.PENDING and p.status != new_status and not redelivered
            if moving and not can_transition(p.status, new_status):
                raise InvalidTransitionError("Payment", p.status.value, new_status.value)

            changed = False
            for attr, value in (
                ("gateway_payment_id", gateway_payment_id),
                ("registration_id", registration_id),
                ("payment_brand", payment_brand),
            ):
                if value and getattr(p, attr) is None:
                    setattr(p, attr, value)
                    changed = True

            if moving:
                now = utcnow()
                p.status = new_status
                p.result_code = result_code
                p.failure_reason = failure_reason if new_status != PaymentStatus.COMPLETED else None
                if new_status == PaymentStatus.COMPLETED:
                    p.completed_at = now
                changed = True

            if changed:
                p.updated_at = utcnow()
            return changed

        try:
            updated, _ = await mutate_with_retry(self.store, payment.id, mutate, entity="Payment")
        except InvalidTransitionError as e:
            PAYMENT_TRANSITIONS_TOTAL.labels(new_status.value, "rejected").inc()
            log_warning(
                logger,
                f"Rejected payment transition for {merchant_txn_id}: {e.message}",
                merchant_transaction_id=merchant_txn_id,
                current_status=e.current,
                target_status=e.target,
            )
            raise

        applied = updated.status == new_status and previous[-1] != new_status
        PAYMENT_TRANSITIONS_TOTAL.labels(
            new_status.value, "applied" if applied else "unchanged"
        ).inc()
        if applied:
            logger.info(
                f"Payment {merchant_txn_id}: {previous[-1].value} -> {new_status.value}"
            )
        return TransitionResult(payment=updated, previous_status=previous[-1], applied=applied)

    async def record_refund(self, merchant_txn_id: str, amount: Decimal) -> TransitionResult:
        """Explicit refund path: Completed -> PartiallyRefunded -> Refunded.

        Raises:
            ValidationError: If amount is not positive or exceeds what is left
            InvalidTransitionError: If the payment was never completed
        """
        amount = Decimal(amount).quantize(CENT)
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")

        payment = await self.require(merchant_txn_id)
        previous: list[PaymentStatus] = []

        def mutate(p: Payment) -> bool:
            previous.append(p.status)
            if amount > p.refundable_amount:
                raise ValidationError(
                    f"Refund {amount} exceeds refundable {p.refundable_amount}"
                )
            total = p.refunded_amount + amount
            target = PaymentStatus.REFUNDED if total >= p.amount else PaymentStatus.PARTIALLY_REFUNDED
            if not can_transition(p.status, target):
                raise InvalidTransitionError("Payment", p.status.value, target.value)
            p.refunded_amount = total
            p.status = target
            p.updated_at = utcnow()
            return True

        updated, _ = await mutate_with_retry(self.store, payment.id, mutate, entity="Payment")
        PAYMENT_TRANSITIONS_TOTAL.labels(updated.status.value, "applied").inc()
        logger.info(f"Refunded {amount} on payment {merchant_txn_id} ({updated.status.value})")
        return TransitionResult(payment=updated, previous_status=previous[-1], applied=True)

    # ==================== One-time side effect guards ====================

    async def _set_flag(self, merchant_txn_id: str, flag: str, value: bool) -> bool:
        payment = await self.require(merchant_txn_id)

        def mutate(p: Payment) -> bool:
            if getattr(p, flag) == value:
                return False
            setattr(p, flag, value)
            p.updated_at = utcnow()
            return True

        _, written = await mutate_with_retry(self.store, payment.id, mutate, entity="Payment")
        return written

    async def claim_method_storage(self, merchant_txn_id: str) -> bool:
        """Atomically claim the auto-store side effect. True for exactly one caller."""
        return await self._set_flag(merchant_txn_id, "method_storage_claimed", True)

    async def release_method_storage(self, merchant_txn_id: str) -> None:
        await self._set_flag(merchant_txn_id, "method_storage_claimed", False)

    async def claim_subscription_credit(self, merchant_txn_id: str) -> bool:
        """Atomically claim the activate/renew side effect. True for exactly one caller."""
        return await self._set_flag(merchant_txn_id, "subscription_credited", True)

    async def release_subscription_credit(self, merchant_txn_id: str) -> None:
        await self._set_flag(merchant_txn_id, "subscription_credited", False)
