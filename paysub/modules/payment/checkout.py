"""Shopper-facing payment flows: start a checkout, poll its status, handle the
shopper's return from the hosted page, refund."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from paysub.core.exceptions import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from paysub.core.ids import SubscriptionId, UserId
from paysub.core.logging import log_error
from paysub.modules.gateway.client import PeachGatewayClient
from paysub.modules.gateway.interface import CheckoutRequest, CheckoutResult
from paysub.modules.payment.models import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    TransitionResult,
    status_from_result_code,
)
from paysub.modules.payment.service import PaymentLedger
from paysub.modules.payment.settlement import SettlementOutcome, SettlementService
from paysub.modules.subscription.models import RENEWABLE_STATUSES, Subscription, SubscriptionStatus
from paysub.modules.subscription.service import SubscriptionLedger

logger = logging.getLogger(__name__)


@dataclass
class InitiatedCheckout:
    payment: Payment
    checkout: CheckoutResult


@dataclass
class PaymentStatusView:
    payment: Payment
    settlement: Optional[SettlementOutcome] = None
    note: Optional[str] = None


def accepts_payment(sub: Subscription) -> bool:
    if sub.status == SubscriptionStatus.PENDING:
        return True
    if sub.status == SubscriptionStatus.SUSPENDED:
        return sub.paused_at is None
    return sub.status in RENEWABLE_STATUSES


class CheckoutService:
    def __init__(
        self,
        payments: PaymentLedger,
        subscriptions: SubscriptionLedger,
        gateway: PeachGatewayClient,
        settlement: SettlementService,
    ):
        self.payments = payments
        self.subscriptions = subscriptions
        self.gateway = gateway
        self.settlement = settlement

    async def initiate(
        self,
        user_id: UserId,
        subscription_id: SubscriptionId,
        payment_method: PaymentMethod = PaymentMethod.CARD,
        enable_recurring: bool = True,
    ) -> InitiatedCheckout:
        """Create a Pending payment for the subscription price and open a hosted checkout.

        Raises:
            NotFoundError: Subscription unknown or owned by another user
            InvalidTransitionError: Subscription cannot take a payment (paused or terminal)
            GatewayError: Checkout creation failed; the payment is marked Failed
        """
        sub = await self.subscriptions.get(subscription_id)
        if sub.user_id != user_id:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if not accepts_payment(sub):
            raise InvalidTransitionError("Subscription", sub.status.value, "payment")

        payment = await self.payments.create_payment(
            user_id=user_id,
            amount=sub.price,
            payment_method=payment_method,
            subscription_id=sub.id,
            currency=sub.currency,
            enable_recurring=enable_recurring and payment_method.supports_recurring,
        )

        request = CheckoutRequest(
            amount=payment.amount,
            merchant_transaction_id=payment.merchant_transaction_id,
            customer_id=str(user_id),
            currency=payment.currency,
            payment_brand=payment_method.gateway_brand,
            create_registration=payment.enable_recurring,
            custom_parameters={"subscription_id": str(sub.id)},
        )

        try:
            checkout = await self.gateway.create_checkout(request)
        except GatewayError as e:
            await self.payments.apply_status(
                payment.merchant_transaction_id,
                PaymentStatus.FAILED,
                failure_reason=f"Checkout creation failed: {e.message}"[:500],
            )
            log_error(
                logger,
                f"Checkout creation failed for {payment.merchant_transaction_id}",
                e,
                subscription_id=str(sub.id),
            )
            raise

        payment = await self.payments.attach_checkout(payment.merchant_transaction_id, checkout.checkout_id)
        logger.info(
            f"Checkout {checkout.checkout_id} opened for {payment.merchant_transaction_id} "
            f"({payment_method.value}, {payment.amount} {payment.currency})"
        )
        return InitiatedCheckout(payment=payment, checkout=checkout)

    async def poll_status(self, merchant_txn_id: str) -> PaymentStatusView:
        """Ask the gateway for the payment's status and settle it, as a webhook would."""
        payment = await self.payments.require(merchant_txn_id)

        try:
            outcome = await self.settlement.reconcile(payment)
        except GatewayError as e:
            logger.warning(f"Status poll for {merchant_txn_id} failed: {e.message}")
            return PaymentStatusView(
                payment=payment,
                note=f"Gateway status unavailable, showing stored status: {e.message}",
            )

        if outcome is None:
            return PaymentStatusView(
                payment=payment,
                note="The gateway has no record of this payment yet",
            )

        note = None
        if outcome.errors:
            note = "; ".join(outcome.errors)
        return PaymentStatusView(payment=outcome.payment, settlement=outcome, note=note)

    async def return_from_checkout(self, resource_path: Optional[str]) -> PaymentStatusView:
        """Settle the payment behind a shopper-result redirect.

        The gateway sends the shopper back with a ``resourcePath`` such as
        ``/v1/checkouts/{checkoutId}/payment``; the checkout id names the payment.

        Raises:
            ValidationError: No checkout id in the resource path
            NotFoundError: No payment was opened for that checkout
        """
        parts = [p for p in (resource_path or "").split("/") if p]
        if "checkouts" not in parts or parts.index("checkouts") + 1 >= len(parts):
            raise ValidationError(f"Invalid or missing resource path: {resource_path!r}")
        checkout_id = parts[parts.index("checkouts") + 1]

        payment = await self.payments.get_by_checkout_id(checkout_id)
        if payment is None:
            raise NotFoundError(f"No payment for checkout {checkout_id}")
        return await self.poll_status(payment.merchant_transaction_id)

    async def refund(self, merchant_txn_id: str, amount: Optional[Decimal] = None) -> TransitionResult:
        """Refund through the gateway, then record it on the ledger.

        Raises:
            ValidationError: Nothing to refund, or amount exceeds what is left
            InvalidTransitionError: Payment was never completed
            GatewayError: The gateway declined or could not be reached
        """
        payment = await self.payments.require(merchant_txn_id)
        if payment.status not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
            raise InvalidTransitionError("Payment", payment.status.value, "refunded")
        if not payment.gateway_payment_id:
            raise ValidationError(f"Payment {merchant_txn_id} has no gateway payment id to refund")

        amount = payment.refundable_amount if amount is None else Decimal(amount)
        if amount <= 0 or amount > payment.refundable_amount:
            raise ValidationError(
                f"Refund amount must be between 0 and {payment.refundable_amount}"
            )

        result = await self.gateway.refund(payment.gateway_payment_id, amount, payment.currency)
        if status_from_result_code(result.result_code) != PaymentStatus.COMPLETED:
            raise GatewayError(
                f"Refund declined: {result.result_code} {result.result_description or ''}".strip()
            )

        return await self.payments.record_refund(merchant_txn_id, amount)
