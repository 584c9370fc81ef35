"""Settlement of a gateway result onto the ledgers.

The webhook, the client status poll and the renewal scheduler all funnel a
gateway result code through ``SettlementService.settle`` so the three paths
apply identical transitions no matter which one arrives first or how often.
``reconcile`` fetches that code from the gateway when no notification came.

Steps after the status is applied are independently failable: a failure is
logged and recorded on the outcome, and the remaining steps still run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from paysub.core.exceptions import InvalidTransitionError
from paysub.core.logging import log_error, log_warning
from paysub.modules.gateway.client import PeachGatewayClient
from paysub.modules.gateway.interface import GatewayPaymentStatus
from paysub.modules.payment.models import (
    Payment,
    PaymentStatus,
    TransitionResult,
    is_user_cancellation,
    status_from_result_code,
)
from paysub.modules.payment.queue import PaymentMethodQueue
from paysub.modules.payment.service import PaymentLedger
from paysub.modules.subscription.service import SubscriptionLedger

logger = logging.getLogger(__name__)


@dataclass
class SettlementOutcome:
    payment: Payment
    target_status: PaymentStatus
    transition: Optional[TransitionResult] = None
    subscription_action: Optional[str] = None
    method_storage_enqueued: bool = False
    user_cancelled: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> PaymentStatus:
        return self.payment.status


class SettlementService:
    def __init__(
        self,
        payments: PaymentLedger,
        subscriptions: SubscriptionLedger,
        method_queue: PaymentMethodQueue,
        gateway: PeachGatewayClient,
    ):
        self.payments = payments
        self.subscriptions = subscriptions
        self.method_queue = method_queue
        self.gateway = gateway

    async def settle(
        self,
        payment: Payment,
        result_code: str,
        result_description: Optional[str] = None,
        gateway_payment_id: Optional[str] = None,
        registration_id: Optional[str] = None,
        payment_brand: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SettlementOutcome:
        """Apply a gateway result code to a payment and its subscription."""
        txn = payment.merchant_transaction_id
        target = status_from_result_code(result_code)
        outcome = SettlementOutcome(payment=payment, target_status=target)

        cancelled = is_user_cancellation(result_code)
        if cancelled:
            outcome.user_cancelled = True
            result_description = result_description or "Cancelled by user"

        # Status transition
        try:
            outcome.transition = await self.payments.apply_status(
                txn,
                target,
                result_code=result_code,
                failure_reason=result_description if target == PaymentStatus.FAILED else None,
                gateway_payment_id=gateway_payment_id,
                registration_id=registration_id,
                payment_brand=payment_brand,
            )
            outcome.payment = outcome.transition.payment
        except InvalidTransitionError as e:
            outcome.errors.append(e.message)
            outcome.payment = await self._reload(outcome)
        except Exception as e:
            log_error(logger, f"Applying status {target.value} to {txn} failed", e, merchant_transaction_id=txn)
            outcome.errors.append(f"apply_status: {e}")
            outcome.payment = await self._reload(outcome)

        if cancelled:
            logger.info(f"Payment {txn} cancelled by the shopper; subscription untouched")
            return outcome

        if target != PaymentStatus.COMPLETED or outcome.payment.status != PaymentStatus.COMPLETED:
            return outcome

        current = outcome.payment

        # Activate or renew the linked subscription
        if current.subscription_id is not None:
            await self._credit_subscription(current, payment_brand, now, outcome)

        # Keep the card token for future automatic renewals
        if not current.is_recurring and (registration_id or current.registration_id):
            await self._enqueue_method_storage(current, outcome)

        return outcome

    async def reconcile(self, payment: Payment, now: Optional[datetime] = None) -> Optional[SettlementOutcome]:
        """Ask the gateway about a payment and settle whatever it reports.

        Uses the checkout id, else the gateway payment id, else the merchant
        transaction id, whichever is the most specific one known.

        Returns:
            The settlement, or None when the gateway has no record of the payment

        Raises:
            GatewayError: The gateway could not answer
        """
        result = await self._query(payment)
        if result is None:
            return None
        return await self.settle(
            payment,
            result.result_code,
            result_description=result.result_description,
            gateway_payment_id=result.gateway_payment_id,
            registration_id=result.registration_id,
            payment_brand=result.payment_brand,
            now=now,
        )

    async def _query(self, payment: Payment) -> Optional[GatewayPaymentStatus]:
        if payment.checkout_id:
            return await self.gateway.get_checkout_status(payment.checkout_id)
        if payment.gateway_payment_id:
            return await self.gateway.get_payment(payment.gateway_payment_id)
        return await self.gateway.query_transaction(payment.merchant_transaction_id)

    async def _reload(self, outcome: SettlementOutcome) -> Payment:
        try:
            return await self.payments.get(outcome.payment.id)
        except Exception as e:
            log_error(logger, f"Reloading payment {outcome.payment.id} failed", e)
            return outcome.payment

    async def _credit_subscription(
        self,
        payment: Payment,
        payment_brand: Optional[str],
        now: Optional[datetime],
        outcome: SettlementOutcome,
    ) -> None:
        txn = payment.merchant_transaction_id
        try:
            claimed = await self.payments.claim_subscription_credit(txn)
        except Exception as e:
            log_error(logger, f"Claiming subscription credit for {txn} failed", e)
            outcome.errors.append(f"claim_subscription_credit: {e}")
            return

        if not claimed:
            logger.debug(f"Subscription already credited for payment {txn}")
            return

        try:
            _, action = await self.subscriptions.credit_completed_payment(
                payment.subscription_id,
                payment_method=payment.payment_method.value,
                payment_brand=payment_brand or payment.payment_brand,
                now=now,
            )
            outcome.subscription_action = action
        except InvalidTransitionError as e:
            log_warning(
                logger,
                f"Completed payment {txn} cannot credit subscription {payment.subscription_id}: {e.message}",
                merchant_transaction_id=txn,
            )
            outcome.errors.append(f"credit_subscription: {e}")
            await self._release_credit(txn)
        except Exception as e:
            log_error(logger, f"Crediting subscription for {txn} failed", e)
            outcome.errors.append(f"credit_subscription: {e}")
            await self._release_credit(txn)

    async def _release_credit(self, txn: str) -> None:
        # Let a redelivery or the status poll retry the credit
        try:
            await self.payments.release_subscription_credit(txn)
        except Exception as e:
            log_error(logger, f"Releasing subscription credit claim for {txn} failed", e)

    async def _enqueue_method_storage(self, payment: Payment, outcome: SettlementOutcome) -> None:
        txn = payment.merchant_transaction_id
        try:
            if not await self.payments.claim_method_storage(txn):
                logger.debug(f"Payment method storage already claimed for {txn}")
                return
        except Exception as e:
            log_error(logger, f"Claiming payment method storage for {txn} failed", e)
            outcome.errors.append(f"claim_method_storage: {e}")
            return

        try:
            await self.method_queue.enqueue(payment.id)
            outcome.method_storage_enqueued = True
        except Exception as e:
            log_error(logger, f"Queueing payment method storage for {txn} failed", e)
            outcome.errors.append(f"enqueue_method_storage: {e}")
            try:
                await self.payments.release_method_storage(txn)
            except Exception as release_error:
                log_error(logger, f"Releasing storage claim for {txn} failed", release_error)
