"""Property-based tests for settlement of gateway results.

**Feature: paysub, Property: Settlement idempotency**
**Validates: SettlementService.settle**
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from paysub.core.store import InMemoryStore
from paysub.modules.payment.models import USER_CANCELLED_CODE, PaymentMethod, PaymentStatus
from paysub.modules.payment.service import PaymentLedger
from paysub.modules.payment.settlement import SettlementService
from paysub.modules.subscription.models import SubscriptionStatus
from paysub.modules.subscription.service import SubscriptionLedger

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Harness:
    def __init__(self):
        self.payments = PaymentLedger(InMemoryStore(unique_fields=("merchant_transaction_id",)))
        self.subscriptions = SubscriptionLedger(InMemoryStore(), grace_period_days=7)
        self.queue = MagicMock()
        self.queue.enqueue = AsyncMock()
        self.gateway = MagicMock()
        self.settlement = SettlementService(self.payments, self.subscriptions, self.queue, self.gateway)

    async def pending_checkout(self, plan: str = "monthly", **kwargs):
        user_id = uuid.uuid4()
        sub = await self.subscriptions.create_subscription(user_id, plan)
        payment = await self.payments.create_payment(
            user_id=user_id,
            amount=sub.price,
            payment_method=PaymentMethod.CARD,
            subscription_id=sub.id,
            enable_recurring=True,
            **kwargs,
        )
        return sub, payment


class TestSettlement:
    """**Validates: settle**"""

    @pytest.mark.asyncio
    async def test_success_activates_and_queues_token_storage(self) -> None:
        h = Harness()
        sub, payment = await h.pending_checkout()

        outcome = await h.settlement.settle(
            payment, "000.000.000", registration_id="reg-1", payment_brand="VISA", now=NOW
        )

        stored_sub = await h.subscriptions.get(sub.id)
        assert outcome.status == PaymentStatus.COMPLETED
        assert outcome.subscription_action == "activated"
        assert outcome.method_storage_enqueued is True
        assert stored_sub.status == SubscriptionStatus.ACTIVE
        assert stored_sub.start_date == NOW
        assert stored_sub.end_date == NOW + timedelta(days=30)
        assert stored_sub.last_payment_brand == "VISA"
        h.queue.enqueue.assert_awaited_once_with(payment.id)

    @given(deliveries=st.integers(min_value=2, max_value=12))
    @settings(max_examples=25)
    def test_redelivered_results_apply_once(self, deliveries: int) -> None:
        """*For any* number of concurrent duplicate deliveries, the subscription is
        credited once and the token job is queued once."""

        async def run():
            h = Harness()
            sub, payment = await h.pending_checkout()
            await asyncio.gather(*(
                h.settlement.settle(payment, "000.000.000", registration_id="reg-1", now=NOW)
                for _ in range(deliveries)
            ))
            return h, await h.subscriptions.get(sub.id)

        h, stored_sub = asyncio.run(run())
        assert h.queue.enqueue.await_count == 1
        assert stored_sub.end_date == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_pending_code_changes_nothing(self) -> None:
        h = Harness()
        sub, payment = await h.pending_checkout()

        outcome = await h.settlement.settle(payment, "000.200.000", now=NOW)

        assert outcome.status == PaymentStatus.PENDING
        assert (await h.subscriptions.get(sub.id)).status == SubscriptionStatus.PENDING
        h.queue.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_user_cancellation_leaves_subscription_alone(self) -> None:
        h = Harness()
        sub, payment = await h.pending_checkout()

        outcome = await h.settlement.settle(payment, USER_CANCELLED_CODE, now=NOW)

        assert outcome.user_cancelled is True
        assert outcome.status == PaymentStatus.FAILED
        assert outcome.payment.failure_reason == "Cancelled by user"
        assert (await h.subscriptions.get(sub.id)).status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_late_failure_after_success_is_rejected(self) -> None:
        h = Harness()
        _, payment = await h.pending_checkout()
        await h.settlement.settle(payment, "000.000.000", now=NOW)

        outcome = await h.settlement.settle(payment, "800.100.151", now=NOW)

        assert outcome.status == PaymentStatus.COMPLETED
        assert outcome.errors

    @pytest.mark.asyncio
    async def test_success_redelivered_after_refund_is_a_noop(self) -> None:
        h = Harness()
        sub, payment = await h.pending_checkout()
        await h.settlement.settle(payment, "000.000.000", registration_id="reg-1", now=NOW)
        await h.payments.record_refund(payment.merchant_transaction_id, Decimal("40.00"))

        outcome = await h.settlement.settle(payment, "000.000.000", registration_id="reg-1", now=NOW)

        assert outcome.errors == []
        assert outcome.transition.applied is False
        assert outcome.status == PaymentStatus.PARTIALLY_REFUNDED
        assert (await h.subscriptions.get(sub.id)).end_date == NOW + timedelta(days=30)
        h.queue.enqueue.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_recurring_charge_does_not_store_token_again(self) -> None:
        h = Harness()
        sub, first = await h.pending_checkout()
        await h.settlement.settle(first, "000.000.000", now=NOW)
        h.queue.enqueue.reset_mock()

        renewal = await h.payments.create_payment(
            user_id=sub.user_id,
            amount=sub.price,
            payment_method=PaymentMethod.CARD,
            subscription_id=sub.id,
            is_recurring=True,
            registration_id="reg-1",
        )
        outcome = await h.settlement.settle(renewal, "000.100.110", now=NOW)

        assert outcome.subscription_action == "renewed"
        assert (await h.subscriptions.get(sub.id)).end_date == NOW + timedelta(days=60)
        h.queue.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_enqueue_releases_claim(self) -> None:
        h = Harness()
        _, payment = await h.pending_checkout()
        h.queue.enqueue.side_effect = RuntimeError("broker down")

        outcome = await h.settlement.settle(payment, "000.000.000", registration_id="reg-1", now=NOW)

        stored = await h.payments.get(payment.id)
        assert outcome.method_storage_enqueued is False
        assert outcome.status == PaymentStatus.COMPLETED
        assert stored.method_storage_claimed is False

    @pytest.mark.asyncio
    async def test_credit_failure_releases_claim(self) -> None:
        h = Harness()
        sub, payment = await h.pending_checkout()
        await h.subscriptions.cancel(sub.id)

        outcome = await h.settlement.settle(payment, "000.000.000", now=NOW)

        stored = await h.payments.get(payment.id)
        assert outcome.status == PaymentStatus.COMPLETED
        assert outcome.subscription_action is None
        assert stored.subscription_credited is False
