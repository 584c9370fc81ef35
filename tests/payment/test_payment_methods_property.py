"""Tests for stored payment methods (recurring tokens).

**Feature: paysub, Property: One active default token per user**
**Validates: PaymentMethodService.store_from_payment, save_method, set_default, deactivate,
get_default_token, InlinePaymentMethodQueue**
"""

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from paysub.core.exceptions import NotFoundError, PaymentDetailsNotReadyError, ValidationError
from paysub.core.store import InMemoryStore
from paysub.core.tasks import RetryConfig
from paysub.modules.gateway.interface import CardDetails, GatewayPaymentStatus
from paysub.modules.payment.methods import PaymentMethodService
from paysub.modules.payment.models import PaymentMethod, PaymentStatus
from paysub.modules.payment.queue import InlinePaymentMethodQueue
from paysub.modules.payment.service import PaymentLedger


def make_service(gateway=None) -> tuple[PaymentMethodService, PaymentLedger, MagicMock]:
    gateway = gateway or MagicMock()
    payments = PaymentLedger(InMemoryStore(unique_fields=("merchant_transaction_id",)))
    return PaymentMethodService(InMemoryStore(), payments, gateway), payments, gateway


def gateway_details(registration_id=None) -> GatewayPaymentStatus:
    return GatewayPaymentStatus(
        result_code="000.000.000",
        gateway_payment_id="pay-1",
        registration_id=registration_id,
        payment_brand="MASTER",
        card=CardDetails(last_four="4242", holder="A Shopper", expiry_month="08", expiry_year="2029"),
    )


async def completed_payment(payments: PaymentLedger, **kwargs):
    payment = await payments.create_payment(
        user_id=uuid.uuid4(),
        amount=Decimal("100.00"),
        payment_method=PaymentMethod.CARD,
        **kwargs,
    )
    result = await payments.apply_status(
        payment.merchant_transaction_id, PaymentStatus.COMPLETED, gateway_payment_id="pay-1"
    )
    return result.payment


class TestStoreFromPayment:
    """**Validates: store_from_payment**"""

    @pytest.mark.asyncio
    async def test_stores_card_details_as_default(self) -> None:
        service, payments, gateway = make_service()
        gateway.get_payment = AsyncMock(return_value=gateway_details("reg-1"))
        payment = await completed_payment(payments)

        method = await service.store_from_payment(payment.id)

        assert method.registration_id == "reg-1"
        assert method.card_last_four == "4242"
        assert method.card_expiry == "08/2029"
        assert method.card_holder == "A Shopper"
        assert method.payment_brand == "MASTER"
        assert method.is_default and method.is_active
        gateway.get_payment.assert_awaited_once_with("pay-1")

    @pytest.mark.asyncio
    async def test_not_ready_without_registration(self) -> None:
        service, payments, gateway = make_service()
        gateway.get_payment = AsyncMock(return_value=gateway_details(None))
        payment = await completed_payment(payments)

        with pytest.raises(PaymentDetailsNotReadyError):
            await service.store_from_payment(payment.id)

    @pytest.mark.asyncio
    async def test_recurring_payment_is_skipped(self) -> None:
        service, payments, gateway = make_service()
        gateway.get_payment = AsyncMock()
        payment = await completed_payment(payments, is_recurring=True)

        assert await service.store_from_payment(payment.id) is None
        gateway.get_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pending_payment_is_rejected(self) -> None:
        service, payments, gateway = make_service()
        gateway.get_payment = AsyncMock()
        payment = await payments.create_payment(
            user_id=uuid.uuid4(), amount=Decimal("100.00"), payment_method=PaymentMethod.CARD
        )

        with pytest.raises(ValidationError):
            await service.store_from_payment(payment.id)
        gateway.get_payment.assert_not_awaited()


class TestDefaults:
    """**Validates: save_method, set_default, deactivate, get_default_token**"""

    @given(tokens=st.lists(st.sampled_from(["reg-a", "reg-b", "reg-c", "reg-d"]), min_size=1, max_size=10))
    @settings(max_examples=50)
    def test_exactly_one_default(self, tokens: list[str]) -> None:
        """*For any* sequence of stored tokens, the last one is the single default
        and a repeated token reuses its record."""

        async def run():
            service, _, _ = make_service()
            user_id = uuid.uuid4()
            for token in tokens:
                await service.save_method(user_id, token)
            return await service.list_methods(user_id), await service.get_default_token(user_id)

        methods, default = asyncio.run(run())
        assert len(methods) == len(set(tokens))
        assert sum(1 for m in methods if m.is_default) == 1
        assert default.registration_id == tokens[-1]

    @pytest.mark.asyncio
    async def test_set_default_moves_the_flag(self) -> None:
        service, _, _ = make_service()
        user_id = uuid.uuid4()
        older = await service.save_method(user_id, "reg-old")
        await service.save_method(user_id, "reg-new")

        chosen = await service.set_default(user_id, older.id)

        default = await service.get_default_token(user_id)
        assert chosen.is_default
        assert default.id == older.id
        assert sum(1 for m in await service.list_methods(user_id) if m.is_default) == 1

    @pytest.mark.asyncio
    async def test_deactivated_method_cannot_become_default(self) -> None:
        service, _, _ = make_service()
        user_id = uuid.uuid4()
        method = await service.save_method(user_id, "reg-1")
        await service.deactivate(user_id, method.id)

        with pytest.raises(NotFoundError):
            await service.set_default(user_id, method.id)

    @pytest.mark.asyncio
    async def test_deactivating_default_promotes_newest(self) -> None:
        service, _, _ = make_service()
        user_id = uuid.uuid4()
        older = await service.save_method(user_id, "reg-old")
        newer = await service.save_method(user_id, "reg-new")

        await service.deactivate(user_id, newer.id)

        default = await service.get_default_token(user_id)
        assert default.id == older.id
        assert [m.id for m in await service.list_methods(user_id)] == [older.id]

    @pytest.mark.asyncio
    async def test_no_token_when_all_deactivated(self) -> None:
        service, _, _ = make_service()
        user_id = uuid.uuid4()
        method = await service.save_method(user_id, "reg-1")

        await service.deactivate(user_id, method.id)

        assert await service.get_default_token(user_id) is None

    @pytest.mark.asyncio
    async def test_other_users_method_is_not_found(self) -> None:
        service, _, _ = make_service()
        method = await service.save_method(uuid.uuid4(), "reg-1")

        with pytest.raises(NotFoundError):
            await service.deactivate(uuid.uuid4(), method.id)


class TestInlineQueue:
    """**Validates: InlinePaymentMethodQueue retries**"""

    @pytest.mark.asyncio
    async def test_retries_until_details_are_ready(self) -> None:
        queue = InlinePaymentMethodQueue(
            RetryConfig(max_attempts=4, initial_delay=0, max_delay=0, backoff_multiplier=1)
        )
        worker = AsyncMock(side_effect=[
            PaymentDetailsNotReadyError("not yet"),
            PaymentDetailsNotReadyError("not yet"),
            None,
        ])
        queue.bind(worker)
        payment_id = uuid.uuid4()

        await queue.enqueue(payment_id)
        await queue.drain()

        assert worker.await_count == 3
        worker.assert_awaited_with(payment_id)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        queue = InlinePaymentMethodQueue(
            RetryConfig(max_attempts=2, initial_delay=0, max_delay=0, backoff_multiplier=1)
        )
        worker = AsyncMock(side_effect=PaymentDetailsNotReadyError("never"))
        queue.bind(worker)

        await queue.enqueue(uuid.uuid4())
        await queue.drain()

        assert worker.await_count == 2
