"""Tests for gateway webhook ingestion.

**Feature: paysub, Property: Webhook settlement**
**Validates: WebhookIngestor.ingest, WebhookEvent.from_form, parse_form_body**
"""

import asyncio
import uuid
from datetime import timedelta
from urllib.parse import urlencode
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from paysub.core.config import Settings
from paysub.core.container import ServiceContainer
from paysub.core.exceptions import SignatureError, WebhookParseError
from paysub.modules.gateway.signature import SignatureMode, SignatureVerifier
from paysub.modules.payment.models import PaymentMethod, PaymentStatus
from paysub.modules.subscription.models import SubscriptionStatus
from paysub.modules.webhook.service import WebhookEvent, parse_form_body

SECRET = "webhook-secret"


def make_container(mode: str = "sorted_params") -> tuple[ServiceContainer, MagicMock]:
    queue = MagicMock()
    queue.enqueue = AsyncMock()
    config = Settings(PEACH_WEBHOOK_SECRET=SECRET, WEBHOOK_SIGNATURE_MODE=mode)
    return ServiceContainer.in_memory(config, gateway=MagicMock(), method_queue=queue), queue


async def pending_payment(container: ServiceContainer):
    user_id = uuid.uuid4()
    sub = await container.subscriptions.create_subscription(user_id, "monthly")
    payment = await container.payments.create_payment(
        user_id=user_id,
        amount=sub.price,
        payment_method=PaymentMethod.CARD,
        subscription_id=sub.id,
        enable_recurring=True,
    )
    return sub, payment


def signed_body(params: dict[str, str]) -> bytes:
    signature = SignatureVerifier(SECRET).compute(params)
    return urlencode({**params, "signature": signature}).encode()


def success_params(txn: str, sub_id) -> dict[str, str]:
    return {
        "merchantTransactionId": txn,
        "result.code": "000.000.000",
        "result.description": "Transaction succeeded",
        "id": "pay-1",
        "registrationId": "reg-1",
        "paymentBrand": "VISA",
        "amount": "100.00",
        "customParameters[subscription_id]": str(sub_id),
    }


class TestIngest:
    """**Validates: ingest**"""

    @pytest.mark.asyncio
    async def test_success_webhook_activates_subscription(self) -> None:
        container, queue = make_container()
        sub, payment = await pending_payment(container)

        outcome = await container.webhooks.ingest(
            signed_body(success_params(payment.merchant_transaction_id, sub.id))
        )

        stored_payment = await container.payments.get(payment.id)
        stored_sub = await container.subscriptions.get(sub.id)
        assert outcome.payment_found is True
        assert outcome.event.subscription_id == str(sub.id)
        assert stored_payment.status == PaymentStatus.COMPLETED
        assert stored_payment.registration_id == "reg-1"
        assert stored_sub.status == SubscriptionStatus.ACTIVE
        assert stored_sub.end_date == stored_sub.start_date + timedelta(days=30)
        queue.enqueue.assert_awaited_once_with(payment.id)

    @given(copies=st.integers(min_value=2, max_value=8))
    @settings(max_examples=15, deadline=None)
    def test_duplicate_deliveries_apply_once(self, copies: int) -> None:
        """*For any* number of concurrent redeliveries, the token job is queued
        once and the subscription gets a single period."""

        async def run():
            container, queue = make_container()
            sub, payment = await pending_payment(container)
            body = signed_body(success_params(payment.merchant_transaction_id, sub.id))
            await asyncio.gather(*(container.webhooks.ingest(body) for _ in range(copies)))
            return queue, await container.subscriptions.get(sub.id)

        queue, stored_sub = asyncio.run(run())
        assert queue.enqueue.await_count == 1
        assert stored_sub.end_date == stored_sub.start_date + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_unknown_payment_is_acknowledged(self) -> None:
        container, queue = make_container()

        outcome = await container.webhooks.ingest(
            signed_body(success_params("TXN_unknown", uuid.uuid4()))
        )

        assert outcome.payment_found is False
        assert outcome.settlement is None
        queue.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_signature_mutates_nothing(self) -> None:
        container, _ = make_container()
        sub, payment = await pending_payment(container)
        params = success_params(payment.merchant_transaction_id, sub.id)
        params["signature"] = "0" * 64

        with pytest.raises(SignatureError):
            await container.webhooks.ingest(urlencode(params).encode())

        assert (await container.payments.get(payment.id)).status == PaymentStatus.PENDING
        assert (await container.subscriptions.get(sub.id)).status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_signature(self) -> None:
        container, _ = make_container()
        _, payment = await pending_payment(container)

        with pytest.raises(SignatureError):
            await container.webhooks.ingest(
                urlencode({"merchantTransactionId": payment.merchant_transaction_id}).encode()
            )

    @pytest.mark.asyncio
    async def test_missing_result_code_is_a_parse_error(self) -> None:
        container, _ = make_container()

        with pytest.raises(WebhookParseError, match="result.code"):
            await container.webhooks.ingest(signed_body({"merchantTransactionId": "TXN_1"}))

    @pytest.mark.asyncio
    async def test_raw_body_mode_uses_header_signature(self) -> None:
        container, _ = make_container(mode="raw_body")
        sub, payment = await pending_payment(container)
        body = urlencode(success_params(payment.merchant_transaction_id, sub.id)).encode()
        signature = SignatureVerifier(SECRET, SignatureMode.RAW_BODY).compute(raw_body=body)

        outcome = await container.webhooks.ingest(body, claimed_signature=signature)

        assert outcome.settlement.status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_code_does_not_touch_subscription(self) -> None:
        container, queue = make_container()
        sub, payment = await pending_payment(container)
        params = success_params(payment.merchant_transaction_id, sub.id)
        params["result.code"] = "800.100.151"

        await container.webhooks.ingest(signed_body(params))

        assert (await container.payments.get(payment.id)).status == PaymentStatus.FAILED
        assert (await container.subscriptions.get(sub.id)).status == SubscriptionStatus.PENDING
        queue.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trailing_separator_still_settles(self) -> None:
        container, _ = make_container()
        sub, payment = await pending_payment(container)

        outcome = await container.webhooks.ingest(
            signed_body(success_params(payment.merchant_transaction_id, sub.id)) + b"&"
        )

        assert outcome.settlement.status == PaymentStatus.COMPLETED


class TestParsing:
    """**Validates: parse_form_body, WebhookEvent.from_form**"""

    def test_bracketed_subscription_key_variants(self) -> None:
        for key in ("customParameters[subscription_id]", "customParameters%5Bsubscription_id%5D"):
            event = WebhookEvent.from_form({
                "merchantTransactionId": "TXN_1",
                "result.code": "000.000.000",
                key: "sub-1",
            })
            assert event.subscription_id == "sub-1"

    def test_invalid_amount(self) -> None:
        with pytest.raises(WebhookParseError):
            WebhookEvent.from_form({
                "merchantTransactionId": "TXN_1",
                "result.code": "000.000.000",
                "amount": "lots",
            })

    def test_empty_and_undecodable_bodies(self) -> None:
        with pytest.raises(WebhookParseError):
            parse_form_body(b"")
        with pytest.raises(WebhookParseError):
            parse_form_body(b"\xff\xfe")

    def test_empty_segments_are_tolerated(self) -> None:
        params = parse_form_body(b"merchantTransactionId=TXN_1&&result.code=000.000.000&")

        assert params == {"merchantTransactionId": "TXN_1", "result.code": "000.000.000"}

    def test_separators_only_is_empty(self) -> None:
        with pytest.raises(WebhookParseError):
            parse_form_body(b"&&")
