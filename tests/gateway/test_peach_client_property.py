"""Tests for the Peach Payments client against a mocked transport.

**Feature: paysub, Property: Gateway client error taxonomy**
**Validates: authenticate token caching, create_checkout, charge_recurring,
get_payment, query_transaction, timeout and malformed-response handling**
"""

import json
from decimal import Decimal

import httpx
import pytest

from paysub.core.config import Settings
from paysub.core.exceptions import GatewayError
from paysub.modules.gateway.client import PeachGatewayClient
from paysub.modules.gateway.interface import CheckoutRequest, RecurringChargeRequest

AUTH_URL = "https://auth.test"
CHECKOUT_URL = "https://checkout.test"


def make_config() -> Settings:
    return Settings(
        PEACH_AUTH_SERVICE_URL=AUTH_URL,
        PEACH_CHECKOUT_ENDPOINT=CHECKOUT_URL,
        PEACH_STATUS_ENDPOINT=CHECKOUT_URL,
        PEACH_CLIENT_ID="client",
        PEACH_CLIENT_SECRET="secret",
        PEACH_MERCHANT_ID="merchant",
        PEACH_ENTITY_ID="entity-1",
        PEACH_NOTIFICATION_URL="https://merchant.test/api/v1/payments/webhook",
        PEACH_SHOPPER_RESULT_URL="https://merchant.test/return",
    )


class FakePeach:
    """Records requests and answers them from a routing function."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/oauth/token":
            return httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600})
        return self.routes(request)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def make_client(routes) -> tuple[PeachGatewayClient, FakePeach]:
    fake = FakePeach(routes)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    return PeachGatewayClient(make_config(), http_client=http_client), fake


class TestAuthentication:
    """**Validates: authenticate, health_check**"""

    @pytest.mark.asyncio
    async def test_token_is_cached_between_calls(self) -> None:
        client, fake = make_client(
            lambda r: httpx.Response(200, json={"checkoutId": "chk-1"})
        )
        request = CheckoutRequest(
            amount=Decimal("100.00"), merchant_transaction_id="TXN_1", customer_id="u1"
        )

        await client.create_checkout(request)
        await client.create_checkout(request)
        await client.aclose()

        assert len(fake.calls_to("/api/oauth/token")) == 1
        assert len(fake.calls_to("/v2/checkout")) == 2
        checkout = fake.calls_to("/v2/checkout")[0]
        assert checkout.headers["Authorization"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_missing_access_token_is_an_error(self) -> None:
        def no_token(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"expires_in": 3600})

        client = PeachGatewayClient(
            make_config(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(no_token)),
        )
        with pytest.raises(GatewayError):
            await client.authenticate()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(404))
        assert await client.health_check() is True
        await client.aclose()

        def auth_down(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        down = PeachGatewayClient(
            make_config(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(auth_down)),
        )
        assert await down.health_check() is False
        await down.aclose()


class TestOperations:
    """**Validates: create_checkout, charge_recurring, get_payment**"""

    @pytest.mark.asyncio
    async def test_checkout_payload(self) -> None:
        client, fake = make_client(
            lambda r: httpx.Response(200, json={"checkoutId": "chk-9"})
        )
        result = await client.create_checkout(CheckoutRequest(
            amount=Decimal("100"),
            merchant_transaction_id="TXN_abc",
            customer_id="user-1",
            payment_brand="EFT",
            create_registration=True,
            custom_parameters={"subscription_id": "sub-1"},
        ))
        await client.aclose()

        body = json.loads(fake.calls_to("/v2/checkout")[0].content)
        assert result.checkout_id == "chk-9"
        assert result.entity_id == "entity-1"
        assert body["amount"] == "100.00"
        assert body["paymentType"] == "DB"
        assert body["merchantTransactionId"] == "TXN_abc"
        assert body["createRegistration"] is True
        assert body["paymentBrand"] == "EFT"
        assert body["customParameters"] == {"subscription_id": "sub-1"}
        assert body["nonce"]

    @pytest.mark.asyncio
    async def test_checkout_without_id_is_indeterminate(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(200, json={"result": {}}))

        with pytest.raises(GatewayError) as exc_info:
            await client.create_checkout(CheckoutRequest(
                amount=Decimal("1"), merchant_transaction_id="TXN_1", customer_id="u"
            ))
        await client.aclose()

        assert exc_info.value.indeterminate

    @pytest.mark.asyncio
    async def test_recurring_charge_sends_standing_instruction(self) -> None:
        client, fake = make_client(lambda r: httpx.Response(200, json={
            "id": "pay-2",
            "result": {"code": "000.100.110", "description": "Request successfully processed"},
        }))
        status = await client.charge_recurring(RecurringChargeRequest(
            registration_id="reg-1",
            amount=Decimal("100.00"),
            merchant_transaction_id="RENEWAL_1",
            customer_id="user-1",
            initial_transaction_id="pay-1",
        ))
        await client.aclose()

        body = json.loads(fake.calls_to("/v2/payments")[0].content)
        assert status.result_code == "000.100.110"
        assert status.gateway_payment_id == "pay-2"
        assert body["registrationId"] == "reg-1"
        assert body["customParameters"]["paymentType"] == "recurring"
        assert body["standingInstruction"]["initialTransactionId"] == "pay-1"

    @pytest.mark.asyncio
    async def test_decline_with_result_code_is_data(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(400, json={
            "result": {"code": "800.100.151", "description": "transaction declined (invalid card)"},
        }))
        status = await client.charge_recurring(RecurringChargeRequest(
            registration_id="reg-1",
            amount=Decimal("100.00"),
            merchant_transaction_id="RENEWAL_2",
            customer_id="user-1",
        ))
        await client.aclose()

        assert status.result_code == "800.100.151"

    @pytest.mark.asyncio
    async def test_get_payment_parses_card(self) -> None:
        client, fake = make_client(lambda r: httpx.Response(200, json={
            "id": "pay-1",
            "registrationId": "reg-7",
            "paymentBrand": "VISA",
            "result": {"code": "000.000.000"},
            "card": {
                "bin": "411111",
                "last4Digits": "1111",
                "holder": "J Doe",
                "expiryMonth": "12",
                "expiryYear": "2030",
            },
        }))
        status = await client.get_payment("pay-1")
        await client.aclose()

        assert fake.calls_to("/v1/payments/pay-1")[0].url.params["entityId"] == "entity-1"
        assert status.registration_id == "reg-7"
        assert status.card.last_four == "1111"
        assert status.card.expiry == "12/2030"

    @pytest.mark.asyncio
    async def test_query_by_transaction_id_returns_latest_debit(self) -> None:
        client, fake = make_client(lambda r: httpx.Response(200, json={
            "result": {"code": "000.000.100"},
            "payments": [
                {"id": "pay-1", "paymentType": "DB", "result": {"code": "800.100.151"}},
                {"id": "pay-2", "paymentType": "DB", "result": {"code": "000.100.110"}},
                {"id": "pay-3", "paymentType": "RF", "result": {"code": "000.000.000"}},
            ],
        }))
        status = await client.query_transaction("RENEWAL_1")
        await client.aclose()

        query = fake.calls_to("/v1/query")[0]
        assert query.method == "GET"
        assert query.url.params["merchantTransactionId"] == "RENEWAL_1"
        assert query.url.params["entityId"] == "entity-1"
        assert status.gateway_payment_id == "pay-2"
        assert status.result_code == "000.100.110"

    @pytest.mark.asyncio
    async def test_query_for_unknown_transaction_is_none(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(400, json={
            "result": {"code": "700.400.580", "description": "cannot find transaction"},
        }))
        status = await client.query_transaction("RENEWAL_1")
        await client.aclose()

        assert status is None

    @pytest.mark.asyncio
    async def test_query_without_answer_is_indeterminate(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(200, json={
            "result": {"code": "900.100.300", "description": "timeout, uncertain result"},
        }))
        with pytest.raises(GatewayError) as exc_info:
            await client.query_transaction("RENEWAL_1")
        await client.aclose()

        assert exc_info.value.indeterminate is True


class TestErrorTaxonomy:
    """**Validates: timeouts, server errors, malformed bodies**"""

    @pytest.mark.asyncio
    async def test_timeout_raises_timeout_error(self) -> None:
        def routes(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, _ = make_client(routes)
        with pytest.raises(GatewayError) as exc_info:
            await client.get_checkout_status("chk-1")
        await client.aclose()

        assert exc_info.value.is_timeout
        assert exc_info.value.indeterminate

    @pytest.mark.asyncio
    async def test_transport_error_is_indeterminate(self) -> None:
        def routes(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client(routes)
        with pytest.raises(GatewayError) as exc_info:
            await client.get_checkout_status("chk-1")
        await client.aclose()

        assert not exc_info.value.is_timeout
        assert exc_info.value.indeterminate

    @pytest.mark.asyncio
    async def test_server_error_carries_status(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(503, text="unavailable"))

        with pytest.raises(GatewayError) as exc_info:
            await client.get_checkout_status("chk-1")
        await client.aclose()

        assert exc_info.value.gateway_status == 503
        assert exc_info.value.indeterminate

    @pytest.mark.asyncio
    async def test_client_error_without_result_is_definite(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(401, json={"error": "unauthorized"}))

        with pytest.raises(GatewayError) as exc_info:
            await client.get_checkout_status("chk-1")
        await client.aclose()

        assert exc_info.value.gateway_status == 401
        assert not exc_info.value.indeterminate

    @pytest.mark.asyncio
    async def test_malformed_success_body(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(200, text="<html>ok</html>"))

        with pytest.raises(GatewayError) as exc_info:
            await client.get_checkout_status("chk-1")
        await client.aclose()

        assert exc_info.value.indeterminate

    @pytest.mark.asyncio
    async def test_success_without_result_code(self) -> None:
        client, _ = make_client(lambda r: httpx.Response(200, json={"id": "pay-1"}))

        with pytest.raises(GatewayError, match="result code"):
            await client.get_payment("pay-1")
        await client.aclose()
