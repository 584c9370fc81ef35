"""Peach Payments API client.

Wraps the gateway operations the billing core needs: obtain a bearer token,
create a checkout, query checkout/payment status (also by merchant
transaction id), charge a stored registration, and refund. The client holds
no state other than the cached token.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx

from paysub.core.config import Settings, settings
from paysub.core.exceptions import GatewayError
from paysub.core.metrics import GATEWAY_REQUEST_DURATION_SECONDS, GATEWAY_REQUESTS_TOTAL
from paysub.modules.gateway.interface import (
    CheckoutRequest,
    CheckoutResult,
    GatewayPaymentStatus,
    RecurringChargeRequest,
)

logger = logging.getLogger(__name__)


def _format_amount(amount: Decimal) -> str:
    return f"{amount.quantize(Decimal('0.01'))}"


class PeachGatewayClient:
    """Async client for the Peach Payments checkout and payments APIs."""

    DEBIT = "DB"
    REFUND = "RF"
    TRANSACTION_NOT_FOUND = "700.400.580"

    def __init__(
        self,
        config: Settings = settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.GATEWAY_TIMEOUT_SECONDS)
        )
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._token_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ==================== Auth ====================

    def _token_is_fresh(self) -> bool:
        if not self._access_token or not self._token_expires_at:
            return False
        margin = timedelta(seconds=self.config.GATEWAY_TOKEN_REFRESH_MARGIN_SECONDS)
        return datetime.now(timezone.utc) < self._token_expires_at - margin

    async def authenticate(self) -> str:
        """Get a bearer token, reusing the cached one until it nears expiry.

        Returns:
            Access token string
        """
        if self._token_is_fresh():
            return self._access_token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            if self._token_is_fresh():
                return self._access_token

            data = await self._send(
                "authenticate",
                "POST",
                f"{self.config.PEACH_AUTH_SERVICE_URL}/api/oauth/token",
                json={
                    "clientId": self.config.PEACH_CLIENT_ID,
                    "clientSecret": self.config.PEACH_CLIENT_SECRET,
                    "merchantId": self.config.PEACH_MERCHANT_ID,
                },
            )

            token = data.get("access_token")
            if not token:
                raise GatewayError("No access_token in auth response")

            expires_in = int(data.get("expires_in", 3600))
            self._access_token = token
            self._token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
            logger.info("Obtained Peach access token")
            return token

    # ==================== Transport ====================

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        accept_result_body: bool = False,
    ) -> dict[str, Any]:
        """Perform one HTTP call and decode its JSON body.

        With ``accept_result_body`` a 4xx response that still carries a
        ``result.code`` is returned as data: the gateway reports declines
        that way and the code, not the HTTP status, decides the outcome.
        """
        started = time.perf_counter()
        try:
            response = await self._client.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self.config.GATEWAY_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as e:
            GATEWAY_REQUESTS_TOTAL.labels(operation, "timeout").inc()
            raise GatewayError(f"Gateway {operation} timed out", is_timeout=True) from e
        except httpx.HTTPError as e:
            GATEWAY_REQUESTS_TOTAL.labels(operation, "transport_error").inc()
            raise GatewayError(
                f"Gateway {operation} transport error: {e}", indeterminate=True
            ) from e
        finally:
            GATEWAY_REQUEST_DURATION_SECONDS.labels(operation).observe(
                time.perf_counter() - started
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_success:
            if not isinstance(data, dict):
                GATEWAY_REQUESTS_TOTAL.labels(operation, "malformed").inc()
                raise GatewayError(
                    f"Gateway {operation} returned a malformed body",
                    gateway_status=response.status_code,
                    indeterminate=True,
                )
            GATEWAY_REQUESTS_TOTAL.labels(operation, "ok").inc()
            return data

        if (
            accept_result_body
            and response.is_client_error
            and isinstance(data, dict)
            and isinstance(data.get("result"), dict)
            and data["result"].get("code")
        ):
            GATEWAY_REQUESTS_TOTAL.labels(operation, "rejected").inc()
            return data

        GATEWAY_REQUESTS_TOTAL.labels(operation, "http_error").inc()
        raise GatewayError(
            f"Gateway {operation} failed with HTTP {response.status_code}: {response.text[:500]}",
            gateway_status=response.status_code,
            indeterminate=response.is_server_error,
        )

    async def _authorized_headers(self) -> dict[str, str]:
        token = await self.authenticate()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if self.config.PEACH_ORIGIN_DOMAIN:
            headers["Origin"] = self.config.PEACH_ORIGIN_DOMAIN
        return headers

    # ==================== Operations ====================

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """Create a hosted checkout session.

        Args:
            request: Checkout parameters

        Returns:
            CheckoutResult carrying the gateway's checkout id
        """
        payload: dict[str, Any] = {
            "entityId": self.config.PEACH_ENTITY_ID,
            "amount": _format_amount(request.amount),
            "currency": request.currency,
            "paymentType": self.DEBIT,
            "merchantTransactionId": request.merchant_transaction_id,
            "nonce": str(uuid.uuid4()),
            "notificationUrl": self.config.PEACH_NOTIFICATION_URL,
            "shopperResultUrl": self.config.PEACH_SHOPPER_RESULT_URL,
            "customer": {"merchantCustomerId": request.customer_id},
        }
        if request.create_registration:
            payload["createRegistration"] = True
        if request.payment_brand:
            payload["paymentBrand"] = request.payment_brand
        if request.custom_parameters:
            payload["customParameters"] = dict(request.custom_parameters)

        data = await self._send(
            "create_checkout",
            "POST",
            f"{self.config.PEACH_CHECKOUT_ENDPOINT}/v2/checkout",
            json=payload,
            headers=await self._authorized_headers(),
        )

        checkout_id = data.get("checkoutId")
        if not checkout_id:
            raise GatewayError("No checkoutId in checkout response", indeterminate=True)

        logger.info(
            f"Created checkout {checkout_id} for {request.merchant_transaction_id}"
        )
        return CheckoutResult(
            checkout_id=checkout_id,
            merchant_transaction_id=request.merchant_transaction_id,
            entity_id=self.config.PEACH_ENTITY_ID,
            checkout_url=f"{self.config.PEACH_CHECKOUT_ENDPOINT}/v2/checkout/{checkout_id}",
            gateway_response=data,
        )

    async def get_checkout_status(self, checkout_id: str) -> GatewayPaymentStatus:
        """Query the outcome of a checkout session."""
        data = await self._send(
            "get_checkout_status",
            "GET",
            f"{self.config.PEACH_STATUS_ENDPOINT}/v2/checkout/{checkout_id}/status",
            headers=await self._authorized_headers(),
            accept_result_body=True,
        )
        return GatewayPaymentStatus.from_response(data)

    async def get_payment(self, gateway_payment_id: str) -> GatewayPaymentStatus:
        """Fetch full payment details, including registration id and card data."""
        data = await self._send(
            "get_payment",
            "GET",
            f"{self.config.PEACH_CHECKOUT_ENDPOINT}/v1/payments/{gateway_payment_id}",
            params={"entityId": self.config.PEACH_ENTITY_ID},
            headers=await self._authorized_headers(),
            accept_result_body=True,
        )
        return GatewayPaymentStatus.from_response(data)

    async def query_transaction(self, merchant_transaction_id: str) -> Optional[GatewayPaymentStatus]:
        """Look a payment up by our own transaction id.

        Covers charges whose response never arrived, so neither a checkout id
        nor a gateway payment id is known locally.

        Returns:
            The debit recorded under that id, or None if the gateway has none
        """
        data = await self._send(
            "query_transaction",
            "GET",
            f"{self.config.PEACH_CHECKOUT_ENDPOINT}/v1/query",
            params={
                "merchantTransactionId": merchant_transaction_id,
                "entityId": self.config.PEACH_ENTITY_ID,
            },
            headers=await self._authorized_headers(),
            accept_result_body=True,
        )

        records = [
            p for p in data.get("payments") or []
            if isinstance(p, dict) and p.get("paymentType", self.DEBIT) == self.DEBIT
        ]
        if records:
            return GatewayPaymentStatus.from_response(records[-1])

        result = data["result"] if isinstance(data.get("result"), dict) else {}
        code = result.get("code")
        if code == self.TRANSACTION_NOT_FOUND:
            logger.info(f"Gateway has no record of {merchant_transaction_id}")
            return None
        raise GatewayError(
            f"Transaction query for {merchant_transaction_id} failed: {code} "
            f"{result.get('description') or ''}".strip(),
            indeterminate=True,
        )

    async def charge_recurring(self, request: RecurringChargeRequest) -> GatewayPaymentStatus:
        """Charge a stored registration without the shopper present."""
        payload: dict[str, Any] = {
            "entityId": self.config.PEACH_ENTITY_ID,
            "amount": _format_amount(request.amount),
            "currency": request.currency,
            "paymentType": self.DEBIT,
            "merchantTransactionId": request.merchant_transaction_id,
            "nonce": str(uuid.uuid4()),
            "registrationId": request.registration_id,
            "customer": {"merchantCustomerId": request.customer_id},
            "notificationUrl": self.config.PEACH_NOTIFICATION_URL,
            "customParameters": {"paymentType": "recurring"},
        }
        if request.initial_transaction_id:
            payload["standingInstruction"] = {
                "mode": "REPEATED",
                "type": "RECURRING",
                "source": "MIT",
                "initialTransactionId": request.initial_transaction_id,
            }

        logger.info(f"Charging registration for {request.merchant_transaction_id}")
        data = await self._send(
            "charge_recurring",
            "POST",
            f"{self.config.PEACH_CHECKOUT_ENDPOINT}/v2/payments",
            json=payload,
            headers=await self._authorized_headers(),
            accept_result_body=True,
        )
        return GatewayPaymentStatus.from_response(data)

    async def refund(self, gateway_payment_id: str, amount: Decimal, currency: str = "ZAR") -> GatewayPaymentStatus:
        """Refund a settled payment, fully or partially."""
        data = await self._send(
            "refund",
            "POST",
            f"{self.config.PEACH_CHECKOUT_ENDPOINT}/v1/payments/{gateway_payment_id}",
            json={
                "entityId": self.config.PEACH_ENTITY_ID,
                "amount": _format_amount(amount),
                "currency": currency,
                "paymentType": self.REFUND,
            },
            headers=await self._authorized_headers(),
            accept_result_body=True,
        )
        return GatewayPaymentStatus.from_response(data)

    async def health_check(self) -> bool:
        try:
            await self.authenticate()
            return True
        except GatewayError as e:
            logger.warning(f"Peach health check failed: {e}")
            return False
