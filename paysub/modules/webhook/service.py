"""Gateway webhook ingestion.

Pipeline per notification: decode the form body, verify the signature
(fatal), build a typed WebhookEvent (fatal if required fields are missing),
look up the payment (warn and stop if unknown), then settle. Once the
signature is valid the gateway always gets a 200 so it stops redelivering;
downstream failures are logged, not surfaced.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional
from urllib.parse import parse_qsl

from paysub.core.exceptions import SignatureError, WebhookParseError
from paysub.core.logging import log_error, log_warning
from paysub.core.metrics import WEBHOOKS_TOTAL
from paysub.modules.gateway.signature import SIGNATURE_FIELD, SignatureVerifier
from paysub.modules.payment.service import PaymentLedger
from paysub.modules.payment.settlement import SettlementOutcome, SettlementService

logger = logging.getLogger(__name__)

SUBSCRIPTION_ID_KEYS = (
    "customParameters[subscription_id]",
    "customParameters%5Bsubscription_id%5D",
    "customParameters%5bsubscription_id%5d",
)


@dataclass
class WebhookEvent:
    """Verified, parsed representation of one gateway notification."""
    result_code: str
    merchant_transaction_id: str
    result_description: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    registration_id: Optional[str] = None
    payment_brand: Optional[str] = None
    checkout_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: dict[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_form(cls, params: Mapping[str, str]) -> "WebhookEvent":
        """Build an event, failing fast when required fields are absent."""
        result_code = (params.get("result.code") or "").strip()
        merchant_txn_id = (params.get("merchantTransactionId") or "").strip()

        missing = [
            name for name, value in (
                ("result.code", result_code),
                ("merchantTransactionId", merchant_txn_id),
            ) if not value
        ]
        if missing:
            raise WebhookParseError(f"Webhook missing required fields: {', '.join(missing)}")

        subscription_id = None
        for key in SUBSCRIPTION_ID_KEYS:
            if params.get(key):
                subscription_id = params[key]
                break

        amount = None
        if params.get("amount"):
            try:
                amount = Decimal(params["amount"])
            except InvalidOperation as e:
                raise WebhookParseError(f"Invalid amount: {params['amount']!r}") from e

        return cls(
            result_code=result_code,
            merchant_transaction_id=merchant_txn_id,
            result_description=params.get("result.description") or None,
            gateway_payment_id=params.get("id") or None,
            registration_id=params.get("registrationId") or None,
            payment_brand=params.get("paymentBrand") or None,
            checkout_id=params.get("checkoutId") or params.get("ndc") or None,
            subscription_id=subscription_id,
            amount=amount,
            raw=dict(params),
        )


@dataclass
class WebhookOutcome:
    event: Optional[WebhookEvent] = None
    payment_found: bool = False
    settlement: Optional[SettlementOutcome] = None


def parse_form_body(raw_body: bytes) -> dict[str, str]:
    """Decode an application/x-www-form-urlencoded body."""
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookParseError("Webhook body is not valid UTF-8") from e
    # Empty segments, such as a trailing "&", are skipped
    pairs = parse_qsl(text, keep_blank_values=True)
    if not pairs:
        raise WebhookParseError("Webhook body is empty")
    return dict(pairs)


class WebhookIngestor:
    def __init__(
        self,
        verifier: SignatureVerifier,
        payments: PaymentLedger,
        settlement: SettlementService,
    ):
        self.verifier = verifier
        self.payments = payments
        self.settlement = settlement

    async def ingest(
        self,
        raw_body: bytes,
        claimed_signature: Optional[str] = None,
    ) -> WebhookOutcome:
        """Process one notification.

        Raises:
            WebhookParseError: Body undecodable or required fields missing (400)
            SignatureError: Signature missing or wrong (401); nothing is mutated
        """
        try:
            params = parse_form_body(raw_body)
        except WebhookParseError:
            WEBHOOKS_TOTAL.labels("unparseable").inc()
            raise

        signature = claimed_signature or params.get(SIGNATURE_FIELD)
        try:
            self.verifier.require(signature, params=params, raw_body=raw_body)
        except SignatureError as e:
            WEBHOOKS_TOTAL.labels("bad_signature").inc()
            log_warning(logger, f"Rejected webhook: {e.message}")
            raise

        try:
            event = WebhookEvent.from_form(params)
        except WebhookParseError:
            WEBHOOKS_TOTAL.labels("unparseable").inc()
            raise

        outcome = WebhookOutcome(event=event)
        txn = event.merchant_transaction_id
        logger.info(f"Webhook for {txn}: result {event.result_code}")

        try:
            payment = await self.payments.get_by_merchant_transaction_id(txn)
        except Exception as e:
            log_error(logger, f"Payment lookup for webhook {txn} failed", e, merchant_transaction_id=txn)
            WEBHOOKS_TOTAL.labels("error").inc()
            return outcome

        if payment is None:
            log_warning(logger, f"Webhook for unknown payment {txn}", merchant_transaction_id=txn)
            WEBHOOKS_TOTAL.labels("unknown_payment").inc()
            return outcome
        outcome.payment_found = True

        if event.subscription_id and payment.subscription_id and event.subscription_id != str(payment.subscription_id):
            log_warning(
                logger,
                f"Webhook subscription {event.subscription_id} does not match payment {txn}",
                merchant_transaction_id=txn,
            )

        try:
            outcome.settlement = await self.settlement.settle(
                payment,
                event.result_code,
                result_description=event.result_description,
                gateway_payment_id=event.gateway_payment_id,
                registration_id=event.registration_id,
                payment_brand=event.payment_brand,
            )
        except Exception as e:
            log_error(logger, f"Settling webhook for {txn} failed", e, merchant_transaction_id=txn)
            WEBHOOKS_TOTAL.labels("error").inc()
            return outcome

        WEBHOOKS_TOTAL.labels("processed").inc()
        return outcome
