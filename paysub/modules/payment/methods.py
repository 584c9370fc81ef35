"""Stored payment methods (recurring tokens).

A registration id issued by the gateway on a tokenized card payment is kept
as a PaymentMethodDetail owned by the user. The default active one is what
the renewal scheduler charges.
"""

import logging
from typing import Optional

from paysub.core.exceptions import NotFoundError, PaymentDetailsNotReadyError, ValidationError
from paysub.core.ids import PaymentId, PaymentMethodId, UserId, new_id, utcnow
from paysub.core.store import DocumentStore, Filter, mutate_with_retry
from paysub.modules.gateway.client import PeachGatewayClient
from paysub.modules.gateway.interface import CardDetails, GatewayPaymentStatus
from paysub.modules.payment.models import REFUND_STATUSES, PaymentMethodDetail, PaymentStatus
from paysub.modules.payment.service import PaymentLedger

logger = logging.getLogger(__name__)


class PaymentMethodService:
    def __init__(
        self,
        store: DocumentStore[PaymentMethodDetail],
        payments: PaymentLedger,
        gateway: PeachGatewayClient,
    ):
        self.store = store
        self.payments = payments
        self.gateway = gateway

    async def _fetch_details(self, payment) -> GatewayPaymentStatus:
        if payment.gateway_payment_id:
            return await self.gateway.get_payment(payment.gateway_payment_id)
        if payment.checkout_id:
            return await self.gateway.get_checkout_status(payment.checkout_id)
        raise PaymentDetailsNotReadyError(
            f"Payment {payment.merchant_transaction_id} has no gateway reference yet"
        )

    async def store_from_payment(self, payment_id: PaymentId) -> Optional[PaymentMethodDetail]:
        """Fetch a completed payment's details and keep its token as the user's default.

        Raises:
            PaymentDetailsNotReadyError: The gateway has not exposed a registration id yet
            ValidationError: The payment never completed
            GatewayError: The detail lookup failed
        """
        payment = await self.payments.get(payment_id)
        if payment.status != PaymentStatus.COMPLETED and payment.status not in REFUND_STATUSES:
            raise ValidationError(f"Payment {payment.merchant_transaction_id} is not completed")
        if payment.is_recurring:
            logger.info(f"Payment {payment.merchant_transaction_id} is recurring, token already stored")
            return None

        details = await self._fetch_details(payment)
        registration_id = details.registration_id or payment.registration_id
        if not registration_id:
            raise PaymentDetailsNotReadyError(
                f"No registration id for payment {payment.merchant_transaction_id} yet"
            )

        method = await self.save_method(
            user_id=payment.user_id,
            registration_id=registration_id,
            payment_brand=details.payment_brand or payment.payment_brand,
            card=details.card,
            source_payment_id=payment.id,
        )
        logger.info(
            f"Stored payment method {method.id} for user {payment.user_id} "
            f"from {payment.merchant_transaction_id}"
        )
        return method

    async def save_method(
        self,
        user_id: UserId,
        registration_id: str,
        payment_brand: Optional[str] = None,
        card: Optional[CardDetails] = None,
        source_payment_id: Optional[PaymentId] = None,
    ) -> PaymentMethodDetail:
        """Store a token as the user's default, reusing an existing record for the same token."""
        existing = await self.store.find(
            Filter("user_id", "eq", user_id),
            Filter("registration_id", "eq", registration_id),
            limit=1,
        )
        card = card or CardDetails()

        if existing:
            def mutate(m: PaymentMethodDetail) -> bool:
                m.is_active = True
                m.is_default = True
                m.payment_brand = payment_brand or m.payment_brand
                m.card_last_four = card.last_four or m.card_last_four
                m.card_expiry = card.expiry or m.card_expiry
                m.card_holder = card.holder or m.card_holder
                m.updated_at = utcnow()
                return True

            method, _ = await mutate_with_retry(
                self.store, existing[0].id, mutate, entity="PaymentMethod"
            )
        else:
            method = await self.store.create(PaymentMethodDetail(
                id=PaymentMethodId(new_id()),
                user_id=user_id,
                registration_id=registration_id,
                payment_brand=payment_brand,
                card_last_four=card.last_four,
                card_expiry=card.expiry,
                card_holder=card.holder,
                source_payment_id=source_payment_id,
            ))

        await self._clear_other_defaults(user_id, method.id)
        return method

    async def _clear_other_defaults(self, user_id: UserId, keep: PaymentMethodId) -> None:
        others = await self.store.find(
            Filter("user_id", "eq", user_id),
            Filter("is_default", "eq", True),
            Filter("id", "ne", keep),
        )

        def mutate(m: PaymentMethodDetail) -> bool:
            if not m.is_default:
                return False
            m.is_default = False
            m.updated_at = utcnow()
            return True

        for other in others:
            await mutate_with_retry(self.store, other.id, mutate, entity="PaymentMethod")

    async def list_methods(self, user_id: UserId, active_only: bool = True) -> list[PaymentMethodDetail]:
        filters = [Filter("user_id", "eq", user_id)]
        if active_only:
            filters.append(Filter("is_active", "eq", True))
        return await self.store.find(*filters, order_by="created_at", descending=True)

    async def get_method(self, user_id: UserId, method_id: PaymentMethodId) -> PaymentMethodDetail:
        method = await self.store.get(method_id)
        if method is None or method.user_id != user_id:
            raise NotFoundError(f"Payment method {method_id} not found")
        return method

    async def set_default(self, user_id: UserId, method_id: PaymentMethodId) -> PaymentMethodDetail:
        await self.get_method(user_id, method_id)

        def mutate(m: PaymentMethodDetail) -> bool:
            if not m.is_active:
                raise NotFoundError(f"Payment method {method_id} is deactivated")
            if m.is_default:
                return False
            m.is_default = True
            m.updated_at = utcnow()
            return True

        method, _ = await mutate_with_retry(self.store, method_id, mutate, entity="PaymentMethod")
        await self._clear_other_defaults(user_id, method_id)
        return method

    async def deactivate(self, user_id: UserId, method_id: PaymentMethodId) -> PaymentMethodDetail:
        """Stop using a token; the newest remaining active method becomes default."""
        await self.get_method(user_id, method_id)
        was_default: list[bool] = []

        def mutate(m: PaymentMethodDetail) -> bool:
            was_default[:] = [m.is_default]
            if not m.is_active:
                return False
            m.is_active = False
            m.is_default = False
            m.updated_at = utcnow()
            return True

        method, changed = await mutate_with_retry(self.store, method_id, mutate, entity="PaymentMethod")
        if changed and was_default[0]:
            remaining = await self.list_methods(user_id)
            if remaining:
                await self.set_default(user_id, remaining[0].id)
        logger.info(f"Deactivated payment method {method_id} for user {user_id}")
        return method

    async def get_default_token(self, user_id: UserId) -> Optional[PaymentMethodDetail]:
        """The method automatic renewals should charge, if any."""
        methods = await self.list_methods(user_id)
        for method in methods:
            if method.is_default:
                return method
        return methods[0] if methods else None
