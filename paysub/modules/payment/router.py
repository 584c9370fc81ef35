"""Payment API router.

Provides endpoints for:
- Starting a hosted checkout for a subscription
- Polling a payment's status when the webhook is late
- The shopper's return from the hosted checkout page
- Charging a stored method on demand
- Refunds
- Listing payments and managing stored payment methods
"""

import uuid
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse

from paysub.core.container import ServiceContainer, get_services
from paysub.core.exceptions import ValidationError
from paysub.core.ids import PaymentId, PaymentMethodId, SubscriptionId, UserId
from paysub.modules.payment.models import PaymentStatus
from paysub.modules.payment.schemas import (
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentMethodListResponse,
    PaymentMethodResponse,
    PaymentResponse,
    PaymentStatusResponse,
    RecurringPaymentRequest,
    RecurringPaymentResponse,
    RefundRequest,
    StorePaymentMethodRequest,
)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/initiate", response_model=InitiatePaymentResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    data: InitiatePaymentRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Create a payment and a hosted checkout for the subscription price.

    A gateway failure marks the payment Failed and returns 502.
    """
    initiated = await services.checkout.initiate(
        user_id=UserId(data.user_id),
        subscription_id=SubscriptionId(data.subscription_id),
        payment_method=data.payment_method,
        enable_recurring=data.enable_recurring,
    )
    payment = initiated.payment
    return InitiatePaymentResponse(
        payment_id=payment.id,
        merchant_transaction_id=payment.merchant_transaction_id,
        checkout_id=initiated.checkout.checkout_id,
        checkout_url=initiated.checkout.checkout_url,
        entity_id=initiated.checkout.entity_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
    )


@router.get("/status/{merchant_transaction_id}", response_model=PaymentStatusResponse)
async def get_payment_status(
    merchant_transaction_id: str,
    services: ServiceContainer = Depends(get_services),
):
    """Query the gateway and reconcile, for clients returning from checkout."""
    view = await services.checkout.poll_status(merchant_transaction_id)
    return PaymentStatusResponse(
        merchant_transaction_id=view.payment.merchant_transaction_id,
        status=view.payment.status,
        result_code=view.payment.result_code,
        subscription_id=view.payment.subscription_id,
        subscription_action=view.settlement.subscription_action if view.settlement else None,
        note=view.note,
    )


@router.get("/callback", response_class=RedirectResponse, status_code=status.HTTP_302_FOUND)
async def payment_return_callback(
    resource_path: Optional[str] = Query(None, alias="resourcePath"),
    services: ServiceContainer = Depends(get_services),
):
    """Shopper-result redirect target: settle the checkout, then send the
    shopper on to the result page with the outcome."""
    view = await services.checkout.return_from_checkout(resource_path)
    payment = view.payment
    if payment.status == PaymentStatus.COMPLETED:
        outcome = "success"
    elif payment.status == PaymentStatus.PENDING:
        outcome = "pending"
    else:
        outcome = "failure"
    query = urlencode({"id": payment.merchant_transaction_id, "status": outcome})
    return RedirectResponse(
        f"{services.config.PAYMENT_RESULT_PAGE_URL}?{query}",
        status_code=status.HTTP_302_FOUND,
    )


@router.post("/recurring", response_model=RecurringPaymentResponse)
async def create_recurring_payment(
    data: RecurringPaymentRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Charge a stored method the user chose.

    Waits behind any automatic charge still open on that subscription and
    reports it instead of charging twice.
    """
    attempt = await services.renewal_scheduler.charge_method(
        UserId(data.user_id),
        SubscriptionId(data.subscription_id),
        PaymentMethodId(data.payment_method_id),
    )
    payment = attempt.payment
    return RecurringPaymentResponse(
        subscription_id=attempt.subscription_id,
        outcome=attempt.outcome,
        payment_id=payment.id if payment else None,
        merchant_transaction_id=payment.merchant_transaction_id if payment else None,
        status=payment.status if payment else None,
        detail=attempt.detail,
    )


@router.post("/{merchant_transaction_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    merchant_transaction_id: str,
    data: RefundRequest,
    services: ServiceContainer = Depends(get_services),
):
    result = await services.checkout.refund(merchant_transaction_id, data.amount)
    return PaymentResponse.model_validate(result.payment)


@router.get("/user/{user_id}", response_model=list[PaymentResponse])
async def list_user_payments(
    user_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    payments = await services.payments.list_for_user(UserId(user_id))
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get("/methods/{user_id}", response_model=PaymentMethodListResponse)
async def list_payment_methods(
    user_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    """Active stored payment methods, default first."""
    methods = await services.payment_methods.list_methods(UserId(user_id))
    methods.sort(key=lambda m: not m.is_default)
    return PaymentMethodListResponse(
        methods=[PaymentMethodResponse.model_validate(m) for m in methods],
        total=len(methods),
    )


@router.post("/methods/store", response_model=PaymentMethodResponse)
async def store_payment_method(
    data: StorePaymentMethodRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Keep a completed card payment's token without waiting for the queue.

    503 while the gateway has not exposed the registration id yet.
    """
    method = await services.payment_methods.store_from_payment(PaymentId(data.payment_id))
    if method is None:
        raise ValidationError("Recurring payments reuse an existing token")
    return PaymentMethodResponse.model_validate(method)


@router.post("/methods/{user_id}/{method_id}/default", response_model=PaymentMethodResponse)
async def set_default_payment_method(
    user_id: uuid.UUID,
    method_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    method = await services.payment_methods.set_default(UserId(user_id), PaymentMethodId(method_id))
    return PaymentMethodResponse.model_validate(method)


@router.delete("/methods/{user_id}/{method_id}", response_model=PaymentMethodResponse)
async def deactivate_payment_method(
    user_id: uuid.UUID,
    method_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    method = await services.payment_methods.deactivate(UserId(user_id), PaymentMethodId(method_id))
    return PaymentMethodResponse.model_validate(method)
