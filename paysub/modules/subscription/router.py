"""Subscription API router.

Reads refresh date-driven status first, so a subscription past its grace
window is reported as lapsed even before the next sweep.
"""

import uuid

from fastapi import APIRouter, Depends, status

from paysub.core.container import ServiceContainer, get_services
from paysub.core.ids import SubscriptionId, UserId
from paysub.modules.subscription.models import PLANS, to_cents
from paysub.modules.subscription.schemas import (
    ActivateSubscriptionRequest,
    ChangeBillingDateRequest,
    ChangePlanRequest,
    PlanResponse,
    ProrationResponse,
    RenewalInfoResponse,
    SubscriptionCreate,
    SubscriptionResponse,
)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans():
    return [
        PlanResponse(
            name=plan.name,
            price=plan.price,
            duration_days=plan.duration_days,
            daily_rate=to_cents(plan.daily_rate),
        )
        for plan in PLANS.values()
    ]


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    data: SubscriptionCreate,
    services: ServiceContainer = Depends(get_services),
):
    """Create a Pending subscription; it activates on the first completed payment."""
    sub = await services.subscriptions.create_subscription(
        user_id=UserId(data.user_id),
        plan_name=data.plan_name,
        auto_renew=data.auto_renew,
        billing_cycle_anchor=data.billing_cycle_anchor,
    )
    return SubscriptionResponse.model_validate(sub)


@router.post("/activate", response_model=SubscriptionResponse)
async def activate_subscription(
    data: ActivateSubscriptionRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Start a fresh period without a payment, for operators.

    409 unless the subscription is Pending or lapsed into Suspended.
    """
    sub = await services.subscriptions.activate(SubscriptionId(data.subscription_id))
    return SubscriptionResponse.model_validate(sub)


@router.get("/user/{user_id}", response_model=list[SubscriptionResponse])
async def list_user_subscriptions(
    user_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    subs = await services.subscriptions.list_for_user(UserId(user_id))
    refreshed = [await services.subscriptions.refresh(s.id) for s in subs]
    return [SubscriptionResponse.model_validate(s) for s in refreshed]


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    sub = await services.subscriptions.refresh(SubscriptionId(subscription_id))
    return SubscriptionResponse.model_validate(sub)


@router.get("/{subscription_id}/renewal", response_model=RenewalInfoResponse)
async def get_renewal_info(
    subscription_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    sub = await services.subscriptions.refresh(SubscriptionId(subscription_id))
    return RenewalInfoResponse.model_validate(services.subscriptions.renewal_info(sub))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    sub = await services.subscriptions.cancel(SubscriptionId(subscription_id))
    return SubscriptionResponse.model_validate(sub)


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse)
async def pause_subscription(
    subscription_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    sub = await services.subscriptions.pause(SubscriptionId(subscription_id))
    return SubscriptionResponse.model_validate(sub)


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse)
async def resume_subscription(
    subscription_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    """Resume a paused subscription; dates shift by the time spent paused."""
    sub = await services.subscriptions.resume(SubscriptionId(subscription_id))
    return SubscriptionResponse.model_validate(sub)


@router.post("/{subscription_id}/change-plan", response_model=ProrationResponse)
async def change_plan(
    subscription_id: uuid.UUID,
    data: ChangePlanRequest,
    services: ServiceContainer = Depends(get_services),
):
    calculation = await services.subscriptions.change_plan(
        SubscriptionId(subscription_id), data.plan_name, data.effective_date
    )
    return ProrationResponse.model_validate(calculation)


@router.post("/{subscription_id}/change-billing-date", response_model=ProrationResponse)
async def change_billing_date(
    subscription_id: uuid.UUID,
    data: ChangeBillingDateRequest,
    services: ServiceContainer = Depends(get_services),
):
    calculation = await services.subscriptions.change_billing_date(
        SubscriptionId(subscription_id), data.new_billing_date
    )
    return ProrationResponse.model_validate(calculation)


@router.post("/{subscription_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    subscription_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    """Extend by one period without a payment, for operators."""
    sub = await services.subscriptions.renew(SubscriptionId(subscription_id))
    return SubscriptionResponse.model_validate(sub)
