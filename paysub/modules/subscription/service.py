"""Subscription ledger.

Owns Subscription records and their status/date transitions, including the
grace window and proration math. Activate and Renew are deliberately
separate: Activate starts a new period from now (or the billing anchor),
Renew extends from the previous end date so late renewals never drift.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from paysub.core.config import settings
from paysub.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from paysub.core.ids import SubscriptionId, UserId, new_id, utcnow
from paysub.core.store import DocumentStore, Filter, mutate_with_retry
from paysub.modules.subscription.models import (
    RENEWABLE_STATUSES,
    TERMINAL_STATUSES,
    ProrationCalculation,
    Subscription,
    SubscriptionStatus,
    get_plan,
    lapse_status,
    to_cents,
)

logger = logging.getLogger(__name__)


@dataclass
class RenewalInfo:
    """Read-only view of where a subscription sits in its billing cycle."""
    subscription_id: SubscriptionId
    status: SubscriptionStatus
    end_date: Optional[datetime]
    grace_end_date: Optional[datetime]
    days_until_expiry: Optional[int]
    days_until_grace_end: Optional[int]
    renewal_attempts: int
    max_renewal_attempts: int
    can_renew_manually: bool


class SubscriptionLedger:
    """Create and transition Subscription records."""

    def __init__(
        self,
        store: DocumentStore[Subscription],
        grace_period_days: int = settings.GRACE_PERIOD_DAYS,
        max_renewal_attempts: int = settings.MAX_RENEWAL_ATTEMPTS,
    ):
        self.store = store
        self.grace_period = timedelta(days=grace_period_days)
        self.max_renewal_attempts = max_renewal_attempts

    async def _transition(self, subscription_id: SubscriptionId, mutate) -> tuple[Subscription, bool]:
        return await mutate_with_retry(self.store, subscription_id, mutate, entity="Subscription")

    def _start_period(self, sub: Subscription, start: datetime) -> None:
        sub.start_date = start
        sub.end_date = start + timedelta(days=sub.duration_days)
        sub.grace_end_date = sub.end_date + self.grace_period
        sub.status = SubscriptionStatus.ACTIVE
        sub.renewal_attempts = 0
        sub.paused_at = None
        if sub.billing_cycle_anchor is None:
            sub.billing_cycle_anchor = start

    def _extend_period(self, sub: Subscription) -> None:
        sub.end_date = sub.end_date + timedelta(days=sub.duration_days)
        sub.grace_end_date = sub.end_date + self.grace_period
        sub.status = SubscriptionStatus.ACTIVE
        sub.renewal_attempts = 0

    # ==================== Creation and lookups ====================

    async def create_subscription(
        self,
        user_id: UserId,
        plan_name: str,
        auto_renew: bool = True,
        billing_cycle_anchor: Optional[datetime] = None,
    ) -> Subscription:
        """Create a Pending subscription for the selected plan."""
        plan = get_plan(plan_name)
        sub = Subscription(
            id=SubscriptionId(new_id()),
            user_id=user_id,
            plan_name=plan.name,
            price=plan.price,
            duration_days=plan.duration_days,
            auto_renew=auto_renew,
            billing_cycle_anchor=billing_cycle_anchor,
            max_renewal_attempts=self.max_renewal_attempts,
        )
        created = await self.store.create(sub)
        logger.info(f"Created {plan.name} subscription {created.id} for user {user_id}")
        return created

    async def get(self, subscription_id: SubscriptionId) -> Subscription:
        sub = await self.store.get(subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return sub

    async def list_for_user(self, user_id: UserId) -> list[Subscription]:
        return await self.store.find(
            Filter("user_id", "eq", user_id), order_by="created_at", descending=True
        )

    async def find_due(self, now: datetime, include_grace: bool = True) -> list[Subscription]:
        """Active (and optionally Grace) subscriptions whose end date has passed."""
        statuses = [SubscriptionStatus.ACTIVE]
        if include_grace:
            statuses.append(SubscriptionStatus.GRACE)
        return await self.store.find(
            Filter("status", "in", statuses),
            Filter("end_date", "lt", now),
            order_by="end_date",
        )

    async def find_lapsed(self, now: datetime) -> list[Subscription]:
        """Active or Grace subscriptions whose grace window has closed."""
        return await self.store.find(
            Filter("status", "in", list(RENEWABLE_STATUSES)),
            Filter("grace_end_date", "lt", now),
        )

    async def find_expiring_between(self, start: datetime, end: datetime) -> list[Subscription]:
        return await self.store.find(
            Filter("status", "eq", SubscriptionStatus.ACTIVE),
            Filter("end_date", "ge", start),
            Filter("end_date", "lt", end),
        )

    # ==================== Lifecycle ====================

    async def activate(self, subscription_id: SubscriptionId, now: Optional[datetime] = None) -> Subscription:
        """Start a fresh billing period.

        Valid from Pending, or from Suspended after a non-payment lapse.
        An Active subscription must be renewed, not re-activated.
        """
        now = now or utcnow()

        def mutate(sub: Subscription) -> bool:
            if not self._can_activate(sub):
                raise InvalidTransitionError("Subscription", sub.status.value, "active")
            use_anchor = sub.status == SubscriptionStatus.PENDING and sub.billing_cycle_anchor is not None
            self._start_period(sub, sub.billing_cycle_anchor if use_anchor else now)
            sub.updated_at = now
            return True

        sub, _ = await self._transition(subscription_id, mutate)
        logger.info(f"Activated subscription {subscription_id} until {sub.end_date}")
        return sub

    async def renew(self, subscription_id: SubscriptionId, now: Optional[datetime] = None) -> Subscription:
        """Extend the period by one plan duration from the current end date."""
        now = now or utcnow()

        def mutate(sub: Subscription) -> bool:
            if sub.status not in RENEWABLE_STATUSES or sub.end_date is None:
                raise InvalidTransitionError("Subscription", sub.status.value, "renewed")
            self._extend_period(sub)
            sub.updated_at = now
            return True

        sub, _ = await self._transition(subscription_id, mutate)
        logger.info(f"Renewed subscription {subscription_id} until {sub.end_date}")
        return sub

    async def credit_completed_payment(
        self,
        subscription_id: SubscriptionId,
        payment_method: Optional[str] = None,
        payment_brand: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Subscription, str]:
        """Activate or renew for a completed payment in one atomic write.

        Returns:
            Tuple of (subscription, "activated" or "renewed")
        """
        now = now or utcnow()
        action: list[str] = []

        def mutate(sub: Subscription) -> bool:
            action.clear()
            if self._can_activate(sub):
                use_anchor = sub.status == SubscriptionStatus.PENDING and sub.billing_cycle_anchor is not None
                self._start_period(sub, sub.billing_cycle_anchor if use_anchor else now)
                action.append("activated")
            elif sub.status in RENEWABLE_STATUSES and sub.end_date is not None:
                self._extend_period(sub)
                action.append("renewed")
            else:
                raise InvalidTransitionError("Subscription", sub.status.value, "credited")
            if payment_method:
                sub.last_payment_method = payment_method
            if payment_brand:
                sub.last_payment_brand = payment_brand
            sub.updated_at = now
            return True

        sub, _ = await self._transition(subscription_id, mutate)
        logger.info(f"Subscription {subscription_id} {action[0]} until {sub.end_date}")
        return sub, action[0]

    @staticmethod
    def _can_activate(sub: Subscription) -> bool:
        if sub.status == SubscriptionStatus.PENDING:
            return True
        return sub.status == SubscriptionStatus.SUSPENDED and sub.paused_at is None

    async def suspend(self, subscription_id: SubscriptionId, now: Optional[datetime] = None) -> Subscription:
        """Suspend for non-payment."""
        now = now or utcnow()

        def mutate(sub: Subscription) -> bool:
            if sub.status == SubscriptionStatus.SUSPENDED and sub.paused_at is None:
                return False
            if sub.status not in RENEWABLE_STATUSES:
                raise InvalidTransitionError("Subscription", sub.status.value, "suspended")
            sub.status = SubscriptionStatus.SUSPENDED
            sub.paused_at = None
            sub.updated_at = now
            return True

        sub, changed = await self._transition(subscription_id, mutate)
        if changed:
            logger.info(f"Suspended subscription {subscription_id}")
        return sub

    async def cancel(self, subscription_id: SubscriptionId, now: Optional[datetime] = None) -> Subscription:
        now = now or utcnow()

        def mutate(sub: Subscription) -> bool:
            if sub.status == SubscriptionStatus.CANCELLED:
                return False
            if sub.status in TERMINAL_STATUSES:
                raise InvalidTransitionError("Subscription", sub.status.value, "cancelled")
            sub.status = SubscriptionStatus.CANCELLED
            sub.auto_renew = False
            sub.cancelled_at = now
            sub.updated_at = now
            return True

        sub, changed = await self._transition(subscription_id, mutate)
        if changed:
            logger.info(f"Cancelled subscription {subscription_id}")
        return sub

    async def pause(self, subscription_id: SubscriptionId, now: Optional[datetime] = None) -> Subscription:
        now = now or utcnow()

        def mutate(sub: Subscription) -> bool:
            if sub.is_paused:
                return False
            if sub.status != SubscriptionStatus.ACTIVE:
                raise InvalidTransitionError("Subscription", sub.status.value, "paused")
            sub.status = SubscriptionStatus.SUSPENDED
            sub.paused_at = now
            sub.updated_at = now
            return True

        sub, _ = await self._transition(subscription_id, mutate)
        return sub

    async def resume(self, subscription_id: SubscriptionId, now: Optional[datetime] = None) -> Subscription:
        """Resume a paused subscription, shifting its dates by the paused duration."""
        now = now or utcnow()

        def mutate(sub: Subscription) -> bool:
            if not sub.is_paused:
                raise InvalidTransitionError("Subscription", sub.status.value, "resumed")
            paused_for = now - sub.paused_at
            if sub.end_date is not None:
                sub.end_date = sub.end_date + paused_for
            if sub.grace_end_date is not None:
                sub.grace_end_date = sub.grace_end_date + paused_for
            sub.status = SubscriptionStatus.ACTIVE
            sub.paused_at = None
            sub.updated_at = now
            return True

        sub, _ = await self._transition(subscription_id, mutate)
        logger.info(f"Resumed subscription {subscription_id} until {sub.end_date}")
        return sub

    # ==================== Date-driven transitions ====================

    async def apply_lapse(
        self,
        subscription_id: SubscriptionId,
        now: Optional[datetime] = None,
        grace_only: bool = False,
    ) -> tuple[Subscription, Optional[SubscriptionStatus]]:
        """Apply ``lapse_status``; returns the new status if one was written.

        With ``grace_only`` only Active -> Grace is written. Suspension and
        expiry then wait for the renewal sweep, which tries its charge first.
        """
        now = now or utcnow()
        target: list[SubscriptionStatus] = []

        def mutate(sub: Subscription) -> bool:
            target.clear()
            new_status = lapse_status(sub, now)
            if new_status is None:
                return False
            if grace_only and new_status != SubscriptionStatus.GRACE:
                return False
            sub.status = new_status
            sub.updated_at = now
            target.append(new_status)
            return True

        sub, changed = await self._transition(subscription_id, mutate)
        if changed:
            logger.info(f"Subscription {subscription_id} lapsed to {target[0].value}")
            return sub, target[0]
        return sub, None

    async def refresh(self, subscription_id: SubscriptionId, now: Optional[datetime] = None) -> Subscription:
        """Read path: persist Grace and report, without writing, a closed grace window."""
        now = now or utcnow()
        sub, _ = await self.apply_lapse(subscription_id, now, grace_only=True)
        reported = lapse_status(sub, now)
        if reported is not None:
            return replace(sub, status=reported)
        return sub

    async def increment_renewal_attempt(self, subscription_id: SubscriptionId) -> Subscription:
        def mutate(sub: Subscription) -> bool:
            sub.renewal_attempts += 1
            sub.updated_at = utcnow()
            return True

        sub, _ = await self._transition(subscription_id, mutate)
        return sub

    # ==================== Proration ====================

    async def change_plan(
        self,
        subscription_id: SubscriptionId,
        plan_name: str,
        effective_date: Optional[datetime] = None,
    ) -> ProrationCalculation:
        """Switch plans, refunding unused days of the old plan at its daily rate.

        Only the dates and price are changed here; charging or refunding the
        reported delta is up to the caller.
        """
        new_plan = get_plan(plan_name)
        effective = effective_date or utcnow()
        result: list[ProrationCalculation] = []

        def mutate(sub: Subscription) -> bool:
            result.clear()
            if sub.status not in RENEWABLE_STATUSES or sub.start_date is None:
                raise InvalidTransitionError("Subscription", sub.status.value, "plan change")
            if sub.plan_name == new_plan.name:
                raise ValidationError(f"Subscription is already on the {new_plan.name} plan")
            if effective < sub.start_date:
                raise ValidationError("Effective date precedes the current period")

            days_used = (effective - sub.start_date).days
            days_remaining = max(sub.duration_days - days_used, 0)
            refund = to_cents(sub.daily_rate * days_remaining)
            charge = to_cents(new_plan.daily_rate * new_plan.duration_days)

            sub.plan_name = new_plan.name
            sub.price = new_plan.price
            sub.duration_days = new_plan.duration_days
            sub.start_date = effective
            sub.end_date = effective + timedelta(days=new_plan.duration_days)
            sub.grace_end_date = sub.end_date + self.grace_period
            sub.billing_cycle_anchor = effective
            sub.updated_at = utcnow()

            result.append(ProrationCalculation(
                current_plan_refund=refund,
                new_plan_charge=charge,
                net_amount=charge - refund,
                effective_date=effective,
                days_used=days_used,
                days_remaining=days_remaining,
            ))
            return True

        await self._transition(subscription_id, mutate)
        logger.info(f"Subscription {subscription_id} changed to {new_plan.name} plan")
        return result[0]

    async def change_billing_date(
        self,
        subscription_id: SubscriptionId,
        new_billing_date: datetime,
        now: Optional[datetime] = None,
    ) -> ProrationCalculation:
        """Move the next billing date, charging (or crediting) the day difference."""
        now = now or utcnow()
        if new_billing_date <= now:
            raise ValidationError("New billing date must be in the future")
        result: list[ProrationCalculation] = []

        def mutate(sub: Subscription) -> bool:
            result.clear()
            if sub.status != SubscriptionStatus.ACTIVE or sub.end_date is None:
                raise InvalidTransitionError("Subscription", sub.status.value, "billing date change")

            days_until_current_end = (sub.end_date - now).days
            days_until_new_date = (new_billing_date - now).days
            net = to_cents(sub.daily_rate * (days_until_new_date - days_until_current_end))

            grace = (sub.grace_end_date - sub.end_date) if sub.grace_end_date else self.grace_period
            sub.end_date = new_billing_date
            sub.grace_end_date = new_billing_date + grace
            sub.billing_cycle_anchor = new_billing_date
            sub.updated_at = now

            result.append(ProrationCalculation(
                current_plan_refund=Decimal("0.00"),
                new_plan_charge=net,
                net_amount=net,
                effective_date=new_billing_date,
                days_used=days_until_current_end,
                days_remaining=days_until_new_date,
            ))
            return True

        await self._transition(subscription_id, mutate)
        return result[0]

    # ==================== Reporting ====================

    @staticmethod
    def renewal_info(sub: Subscription, now: Optional[datetime] = None) -> RenewalInfo:
        now = now or utcnow()
        return RenewalInfo(
            subscription_id=sub.id,
            status=sub.status,
            end_date=sub.end_date,
            grace_end_date=sub.grace_end_date,
            days_until_expiry=(sub.end_date - now).days if sub.end_date else None,
            days_until_grace_end=(sub.grace_end_date - now).days if sub.grace_end_date else None,
            renewal_attempts=sub.renewal_attempts,
            max_renewal_attempts=sub.max_renewal_attempts,
            can_renew_manually=(
                sub.status in RENEWABLE_STATUSES
                or (sub.status == SubscriptionStatus.SUSPENDED and sub.paused_at is None)
            ),
        )
