"""Property-based tests for plan changes and billing date moves.

**Feature: paysub, Property: Proration**
**Validates: SubscriptionLedger.change_plan, change_billing_date, renewal_info**
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st

from paysub.core.exceptions import InvalidTransitionError, ValidationError
from paysub.core.store import InMemoryStore
from paysub.modules.subscription.models import PLANS, to_cents
from paysub.modules.subscription.service import SubscriptionLedger

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def active(plan: str = "monthly"):
    ledger = SubscriptionLedger(InMemoryStore(), grace_period_days=7)
    sub = await ledger.create_subscription(uuid.uuid4(), plan)
    return ledger, await ledger.activate(sub.id, now=NOW)


class TestChangePlan:
    """**Validates: change_plan**"""

    @pytest.mark.asyncio
    async def test_upgrade_mid_period(self) -> None:
        ledger, sub = await active("monthly")
        effective = NOW + timedelta(days=10)

        proration = await ledger.change_plan(sub.id, "annual", effective_date=effective)
        updated = await ledger.get(sub.id)

        assert proration.days_used == 10
        assert proration.days_remaining == 20
        assert proration.current_plan_refund == Decimal("66.67")
        assert proration.new_plan_charge == Decimal("1000.00")
        assert proration.net_amount == Decimal("933.33")
        assert updated.plan_name == "annual"
        assert updated.price == Decimal("1000.00")
        assert updated.start_date == effective
        assert updated.end_date == effective + timedelta(days=365)
        assert updated.grace_end_date == updated.end_date + timedelta(days=7)

    @given(days_used=st.integers(min_value=0, max_value=400))
    @settings(max_examples=100)
    def test_refund_covers_unused_days_only(self, days_used: int) -> None:
        """*For any* switch day, the refund is the daily rate times the unused
        days, never negative, and the net is charge minus refund."""

        async def run():
            ledger, sub = await active("annual")
            return await ledger.change_plan(
                sub.id, "monthly", effective_date=NOW + timedelta(days=days_used)
            )

        proration = asyncio.run(run())
        annual = PLANS["annual"]
        remaining = max(annual.duration_days - days_used, 0)
        assert proration.days_remaining == remaining
        assert proration.current_plan_refund == to_cents(annual.daily_rate * remaining)
        assert proration.current_plan_refund >= 0
        assert proration.net_amount == proration.new_plan_charge - proration.current_plan_refund

    @pytest.mark.asyncio
    async def test_same_plan_is_rejected(self) -> None:
        ledger, sub = await active("monthly")

        with pytest.raises(ValidationError):
            await ledger.change_plan(sub.id, "monthly", effective_date=NOW)

    @pytest.mark.asyncio
    async def test_pending_subscription_cannot_change_plan(self) -> None:
        ledger = SubscriptionLedger(InMemoryStore())
        sub = await ledger.create_subscription(uuid.uuid4(), "monthly")

        with pytest.raises(InvalidTransitionError):
            await ledger.change_plan(sub.id, "annual", effective_date=NOW)


class TestChangeBillingDate:
    """**Validates: change_billing_date**"""

    @pytest.mark.asyncio
    async def test_later_date_charges_extra_days(self) -> None:
        ledger, sub = await active("monthly")
        new_date = NOW + timedelta(days=40)

        proration = await ledger.change_billing_date(sub.id, new_date, now=NOW)
        updated = await ledger.get(sub.id)

        assert proration.net_amount == Decimal("33.33")
        assert updated.end_date == new_date
        assert updated.grace_end_date == new_date + timedelta(days=7)
        assert updated.billing_cycle_anchor == new_date

    @pytest.mark.asyncio
    async def test_earlier_date_is_a_credit(self) -> None:
        ledger, sub = await active("monthly")

        proration = await ledger.change_billing_date(sub.id, NOW + timedelta(days=15), now=NOW)

        assert proration.net_amount == Decimal("-50.00")

    @pytest.mark.asyncio
    async def test_past_date_is_rejected(self) -> None:
        ledger, sub = await active("monthly")

        with pytest.raises(ValidationError):
            await ledger.change_billing_date(sub.id, NOW, now=NOW)


class TestRenewalInfo:
    """**Validates: renewal_info**"""

    @pytest.mark.asyncio
    async def test_days_until_expiry(self) -> None:
        ledger, sub = await active("monthly")

        info = ledger.renewal_info(sub, now=NOW + timedelta(days=10))

        assert info.days_until_expiry == 20
        assert info.days_until_grace_end == 27
        assert info.can_renew_manually is True

    @pytest.mark.asyncio
    async def test_paused_subscription_cannot_renew_manually(self) -> None:
        ledger, sub = await active("monthly")
        paused = await ledger.pause(sub.id, now=NOW)

        assert ledger.renewal_info(paused, now=NOW).can_renew_manually is False
