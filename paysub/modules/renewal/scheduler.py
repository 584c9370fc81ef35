"""Renewal scheduler.

A periodic sweep that charges stored tokens for subscriptions past their end
date, escalates to a manual-renewal notification when automation is not
possible, and then suspends subscriptions whose grace window has closed.

Safety rules:
- one automatic charge in flight per recurring token (named lock);
- the subscription is re-read under that lock so a webhook that renewed it
  in the meantime is never charged again;
- a charge with no definite answer (timeout, transport error) stays Pending
  and blocks a new automatic charge for RENEWAL_PENDING_HOLD_HOURS, so a late
  success can still settle without a second debit;
- once that window has passed the charge is looked up at the gateway and
  settled before anything else is charged; while the lookup fails, nothing is;
- every subscription is processed in its own try block so one failure never
  stops billing for the rest.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from paysub.core.config import Settings, settings
from paysub.core.exceptions import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from paysub.core.ids import PaymentMethodId, SubscriptionId, UserId, utcnow
from paysub.core.locks import LockProvider
from paysub.core.logging import log_error, log_info, log_warning
from paysub.core.metrics import RENEWAL_ATTEMPTS_TOTAL, RENEWAL_SWEEP_DURATION_SECONDS
from paysub.modules.gateway.client import PeachGatewayClient
from paysub.modules.gateway.interface import RecurringChargeRequest
from paysub.modules.notification.models import NotificationKind
from paysub.modules.notification.service import NotificationService
from paysub.modules.payment.checkout import accepts_payment
from paysub.modules.payment.methods import PaymentMethodService
from paysub.modules.payment.models import (
    RENEWAL_PREFIX,
    Payment,
    PaymentMethod,
    PaymentMethodDetail,
    PaymentStatus,
)
from paysub.modules.payment.service import PaymentLedger
from paysub.modules.payment.settlement import SettlementOutcome, SettlementService
from paysub.modules.subscription.models import RENEWABLE_STATUSES, Subscription, SubscriptionStatus
from paysub.modules.subscription.service import SubscriptionLedger

logger = logging.getLogger(__name__)


class RenewalOutcome:
    RENEWED = "renewed"
    AWAITING_GATEWAY = "awaiting_gateway"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"
    NO_TOKEN = "no_token"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    AUTO_RENEW_OFF = "auto_renew_off"
    CHARGE_IN_FLIGHT = "charge_in_flight"
    ALREADY_RENEWED = "already_renewed"
    ERROR = "error"


@dataclass
class RenewalAttempt:
    subscription_id: SubscriptionId
    outcome: str
    payment: Optional[Payment] = None
    detail: Optional[str] = None


@dataclass
class SweepSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    attempts: list[RenewalAttempt] = field(default_factory=list)
    suspended: list[SubscriptionId] = field(default_factory=list)
    expired: list[SubscriptionId] = field(default_factory=list)
    reminders_sent: int = 0
    errors: int = 0

    def count(self, outcome: str) -> int:
        return sum(1 for a in self.attempts if a.outcome == outcome)

    def as_dict(self) -> dict:
        outcomes: dict[str, int] = {}
        for attempt in self.attempts:
            outcomes[attempt.outcome] = outcomes.get(attempt.outcome, 0) + 1
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "due": len(self.attempts),
            "outcomes": outcomes,
            "suspended": len(self.suspended),
            "expired": len(self.expired),
            "reminders_sent": self.reminders_sent,
            "errors": self.errors,
        }


class RenewalScheduler:
    def __init__(
        self,
        subscriptions: SubscriptionLedger,
        payments: PaymentLedger,
        payment_methods: PaymentMethodService,
        gateway: PeachGatewayClient,
        settlement: SettlementService,
        notifications: NotificationService,
        locks: LockProvider,
        config: Settings = settings,
    ):
        self.subscriptions = subscriptions
        self.payments = payments
        self.payment_methods = payment_methods
        self.gateway = gateway
        self.settlement = settlement
        self.notifications = notifications
        self.locks = locks
        self.config = config

    # ==================== Sweep ====================

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        """One full pass: renew due subscriptions, then lapse, then remind."""
        now = now or utcnow()
        started = time.perf_counter()
        summary = SweepSummary(started_at=now)
        log_info(logger, "Starting renewal sweep", sweep_time=now.isoformat())

        try:
            due = await self.subscriptions.find_due(
                now, include_grace=self.config.RENEW_DURING_GRACE
            )
        except Exception as e:
            log_error(logger, "Loading due subscriptions failed", e)
            due = []
            summary.errors += 1

        semaphore = asyncio.Semaphore(max(self.config.RENEWAL_CONCURRENCY, 1))

        async def bounded(sub: Subscription) -> RenewalAttempt:
            async with semaphore:
                return await self.process_subscription(sub, now)

        summary.attempts = list(await asyncio.gather(*(bounded(sub) for sub in due)))
        summary.errors += summary.count(RenewalOutcome.ERROR)

        # Must follow the renewals so anything renewed above is not suspended
        await self._lapse_sweep(now, summary)
        await self._send_expiry_reminders(now, summary)

        summary.finished_at = utcnow()
        RENEWAL_SWEEP_DURATION_SECONDS.observe(time.perf_counter() - started)
        log_info(logger, "Renewal sweep finished", **summary.as_dict())
        return summary

    async def process_subscription(self, sub: Subscription, now: datetime) -> RenewalAttempt:
        """Handle one due subscription; never raises."""
        try:
            attempt = await self._renew(sub, now)
        except Exception as e:
            log_error(
                logger,
                f"Renewal of subscription {sub.id} failed",
                e,
                subscription_id=str(sub.id),
            )
            attempt = RenewalAttempt(sub.id, RenewalOutcome.ERROR, detail=str(e))
        RENEWAL_ATTEMPTS_TOTAL.labels(attempt.outcome).inc()
        return attempt

    async def _renew(self, sub: Subscription, now: datetime) -> RenewalAttempt:
        if not sub.auto_renew:
            return RenewalAttempt(sub.id, RenewalOutcome.AUTO_RENEW_OFF)

        token = await self.payment_methods.get_default_token(sub.user_id)
        if token is None:
            # EFT, voucher and scan-to-pay payments leave nothing to charge
            await self.notifications.notify_manual_renewal(sub.user_id, sub.id)
            return RenewalAttempt(sub.id, RenewalOutcome.NO_TOKEN)

        if sub.renewal_attempts_exhausted:
            await self.notifications.notify_manual_renewal(sub.user_id, sub.id)
            return RenewalAttempt(sub.id, RenewalOutcome.ATTEMPTS_EXHAUSTED)

        async with self.locks.lock(f"recurring-token:{token.registration_id}"):
            return await self._charge_locked(sub.id, token, now)

    async def _charge_locked(
        self,
        subscription_id: SubscriptionId,
        token: PaymentMethodDetail,
        now: datetime,
    ) -> RenewalAttempt:
        sub = await self.subscriptions.get(subscription_id)
        if sub.status not in RENEWABLE_STATUSES or sub.end_date is None or sub.end_date >= now:
            return RenewalAttempt(sub.id, RenewalOutcome.ALREADY_RENEWED)

        unresolved = await self._resolve_open_charges(sub, now)
        if unresolved is not None:
            return unresolved

        return await self._charge(sub, token, now, retry_count=sub.renewal_attempts + 1)

    # ==================== Charging ====================

    async def charge_method(
        self,
        user_id: UserId,
        subscription_id: SubscriptionId,
        method_id: PaymentMethodId,
        now: Optional[datetime] = None,
    ) -> RenewalAttempt:
        """Charge a stored method the user picked, outside the sweep.

        Shares the sweep's per-token lock and its open-charge check, so it can
        never overlap an automatic charge. A failure is reported to the
        caller only; it does not count against the renewal attempts.

        Raises:
            NotFoundError: Subscription or method unknown or owned by another user
            InvalidTransitionError: Subscription cannot take a payment
            ValidationError: Method deactivated or without a recurring token
        """
        now = now or utcnow()
        sub = await self.subscriptions.get(subscription_id)
        if sub.user_id != user_id:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if not accepts_payment(sub):
            raise InvalidTransitionError("Subscription", sub.status.value, "payment")

        method = await self.payment_methods.get_method(user_id, method_id)
        if not method.is_active:
            raise ValidationError(f"Payment method {method_id} is not active")
        if not method.registration_id:
            raise ValidationError(f"Payment method {method_id} has no recurring token")

        async with self.locks.lock(f"recurring-token:{method.registration_id}"):
            sub = await self.subscriptions.get(subscription_id)
            if not accepts_payment(sub):
                raise InvalidTransitionError("Subscription", sub.status.value, "payment")
            unresolved = await self._resolve_open_charges(sub, now)
            if unresolved is not None:
                return unresolved
            return await self._charge(sub, method, now, escalate=False)

    async def _resolve_open_charges(self, sub: Subscription, now: datetime) -> Optional[RenewalAttempt]:
        """Settle earlier automatic charges before a new one is made.

        A charge younger than the hold window blocks outright. An older one is
        looked up at the gateway and settled; while its outcome is unknown it
        still blocks. A charge the gateway never saw is closed as Failed.

        Returns:
            The attempt to report, or None when a new charge is safe
        """
        hold_since = now - timedelta(hours=self.config.RENEWAL_PENDING_HOLD_HOURS)
        for pending in await self.payments.find_pending_recurring(sub.id):
            txn = pending.merchant_transaction_id
            if pending.created_at >= hold_since:
                logger.info(f"Subscription {sub.id} has a pending automatic charge {txn}; not charging again")
                return RenewalAttempt(sub.id, RenewalOutcome.CHARGE_IN_FLIGHT, payment=pending)

            try:
                settled = await self.settlement.reconcile(pending, now=now)
            except GatewayError as e:
                log_warning(
                    logger,
                    f"Status of automatic charge {txn} still unknown: {e.message}",
                    subscription_id=str(sub.id),
                    merchant_transaction_id=txn,
                )
                return RenewalAttempt(sub.id, RenewalOutcome.CHARGE_IN_FLIGHT, payment=pending, detail=e.message)

            if settled is None:
                await self.payments.apply_status(
                    txn,
                    PaymentStatus.FAILED,
                    failure_reason="No gateway record of the charge after the hold window",
                )
                log_warning(
                    logger,
                    f"Gateway has no record of automatic charge {txn}; marked Failed",
                    subscription_id=str(sub.id),
                    merchant_transaction_id=txn,
                )
                continue

            if settled.status == PaymentStatus.COMPLETED:
                await self._announce_renewal(sub, settled)
                return RenewalAttempt(sub.id, RenewalOutcome.RENEWED, payment=settled.payment)
            if settled.status == PaymentStatus.PENDING:
                return RenewalAttempt(sub.id, RenewalOutcome.CHARGE_IN_FLIGHT, payment=settled.payment)

        return None

    async def _charge(
        self,
        sub: Subscription,
        token: PaymentMethodDetail,
        now: datetime,
        retry_count: int = 0,
        escalate: bool = True,
    ) -> RenewalAttempt:
        payment = await self.payments.create_payment(
            user_id=sub.user_id,
            amount=sub.price,
            payment_method=PaymentMethod.CARD,
            subscription_id=sub.id,
            currency=sub.currency,
            is_recurring=True,
            prefix=RENEWAL_PREFIX,
            retry_count=retry_count,
            registration_id=token.registration_id,
        )

        request = RecurringChargeRequest(
            registration_id=token.registration_id,
            amount=payment.amount,
            merchant_transaction_id=payment.merchant_transaction_id,
            customer_id=str(sub.user_id),
            currency=payment.currency,
            initial_transaction_id=await self._initial_transaction_id(token),
        )

        try:
            result = await self.gateway.charge_recurring(request)
        except GatewayError as e:
            return await self._handle_gateway_error(sub, payment, e, escalate)

        settled = await self.settlement.settle(
            payment,
            result.result_code,
            result_description=result.result_description,
            gateway_payment_id=result.gateway_payment_id,
            payment_brand=result.payment_brand or token.payment_brand,
            now=now,
        )

        if settled.status == PaymentStatus.COMPLETED:
            await self._announce_renewal(sub, settled)
            return RenewalAttempt(sub.id, RenewalOutcome.RENEWED, payment=settled.payment)

        if settled.status == PaymentStatus.PENDING:
            return RenewalAttempt(sub.id, RenewalOutcome.AWAITING_GATEWAY, payment=settled.payment)

        if escalate:
            await self._escalate(sub)
        return RenewalAttempt(
            sub.id,
            RenewalOutcome.FAILED,
            payment=settled.payment,
            detail=f"{result.result_code} {result.result_description or ''}".strip(),
        )

    async def _announce_renewal(self, sub: Subscription, settled: SettlementOutcome) -> None:
        if not settled.subscription_action:
            return
        renewed = await self.subscriptions.get(sub.id)
        await self.notifications.create(
            sub.user_id,
            NotificationKind.RENEWAL_SUCCEEDED,
            f"Your subscription {sub.id} has been renewed until {renewed.end_date:%Y-%m-%d}",
            sub.id,
        )

    async def _initial_transaction_id(self, token: PaymentMethodDetail) -> Optional[str]:
        if token.source_payment_id is None:
            return None
        try:
            source = await self.payments.get(token.source_payment_id)
        except Exception:
            logger.debug(f"Source payment for token {token.id} unavailable")
            return None
        return source.gateway_payment_id

    async def _handle_gateway_error(
        self,
        sub: Subscription,
        payment: Payment,
        error: GatewayError,
        escalate: bool = True,
    ) -> RenewalAttempt:
        if error.indeterminate:
            # The debit may have gone through; leave it Pending for a late webhook
            log_warning(
                logger,
                f"Indeterminate automatic charge {payment.merchant_transaction_id}: {error.message}",
                subscription_id=str(sub.id),
                merchant_transaction_id=payment.merchant_transaction_id,
            )
            outcome = RenewalOutcome.INDETERMINATE
        else:
            await self.payments.apply_status(
                payment.merchant_transaction_id,
                PaymentStatus.FAILED,
                failure_reason=error.message[:500],
            )
            log_warning(
                logger,
                f"Automatic charge {payment.merchant_transaction_id} rejected: {error.message}",
                subscription_id=str(sub.id),
            )
            outcome = RenewalOutcome.FAILED

        if escalate:
            await self._escalate(sub)
        return RenewalAttempt(sub.id, outcome, payment=payment, detail=error.message)

    async def _escalate(self, sub: Subscription) -> None:
        """Count the failed attempt and ask the user to renew by hand."""
        await self.subscriptions.increment_renewal_attempt(sub.id)
        await self.notifications.notify_manual_renewal(sub.user_id, sub.id)

    # ==================== Lapse and reminders ====================

    async def _lapse_sweep(self, now: datetime, summary: SweepSummary) -> None:
        try:
            lapsed = await self.subscriptions.find_lapsed(now)
        except Exception as e:
            log_error(logger, "Loading lapsed subscriptions failed", e)
            summary.errors += 1
            return

        for sub in lapsed:
            try:
                updated, new_status = await self.subscriptions.apply_lapse(sub.id, now)
                if new_status == SubscriptionStatus.SUSPENDED:
                    summary.suspended.append(sub.id)
                    await self.notifications.create(
                        sub.user_id,
                        NotificationKind.SUBSCRIPTION_SUSPENDED,
                        f"Your subscription {sub.id} has been suspended due to non-payment",
                        sub.id,
                    )
                elif new_status == SubscriptionStatus.EXPIRED:
                    summary.expired.append(sub.id)
                    await self.notifications.create(
                        sub.user_id,
                        NotificationKind.SUBSCRIPTION_EXPIRED,
                        f"Your subscription {sub.id} has expired",
                        sub.id,
                    )
            except Exception as e:
                summary.errors += 1
                log_error(logger, f"Lapsing subscription {sub.id} failed", e, subscription_id=str(sub.id))

    async def _send_expiry_reminders(self, now: datetime, summary: SweepSummary) -> None:
        for days in self.config.EXPIRY_REMINDER_DAYS:
            target = now + timedelta(days=days)
            start_of_day = target.replace(hour=0, minute=0, second=0, microsecond=0)
            end_of_day = start_of_day + timedelta(days=1)

            try:
                expiring = await self.subscriptions.find_expiring_between(start_of_day, end_of_day)
            except Exception as e:
                log_error(logger, f"Loading subscriptions expiring in {days} days failed", e)
                summary.errors += 1
                continue

            for sub in expiring:
                try:
                    if await self.notifications.has_open(
                        sub.id,
                        NotificationKind.SUBSCRIPTION_EXPIRING,
                        since=now - timedelta(days=1),
                    ):
                        continue
                    await self.notifications.create(
                        sub.user_id,
                        NotificationKind.SUBSCRIPTION_EXPIRING,
                        f"Your subscription {sub.id} expires in {days} day(s)",
                        sub.id,
                    )
                    summary.reminders_sent += 1
                except Exception as e:
                    summary.errors += 1
                    log_error(logger, f"Expiry reminder for subscription {sub.id} failed", e)

    # ==================== Loop ====================

    async def run_forever(
        self,
        interval_seconds: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """In-process loop; production deployments use the Celery beat task."""
        interval = interval_seconds or self.config.RENEWAL_INTERVAL_SECONDS
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Renewal scheduler started, interval {interval}s")

        while not stop_event.is_set():
            try:
                await self.run_sweep()
            except Exception as e:
                log_error(logger, "Renewal sweep crashed", e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Renewal scheduler stopped")
