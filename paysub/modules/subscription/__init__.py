"""Subscription module.

Subscription lifecycle, grace window, pause/resume and proration.
"""

from paysub.modules.subscription.models import (
    PLANS,
    Plan,
    ProrationCalculation,
    Subscription,
    SubscriptionStatus,
    lapse_status,
)
from paysub.modules.subscription.service import RenewalInfo, SubscriptionLedger

__all__ = [
    "PLANS",
    "Plan",
    "ProrationCalculation",
    "Subscription",
    "SubscriptionStatus",
    "lapse_status",
    "RenewalInfo",
    "SubscriptionLedger",
]
