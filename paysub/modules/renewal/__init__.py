"""Renewal module.

Periodic sweep that charges stored tokens for due subscriptions and lapses
those whose grace window has closed.
"""

from paysub.modules.renewal.scheduler import RenewalAttempt, RenewalScheduler, SweepSummary

__all__ = ["RenewalAttempt", "RenewalScheduler", "SweepSummary"]
