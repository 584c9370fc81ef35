"""Paysub billing core.

Subscription billing and payment reconciliation against Peach Payments.

Modules:
    - core: Configuration, storage, logging, metrics, Celery setup
    - modules.gateway: Peach API client and webhook signatures
    - modules.payment: Payment ledger, settlement, stored payment methods
    - modules.subscription: Subscription ledger and proration
    - modules.webhook: Gateway notification ingestion
    - modules.renewal: Automatic renewal sweep
    - modules.notification: Per-user mailbox
"""

__version__ = "0.1.0"
