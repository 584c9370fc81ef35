"""Service wiring.

Builds every ledger and service once per process (or once per Celery task
run) from Settings. Routers reach services through ``get_services``; tests
build a container with in-memory stores and a stubbed gateway and hand it to
``create_app``.
"""

import logging
from typing import Optional

from fastapi import Request

from paysub.core.config import Settings, settings
from paysub.core.locks import InProcessLockProvider, LockProvider, RedisLockProvider
from paysub.core.store import DocumentStore, InMemoryStore
from paysub.modules.gateway.client import PeachGatewayClient
from paysub.modules.gateway.signature import SignatureMode, SignatureVerifier
from paysub.modules.notification.models import Notification
from paysub.modules.notification.service import NotificationService
from paysub.modules.payment.checkout import CheckoutService
from paysub.modules.payment.methods import PaymentMethodService
from paysub.modules.payment.models import Payment, PaymentMethodDetail
from paysub.modules.payment.queue import (
    CeleryPaymentMethodQueue,
    InlinePaymentMethodQueue,
    PaymentMethodQueue,
)
from paysub.modules.payment.service import PaymentLedger
from paysub.modules.payment.settlement import SettlementService
from paysub.modules.renewal.scheduler import RenewalScheduler
from paysub.modules.subscription.models import Subscription
from paysub.modules.subscription.service import SubscriptionLedger
from paysub.modules.webhook.service import WebhookIngestor

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        config: Settings,
        payment_store: DocumentStore[Payment],
        method_store: DocumentStore[PaymentMethodDetail],
        subscription_store: DocumentStore[Subscription],
        notification_store: DocumentStore[Notification],
        gateway: PeachGatewayClient,
        locks: LockProvider,
        method_queue: Optional[PaymentMethodQueue] = None,
        engine=None,
        redis_client=None,
    ):
        self.config = config
        self.gateway = gateway
        self.locks = locks
        self._engine = engine
        self._redis = redis_client

        self.payments = PaymentLedger(payment_store)
        self.subscriptions = SubscriptionLedger(
            subscription_store,
            grace_period_days=config.GRACE_PERIOD_DAYS,
            max_renewal_attempts=config.MAX_RENEWAL_ATTEMPTS,
        )
        self.notifications = NotificationService(notification_store)
        self.payment_methods = PaymentMethodService(method_store, self.payments, gateway)

        if method_queue is None:
            method_queue = InlinePaymentMethodQueue()
        if isinstance(method_queue, InlinePaymentMethodQueue):
            method_queue.bind(self.payment_methods.store_from_payment)
        self.method_queue = method_queue

        self.settlement = SettlementService(self.payments, self.subscriptions, method_queue, gateway)
        self.checkout = CheckoutService(self.payments, self.subscriptions, gateway, self.settlement)
        self.verifier = SignatureVerifier(
            config.PEACH_WEBHOOK_SECRET,
            SignatureMode(config.WEBHOOK_SIGNATURE_MODE),
        )
        self.webhooks = WebhookIngestor(self.verifier, self.payments, self.settlement)
        self.renewal_scheduler = RenewalScheduler(
            subscriptions=self.subscriptions,
            payments=self.payments,
            payment_methods=self.payment_methods,
            gateway=gateway,
            settlement=self.settlement,
            notifications=self.notifications,
            locks=locks,
            config=config,
        )

    @classmethod
    def in_memory(
        cls,
        config: Settings = settings,
        gateway: Optional[PeachGatewayClient] = None,
        method_queue: Optional[PaymentMethodQueue] = None,
        locks: Optional[LockProvider] = None,
    ) -> "ServiceContainer":
        """Single-process container; state lives only as long as the process."""
        return cls(
            config=config,
            payment_store=InMemoryStore(unique_fields=("merchant_transaction_id",)),
            method_store=InMemoryStore(),
            subscription_store=InMemoryStore(),
            notification_store=InMemoryStore(),
            gateway=gateway or PeachGatewayClient(config),
            locks=locks or InProcessLockProvider(),
            method_queue=method_queue,
        )

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "ServiceContainer":
        if config.STORAGE_BACKEND == "memory":
            return cls.in_memory(config)
        if config.STORAGE_BACKEND != "database":
            raise ValueError(f"Unknown STORAGE_BACKEND: {config.STORAGE_BACKEND}")

        from paysub.core.database import create_session_factory
        from paysub.core.redis import create_redis_client
        from paysub.core.store import SqlAlchemyStore
        from paysub.modules.notification.tables import NotificationRow
        from paysub.modules.payment.tables import PaymentMethodDetailRow, PaymentRow
        from paysub.modules.subscription.tables import SubscriptionRow

        # Own engine and Redis client so each event loop gets its own pool
        engine, session_maker = create_session_factory(config.DATABASE_URL)
        redis_client = create_redis_client(config.REDIS_URL)

        return cls(
            config=config,
            payment_store=SqlAlchemyStore(session_maker, PaymentRow, Payment),
            method_store=SqlAlchemyStore(session_maker, PaymentMethodDetailRow, PaymentMethodDetail),
            subscription_store=SqlAlchemyStore(session_maker, SubscriptionRow, Subscription),
            notification_store=SqlAlchemyStore(session_maker, NotificationRow, Notification),
            gateway=PeachGatewayClient(config),
            locks=RedisLockProvider(redis_client, timeout=config.RENEWAL_LOCK_TIMEOUT_SECONDS),
            method_queue=CeleryPaymentMethodQueue(),
            engine=engine,
            redis_client=redis_client,
        )

    async def aclose(self) -> None:
        if isinstance(self.method_queue, InlinePaymentMethodQueue):
            await self.method_queue.close()
        await self.gateway.aclose()
        if self._redis is not None:
            await self._redis.aclose()
        if self._engine is not None:
            await self._engine.dispose()


_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """Process-wide container, built from settings on first use."""
    global _container
    if _container is None:
        _container = ServiceContainer.from_settings(settings)
        logger.info(f"Service container ready (storage: {settings.STORAGE_BACKEND})")
    return _container


def set_container(container: Optional[ServiceContainer]) -> None:
    global _container
    _container = container


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container attached to the app."""
    return request.app.state.container
