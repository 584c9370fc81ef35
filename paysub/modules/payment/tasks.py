"""Payment background tasks."""

import asyncio
import logging

from paysub.core.celery_app import celery_app
from paysub.core.config import settings
from paysub.core.exceptions import GatewayError, PaymentDetailsNotReadyError
from paysub.core.ids import PaymentId, parse_uuid
from paysub.core.tasks import BaseTaskWithRetry

logger = logging.getLogger(__name__)


async def _store_payment_method(payment_id: str) -> dict:
    from paysub.core.container import ServiceContainer

    container = ServiceContainer.from_settings(settings)
    try:
        method = await container.payment_methods.store_from_payment(
            PaymentId(parse_uuid(payment_id, "payment_id"))
        )
    finally:
        await container.aclose()
    if method is None:
        return {"status": "skipped", "payment_id": payment_id}
    return {
        "status": "stored",
        "payment_id": payment_id,
        "payment_method_id": str(method.id),
    }


class StorePaymentMethodTask(BaseTaskWithRetry):
    retry_config_name = "payment_method_fetch"


@celery_app.task(
    bind=True,
    base=StorePaymentMethodTask,
    name="payments.store_payment_method",
)
def store_payment_method_task(self: StorePaymentMethodTask, payment_id: str) -> dict:
    """Fetch payment details and store the recurring token as the user's default.

    Retried with exponential backoff while the gateway has not yet exposed
    the registration id for the payment.
    """
    try:
        return asyncio.run(_store_payment_method(payment_id))
    except (PaymentDetailsNotReadyError, GatewayError) as exc:
        logger.info(f"Payment details for {payment_id} not ready: {exc}")
        self.retry_with_backoff(exc, self.request.retries + 1)
