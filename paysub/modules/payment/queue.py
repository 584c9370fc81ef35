"""Queue seam for the delayed "store payment method" side effect.

The gateway's payment record may lag behind its own webhook, so storing the
token is a background job retried with backoff while details are not yet
available. Celery runs it in production; the inline queue runs the same
job as an asyncio task for single-process deployments.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from paysub.core.exceptions import GatewayError, PaymentDetailsNotReadyError
from paysub.core.ids import PaymentId
from paysub.core.logging import log_error
from paysub.core.tasks import RETRY_CONFIGS, RetryConfig
from paysub.modules.payment.tasks import store_payment_method_task

logger = logging.getLogger(__name__)


class PaymentMethodQueue(ABC):
    @abstractmethod
    async def enqueue(self, payment_id: PaymentId) -> None:
        """Schedule the token-storage job for a completed payment."""


class CeleryPaymentMethodQueue(PaymentMethodQueue):
    def __init__(self, retry_config: RetryConfig = RETRY_CONFIGS["payment_method_fetch"]):
        self.retry_config = retry_config

    async def enqueue(self, payment_id: PaymentId) -> None:
        await asyncio.to_thread(
            store_payment_method_task.apply_async,
            args=[str(payment_id)],
            countdown=self.retry_config.initial_delay,
        )
        logger.info(f"Queued payment method storage for payment {payment_id}")


class InlinePaymentMethodQueue(PaymentMethodQueue):
    """Runs the job on the current event loop with the same retry policy."""

    def __init__(self, retry_config: RetryConfig = RETRY_CONFIGS["payment_method_fetch"]):
        self.retry_config = retry_config
        self._worker: Optional[Callable[[PaymentId], Awaitable[object]]] = None
        self._tasks: set[asyncio.Task] = set()

    def bind(self, worker: Callable[[PaymentId], Awaitable[object]]) -> None:
        self._worker = worker

    async def enqueue(self, payment_id: PaymentId) -> None:
        if self._worker is None:
            raise RuntimeError("InlinePaymentMethodQueue has no worker bound")
        task = asyncio.create_task(self._run(payment_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, payment_id: PaymentId) -> None:
        config = self.retry_config
        await asyncio.sleep(config.initial_delay)

        for attempt in range(1, config.max_attempts + 1):
            try:
                await self._worker(payment_id)
                return
            except (PaymentDetailsNotReadyError, GatewayError) as e:
                if attempt >= config.max_attempts:
                    log_error(
                        logger,
                        f"Giving up storing payment method for {payment_id}",
                        e,
                        payment_id=str(payment_id),
                        attempts=attempt,
                    )
                    return
                delay = config.calculate_delay(attempt)
                logger.info(
                    f"Payment details for {payment_id} not ready ({e}), retrying in {delay}s"
                )
                await asyncio.sleep(delay)
            except Exception as e:
                log_error(logger, f"Storing payment method for {payment_id} failed", e)
                return

    async def drain(self) -> None:
        """Wait for every scheduled job to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel jobs still waiting; used on shutdown."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
