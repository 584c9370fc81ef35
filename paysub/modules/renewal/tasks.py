"""Renewal background tasks.

The sweep runs on Celery beat. Each run builds its own service container
so the gateway client and database pool belong to the task's event loop.
"""

import asyncio
import logging

from paysub.core.celery_app import celery_app
from paysub.core.config import settings
from paysub.core.tasks import BaseTaskWithRetry

logger = logging.getLogger(__name__)


async def _run_renewal_sweep() -> dict:
    from paysub.core.container import ServiceContainer

    container = ServiceContainer.from_settings(settings)
    try:
        summary = await container.renewal_scheduler.run_sweep()
        return summary.as_dict()
    finally:
        await container.aclose()


@celery_app.task(bind=True, base=BaseTaskWithRetry, name="renewal.run_sweep")
def run_renewal_sweep_task(self: BaseTaskWithRetry) -> dict:
    """Charge due subscriptions, then lapse and remind.

    Not retried: the next scheduled run picks up anything left behind.
    """
    result = asyncio.run(_run_renewal_sweep())
    logger.info(f"Renewal sweep task {self.request.id} finished: {result}")
    return result


RENEWAL_BEAT_SCHEDULE = {
    "run-renewal-sweep": {
        "task": "renewal.run_sweep",
        "schedule": float(settings.RENEWAL_INTERVAL_SECONDS),
    },
}

celery_app.conf.beat_schedule.update(RENEWAL_BEAT_SCHEDULE)
