"""Retry policy shared by Celery tasks and the in-process worker."""

import logging
import math
from typing import Any

from celery import Task

from paysub.core.config import settings

logger = logging.getLogger(__name__)


class RetryConfig:
    """Exponential backoff policy."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Delay before ``attempt`` (1-indexed), capped at max_delay."""
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


RETRY_CONFIGS = {
    # Gateway record for a fresh payment may lag behind its webhook
    "payment_method_fetch": RetryConfig(
        max_attempts=settings.PAYMENT_METHOD_FETCH_MAX_RETRIES,
        initial_delay=settings.PAYMENT_METHOD_FETCH_DELAY_SECONDS,
        max_delay=settings.PAYMENT_METHOD_FETCH_MAX_DELAY_SECONDS,
        backoff_multiplier=2,
    ),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2),
}


class BaseTaskWithRetry(Task):
    """Celery task base with exponential backoff retries."""

    abstract = True
    retry_config_name: str = "default"

    @property
    def retry_config(self) -> RetryConfig:
        return RETRY_CONFIGS.get(self.retry_config_name, RETRY_CONFIGS["default"])

    def retry_with_backoff(self, exc: Exception, attempt: int) -> None:
        """Schedule a retry, or raise MaxRetriesExceededError once attempts run out.

        Args:
            exc: The exception that caused the failure.
            attempt: The current attempt number (1-indexed).
        """
        config = self.retry_config

        if attempt >= config.max_attempts:
            raise self.MaxRetriesExceededError(
                f"Max retries ({config.max_attempts}) exceeded for {self.name}"
            )

        raise self.retry(exc=exc, countdown=config.calculate_delay(attempt))

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.error(
            f"Task {self.name}[{task_id}] failed: {exc}", exc_info=exc
        )
