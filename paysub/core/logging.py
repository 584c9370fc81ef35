"""Structured logging with correlation IDs.

Every log line emitted while handling a webhook, a status poll or a renewal
sweep carries the same correlation id so a single payment can be followed
across the three reconciliation paths. Payment identifiers passed as extra
fields are lifted to the top level of the JSON record; gateway secrets and
stored tokens are masked before anything is written.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "correlation_id",
}

# Searchable identifiers, promoted out of "extra"
CONTEXT_FIELDS = (
    "merchant_transaction_id",
    "payment_id",
    "subscription_id",
    "user_id",
    "sweep_time",
)

SENSITIVE_FIELDS = frozenset((
    "registration_id",
    "registrationId",
    "signature",
    "access_token",
    "client_secret",
    "clientSecret",
))


def get_correlation_id() -> str:
    """Get the current correlation ID or generate a new one."""
    cid = correlation_id_var.get()
    if cid is None:
        cid = str(uuid.uuid4())
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


def mask(value: Any) -> str:
    """Keep the last four characters of a secret."""
    text = str(value)
    if len(text) <= 4:
        return "****"
    return "****" + text[-4:]


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, include_stack_trace: bool = True, service: str = "paysub"):
        super().__init__()
        self.include_stack_trace = include_stack_trace
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }

        extra: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            if key in SENSITIVE_FIELDS and value is not None:
                value = mask(value)
            if key in CONTEXT_FIELDS:
                entry[key] = _jsonable(value)
            else:
                extra[key] = _jsonable(value)
        if extra:
            entry["extra"] = extra

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.module}:{record.funcName}:{record.lineno}"

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {"type": exc_type.__name__, "message": str(exc_value)}
            if self.include_stack_trace and exc_tb is not None:
                entry["exception"]["stack_trace"] = traceback.format_exception(exc_type, exc_value, exc_tb)

        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamp the current correlation ID on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Configure the root logger for the API, Celery workers and scripts.

    Args:
        level: Log level name
        json_format: JSON lines for log shipping; plain text for scripts
        include_stack_trace: Attach formatted tracebacks to JSON records
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(correlation_id)s] %(name)s: %(message)s"
        ))
    root_logger.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "celery.beat"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _log(logger: logging.Logger, level: int, message: str, exception: Optional[BaseException], extra: dict) -> None:
    extra["correlation_id"] = get_correlation_id()
    logger.log(level, message, exc_info=exception, extra=extra)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error with the correlation ID and, if given, the exception.

    Args:
        logger: Logger instance
        message: Error message
        exception: Exception whose traceback should be attached
        **extra: Context fields such as merchant_transaction_id
    """
    _log(logger, logging.ERROR, message, exception, extra)


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    _log(logger, logging.WARNING, message, None, extra)


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    _log(logger, logging.INFO, message, None, extra)
