"""Error taxonomy for the billing core.

Errors raise. Expected business outcomes (a declined card, a Pending result
code) are returned as values by the ledgers and never raised.
"""

from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class PaysubError(Exception):
    """Base class for all billing errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaysubError):
    """Bad input (negative amount, missing required field)."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(PaysubError):
    """Unknown merchant transaction id, subscription id or record."""

    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransitionError(PaysubError):
    """Attempted an illegal state move, e.g. Failed -> Completed."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity} cannot move from {current} to {target}")
        self.entity = entity
        self.current = current
        self.target = target


class ConcurrencyError(PaysubError):
    """Optimistic update lost the race too many times."""

    status_code = status.HTTP_409_CONFLICT


class DuplicateKeyError(PaysubError):
    """A unique secondary key already exists in the store."""

    status_code = status.HTTP_409_CONFLICT


class GatewayError(PaysubError):
    """Non-2xx, transport failure, timeout or malformed gateway response."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        gateway_status: Optional[int] = None,
        is_timeout: bool = False,
        indeterminate: bool = False,
    ):
        super().__init__(message)
        self.gateway_status = gateway_status
        self.is_timeout = is_timeout
        # The gateway may have acted on the request even though we got no usable answer
        self.indeterminate = indeterminate or is_timeout


class PaymentDetailsNotReadyError(PaysubError):
    """The gateway's payment record is not yet consistent (no registration id)."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class SignatureError(PaysubError):
    """Webhook signature missing or mismatched."""

    status_code = status.HTTP_401_UNAUTHORIZED


class WebhookParseError(PaysubError):
    """Webhook body could not be decoded or lacks required fields."""

    status_code = status.HTTP_400_BAD_REQUEST


async def paysub_error_handler(request: Request, exc: PaysubError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map the error taxonomy onto HTTP responses."""
    app.add_exception_handler(PaysubError, paysub_error_handler)
