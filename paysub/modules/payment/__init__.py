"""Payment module.

Payment ledger and state machine, settlement of gateway results, and
stored recurring payment methods.
"""

from paysub.modules.payment.models import (
    Payment,
    PaymentMethod,
    PaymentMethodDetail,
    PaymentStatus,
    status_from_result_code,
)
from paysub.modules.payment.service import PaymentLedger

__all__ = [
    "Payment",
    "PaymentMethod",
    "PaymentMethodDetail",
    "PaymentStatus",
    "status_from_result_code",
    "PaymentLedger",
]
