"""Typed identifiers and clock helpers.

Identifiers are UUIDs wrapped in NewTypes so a payment id can never be passed
where a subscription id is expected. Parsing from strings happens once, at
the router boundary.
"""

import uuid
from datetime import datetime, timezone
from typing import NewType

from paysub.core.exceptions import ValidationError

UserId = NewType("UserId", uuid.UUID)
PaymentId = NewType("PaymentId", uuid.UUID)
SubscriptionId = NewType("SubscriptionId", uuid.UUID)
NotificationId = NewType("NotificationId", uuid.UUID)
PaymentMethodId = NewType("PaymentMethodId", uuid.UUID)


def new_id() -> uuid.UUID:
    return uuid.uuid4()


def parse_uuid(value: str, field: str = "id") -> uuid.UUID:
    """Parse a bare UUID string, rejecting anything else."""
    try:
        return uuid.UUID(str(value).strip())
    except (ValueError, AttributeError) as e:
        raise ValidationError(f"Invalid {field}: {value!r}") from e


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
