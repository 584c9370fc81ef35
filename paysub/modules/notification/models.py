"""Per-user notification mailbox."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from paysub.core.ids import NotificationId, SubscriptionId, UserId, utcnow


class NotificationKind(str, Enum):
    MANUAL_RENEWAL_REQUIRED = "manual_renewal_required"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_EXPIRING = "subscription_expiring"


@dataclass
class Notification:
    id: NotificationId
    user_id: UserId
    kind: NotificationKind
    message: str
    subscription_id: Optional[SubscriptionId] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
