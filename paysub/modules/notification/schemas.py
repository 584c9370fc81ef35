"""Pydantic schemas for the notification API."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from paysub.modules.notification.models import NotificationKind


class NotificationResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    kind: NotificationKind
    message: str
    subscription_id: Optional[uuid.UUID] = None
    acknowledged: bool
    acknowledged_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    total: int
    unacknowledged: int
