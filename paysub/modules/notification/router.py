"""Notification API router."""

import uuid

from fastapi import APIRouter, Depends, Query

from paysub.core.container import ServiceContainer, get_services
from paysub.core.ids import NotificationId, UserId
from paysub.modules.notification.schemas import NotificationListResponse, NotificationResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("/user/{user_id}", response_model=NotificationListResponse)
async def list_user_notifications(
    user_id: uuid.UUID,
    unacknowledged_only: bool = Query(False),
    services: ServiceContainer = Depends(get_services),
):
    """A user's mailbox, newest first."""
    notifications = await services.notifications.list_for_user(
        UserId(user_id), unacknowledged_only=unacknowledged_only
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        total=len(notifications),
        unacknowledged=sum(1 for n in notifications if not n.acknowledged),
    )


@router.post("/{notification_id}/acknowledge", response_model=NotificationResponse)
async def acknowledge_notification(
    notification_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
):
    notification = await services.notifications.acknowledge(NotificationId(notification_id))
    return NotificationResponse.model_validate(notification)
