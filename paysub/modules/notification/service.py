"""Notification service.

Append-only mailbox per user with acknowledge semantics. The renewal
scheduler is the main producer; manual-renewal prompts are not repeated
while an earlier one for the same subscription is still unacknowledged.
"""

import logging
from datetime import datetime
from typing import Optional

from paysub.core.exceptions import NotFoundError
from paysub.core.ids import NotificationId, SubscriptionId, UserId, new_id, utcnow
from paysub.core.store import DocumentStore, Filter, mutate_with_retry
from paysub.modules.notification.models import Notification, NotificationKind

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, store: DocumentStore[Notification]):
        self.store = store

    async def create(
        self,
        user_id: UserId,
        kind: NotificationKind,
        message: str,
        subscription_id: Optional[SubscriptionId] = None,
    ) -> Notification:
        notification = Notification(
            id=NotificationId(new_id()),
            user_id=user_id,
            subscription_id=subscription_id,
            kind=kind,
            message=message,
        )
        created = await self.store.create(notification)
        logger.info(f"Notification {kind.value} created for user {user_id}")
        return created

    async def has_open(
        self,
        subscription_id: SubscriptionId,
        kind: NotificationKind,
        since: Optional[datetime] = None,
    ) -> bool:
        """True if an unacknowledged notification of ``kind`` exists for the subscription."""
        filters = [
            Filter("subscription_id", "eq", subscription_id),
            Filter("kind", "eq", kind),
            Filter("acknowledged", "eq", False),
        ]
        if since is not None:
            filters.append(Filter("created_at", "ge", since))
        return bool(await self.store.find(*filters, limit=1))

    async def notify_manual_renewal(
        self,
        user_id: UserId,
        subscription_id: SubscriptionId,
    ) -> Optional[Notification]:
        """Ask the user to renew by hand; skipped if such a prompt is still open."""
        if await self.has_open(subscription_id, NotificationKind.MANUAL_RENEWAL_REQUIRED):
            logger.debug(f"Manual renewal notice already open for subscription {subscription_id}")
            return None
        return await self.create(
            user_id,
            NotificationKind.MANUAL_RENEWAL_REQUIRED,
            f"Your subscription {subscription_id} is due for renewal",
            subscription_id,
        )

    async def list_for_user(
        self,
        user_id: UserId,
        unacknowledged_only: bool = False,
    ) -> list[Notification]:
        filters = [Filter("user_id", "eq", user_id)]
        if unacknowledged_only:
            filters.append(Filter("acknowledged", "eq", False))
        return await self.store.find(*filters, order_by="created_at", descending=True)

    async def acknowledge(self, notification_id: NotificationId) -> Notification:
        """Mark a notification as read. Acknowledging twice is a no-op."""

        def mutate(n: Notification) -> bool:
            if n.acknowledged:
                return False
            n.acknowledged = True
            n.acknowledged_at = utcnow()
            return True

        notification, _ = await mutate_with_retry(
            self.store, notification_id, mutate, entity="Notification"
        )
        return notification

    async def get(self, notification_id: NotificationId) -> Notification:
        notification = await self.store.get(notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification
