"""Notification module."""

from paysub.modules.notification.models import Notification, NotificationKind
from paysub.modules.notification.service import NotificationService

__all__ = ["Notification", "NotificationKind", "NotificationService"]
