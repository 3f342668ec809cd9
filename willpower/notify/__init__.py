"""Notification package: ABC plus provider implementations."""

from willpower.notify.base import Delivery, NotificationKind, NotificationProvider
from willpower.notify.router import NotificationRouter
from willpower.notify.telegram import TelegramProvider

__all__ = [
    "Delivery",
    "NotificationKind",
    "NotificationProvider",
    "NotificationRouter",
    "TelegramProvider",
]
