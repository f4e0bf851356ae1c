"""
Модуль уведомлений.
"""

from ridehail.core.notifications.service import NotificationService, NotificationSink

__all__ = [
    "NotificationSink",
    "NotificationService",
]
