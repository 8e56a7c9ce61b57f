"""
Queue Notification Service Layer

This package decides when waiting customers should be told to return to the shop.
"""

from app.services.queue_notifications.service import (
    DEFAULT_AVERAGE_CUT_TIME,
    QueueStatus,
    QueueMode,
    QueueEntry,
    Barber,
    ShopConfig,
    NotifyDecision,
    evaluate_notification,
    should_notify,
    get_skip_reason,
    resolve_average_cut_time,
    format_ready_message,
)

from app.services.queue_notifications.exceptions import (
    QueueNotificationError,
    QueueFetchError,
    MessageDeliveryError,
    NotifiedFlagWriteError,
)

__all__ = [
    "DEFAULT_AVERAGE_CUT_TIME",
    "QueueStatus",
    "QueueMode",
    "QueueEntry",
    "Barber",
    "ShopConfig",
    "NotifyDecision",
    "evaluate_notification",
    "should_notify",
    "get_skip_reason",
    "resolve_average_cut_time",
    "format_ready_message",
    "QueueNotificationError",
    "QueueFetchError",
    "MessageDeliveryError",
    "NotifiedFlagWriteError",
]
