"""
Queue Notification Domain Exceptions

All exceptions raised by the queue notification layer.
"""


class QueueNotificationError(Exception):
    """Base exception for queue notification errors"""
    pass


class QueueFetchError(QueueNotificationError):
    """Raised when the initial candidate fetch fails (aborts the whole run)"""
    pass


class MessageDeliveryError(QueueNotificationError):
    """Raised when the ready message could not be delivered"""
    pass


class NotifiedFlagWriteError(QueueNotificationError):
    """Raised when the notified flag could not be persisted after a successful send"""
    pass
