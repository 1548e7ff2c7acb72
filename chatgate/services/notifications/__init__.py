from chatgate.services.notifications.notifier import (
    Notifier,
    PushNotification,
    get_notifier,
    reset_notifier,
)

__all__ = [
    "Notifier",
    "PushNotification",
    "get_notifier",
    "reset_notifier",
]
