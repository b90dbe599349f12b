"""Customer notifications: decision policy, channels and the pending sweep."""

from beeylo_sync.notifications.channels import (
    Channel,
    EmailRelayChannel,
    InboxChannel,
    LogChannel,
    SendResult,
)
from beeylo_sync.notifications.dispatcher import NotificationDispatcher

__all__ = [
    "Channel",
    "EmailRelayChannel",
    "InboxChannel",
    "LogChannel",
    "NotificationDispatcher",
    "SendResult",
]
