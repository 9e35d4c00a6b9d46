"""Notification dispatch."""

from spendguard.notifications.dispatcher import NotificationDispatcher, log_sink
from spendguard.notifications.events import EventType, NotificationEvent

__all__ = ["EventType", "NotificationDispatcher", "NotificationEvent", "log_sink"]
