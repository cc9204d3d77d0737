"""Clients for the notification and reputation collaborators."""
from .notification_client import NotificationClient, build_notification_client
from .reputation_client import ReputationClient, build_reputation_client

__all__ = [
    "NotificationClient",
    "ReputationClient",
    "build_notification_client",
    "build_reputation_client",
]
