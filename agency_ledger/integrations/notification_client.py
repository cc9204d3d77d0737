"""Notification service client."""
import uuid
from typing import Any, Dict, Optional

import structlog

from agency_ledger.config import Settings, get_settings
from agency_ledger.integrations.base import HttpServiceClient

logger = structlog.get_logger(__name__)


class NotificationClient(HttpServiceClient):
    """Posts user notifications to the notification service."""

    service = "notification"

    async def notify(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Deliver one notification.

        Raises:
            SideEffectFailure: Delivery failed or the circuit is open
        """
        await self._post(
            "/notifications",
            {
                "user_id": str(user_id),
                "type": type,
                "title": title,
                "message": message,
                "data": payload or {},
            },
        )


class LoggingNotificationClient:
    """Stand-in used when no notification service is configured."""

    async def notify(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(
            "notification_logged",
            user_id=str(user_id),
            type=type,
            title=title,
            message=message,
        )

    async def aclose(self) -> None:
        return None


def build_notification_client(settings: Optional[Settings] = None) -> Any:
    """HTTP client when a service URL is configured, logging sender otherwise."""
    settings = settings or get_settings()
    if settings.notification_service_url:
        return NotificationClient(
            settings.notification_service_url, timeout=settings.service_timeout_seconds
        )
    return LoggingNotificationClient()
