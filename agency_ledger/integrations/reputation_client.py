"""Reputation service client."""
import uuid
from typing import Any, Optional

import structlog

from agency_ledger.config import Settings, get_settings
from agency_ledger.integrations.base import HttpServiceClient

logger = structlog.get_logger(__name__)


class ReputationClient(HttpServiceClient):
    """Adjusts trust scores held by the reputation service."""

    service = "reputation"

    async def bump_trust(self, user_id: uuid.UUID, delta: int) -> None:
        """
        Add ``delta`` to the user's trust score.

        Raises:
            SideEffectFailure: Delivery failed or the circuit is open
        """
        await self._post("/trust", {"user_id": str(user_id), "delta": delta})


class LoggingReputationClient:
    """Stand-in used when no reputation service is configured."""

    async def bump_trust(self, user_id: uuid.UUID, delta: int) -> None:
        logger.info("trust_bump_logged", user_id=str(user_id), delta=delta)

    async def aclose(self) -> None:
        return None


def build_reputation_client(settings: Optional[Settings] = None) -> Any:
    """HTTP client when a service URL is configured, logging sender otherwise."""
    settings = settings or get_settings()
    if settings.reputation_service_url:
        return ReputationClient(
            settings.reputation_service_url, timeout=settings.service_timeout_seconds
        )
    return LoggingReputationClient()
