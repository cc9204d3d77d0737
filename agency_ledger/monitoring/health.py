"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Outbox backlog (undelivered side effects)
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agency_ledger.database.connection import get_session_factory
from agency_ledger.database.models import OutboxEvent
from agency_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Outbox backlog report
    - Overall system health status
    """

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        """Initialize health check service."""
        self.session_factory = session_factory or get_session_factory()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_outbox(self) -> Dict[str, Any]:
        """
        Report how many side effects are waiting for redelivery.

        A backlog is reported but never makes the service unhealthy.
        """
        try:
            async with self.session_factory() as db:
                depth = await db.scalar(
                    select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
                )
        except Exception as e:
            logger.error("outbox_health_check_failed", error=str(e))
            raise HealthCheckError(f"Outbox health check failed: {str(e)}")

        metrics.set_outbox_queue_depth(depth or 0)
        return {
            "status": "healthy",
            "service": "outbox",
            "pending_events": depth or 0,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("outbox", self.check_outbox)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        Checks if application is ready to accept traffic.
        """
        return await self.check_all()
