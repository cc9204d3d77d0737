"""
Service wiring for the API.

One set of services per process, built lazily on first use. Tests swap
the whole set through ``app.dependency_overrides[get_services]``.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agency_ledger.clock import Clock, utcnow
from agency_ledger.config import Settings, get_settings
from agency_ledger.core.maintenance import ExpirySweeper, LedgerReconciler
from agency_ledger.core.membership_engine import MembershipEngine
from agency_ledger.core.notifications import NotificationFanout
from agency_ledger.core.pricing import PricingCatalog
from agency_ledger.core.verification import VerificationService
from agency_ledger.database.connection import get_session_factory
from agency_ledger.monitoring.health import HealthCheck


@dataclass
class LedgerServices:
    """Everything the routes talk to."""

    engine: MembershipEngine
    verification: VerificationService
    catalog: PricingCatalog
    sweeper: ExpirySweeper
    reconciler: LedgerReconciler
    fanout: NotificationFanout
    health: HealthCheck


def build_services(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    settings: Optional[Settings] = None,
    fanout: Optional[NotificationFanout] = None,
    clock: Clock = utcnow,
) -> LedgerServices:
    """Build a service set sharing one session factory and one fan-out."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    fanout = fanout or NotificationFanout(
        session_factory=session_factory, settings=settings, clock=clock
    )
    catalog = PricingCatalog(session_factory)
    return LedgerServices(
        engine=MembershipEngine(session_factory, settings, fanout, clock),
        verification=VerificationService(session_factory, settings, fanout, catalog, clock),
        catalog=catalog,
        sweeper=ExpirySweeper(session_factory, settings, clock),
        reconciler=LedgerReconciler(session_factory, settings, clock),
        fanout=fanout,
        health=HealthCheck(session_factory),
    )


_services: Optional[LedgerServices] = None


def get_services() -> LedgerServices:
    """FastAPI dependency returning the process-wide service set."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


async def close_services() -> None:
    """Drain in-flight side effects and drop the service set."""
    global _services
    if _services is not None:
        await _services.fanout.aclose()
        _services = None
