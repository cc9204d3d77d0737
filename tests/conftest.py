"""
Pytest configuration and fixtures.

Every test gets its own SQLite file database so that concurrent sessions
go through real connection-level locking.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from agency_ledger.config import Settings
from agency_ledger.core.exceptions import SideEffectFailure
from agency_ledger.core.maintenance import ExpirySweeper, LedgerReconciler
from agency_ledger.core.membership_engine import MembershipEngine
from agency_ledger.core.notifications import NotificationFanout
from agency_ledger.core.pricing import PricingCatalog
from agency_ledger.core.verification import VerificationService
from agency_ledger.database.connection import create_session_factory, init_db
from agency_ledger.database.models import Agency, Escort, Membership

START = datetime(2026, 3, 1, 12, 0, 0)


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notification collaborator that records what it was asked to send."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.failing = False
        self.calls = 0

    async def notify(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.calls += 1
        if self.failing:
            raise SideEffectFailure("notification service down", service="notification")
        self.sent.append(
            {"user_id": user_id, "type": type, "title": title, "message": message, "payload": payload}
        )

    def of_type(self, type: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["type"] == type]


class RecordingReputation:
    """Reputation collaborator that records trust bumps."""

    def __init__(self) -> None:
        self.bumps: List[Dict[str, Any]] = []
        self.failing = False

    async def bump_trust(self, user_id: uuid.UUID, delta: int) -> None:
        if self.failing:
            raise SideEffectFailure("reputation service down", service="reputation")
        self.bumps.append({"user_id": user_id, "delta": delta})


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        app_name="agency-ledger-test",
        app_env="test",
        log_level="DEBUG",
        allow_concurrent_join_requests=True,
        transaction_retry_base_delay=0.01,
        fanout_retry_attempts=2,
        fanout_retry_base_delay=0.001,
        outbox_max_attempts=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def reputation() -> RecordingReputation:
    return RecordingReputation()


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a test database engine with the schema in place."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def fanout(
    notifier: RecordingNotifier,
    reputation: RecordingReputation,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    clock: FakeClock,
) -> AsyncGenerator[NotificationFanout, Any]:
    fanout = NotificationFanout(notifier, reputation, session_factory, test_settings, clock)
    yield fanout
    await fanout.drain()


@pytest.fixture
def engine(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    fanout: NotificationFanout,
    clock: FakeClock,
) -> MembershipEngine:
    return MembershipEngine(session_factory, test_settings, fanout, clock)


@pytest.fixture
def catalog(session_factory: async_sessionmaker[AsyncSession]) -> PricingCatalog:
    return PricingCatalog(session_factory)


@pytest.fixture
def verifier(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    fanout: NotificationFanout,
    catalog: PricingCatalog,
    clock: FakeClock,
) -> VerificationService:
    return VerificationService(session_factory, test_settings, fanout, catalog, clock)


@pytest.fixture
def sweeper(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings, clock: FakeClock
) -> ExpirySweeper:
    return ExpirySweeper(session_factory, test_settings, clock)


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings, clock: FakeClock
) -> LedgerReconciler:
    return LedgerReconciler(session_factory, test_settings, clock)


@pytest.fixture
def make_escort(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Escort]]:
    """Factory inserting an escort row."""

    async def _make(display_name: str = "Escort", **kwargs: Any) -> Escort:
        async with session_factory() as db, db.begin():
            escort = Escort(user_id=uuid.uuid4(), display_name=display_name, **kwargs)
            db.add(escort)
        return escort

    return _make


@pytest.fixture
def make_agency(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Agency]]:
    """Factory inserting an agency row."""

    async def _make(display_name: str = "Agency", **kwargs: Any) -> Agency:
        async with session_factory() as db, db.begin():
            agency = Agency(user_id=uuid.uuid4(), display_name=display_name, **kwargs)
            db.add(agency)
        return agency

    return _make


@pytest.fixture
def join(engine: MembershipEngine) -> Callable[[Escort, Agency], Awaitable[Membership]]:
    """Make an escort an ACTIVE member through request + approval."""

    async def _join(escort: Escort, agency: Agency) -> Membership:
        requested = await engine.request_join(escort.id, agency.id)
        approved = await engine.manage_membership_request(requested.membership.id, "approve")
        return approved.membership

    return _join


@pytest.fixture
def load(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[Any, Any], Awaitable[Any]]:
    """Fetch a fresh copy of a row by primary key."""

    async def _load(model: Any, row_id: Any) -> Any:
        async with session_factory() as db:
            return await db.get(model, row_id)

    return _load
