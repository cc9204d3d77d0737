"""
Tests for the post-commit fan-out, the outbox publisher and the
collaborator HTTP clients.
"""
import uuid
from typing import Any, List

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from agency_ledger.core.exceptions import SideEffectFailure
from agency_ledger.core.membership_engine import MembershipEngine
from agency_ledger.core.notifications import (
    NOTIFICATION_EVENT,
    TRUST_BUMP_EVENT,
    Notice,
    NotificationFanout,
    TrustBump,
)
from agency_ledger.core.outbox import OutboxPublisher
from agency_ledger.core.verification import VerificationService
from agency_ledger.database.connection import create_session_factory
from agency_ledger.database.models import (
    Agency,
    Escort,
    Membership,
    MembershipStatus,
    OutboxEvent,
    Verification,
    VerificationStatus,
)
from agency_ledger.integrations.base import CircuitBreaker
from agency_ledger.integrations.notification_client import NotificationClient
from agency_ledger.integrations.reputation_client import ReputationClient


async def outbox_rows(session_factory: Any) -> List[OutboxEvent]:
    async with session_factory() as db:
        result = await db.execute(select(OutboxEvent).order_by(OutboxEvent.id))
        return list(result.scalars().all())


@pytest.mark.integration
class TestFanout:
    @pytest.mark.asyncio
    async def test_notifier_outage_does_not_fail_transition(
        self,
        engine: MembershipEngine,
        make_escort: Any,
        make_agency: Any,
        notifier: Any,
        load: Any,
        session_factory: Any,
    ) -> None:
        notifier.failing = True
        escort = await make_escort()
        agency = await make_agency()

        result = await engine.request_join(escort.id, agency.id)
        await engine.fanout.drain()

        assert (await load(Membership, result.membership.id)).status == MembershipStatus.PENDING.value
        assert notifier.calls == 2  # fanout_retry_attempts
        [event] = await outbox_rows(session_factory)
        assert event.event_type == NOTIFICATION_EVENT
        assert event.aggregate_id == result.membership.id
        assert event.payload["type"] == "MEMBERSHIP_REQUEST"
        assert event.payload["user_id"] == str(agency.user_id)
        assert "notification service down" in event.last_error
        assert event.published is False

    @pytest.mark.asyncio
    async def test_reputation_outage_keeps_verification(
        self,
        verifier: VerificationService,
        make_escort: Any,
        make_agency: Any,
        join: Any,
        reputation: Any,
        notifier: Any,
        load: Any,
        session_factory: Any,
    ) -> None:
        escort = await make_escort()
        agency = await make_agency()
        await join(escort, agency)
        reputation.failing = True

        result = await verifier.verify(agency.id, escort.id, "default-basic")
        await verifier.fanout.drain()

        stored = await load(Escort, escort.id)
        assert stored.is_verified is True
        assert stored.verified_by == agency.id
        record = await load(Verification, result.verification.id)
        assert record.status == VerificationStatus.COMPLETED.value
        assert (await load(Agency, agency.id)).verified_escorts == 1
        assert len(notifier.of_type("VERIFICATION_COMPLETED")) == 1
        assert reputation.bumps == []
        [event] = await outbox_rows(session_factory)
        assert event.event_type == TRUST_BUMP_EVENT
        assert event.aggregate_id == result.verification.id
        assert event.payload == {"user_id": str(escort.user_id), "delta": 25}

    @pytest.mark.asyncio
    async def test_disabled_fanout_writes_outbox(
        self,
        notifier: Any,
        reputation: Any,
        session_factory: Any,
        test_settings: Any,
        clock: Any,
    ) -> None:
        settings = test_settings.model_copy(update={"fanout_enabled": False})
        fanout = NotificationFanout(notifier, reputation, session_factory, settings, clock)
        user_id = uuid.uuid4()

        fanout.dispatch([TrustBump(user_id=user_id, delta=25)])
        await fanout.drain()

        assert reputation.bumps == []
        [event] = await outbox_rows(session_factory)
        assert event.event_type == TRUST_BUMP_EVENT
        assert event.aggregate_type == "verification"
        assert event.aggregate_id == user_id
        assert event.payload == {"user_id": str(user_id), "delta": 25}

    @pytest.mark.asyncio
    async def test_lost_side_effect_is_logged_not_raised(
        self, notifier: Any, reputation: Any, test_settings: Any, tmp_path: Any
    ) -> None:
        # Outbox table missing: the write fails too
        bare = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bare.db'}", poolclass=NullPool)
        notifier.failing = True
        fanout = NotificationFanout(notifier, reputation, create_session_factory(bare), test_settings)
        try:
            fanout.dispatch(
                [Notice(user_id=uuid.uuid4(), type="MEMBERSHIP_LEFT", title="t", message="m")]
            )
            await fanout.drain()
        finally:
            await bare.dispose()

        assert fanout.pending == 0

    @pytest.mark.asyncio
    async def test_redeliver_routes_by_event_type(
        self, fanout: NotificationFanout, notifier: Any, reputation: Any
    ) -> None:
        user_id = uuid.uuid4()

        await fanout.redeliver(
            NOTIFICATION_EVENT,
            {"user_id": str(user_id), "type": "AGENCY_INVITE", "title": "t", "message": "m"},
        )
        await fanout.redeliver(TRUST_BUMP_EVENT, {"user_id": str(user_id), "delta": "5"})

        assert notifier.sent[0]["type"] == "AGENCY_INVITE"
        assert notifier.sent[0]["payload"] == {}
        assert reputation.bumps == [{"user_id": user_id, "delta": 5}]
        with pytest.raises(ValueError):
            await fanout.redeliver("carrier_pigeon", {"user_id": str(user_id)})


@pytest.mark.integration
class TestOutboxPublisher:
    @pytest.mark.asyncio
    async def test_publishes_and_marks_events(
        self,
        fanout: NotificationFanout,
        notifier: Any,
        session_factory: Any,
        test_settings: Any,
        clock: Any,
    ) -> None:
        notifier.failing = True
        fanout.dispatch(
            [Notice(user_id=uuid.uuid4(), type="MEMBERSHIP_REMOVED", title="t", message="m")]
        )
        await fanout.drain()
        notifier.failing = False

        publisher = OutboxPublisher(fanout.redeliver, session_factory, test_settings, clock)
        published = await publisher.process_batch()

        assert published == 1
        assert len(notifier.of_type("MEMBERSHIP_REMOVED")) == 1
        [event] = await outbox_rows(session_factory)
        assert event.published is True
        assert event.published_at == clock()
        assert event.attempts == 1
        assert await publisher.get_pending_count() == 0
        assert await publisher.process_batch() == 0

    @pytest.mark.asyncio
    async def test_failures_count_attempts_until_limit(
        self,
        fanout: NotificationFanout,
        notifier: Any,
        session_factory: Any,
        test_settings: Any,
        clock: Any,
    ) -> None:
        notifier.failing = True
        fanout.dispatch(
            [Notice(user_id=uuid.uuid4(), type="MEMBERSHIP_LEFT", title="t", message="m")]
        )
        await fanout.drain()

        publisher = OutboxPublisher(fanout.redeliver, session_factory, test_settings, clock)
        for _ in range(test_settings.outbox_max_attempts + 2):
            assert await publisher.process_batch() == 0

        [event] = await outbox_rows(session_factory)
        assert event.attempts == test_settings.outbox_max_attempts
        assert event.published is False
        assert await publisher.get_pending_count() == 1


def json_transport(status_code: int, seen: List[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, json={})

    return httpx.MockTransport(handler)


@pytest.mark.unit
class TestCollaboratorClients:
    @pytest.mark.asyncio
    async def test_notification_client_posts_json(self) -> None:
        seen: List[httpx.Request] = []
        client = NotificationClient(
            "http://notify.test",
            client=httpx.AsyncClient(
                base_url="http://notify.test", transport=json_transport(202, seen)
            ),
        )
        user_id = uuid.uuid4()

        await client.notify(user_id, "AGENCY_INVITE", "Invite", "Join us", {"invitation_id": "1"})
        await client.aclose()

        [request] = seen
        assert request.url.path == "/notifications"
        body = request.read().decode()
        assert str(user_id) in body
        assert "AGENCY_INVITE" in body

    @pytest.mark.asyncio
    async def test_server_error_raises_side_effect_failure(self) -> None:
        seen: List[httpx.Request] = []
        client = ReputationClient(
            "http://reputation.test",
            client=httpx.AsyncClient(
                base_url="http://reputation.test", transport=json_transport(500, seen)
            ),
        )

        with pytest.raises(SideEffectFailure) as exc_info:
            await client.bump_trust(uuid.uuid4(), 5)
        await client.aclose()

        assert exc_info.value.metadata["service"] == "reputation"
        assert exc_info.value.metadata["status_code"] == 500

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self) -> None:
        seen: List[httpx.Request] = []
        breaker = CircuitBreaker("notification", failure_threshold=2, timeout=60)
        client = NotificationClient(
            "http://notify.test",
            client=httpx.AsyncClient(
                base_url="http://notify.test", transport=json_transport(503, seen)
            ),
            circuit_breaker=breaker,
        )

        for _ in range(2):
            with pytest.raises(SideEffectFailure):
                await client.notify(uuid.uuid4(), "X", "t", "m")
        assert breaker.state == "open"

        with pytest.raises(SideEffectFailure) as exc_info:
            await client.notify(uuid.uuid4(), "X", "t", "m")
        await client.aclose()

        assert "Circuit breaker is open" in exc_info.value.message
        assert len(seen) == 2
