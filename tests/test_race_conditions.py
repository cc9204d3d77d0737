"""
Race condition tests for concurrent membership transitions.

Concurrent activations for one escort must leave exactly one ACTIVE
membership; every loser gets ESCORT_ALREADY_ACCEPTED_ELSEWHERE.
"""
import asyncio
import uuid
from typing import Any, List

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from agency_ledger.core.exceptions import ConflictError
from agency_ledger.core.membership_engine import MembershipEngine, TransitionResult
from agency_ledger.database.models import Agency, Membership, MembershipStatus


async def memberships_of(session_factory: Any, escort_id: uuid.UUID) -> List[Membership]:
    async with session_factory() as db:
        result = await db.execute(select(Membership).where(Membership.escort_id == escort_id))
        return list(result.scalars().all())


class TestRaceConditions:
    """Test suite for concurrent activation scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_approvals_activate_exactly_one(
        self,
        engine: MembershipEngine,
        make_escort: Any,
        make_agency: Any,
        session_factory: Any,
    ) -> None:
        """
        Five agencies approve the same escort at once.

        One approval wins; the rest lose to it.
        """
        escort = await make_escort()
        agencies = [await make_agency(f"Agency {n}") for n in range(5)]
        requests = [await engine.request_join(escort.id, a.id) for a in agencies]

        results = await asyncio.gather(
            *[engine.manage_membership_request(r.membership.id, "approve") for r in requests],
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, TransitionResult)]
        losers = [r for r in results if isinstance(r, ConflictError)]
        assert len(winners) == 1, f"Unexpected outcomes: {results}"
        assert len(losers) == 4
        assert all(e.error_code == "ESCORT_ALREADY_ACCEPTED_ELSEWHERE" for e in losers)

        rows = await memberships_of(session_factory, escort.id)
        active = [m for m in rows if m.status == MembershipStatus.ACTIVE.value]
        assert len(active) == 1
        assert active[0].id == winners[0].membership.id
        assert all(
            m.rejection_cause == "AUTO_CANCELLED" for m in rows if m.id != active[0].id
        )

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_approvals_keep_counters_consistent(
        self,
        engine: MembershipEngine,
        make_escort: Any,
        make_agency: Any,
        session_factory: Any,
    ) -> None:
        escort = await make_escort()
        agencies = [await make_agency(f"Agency {n}") for n in range(3)]
        requests = [await engine.request_join(escort.id, a.id) for a in agencies]

        await asyncio.gather(
            *[engine.manage_membership_request(r.membership.id, "approve") for r in requests],
            return_exceptions=True,
        )

        async with session_factory() as db:
            active_total = await db.scalar(
                select(func.sum(Agency.active_escorts)).where(
                    Agency.id.in_([a.id for a in agencies])
                )
            )
        assert active_total == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_invitation_accept_races_request_approval(
        self,
        engine: MembershipEngine,
        make_escort: Any,
        make_agency: Any,
        session_factory: Any,
    ) -> None:
        """Escort accepts an invitation while another agency approves their request."""
        escort = await make_escort()
        requested, inviting = await make_agency("Requested"), await make_agency("Inviting")
        request = await engine.request_join(escort.id, requested.id)
        invitation = await engine.invite(inviting.id, escort.id)

        results = await asyncio.gather(
            engine.manage_membership_request(request.membership.id, "approve"),
            engine.respond_to_invitation(invitation.id, "accept"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1, f"Unexpected outcomes: {results}"
        assert isinstance(errors[0], ConflictError)
        assert errors[0].error_code == "ESCORT_ALREADY_ACCEPTED_ELSEWHERE"

        rows = await memberships_of(session_factory, escort.id)
        assert [m.status for m in rows].count(MembershipStatus.ACTIVE.value) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_requests(
        self,
        engine: MembershipEngine,
        make_escort: Any,
        make_agency: Any,
        session_factory: Any,
    ) -> None:
        """Double-submitted join request creates a single row."""
        escort = await make_escort()
        agency = await make_agency()

        results = await asyncio.gather(
            *[engine.request_join(escort.id, agency.id) for _ in range(3)],
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, TransitionResult)]
        duplicates = [r for r in results if isinstance(r, ConflictError)]
        assert len(created) == 1
        assert {e.error_code for e in duplicates} == {"MEMBERSHIP_PENDING"}
        assert len(await memberships_of(session_factory, escort.id)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_database_rejects_second_active_row(
        self, make_escort: Any, make_agency: Any, session_factory: Any
    ) -> None:
        """The partial unique index backs the invariant below the engine."""
        escort = await make_escort()
        first, second = await make_agency(), await make_agency()
        async with session_factory() as db, db.begin():
            db.add(Membership(escort_id=escort.id, agency_id=first.id, status="ACTIVE"))

        with pytest.raises(IntegrityError):
            async with session_factory() as db, db.begin():
                db.add(Membership(escort_id=escort.id, agency_id=second.id, status="ACTIVE"))
