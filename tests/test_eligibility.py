"""
Unit tests for the eligibility predicates and the status tables.

No database: the predicates only look at row attributes.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any

import pytest

from agency_ledger.core.eligibility import (
    Eligibility,
    EscortSnapshot,
    can_join,
    can_leave,
    can_verify,
    is_currently_verified,
)
from agency_ledger.core.exceptions import EligibilityError, LedgerError, ValidationError
from agency_ledger.core.membership_engine import clamp_commission
from agency_ledger.core.state_machine import assert_transition, is_legal
from agency_ledger.database.models import Escort, Membership

NOW = datetime(2026, 3, 1, 12, 0, 0)
AGENCY_ID = uuid.uuid4()
OTHER_AGENCY_ID = uuid.uuid4()


def escort(**kwargs: Any) -> Escort:
    fields = {"id": uuid.uuid4(), "user_id": uuid.uuid4(), "display_name": "Mia", "is_verified": False}
    fields.update(kwargs)
    return Escort(**fields)


def verified_escort(verified_days_ago: float, expires_in_days: Any = 30, by: uuid.UUID = AGENCY_ID) -> Escort:
    verified_at = NOW - timedelta(days=verified_days_ago)
    return escort(
        is_verified=True,
        verified_at=verified_at,
        verified_by=by,
        verification_expires_at=None if expires_in_days is None else NOW + timedelta(days=expires_in_days),
    )


@pytest.mark.unit
class TestCanJoin:
    def test_independent_escort_can_join(self) -> None:
        assert can_join(EscortSnapshot(escort=escort())).allowed

    def test_active_membership_blocks_join(self) -> None:
        active = Membership(escort_id=uuid.uuid4(), agency_id=AGENCY_ID, status="ACTIVE")
        result = can_join(
            EscortSnapshot(escort=escort(), active_membership=active, active_agency_name="Velvet")
        )

        assert not result.allowed
        assert result.reason == "ACTIVE_MEMBERSHIP"
        assert "Velvet" in result.message
        assert result.details["current_agency_id"] == AGENCY_ID

    def test_pending_requests_block_join_by_default(self) -> None:
        result = can_join(EscortSnapshot(escort=escort(), pending_count=2))

        assert not result.allowed
        assert result.reason == "PENDING_REQUESTS"
        assert result.details["pending_count"] == 2

    def test_pending_requests_allowed_when_concurrent_requests_enabled(self) -> None:
        snapshot = EscortSnapshot(escort=escort(), pending_count=2)
        assert can_join(snapshot, allow_concurrent_join_requests=True).allowed


@pytest.mark.unit
class TestCanLeave:
    def test_unverified_escort_can_always_leave(self) -> None:
        assert can_leave(escort(), NOW).allowed

    def test_day_ten_is_inside_grace_period(self) -> None:
        result = can_leave(verified_escort(verified_days_ago=10), NOW)

        assert not result.allowed
        assert result.reason == "VERIFICATION_GRACE_PERIOD"
        assert result.details["days_remaining"] == 20

    def test_partial_day_rounds_up(self) -> None:
        result = can_leave(verified_escort(verified_days_ago=29.5), NOW)
        assert result.details["days_remaining"] == 1

    def test_boundary_allows_leave(self) -> None:
        assert can_leave(verified_escort(verified_days_ago=30, expires_in_days=60), NOW).allowed

    def test_configurable_grace_period(self) -> None:
        assert can_leave(verified_escort(verified_days_ago=10), NOW, grace_period_days=7).allowed

    def test_expired_credential_does_not_hold_escort(self) -> None:
        lapsed = verified_escort(verified_days_ago=10, expires_in_days=-1)

        assert not is_currently_verified(lapsed, NOW)
        assert can_leave(lapsed, NOW).allowed


@pytest.mark.unit
class TestCanVerify:
    def test_non_member_is_denied(self) -> None:
        result = can_verify(escort(), AGENCY_ID, is_active_member=False, now=NOW)
        assert result.reason == "NOT_ACTIVE_MEMBER"

    def test_first_verification_is_not_renewal(self) -> None:
        result = can_verify(escort(), AGENCY_ID, is_active_member=True, now=NOW)
        assert result.allowed
        assert not result.is_renewal

    def test_outside_renewal_window_is_already_verified(self) -> None:
        result = can_verify(
            verified_escort(verified_days_ago=5, expires_in_days=25), AGENCY_ID, True, NOW
        )
        assert result.reason == "ALREADY_VERIFIED"

    def test_inside_renewal_window_is_renewal(self) -> None:
        result = can_verify(
            verified_escort(verified_days_ago=25, expires_in_days=5), AGENCY_ID, True, NOW
        )
        assert result.allowed
        assert result.is_renewal

    def test_expired_but_unswept_credential_is_renewal(self) -> None:
        result = can_verify(
            verified_escort(verified_days_ago=31, expires_in_days=-1), AGENCY_ID, True, NOW
        )
        assert result.is_renewal

    def test_permanent_credential_is_already_verified(self) -> None:
        result = can_verify(
            verified_escort(verified_days_ago=100, expires_in_days=None), AGENCY_ID, True, NOW
        )
        assert result.reason == "ALREADY_VERIFIED"

    def test_credential_from_other_agency_is_a_fresh_verification(self) -> None:
        result = can_verify(
            verified_escort(verified_days_ago=5, by=OTHER_AGENCY_ID), AGENCY_ID, True, NOW
        )
        assert result.allowed
        assert not result.is_renewal


@pytest.mark.unit
class TestEligibilityResult:
    def test_raise_if_denied_carries_code_and_details(self) -> None:
        denial = Eligibility.deny("VERIFICATION_GRACE_PERIOD", "Wait", days_remaining=3)

        with pytest.raises(EligibilityError) as exc_info:
            denial.raise_if_denied()

        assert exc_info.value.error_code == "VERIFICATION_GRACE_PERIOD"
        assert exc_info.value.http_status == 409
        assert exc_info.value.to_dict()["error"]["details"] == {"days_remaining": 3}

    def test_allowed_returns_itself(self) -> None:
        ok = Eligibility.ok(is_renewal=True)
        assert ok.raise_if_denied() is ok


@pytest.mark.unit
class TestStatusTables:
    @pytest.mark.parametrize(
        "current,target",
        [
            (None, "PENDING"),
            (None, "ACTIVE"),
            ("PENDING", "ACTIVE"),
            ("PENDING", "REJECTED"),
            ("ACTIVE", "REJECTED"),
            ("REJECTED", "PENDING"),
            ("REJECTED", "ACTIVE"),
        ],
    )
    def test_legal_membership_moves(self, current: Any, target: str) -> None:
        assert is_legal("membership", current, target)

    @pytest.mark.parametrize(
        "current,target", [("ACTIVE", "PENDING"), ("ACTIVE", "ACTIVE"), ("PENDING", "PENDING")]
    )
    def test_illegal_membership_moves(self, current: str, target: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            assert_transition("membership", current, target)
        assert exc_info.value.error_code == "INVALID_TRANSITION"

    def test_answered_invitations_are_terminal(self) -> None:
        for terminal in ("ACCEPTED", "REJECTED", "EXPIRED"):
            assert not is_legal("invitation", terminal, "PENDING")
        assert is_legal("invitation", "PENDING", "EXPIRED")


@pytest.mark.unit
def test_commission_is_clamped() -> None:
    assert clamp_commission(1.5) == 1.0
    assert clamp_commission(-0.2) == 0.0
    assert clamp_commission(0.12) == 0.12


@pytest.mark.unit
def test_error_body_is_json_safe() -> None:
    membership_id = uuid.uuid4()
    error = LedgerError(
        "boom", error_code="X", http_status=500, membership_id=membership_id, at=NOW
    )

    details = error.to_dict()["error"]["details"]

    assert details == {"membership_id": str(membership_id), "at": NOW.isoformat()}
