"""
Eligibility policy.

The predicates here are pure: they take a snapshot of ledger state and
the current time and answer with an :class:`Eligibility`. They hold no
locks; the transition engine evaluates them once up front for a fast
answer and again inside its claimed transaction, where the answer is
authoritative.
"""
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agency_ledger.clock import Clock, utcnow
from agency_ledger.config import Settings, get_settings
from agency_ledger.core import ledger
from agency_ledger.core.exceptions import EligibilityError, NotFoundError
from agency_ledger.database.connection import get_session_factory
from agency_ledger.database.models import Agency, Escort, Membership


@dataclass
class Eligibility:
    """Outcome of a policy check."""

    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    is_renewal: bool = False

    @classmethod
    def ok(cls, is_renewal: bool = False) -> "Eligibility":
        return cls(allowed=True, is_renewal=is_renewal)

    @classmethod
    def deny(cls, reason: str, message: str, **details: Any) -> "Eligibility":
        return cls(allowed=False, reason=reason, message=message, details=details)

    def raise_if_denied(self) -> "Eligibility":
        """Raise the denial as an EligibilityError; return self when allowed."""
        if not self.allowed:
            raise EligibilityError(
                self.message or "Not eligible",
                error_code=self.reason or "NOT_ELIGIBLE",
                **self.details,
            )
        return self


@dataclass
class EscortSnapshot:
    """Ledger state the predicates look at for one escort."""

    escort: Escort
    active_membership: Optional[Membership] = None
    active_agency_name: Optional[str] = None
    pending_count: int = 0


def is_currently_verified(escort: Escort, now: datetime) -> bool:
    """Verification flag set and the credential not past its expiry."""
    if not escort.is_verified:
        return False
    return escort.verification_expires_at is None or escort.verification_expires_at > now


def can_join(
    snapshot: EscortSnapshot, allow_concurrent_join_requests: bool = False
) -> Eligibility:
    """
    Whether the escort may send a join request.

    Denied with ACTIVE_MEMBERSHIP while an agency holds the escort, and with
    PENDING_REQUESTS while other requests are outstanding unless concurrent
    requests are allowed.
    """
    if snapshot.active_membership is not None:
        agency_name = snapshot.active_agency_name or "an agency"
        return Eligibility.deny(
            "ACTIVE_MEMBERSHIP",
            f"You are already a member of {agency_name}. Leave your current agency first.",
            current_agency_id=snapshot.active_membership.agency_id,
        )
    if snapshot.pending_count > 0 and not allow_concurrent_join_requests:
        return Eligibility.deny(
            "PENDING_REQUESTS",
            f"You have {snapshot.pending_count} pending request(s). "
            "Cancel them before applying elsewhere.",
            pending_count=snapshot.pending_count,
        )
    return Eligibility.ok()


def can_leave(escort: Escort, now: datetime, grace_period_days: int = 30) -> Eligibility:
    """
    Whether a verified escort is past the grace period.

    The boundary is ``verified_at + grace_period_days``; leaving is allowed
    from the boundary onwards. Unverified escorts are never held back.
    """
    if not is_currently_verified(escort, now) or escort.verified_at is None:
        return Eligibility.ok()

    boundary = escort.verified_at + timedelta(days=grace_period_days)
    if now < boundary:
        days_remaining = math.ceil((boundary - now) / timedelta(days=1))
        return Eligibility.deny(
            "VERIFICATION_GRACE_PERIOD",
            f"You cannot leave for {days_remaining} more day(s) after being verified.",
            days_remaining=days_remaining,
            grace_period_ends=boundary,
        )
    return Eligibility.ok()


def can_verify(
    escort: Escort,
    agency_id: uuid.UUID,
    is_active_member: bool,
    now: datetime,
    renewal_window_days: int = 7,
) -> Eligibility:
    """
    Whether ``agency_id`` may verify the escort, and whether it is a renewal.

    A credential from this agency with more than the renewal window left
    (or with no expiry at all) is ALREADY_VERIFIED. Inside the window, or
    already expired but not yet swept, the verification is a renewal.
    """
    if not is_active_member:
        return Eligibility.deny(
            "NOT_ACTIVE_MEMBER",
            "Escort is not an active member of this agency",
            agency_id=agency_id,
        )

    if escort.is_verified and escort.verified_by == agency_id:
        expires_at = escort.verification_expires_at
        if expires_at is None:
            return Eligibility.deny(
                "ALREADY_VERIFIED",
                "Escort holds a permanent verification from this agency",
            )
        if expires_at - now > timedelta(days=renewal_window_days):
            return Eligibility.deny(
                "ALREADY_VERIFIED",
                "Escort is already verified by this agency",
                expires_at=expires_at,
            )
        return Eligibility.ok(is_renewal=True)

    return Eligibility.ok()


class EligibilityPolicy:
    """
    Async facade that loads snapshots and applies the predicates.

    Reads go through their own session and take no locks; callers that
    need an authoritative answer re-run the predicate inside their claim.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.clock = clock

    async def snapshot(self, db: AsyncSession, escort_id: uuid.UUID) -> EscortSnapshot:
        """
        Load the escort with its active membership and pending count.

        Raises:
            NotFoundError: ESCORT_NOT_FOUND
        """
        escort = await ledger.get_fresh(db, Escort, escort_id)
        if escort is None:
            raise NotFoundError(
                f"Escort {escort_id} not found",
                error_code="ESCORT_NOT_FOUND",
                user_message="Escort profile not found",
                escort_id=escort_id,
            )
        active = await ledger.find_active_membership(db, escort_id)
        agency_name = None
        if active is not None:
            agency = await ledger.get_fresh(db, Agency, active.agency_id)
            agency_name = agency.display_name if agency else None
        return EscortSnapshot(
            escort=escort,
            active_membership=active,
            active_agency_name=agency_name,
            pending_count=await ledger.count_pending(db, escort_id),
        )

    async def check_join(self, escort_id: uuid.UUID) -> Eligibility:
        async with self.session_factory() as db:
            snapshot = await self.snapshot(db, escort_id)
        return can_join(snapshot, self.settings.allow_concurrent_join_requests)

    async def check_leave(self, escort_id: uuid.UUID) -> Eligibility:
        async with self.session_factory() as db:
            snapshot = await self.snapshot(db, escort_id)
        return can_leave(snapshot.escort, self.clock(), self.settings.grace_period_days)

    async def check_verify(self, agency_id: uuid.UUID, escort_id: uuid.UUID) -> Eligibility:
        async with self.session_factory() as db:
            snapshot = await self.snapshot(db, escort_id)
        active = snapshot.active_membership
        return can_verify(
            snapshot.escort,
            agency_id,
            active is not None and active.agency_id == agency_id,
            self.clock(),
            self.settings.renewal_window_days,
        )
