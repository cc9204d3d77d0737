"""
Membership transition engine.

Every mutating operation follows the same shape:

1. Claim the escort row (version bump), serializing transitions for that
   escort across processes.
2. Re-query the ledger under the claim and re-check the invariants.
3. Apply the primary transition, atomic counter increments and the
   auto-cancel cascade.
4. Commit, retrying the whole transaction on transient storage failures.
5. Hand notifications to the fan-out as detached tasks.

The invariant protected here: an escort has at most one ACTIVE membership.
"""
import math
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from agency_ledger.clock import Clock, utcnow
from agency_ledger.config import Settings, get_settings
from agency_ledger.core import ledger
from agency_ledger.core.eligibility import (
    EligibilityPolicy,
    EscortSnapshot,
    can_join,
    can_leave,
    is_currently_verified,
)
from agency_ledger.core.exceptions import ConflictError, NotFoundError, ValidationError
from agency_ledger.core.notifications import Notice, NotificationFanout, SideEffect
from agency_ledger.core.state_machine import assert_transition
from agency_ledger.database.models import (
    Agency,
    Escort,
    Invitation,
    InvitationStatus,
    Membership,
    MembershipStatus,
    RejectionCause,
    Verification,
    VerificationStatus,
)
from agency_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MEMBERSHIP_ACTIONS = ("approve", "reject")
INVITATION_ACTIONS = ("accept", "reject")
MEMBER_FILTERS = ("active", "pending", "all")
MAX_MEMBER_PAGE_SIZE = 100


def clamp_commission(rate: float) -> float:
    """Commission rates live in [0, 1]."""
    return min(max(float(rate), 0.0), 1.0)


@dataclass
class TransitionResult:
    """Outcome of a membership transition."""

    membership: Membership
    cancelled_count: int = 0
    reapplication: bool = False


@dataclass
class InvitationResult:
    """Outcome of an invitation response."""

    invitation: Invitation
    membership: Optional[Membership] = None
    cancelled_count: int = 0


@dataclass
class LeaveResult:
    """Outcome of a departure (leave or removal)."""

    membership: Membership
    former_agency_id: uuid.UUID
    verification_removed: bool


class MembershipEngine:
    """
    Transactional core for joining, inviting, approving and leaving.

    Args:
        session_factory: Session factory bound to the ledger database
        settings: Policy and retry configuration
        fanout: Post-commit side-effect dispatcher
        clock: Source of naive-UTC "now"
        policy: Eligibility facade used for the pre-transaction checks
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        fanout: Optional[NotificationFanout] = None,
        clock: Clock = utcnow,
        policy: Optional[EligibilityPolicy] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = ledger.LedgerStore(session_factory, self.settings)
        self.session_factory = self.store.session_factory
        self.clock = clock
        self.policy = policy or EligibilityPolicy(self.session_factory, self.settings, clock)
        self.fanout = fanout or NotificationFanout(
            session_factory=self.session_factory, settings=self.settings, clock=clock
        )

    def _dispatch(self, effects: Iterable[SideEffect]) -> None:
        self.fanout.dispatch(effects)

    @staticmethod
    async def _active_escort(db: AsyncSession, escort_id: uuid.UUID) -> Escort:
        escort = await ledger.claim_escort(db, escort_id)
        if not escort.is_active:
            raise NotFoundError(
                f"Escort {escort_id} is inactive",
                error_code="ESCORT_NOT_FOUND",
                user_message="Escort profile not found",
                escort_id=escort_id,
            )
        return escort

    @staticmethod
    async def _ensure_not_active_elsewhere(db: AsyncSession, escort_id: uuid.UUID) -> None:
        """Re-check under the claim: a committed activation makes this one lose."""
        active = await ledger.find_active_membership(db, escort_id)
        if active is not None:
            metrics.record_conflict("ESCORT_ALREADY_ACCEPTED_ELSEWHERE")
            logger.warning(
                "activation_lost_race",
                escort_id=str(escort_id),
                active_membership_id=str(active.id),
                active_agency_id=str(active.agency_id),
            )
            raise ConflictError(
                "Escort was accepted by another agency",
                error_code="ESCORT_ALREADY_ACCEPTED_ELSEWHERE",
                active_agency_id=active.agency_id,
            )

    async def _cancellation_notices(
        self,
        db: AsyncSession,
        escort: Escort,
        cancelled: List[Membership],
        joined_agency: Agency,
    ) -> List[SideEffect]:
        if not cancelled:
            return []
        agency_ids = {m.agency_id for m in cancelled}
        result = await db.execute(select(Agency).where(Agency.id.in_(agency_ids)))
        user_ids = {agency.id: agency.user_id for agency in result.scalars()}
        return [
            Notice(
                user_id=user_ids[m.agency_id],
                type="MEMBERSHIP_AUTO_CANCELLED",
                title="Membership request withdrawn",
                message=f"{escort.display_name} joined another agency",
                payload={
                    "membership_id": str(m.id),
                    "escort_id": str(escort.id),
                    "joined_agency_id": str(joined_agency.id),
                },
                aggregate_id=m.id,
            )
            for m in cancelled
            if m.agency_id in user_ids
        ]

    async def _activate(
        self,
        db: AsyncSession,
        escort: Escort,
        membership: Membership,
        agency: Agency,
    ) -> Tuple[int, List[SideEffect]]:
        """Counter increments plus the cascade for a freshly ACTIVE membership."""
        now = self.clock()
        await ledger.bump_counters(db, agency.id, total_escorts=1, active_escorts=1)
        cancelled = await ledger.cascade_auto_cancel(
            db, escort.id, membership.id, agency.display_name, now
        )
        notices = await self._cancellation_notices(db, escort, cancelled, agency)
        return len(cancelled), notices

    # ========================================================================
    # ESCORT-INITIATED
    # ========================================================================

    async def request_join(
        self, escort_id: uuid.UUID, agency_id: uuid.UUID, message: Optional[str] = None
    ) -> TransitionResult:
        """
        Ask to join an agency.

        A previously REJECTED pair row is reused and flipped back to PENDING.

        Raises:
            EligibilityError: ACTIVE_MEMBERSHIP, PENDING_REQUESTS
            ConflictError: MEMBERSHIP_PENDING, MEMBERSHIP_ACTIVE
            NotFoundError: ESCORT_NOT_FOUND, AGENCY_NOT_FOUND
        """
        (await self.policy.check_join(escort_id)).raise_if_denied()

        async def body(db: AsyncSession) -> Tuple[TransitionResult, List[SideEffect]]:
            now = self.clock()
            escort = await self._active_escort(db, escort_id)
            agency = await ledger.load_agency(db, agency_id)

            active = await ledger.find_active_membership(db, escort_id)
            active_name = None
            if active is not None:
                active_agency = await ledger.get_fresh(db, Agency, active.agency_id)
                active_name = active_agency.display_name if active_agency else None
            snapshot = EscortSnapshot(
                escort=escort,
                active_membership=active,
                active_agency_name=active_name,
                pending_count=await ledger.count_pending(db, escort_id),
            )
            can_join(snapshot, self.settings.allow_concurrent_join_requests).raise_if_denied()

            membership = await ledger.find_pair_membership(db, escort_id, agency_id)
            reapplication = False
            if membership is not None:
                if membership.status == MembershipStatus.PENDING.value:
                    raise ConflictError(
                        "A request to this agency is already pending",
                        error_code="MEMBERSHIP_PENDING",
                        membership_id=membership.id,
                    )
                if membership.status == MembershipStatus.ACTIVE.value:
                    raise ConflictError(
                        "Escort is already a member of this agency",
                        error_code="MEMBERSHIP_ACTIVE",
                        membership_id=membership.id,
                    )
                assert_transition("membership", membership.status, MembershipStatus.PENDING.value)
                membership.status = MembershipStatus.PENDING.value
                membership.message = message
                membership.rejection_cause = None
                membership.rejection_reason = None
                membership.rejected_at = None
                membership.approved_by = None
                membership.approved_at = None
                membership.commission_rate = None
                membership.updated_at = now
                reapplication = True
            else:
                assert_transition("membership", None, MembershipStatus.PENDING.value)
                membership = Membership(
                    escort_id=escort_id,
                    agency_id=agency_id,
                    status=MembershipStatus.PENDING.value,
                    message=message,
                    created_at=now,
                    updated_at=now,
                )
                db.add(membership)
            await db.flush()

            notice = Notice(
                user_id=agency.user_id,
                type="MEMBERSHIP_REQUEST",
                title="Membership reapplication" if reapplication else "New membership request",
                message=f"{escort.display_name} wants to join your agency",
                payload={
                    "membership_id": str(membership.id),
                    "escort_id": str(escort_id),
                    "reapplication": reapplication,
                },
                aggregate_id=membership.id,
            )
            return TransitionResult(membership, reapplication=reapplication), [notice]

        result, effects = await self.store.run(
            "request_join", body, escort_id=escort_id, agency_id=agency_id
        )
        logger.info(
            "membership_requested",
            membership_id=str(result.membership.id),
            escort_id=str(escort_id),
            agency_id=str(agency_id),
            reapplication=result.reapplication,
        )
        self._dispatch(effects)
        return result

    async def cancel_own_request(
        self,
        membership_id: uuid.UUID,
        reason: Optional[str] = None,
        escort_id: Optional[uuid.UUID] = None,
    ) -> TransitionResult:
        """
        Withdraw a PENDING request.

        Raises:
            NotFoundError: REQUEST_NOT_FOUND
        """

        def not_found() -> NotFoundError:
            return NotFoundError(
                f"Pending request {membership_id} not found",
                error_code="REQUEST_NOT_FOUND",
                user_message="Request not found or already processed",
                membership_id=membership_id,
            )

        async def body(db: AsyncSession) -> Tuple[TransitionResult, List[SideEffect]]:
            membership = await ledger.get_fresh(db, Membership, membership_id)
            if membership is None or (escort_id is not None and membership.escort_id != escort_id):
                raise not_found()
            escort = await ledger.claim_escort(db, membership.escort_id)
            membership = await ledger.get_fresh(db, Membership, membership_id)
            if membership is None or membership.status != MembershipStatus.PENDING.value:
                raise not_found()

            ledger.reject_membership(
                membership,
                RejectionCause.CANCELLED_BY_ESCORT,
                reason or "Cancelled by escort",
                self.clock(),
            )
            await db.flush()

            agency = await ledger.load_agency(db, membership.agency_id, require_active=False)
            notice = Notice(
                user_id=agency.user_id,
                type="MEMBERSHIP_CANCELLED",
                title="Membership request cancelled",
                message=f"{escort.display_name} cancelled their membership request",
                payload={"membership_id": str(membership.id), "reason": reason},
                aggregate_id=membership.id,
            )
            return TransitionResult(membership), [notice]

        result, effects = await self.store.run(
            "cancel_own_request", body, membership_id=membership_id
        )
        logger.info("membership_request_cancelled", membership_id=str(membership_id))
        self._dispatch(effects)
        return result

    async def respond_to_invitation(
        self,
        invitation_id: uuid.UUID,
        action: str,
        escort_id: Optional[uuid.UUID] = None,
        message: Optional[str] = None,
    ) -> InvitationResult:
        """
        Accept or reject a live invitation.

        Accepting promotes the pair's existing membership row if there is
        one, otherwise creates a new ACTIVE membership from the invitation's
        terms, and auto-cancels the escort's other pending requests.

        Raises:
            ValidationError: INVALID_ACTION
            NotFoundError: INVITATION_NOT_FOUND, AGENCY_NOT_FOUND
            ConflictError: ESCORT_ALREADY_ACCEPTED_ELSEWHERE
        """
        action = (action or "").lower()
        if action not in INVITATION_ACTIONS:
            raise ValidationError(
                f"Invalid invitation action: {action!r}",
                error_code="INVALID_ACTION",
                user_message="Action must be 'accept' or 'reject'",
                allowed=list(INVITATION_ACTIONS),
            )

        def not_found() -> NotFoundError:
            return NotFoundError(
                f"Invitation {invitation_id} not found, answered or expired",
                error_code="INVITATION_NOT_FOUND",
                user_message="Invitation not found or expired",
                invitation_id=invitation_id,
            )

        async def body(db: AsyncSession) -> Tuple[InvitationResult, List[SideEffect]]:
            now = self.clock()
            invitation = await ledger.get_fresh(db, Invitation, invitation_id)
            if invitation is None or (escort_id is not None and invitation.escort_id != escort_id):
                raise not_found()
            escort = await ledger.claim_escort(db, invitation.escort_id)
            invitation = await ledger.get_fresh(db, Invitation, invitation_id)
            if invitation is None or not invitation.is_live(now):
                raise not_found()
            agency = await ledger.load_agency(db, invitation.agency_id, require_active=False)

            if action == "reject":
                assert_transition("invitation", invitation.status, InvitationStatus.REJECTED.value)
                invitation.status = InvitationStatus.REJECTED.value
                invitation.responded_at = now
                await db.flush()
                notice = Notice(
                    user_id=agency.user_id,
                    type="AGENCY_INVITE",
                    title="Invitation declined",
                    message=f"{escort.display_name} declined your invitation",
                    payload={"invitation_id": str(invitation.id), "accepted": False, "message": message},
                    aggregate_id=invitation.id,
                    aggregate_type="invitation",
                )
                return InvitationResult(invitation), [notice]

            await self._ensure_not_active_elsewhere(db, escort.id)
            if not agency.is_active:
                raise NotFoundError(
                    f"Agency {agency.id} is inactive",
                    error_code="AGENCY_NOT_FOUND",
                    user_message="Agency not found or inactive",
                    agency_id=agency.id,
                )

            membership = await ledger.find_pair_membership(db, escort.id, agency.id)
            if membership is None:
                assert_transition("membership", None, MembershipStatus.ACTIVE.value)
                membership = Membership(
                    escort_id=escort.id,
                    agency_id=agency.id,
                    created_at=now,
                )
                db.add(membership)
            else:
                assert_transition("membership", membership.status, MembershipStatus.ACTIVE.value)
            membership.status = MembershipStatus.ACTIVE.value
            membership.role = invitation.proposed_role
            membership.commission_rate = clamp_commission(invitation.proposed_commission)
            membership.approved_by = invitation.invited_by
            membership.approved_at = now
            membership.rejection_cause = None
            membership.rejection_reason = None
            membership.rejected_at = None
            membership.updated_at = now
            if message is not None:
                membership.message = message
            await db.flush()

            assert_transition("invitation", invitation.status, InvitationStatus.ACCEPTED.value)
            invitation.status = InvitationStatus.ACCEPTED.value
            invitation.responded_at = now

            cancelled_count, effects = await self._activate(db, escort, membership, agency)
            effects.insert(
                0,
                Notice(
                    user_id=agency.user_id,
                    type="AGENCY_INVITE",
                    title="Invitation accepted",
                    message=f"{escort.display_name} accepted your invitation",
                    payload={
                        "invitation_id": str(invitation.id),
                        "membership_id": str(membership.id),
                        "accepted": True,
                        "message": message,
                    },
                    aggregate_id=invitation.id,
                    aggregate_type="invitation",
                ),
            )
            return InvitationResult(invitation, membership, cancelled_count), effects

        result, effects = await self.store.run(
            "respond_to_invitation", body, invitation_id=invitation_id
        )
        logger.info(
            "invitation_answered",
            invitation_id=str(invitation_id),
            action=action,
            membership_id=str(result.membership.id) if result.membership else None,
            cancelled_count=result.cancelled_count,
        )
        self._dispatch(effects)
        return result

    async def leave_agency(
        self, escort_id: uuid.UUID, reason: Optional[str] = None
    ) -> LeaveResult:
        """
        Leave the current agency.

        A verified escort is held back until the grace period after
        verification has passed; leaving strips the verification.

        Raises:
            NotFoundError: ESCORT_NOT_FOUND, NO_ACTIVE_MEMBERSHIP
            EligibilityError: VERIFICATION_GRACE_PERIOD
        """
        (await self.policy.check_leave(escort_id)).raise_if_denied()

        async def body(db: AsyncSession) -> Tuple[LeaveResult, List[SideEffect]]:
            now = self.clock()
            escort = await ledger.claim_escort(db, escort_id)
            active = await ledger.find_active_membership(db, escort_id)
            if active is None:
                raise NotFoundError(
                    "Escort has no active membership",
                    error_code="NO_ACTIVE_MEMBERSHIP",
                    user_message="You are not a member of any agency",
                    escort_id=escort_id,
                )
            can_leave(escort, now, self.settings.grace_period_days).raise_if_denied()

            result = await self._depart(
                db, escort, active, RejectionCause.LEFT_VOLUNTARILY, reason or "Left voluntarily"
            )
            agency = await ledger.load_agency(db, active.agency_id, require_active=False)
            notice = Notice(
                user_id=agency.user_id,
                type="MEMBERSHIP_LEFT",
                title="Escort left the agency",
                message=f"{escort.display_name} has left your agency"
                + (f". Reason: {reason}" if reason else ""),
                payload={
                    "membership_id": str(active.id),
                    "escort_id": str(escort_id),
                    "verification_removed": result.verification_removed,
                },
                aggregate_id=active.id,
            )
            return result, [notice]

        result, effects = await self.store.run("leave_agency", body, escort_id=escort_id)
        logger.info(
            "membership_left",
            escort_id=str(escort_id),
            former_agency_id=str(result.former_agency_id),
            verification_removed=result.verification_removed,
        )
        self._dispatch(effects)
        return result

    # ========================================================================
    # AGENCY-INITIATED
    # ========================================================================

    async def invite(
        self,
        agency_id: uuid.UUID,
        escort_id: uuid.UUID,
        proposed_commission: Optional[float] = None,
        proposed_role: str = "MEMBER",
        message: Optional[str] = None,
        proposed_benefits: Optional[Any] = None,
        invited_by: Optional[uuid.UUID] = None,
    ) -> Invitation:
        """
        Invite an escort to join.

        Raises:
            NotFoundError: ESCORT_NOT_FOUND, AGENCY_NOT_FOUND
            ConflictError: ESCORT_ALREADY_HAS_AGENCY, INVITATION_EXISTS,
                ESCORT_ALREADY_MEMBER
        """
        commission = clamp_commission(
            self.settings.default_invitation_commission
            if proposed_commission is None
            else proposed_commission
        )

        async def body(db: AsyncSession) -> Tuple[Invitation, List[SideEffect]]:
            now = self.clock()
            escort = await self._active_escort(db, escort_id)
            agency = await ledger.load_agency(db, agency_id)

            if await ledger.find_active_membership(db, escort_id) is not None:
                raise ConflictError(
                    "Escort already belongs to an agency",
                    error_code="ESCORT_ALREADY_HAS_AGENCY",
                    escort_id=escort_id,
                )

            existing = await db.execute(
                select(Invitation.id).where(
                    Invitation.agency_id == agency_id,
                    Invitation.escort_id == escort_id,
                    Invitation.status == InvitationStatus.PENDING.value,
                    Invitation.expires_at > now,
                )
            )
            existing_id = existing.scalars().first()
            if existing_id is not None:
                raise ConflictError(
                    "A pending invitation to this escort already exists",
                    error_code="INVITATION_EXISTS",
                    invitation_id=existing_id,
                )

            pair = await ledger.find_pair_membership(db, escort_id, agency_id)
            if pair is not None and pair.status in (
                MembershipStatus.PENDING.value,
                MembershipStatus.ACTIVE.value,
            ):
                raise ConflictError(
                    "Escort already has a membership with this agency",
                    error_code="ESCORT_ALREADY_MEMBER",
                    membership_id=pair.id,
                    membership_status=pair.status,
                )

            assert_transition("invitation", None, InvitationStatus.PENDING.value)
            invitation = Invitation(
                agency_id=agency_id,
                escort_id=escort_id,
                status=InvitationStatus.PENDING.value,
                message=message,
                proposed_commission=commission,
                proposed_role=proposed_role or "MEMBER",
                proposed_benefits=proposed_benefits,
                invited_by=invited_by or agency.user_id,
                expires_at=now + timedelta(days=self.settings.invitation_ttl_days),
                created_at=now,
            )
            db.add(invitation)
            await db.flush()

            notice = Notice(
                user_id=escort.user_id,
                type="AGENCY_INVITE",
                title="Agency invitation",
                message=f"{agency.display_name} has invited you to join their agency",
                payload={
                    "invitation_id": str(invitation.id),
                    "agency_id": str(agency_id),
                    "proposed_commission": commission,
                    "proposed_role": invitation.proposed_role,
                    "expires_at": invitation.expires_at.isoformat(),
                },
                aggregate_id=invitation.id,
                aggregate_type="invitation",
            )
            return invitation, [notice]

        invitation, effects = await self.store.run(
            "invite", body, agency_id=agency_id, escort_id=escort_id
        )
        logger.info(
            "escort_invited",
            invitation_id=str(invitation.id),
            agency_id=str(agency_id),
            escort_id=str(escort_id),
        )
        self._dispatch(effects)
        return invitation

    async def manage_membership_request(
        self,
        membership_id: uuid.UUID,
        action: str,
        commission_rate: Optional[float] = None,
        agency_id: Optional[uuid.UUID] = None,
        message: Optional[str] = None,
        approved_by: Optional[uuid.UUID] = None,
    ) -> TransitionResult:
        """
        Approve or reject a PENDING request.

        Approval re-checks, under the escort claim, that no other agency
        activated the escort first; the loser of a race gets
        ESCORT_ALREADY_ACCEPTED_ELSEWHERE.

        Raises:
            ValidationError: INVALID_ACTION
            NotFoundError: MEMBERSHIP_NOT_FOUND, AGENCY_NOT_FOUND
            ConflictError: ESCORT_ALREADY_ACCEPTED_ELSEWHERE
        """
        action = (action or "").lower()
        if action not in MEMBERSHIP_ACTIONS:
            raise ValidationError(
                f"Invalid membership action: {action!r}",
                error_code="INVALID_ACTION",
                user_message="Action must be 'approve' or 'reject'",
                allowed=list(MEMBERSHIP_ACTIONS),
            )

        def not_found() -> NotFoundError:
            return NotFoundError(
                f"Pending membership {membership_id} not found",
                error_code="MEMBERSHIP_NOT_FOUND",
                user_message="Membership request not found or already processed",
                membership_id=membership_id,
            )

        async def body(db: AsyncSession) -> Tuple[TransitionResult, List[SideEffect]]:
            now = self.clock()
            membership = await ledger.get_fresh(db, Membership, membership_id)
            if membership is None or (agency_id is not None and membership.agency_id != agency_id):
                raise not_found()
            escort = await ledger.claim_escort(db, membership.escort_id)

            if action == "approve":
                await self._ensure_not_active_elsewhere(db, escort.id)
            membership = await ledger.get_fresh(db, Membership, membership_id)
            if membership is None or membership.status != MembershipStatus.PENDING.value:
                raise not_found()
            agency = await ledger.load_agency(
                db, membership.agency_id, require_active=(action == "approve")
            )

            if action == "reject":
                ledger.reject_membership(
                    membership,
                    RejectionCause.REJECTED_BY_AGENCY,
                    message or "Rejected by agency",
                    now,
                )
                await db.flush()
                notice = Notice(
                    user_id=escort.user_id,
                    type="MEMBERSHIP_REQUEST",
                    title="Membership request rejected",
                    message=f"{agency.display_name} rejected your membership request"
                    + (f": {message}" if message else ""),
                    payload={"membership_id": str(membership.id), "approved": False},
                    aggregate_id=membership.id,
                )
                return TransitionResult(membership), [notice]

            if commission_rate is not None:
                rate = commission_rate
            elif membership.commission_rate is not None:
                rate = membership.commission_rate
            else:
                rate = agency.default_commission_rate
            assert_transition("membership", membership.status, MembershipStatus.ACTIVE.value)
            membership.status = MembershipStatus.ACTIVE.value
            membership.commission_rate = clamp_commission(rate)
            membership.approved_by = approved_by or agency.user_id
            membership.approved_at = now
            membership.updated_at = now
            await db.flush()

            cancelled_count, effects = await self._activate(db, escort, membership, agency)
            effects.insert(
                0,
                Notice(
                    user_id=escort.user_id,
                    type="MEMBERSHIP_REQUEST",
                    title="Membership request approved",
                    message=f"{agency.display_name} approved your membership request"
                    + (f": {message}" if message else ""),
                    payload={
                        "membership_id": str(membership.id),
                        "approved": True,
                        "commission_rate": membership.commission_rate,
                    },
                    aggregate_id=membership.id,
                ),
            )
            return TransitionResult(membership, cancelled_count), effects

        result, effects = await self.store.run(
            "manage_membership_request", body, membership_id=membership_id
        )
        logger.info(
            "membership_request_managed",
            membership_id=str(membership_id),
            action=action,
            cancelled_count=result.cancelled_count,
        )
        self._dispatch(effects)
        return result

    async def remove_escort(
        self, agency_id: uuid.UUID, membership_id: uuid.UUID, reason: Optional[str] = None
    ) -> LeaveResult:
        """
        Remove an ACTIVE member. Not subject to the grace period.

        Raises:
            NotFoundError: MEMBERSHIP_NOT_FOUND
        """

        def not_found() -> NotFoundError:
            return NotFoundError(
                f"Active membership {membership_id} not found",
                error_code="MEMBERSHIP_NOT_FOUND",
                user_message="Active membership not found",
                membership_id=membership_id,
            )

        async def body(db: AsyncSession) -> Tuple[LeaveResult, List[SideEffect]]:
            membership = await ledger.get_fresh(db, Membership, membership_id)
            if membership is None or membership.agency_id != agency_id:
                raise not_found()
            escort = await ledger.claim_escort(db, membership.escort_id)
            membership = await ledger.get_fresh(db, Membership, membership_id)
            if membership is None or membership.status != MembershipStatus.ACTIVE.value:
                raise not_found()

            result = await self._depart(
                db, escort, membership, RejectionCause.REMOVED_BY_AGENCY, reason or "Removed by agency"
            )
            agency = await ledger.load_agency(db, agency_id, require_active=False)
            notice = Notice(
                user_id=escort.user_id,
                type="MEMBERSHIP_REMOVED",
                title="Removed from agency",
                message=f"{agency.display_name} removed you from the agency"
                + (f". Reason: {reason}" if reason else ""),
                payload={
                    "membership_id": str(membership.id),
                    "agency_id": str(agency_id),
                    "verification_removed": result.verification_removed,
                },
                aggregate_id=membership.id,
            )
            return result, [notice]

        result, effects = await self.store.run(
            "remove_escort", body, agency_id=agency_id, membership_id=membership_id
        )
        logger.info(
            "membership_removed",
            membership_id=str(membership_id),
            agency_id=str(agency_id),
            verification_removed=result.verification_removed,
        )
        self._dispatch(effects)
        return result

    async def _depart(
        self,
        db: AsyncSession,
        escort: Escort,
        membership: Membership,
        cause: RejectionCause,
        reason: str,
    ) -> LeaveResult:
        """End an ACTIVE membership and strip the escort's verification."""
        now = self.clock()
        ledger.reject_membership(membership, cause, reason, now)
        await ledger.bump_counters(db, membership.agency_id, active_escorts=-1)

        verification_removed = False
        if escort.is_verified:
            verifying_agency_id = escort.verified_by
            held = await db.execute(
                select(Verification).where(
                    Verification.escort_id == escort.id,
                    Verification.status == VerificationStatus.COMPLETED.value,
                )
            )
            for record in held.scalars():
                record.status = VerificationStatus.REVOKED.value
            escort.is_verified = False
            escort.verified_at = None
            escort.verified_by = None
            escort.verification_expires_at = None
            if verifying_agency_id is not None:
                await ledger.bump_counters(db, verifying_agency_id, verified_escorts=-1)
            verification_removed = True
        await db.flush()

        return LeaveResult(
            membership=membership,
            former_agency_id=membership.agency_id,
            verification_removed=verification_removed,
        )

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def get_membership_status(self, escort_id: uuid.UUID) -> Dict[str, Any]:
        """
        Summarize an escort's affiliation and verification.

        Returns:
            Dict[str, Any]: ``status`` is ``agency``, ``pending`` or
            ``independent``
        """
        async with self.session_factory() as db:
            escort = await ledger.get_fresh(db, Escort, escort_id)
            if escort is None:
                raise NotFoundError(
                    f"Escort {escort_id} not found",
                    error_code="ESCORT_NOT_FOUND",
                    user_message="Escort profile not found",
                    escort_id=escort_id,
                )
            rows = await db.execute(
                select(Membership, Agency)
                .join(Agency, Agency.id == Membership.agency_id)
                .where(
                    Membership.escort_id == escort_id,
                    Membership.status.in_(
                        [MembershipStatus.ACTIVE.value, MembershipStatus.PENDING.value]
                    ),
                )
                .order_by(Membership.created_at.desc())
            )
            memberships = rows.all()

        now = self.clock()
        current = None
        pending = []
        for membership, agency in memberships:
            if membership.status == MembershipStatus.ACTIVE.value:
                current = {
                    "membership_id": membership.id,
                    "agency_id": agency.id,
                    "agency_name": agency.display_name,
                    "role": membership.role,
                    "commission_rate": membership.commission_rate,
                    "joined_at": membership.approved_at,
                }
            else:
                pending.append(
                    {
                        "membership_id": membership.id,
                        "agency_id": agency.id,
                        "agency_name": agency.display_name,
                        "requested_at": membership.created_at,
                    }
                )

        if current is not None:
            status = "agency"
        elif pending:
            status = "pending"
        else:
            status = "independent"

        expires_at = escort.verification_expires_at if escort.is_verified else None
        days_until_expiry = None
        if expires_at is not None:
            days_until_expiry = math.ceil((expires_at - now) / timedelta(days=1))
        window = self.settings.renewal_window_days
        return {
            "escort_id": escort.id,
            "status": status,
            "current_agency": current,
            "pending_requests": pending,
            "verification": {
                "is_verified": is_currently_verified(escort, now),
                "verified_by": escort.verified_by,
                "verified_at": escort.verified_at,
                "expires_at": expires_at,
                "days_until_expiry": days_until_expiry,
                "needs_renewal": days_until_expiry is not None and days_until_expiry <= window,
                "expiring_soon": days_until_expiry is not None and 0 < days_until_expiry <= window,
            },
        }

    async def list_invitations(
        self, escort_id: uuid.UUID, status: InvitationStatus = InvitationStatus.PENDING
    ) -> List[Invitation]:
        """
        Invitations addressed to an escort, newest first.

        Expired PENDING invitations are left out even before the sweep
        flips them.
        """
        now = self.clock()
        status_value = InvitationStatus(status).value
        stmt = select(Invitation).where(
            Invitation.escort_id == escort_id,
            Invitation.status == status_value,
        )
        if status_value == InvitationStatus.PENDING.value:
            stmt = stmt.where(Invitation.expires_at > now)
        async with self.session_factory() as db:
            result = await db.execute(stmt.order_by(Invitation.created_at.desc()))
            return list(result.scalars().all())

    async def list_agency_members(
        self,
        agency_id: uuid.UUID,
        status: str = "active",
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Page through an agency's memberships, newest first.

        Args:
            agency_id: Agency whose roster is listed
            status: ``active``, ``pending`` or ``all``
            page: 1-based page number
            limit: Page size, clamped to [1, MAX_MEMBER_PAGE_SIZE]
            search: Case-insensitive match on the escort's display name

        Returns:
            Dict[str, Any]: ``members``, ``pagination`` and ``filters``

        Raises:
            ValidationError: INVALID_STATUS_FILTER
            NotFoundError: AGENCY_NOT_FOUND

        The pending view leaves out requests from escorts who already hold
        an ACTIVE membership anywhere, or whose profile is inactive.
        """
        if status not in MEMBER_FILTERS:
            raise ValidationError(
                f"Invalid member filter: {status}",
                error_code="INVALID_STATUS_FILTER",
                user_message="Status must be active, pending or all",
                status=status,
            )
        page = max(1, page)
        limit = min(MAX_MEMBER_PAGE_SIZE, max(1, limit))

        conditions = [Membership.agency_id == agency_id]
        if status == "active":
            conditions.append(Membership.status == MembershipStatus.ACTIVE.value)
        elif status == "pending":
            active_elsewhere = aliased(Membership)
            conditions.extend(
                [
                    Membership.status == MembershipStatus.PENDING.value,
                    Escort.is_active.is_(True),
                    ~exists().where(
                        active_elsewhere.escort_id == Membership.escort_id,
                        active_elsewhere.status == MembershipStatus.ACTIVE.value,
                    ),
                ]
            )
        if search:
            conditions.append(Escort.display_name.ilike(f"%{search.strip()}%"))

        async with self.session_factory() as db:
            await ledger.load_agency(db, agency_id, require_active=False)
            total = int(
                await db.scalar(
                    select(func.count(Membership.id))
                    .join(Escort, Escort.id == Membership.escort_id)
                    .where(*conditions)
                )
                or 0
            )
            rows = (
                await db.execute(
                    select(Membership, Escort)
                    .join(Escort, Escort.id == Membership.escort_id)
                    .where(*conditions)
                    .order_by(Membership.created_at.desc(), Membership.id)
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).all()

        now = self.clock()
        members = [
            {
                "membership_id": membership.id,
                "escort_id": escort.id,
                "display_name": escort.display_name,
                "status": membership.status,
                "role": membership.role,
                "commission_rate": membership.commission_rate,
                "is_verified": is_currently_verified(escort, now),
                "requested_at": membership.created_at,
                "approved_at": membership.approved_at,
            }
            for membership, escort in rows
        ]
        logger.debug(
            "agency_members_listed",
            agency_id=str(agency_id),
            status=status,
            page=page,
            total=total,
        )
        return {
            "members": members,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
                "has_next": page * limit < total,
                "has_prev": page > 1,
            },
            "filters": {"status": status, "search": search},
        }
