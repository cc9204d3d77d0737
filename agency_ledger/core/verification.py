"""
Verification issuance, renewal and expiry reporting.

A verification is a paid, time-bounded credential an agency grants one of
its active members. Issuing runs under the same escort claim as the
membership transitions, so a departure and a verification for the same
escort can never interleave.
"""
import math
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agency_ledger.clock import Clock, utcnow
from agency_ledger.config import Settings, get_settings
from agency_ledger.core import ledger
from agency_ledger.core.eligibility import Eligibility, EligibilityPolicy, can_verify
from agency_ledger.core.exceptions import EligibilityError
from agency_ledger.core.notifications import Notice, NotificationFanout, SideEffect, TrustBump
from agency_ledger.core.pricing import PricingCatalog
from agency_ledger.database.models import (
    Escort,
    Membership,
    MembershipStatus,
    PricingTier,
    Verification,
    VerificationStatus,
)
from agency_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class VerificationResult:
    """Outcome of a verify or renew call."""

    verification: Verification
    is_renewal: bool
    tier: PricingTier


def _require(eligibility: Eligibility, require_renewal: bool) -> Eligibility:
    """
    Raise the denial; for renew, anything that is not a renewal is
    RENEWAL_NOT_NEEDED, including a credential outside its window.
    """
    if require_renewal and not eligibility.is_renewal and eligibility.reason in (
        None,
        "ALREADY_VERIFIED",
    ):
        raise EligibilityError(
            "Verification is not due for renewal",
            error_code="RENEWAL_NOT_NEEDED",
            **eligibility.details,
        )
    return eligibility.raise_if_denied()


class VerificationService:
    """
    Issues and renews verifications.

    Args:
        session_factory: Session factory bound to the ledger database
        settings: Policy and retry configuration
        fanout: Post-commit side-effect dispatcher
        catalog: Pricing catalog used to resolve tiers
        clock: Source of naive-UTC "now"
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        fanout: Optional[NotificationFanout] = None,
        catalog: Optional[PricingCatalog] = None,
        clock: Clock = utcnow,
        policy: Optional[EligibilityPolicy] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = ledger.LedgerStore(session_factory, self.settings)
        self.session_factory = self.store.session_factory
        self.clock = clock
        self.catalog = catalog or PricingCatalog(self.session_factory)
        self.policy = policy or EligibilityPolicy(self.session_factory, self.settings, clock)
        self.fanout = fanout or NotificationFanout(
            session_factory=self.session_factory, settings=self.settings, clock=clock
        )

    async def verify(
        self,
        agency_id: uuid.UUID,
        escort_id: uuid.UUID,
        pricing_tier_id: str,
        notes: Optional[str] = None,
        verified_by: Optional[uuid.UUID] = None,
    ) -> VerificationResult:
        """
        Verify an active member, or renew a credential inside its window.

        Raises:
            EligibilityError: NOT_ACTIVE_MEMBER, ALREADY_VERIFIED
            NotFoundError: ESCORT_NOT_FOUND, AGENCY_NOT_FOUND,
                PRICING_TIER_NOT_FOUND
        """
        return await self._issue(agency_id, escort_id, pricing_tier_id, notes, verified_by, False)

    async def renew(
        self,
        agency_id: uuid.UUID,
        escort_id: uuid.UUID,
        pricing_tier_id: str,
        notes: Optional[str] = None,
        verified_by: Optional[uuid.UUID] = None,
    ) -> VerificationResult:
        """
        Like :meth:`verify`, but only for a credential that is due.

        Raises:
            EligibilityError: RENEWAL_NOT_NEEDED, plus everything verify raises
        """
        return await self._issue(agency_id, escort_id, pricing_tier_id, notes, verified_by, True)

    async def _issue(
        self,
        agency_id: uuid.UUID,
        escort_id: uuid.UUID,
        pricing_tier_id: str,
        notes: Optional[str],
        verified_by: Optional[uuid.UUID],
        require_renewal: bool,
    ) -> VerificationResult:
        _require(await self.policy.check_verify(agency_id, escort_id), require_renewal)
        tier = await self.catalog.resolve_tier(pricing_tier_id)

        async def body(db: AsyncSession) -> Tuple[VerificationResult, List[SideEffect]]:
            now = self.clock()
            escort = await ledger.claim_escort(db, escort_id)
            agency = await ledger.load_agency(db, agency_id)
            active = await ledger.find_active_membership(db, escort_id)

            check = _require(
                can_verify(
                    escort,
                    agency_id,
                    active is not None and active.agency_id == agency_id,
                    now,
                    self.settings.renewal_window_days,
                ),
                require_renewal,
            )

            previous_agency_id = escort.verified_by if escort.is_verified else None
            held = await db.execute(
                select(Verification).where(
                    Verification.escort_id == escort_id,
                    Verification.status == VerificationStatus.COMPLETED.value,
                )
            )
            for record in held.scalars():
                record.status = VerificationStatus.SUPERSEDED.value

            expires_at = now + timedelta(days=tier.duration) if tier.duration else None
            verification = Verification(
                agency_id=agency_id,
                escort_id=escort_id,
                pricing_tier_id=tier.id,
                tier_name=tier.name,
                cost=tier.cost,
                status=VerificationStatus.COMPLETED.value,
                is_renewal=check.is_renewal,
                starts_at=now,
                expires_at=expires_at,
                verification_notes=notes,
                verified_by=verified_by or agency.user_id,
                completed_at=now,
            )
            db.add(verification)

            escort.is_verified = True
            escort.verified_at = now
            escort.verified_by = agency_id
            escort.verification_expires_at = expires_at

            if check.is_renewal:
                await ledger.bump_counters(db, agency_id, total_verifications=1)
            else:
                await ledger.bump_counters(
                    db, agency_id, total_verifications=1, verified_escorts=1
                )
                if previous_agency_id is not None and previous_agency_id != agency_id:
                    await ledger.bump_counters(db, previous_agency_id, verified_escorts=-1)
            await db.flush()

            delta = (
                self.settings.renewal_trust_delta
                if check.is_renewal
                else self.settings.first_verification_trust_delta
            )
            effects: List[SideEffect] = [
                TrustBump(user_id=escort.user_id, delta=delta, aggregate_id=verification.id),
                Notice(
                    user_id=escort.user_id,
                    type="VERIFICATION_COMPLETED",
                    title="Verification renewed" if check.is_renewal else "Verification completed",
                    message=f"{agency.display_name} has verified your profile",
                    payload={
                        "verification_id": str(verification.id),
                        "agency_id": str(agency_id),
                        "tier": tier.name,
                        "expires_at": expires_at.isoformat() if expires_at else None,
                        "is_renewal": check.is_renewal,
                    },
                    aggregate_id=verification.id,
                    aggregate_type="verification",
                ),
            ]
            return VerificationResult(verification, check.is_renewal, tier), effects

        result, effects = await self.store.run(
            "renew_verification" if require_renewal else "verify",
            body,
            agency_id=agency_id,
            escort_id=escort_id,
        )
        metrics.record_verification(result.is_renewal, result.tier.cost)
        logger.info(
            "escort_verified",
            verification_id=str(result.verification.id),
            agency_id=str(agency_id),
            escort_id=str(escort_id),
            tier=result.tier.id,
            is_renewal=result.is_renewal,
        )
        self.fanout.dispatch(effects)
        return result

    async def list_expiring_verifications(
        self, agency_id: uuid.UUID, within_days: int = 7
    ) -> List[Dict[str, Any]]:
        """
        Credentials of the agency's active members expiring soon.

        Returns:
            List[Dict[str, Any]]: Ordered by ascending expiry
        """
        now = self.clock()
        horizon = now + timedelta(days=within_days)
        stmt = (
            select(Verification, Escort)
            .join(Escort, Escort.id == Verification.escort_id)
            .join(
                Membership,
                (Membership.escort_id == Verification.escort_id)
                & (Membership.agency_id == Verification.agency_id),
            )
            .where(
                Verification.agency_id == agency_id,
                Verification.status == VerificationStatus.COMPLETED.value,
                Verification.expires_at.is_not(None),
                Verification.expires_at >= now,
                Verification.expires_at <= horizon,
                Membership.status == MembershipStatus.ACTIVE.value,
                Escort.is_verified.is_(True),
                Escort.verified_by == agency_id,
            )
            .order_by(Verification.expires_at.asc())
        )
        async with self.session_factory() as db:
            rows = (await db.execute(stmt)).all()

        return [
            {
                "verification_id": verification.id,
                "escort_id": escort.id,
                "display_name": escort.display_name,
                "pricing_tier_id": verification.pricing_tier_id,
                "tier_name": verification.tier_name,
                "expires_at": verification.expires_at,
                "days_until_expiry": math.ceil(
                    (verification.expires_at - now) / timedelta(days=1)
                ),
            }
            for verification, escort in rows
        ]
