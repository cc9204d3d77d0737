"""
Out-of-band ledger maintenance.

- ExpirySweeper: flips expired invitations and verifications
- LedgerReconciler: cleans up pre-engine drift and audits agency counters

Nothing here runs on the transition hot path. Every run is recorded in
the reconciliation_runs table.
"""
import time
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from agency_ledger.clock import Clock, utcnow
from agency_ledger.config import Settings, get_settings
from agency_ledger.core import ledger
from agency_ledger.core.exceptions import NotFoundError
from agency_ledger.database.models import (
    Agency,
    Escort,
    Invitation,
    InvitationStatus,
    Membership,
    MembershipStatus,
    ReconciliationRun,
    Verification,
    VerificationStatus,
)
from agency_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Counters the audit can recompute from the ledger. total_escorts counts
# every activation ever made and has no source of truth to compare with.
AUDITED_COUNTERS = ("active_escorts", "verified_escorts", "total_verifications")


class MaintenanceError(Exception):
    """Raised when a maintenance run fails."""


class _MaintenanceJob:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = ledger.LedgerStore(session_factory, self.settings)
        self.session_factory = self.store.session_factory
        self.clock = clock

    async def _start_run(self, run_type: str) -> int:
        async with self.session_factory() as db:
            async with db.begin():
                run = ReconciliationRun(
                    run_type=run_type, status="in_progress", started_at=self.clock()
                )
                db.add(run)
                await db.flush()
                return run.id

    async def _finish_run(self, run_id: int, status: str, details: Dict[str, Any]) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(ReconciliationRun)
                    .where(ReconciliationRun.id == run_id)
                    .values(status=status, details=details, completed_at=self.clock())
                )


class ExpirySweeper(_MaintenanceJob):
    """Expires stale invitations and verifications."""

    async def _expire_invitations(self) -> int:
        now = self.clock()

        async def body(db: AsyncSession) -> int:
            result = await db.execute(
                update(Invitation)
                .where(
                    Invitation.status == InvitationStatus.PENDING.value,
                    Invitation.expires_at <= now,
                )
                .values(status=InvitationStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        return await self.store.run("expire_invitations", body)

    async def _expire_verification(self, escort_id: uuid.UUID) -> bool:
        async def body(db: AsyncSession) -> bool:
            now = self.clock()
            escort = await ledger.claim_escort(db, escort_id)
            # Renewed or departed since the candidate query
            if (
                not escort.is_verified
                or escort.verification_expires_at is None
                or escort.verification_expires_at > now
            ):
                return False

            held = await db.execute(
                select(Verification).where(
                    Verification.escort_id == escort_id,
                    Verification.status == VerificationStatus.COMPLETED.value,
                )
            )
            for record in held.scalars():
                record.status = VerificationStatus.EXPIRED.value

            verifying_agency_id = escort.verified_by
            escort.is_verified = False
            escort.verified_at = None
            escort.verified_by = None
            escort.verification_expires_at = None
            if verifying_agency_id is not None:
                await ledger.bump_counters(db, verifying_agency_id, verified_escorts=-1)
            await db.flush()
            return True

        return await self.store.run("expire_verification", body, escort_id=escort_id)

    async def sweep(self) -> Dict[str, Any]:
        """
        Run one expiry sweep.

        Invitations are flipped in one statement; verifications are expired
        one claimed transaction per escort.

        Returns:
            Dict[str, Any]: Counts of expired invitations and verifications
        """
        start_time = time.time()
        run_id = await self._start_run("expiry_sweep")
        logger.info("expiry_sweep_started", run_id=run_id)

        try:
            invitations_expired = await self._expire_invitations()

            now = self.clock()
            async with self.session_factory() as db:
                candidates = (
                    await db.execute(
                        select(Escort.id).where(
                            Escort.is_verified.is_(True),
                            Escort.verification_expires_at.is_not(None),
                            Escort.verification_expires_at <= now,
                        )
                    )
                ).scalars().all()

            verifications_expired = 0
            for escort_id in candidates:
                if await self._expire_verification(escort_id):
                    verifications_expired += 1
        except Exception as e:
            logger.error("expiry_sweep_failed", run_id=run_id, error=str(e))
            await self._finish_run(run_id, "failed", {"error": str(e)})
            raise MaintenanceError(f"Expiry sweep failed: {str(e)}") from e

        summary = {
            "run_id": run_id,
            "invitations_expired": invitations_expired,
            "verifications_expired": verifications_expired,
        }
        await self._finish_run(run_id, "completed", summary)
        metrics.record_sweep(invitations_expired, verifications_expired)
        metrics.record_maintenance_run("expiry_sweep", time.time() - start_time)
        logger.info("expiry_sweep_completed", **summary)
        return summary


class LedgerReconciler(_MaintenanceJob):
    """
    Repairs drift the transition engine cannot produce but legacy data can.

    Detects:
    - PENDING requests of escorts that already hold an ACTIVE membership
    - Agency counters out of step with the rows they summarize
    """

    async def _cancel_obsolete(self, escort_id: uuid.UUID) -> int:
        async def body(db: AsyncSession) -> int:
            await ledger.claim_escort(db, escort_id)
            active = await ledger.find_active_membership(db, escort_id)
            if active is None:
                return 0
            agency = await ledger.load_agency(db, active.agency_id, require_active=False)
            cancelled = await ledger.cascade_auto_cancel(
                db, escort_id, active.id, agency.display_name, self.clock()
            )
            return len(cancelled)

        return await self.store.run("cleanup_obsolete_requests", body, escort_id=escort_id)

    async def cleanup_obsolete_requests(self) -> Dict[str, Any]:
        """
        Auto-cancel PENDING requests of escorts that already have an agency.

        Returns:
            Dict[str, Any]: Escorts touched and requests cancelled
        """
        start_time = time.time()
        run_id = await self._start_run("obsolete_request_cleanup")

        active = aliased(Membership)
        try:
            async with self.session_factory() as db:
                escort_ids = (
                    await db.execute(
                        select(Membership.escort_id)
                        .join(
                            active,
                            (active.escort_id == Membership.escort_id)
                            & (active.status == MembershipStatus.ACTIVE.value),
                        )
                        .where(Membership.status == MembershipStatus.PENDING.value)
                        .distinct()
                    )
                ).scalars().all()

            cancelled = 0
            for escort_id in escort_ids:
                cancelled += await self._cancel_obsolete(escort_id)
        except Exception as e:
            logger.error("obsolete_request_cleanup_failed", run_id=run_id, error=str(e))
            await self._finish_run(run_id, "failed", {"error": str(e)})
            raise MaintenanceError(f"Obsolete request cleanup failed: {str(e)}") from e

        summary = {"run_id": run_id, "escorts": len(escort_ids), "cancelled": cancelled}
        await self._finish_run(run_id, "completed", summary)
        metrics.record_maintenance_run("obsolete_request_cleanup", time.time() - start_time)
        logger.info("obsolete_request_cleanup_completed", **summary)
        return summary

    @staticmethod
    async def _actual_counters(db: AsyncSession, agency_id: uuid.UUID) -> Dict[str, int]:
        active = await db.scalar(
            select(func.count(Membership.id)).where(
                Membership.agency_id == agency_id,
                Membership.status == MembershipStatus.ACTIVE.value,
            )
        )
        verified = await db.scalar(
            select(func.count(Escort.id)).where(
                Escort.verified_by == agency_id, Escort.is_verified.is_(True)
            )
        )
        verifications = await db.scalar(
            select(func.count(Verification.id)).where(Verification.agency_id == agency_id)
        )
        return {
            "active_escorts": int(active or 0),
            "verified_escorts": int(verified or 0),
            "total_verifications": int(verifications or 0),
        }

    async def _audit_agency(self, agency_id: uuid.UUID, repair: bool) -> List[Dict[str, Any]]:
        async def body(db: AsyncSession) -> List[Dict[str, Any]]:
            agency = await ledger.get_fresh(db, Agency, agency_id, lock=repair)
            if agency is None:
                return []
            actual = await self._actual_counters(db, agency_id)
            drift = [
                {
                    "agency_id": str(agency_id),
                    "counter": name,
                    "stored": getattr(agency, name),
                    "actual": actual[name],
                }
                for name in AUDITED_COUNTERS
                if getattr(agency, name) != actual[name]
            ]
            if drift and repair:
                await db.execute(
                    update(Agency)
                    .where(Agency.id == agency_id)
                    .values(**{item["counter"]: item["actual"] for item in drift})
                    .execution_options(synchronize_session=False)
                )
            return drift

        return await self.store.run("audit_counters", body)

    async def audit_counters(self, repair: bool = False) -> Dict[str, Any]:
        """
        Recompute agency counters and report drift.

        Args:
            repair: Overwrite drifted counters with the recomputed values

        Returns:
            Dict[str, Any]: Agencies checked and the drift found
        """
        start_time = time.time()
        run_id = await self._start_run("counter_audit")

        try:
            async with self.session_factory() as db:
                agency_ids = (await db.execute(select(Agency.id))).scalars().all()

            drift: List[Dict[str, Any]] = []
            for agency_id in agency_ids:
                drift.extend(await self._audit_agency(agency_id, repair))
        except Exception as e:
            logger.error("counter_audit_failed", run_id=run_id, error=str(e))
            await self._finish_run(run_id, "failed", {"error": str(e)})
            raise MaintenanceError(f"Counter audit failed: {str(e)}") from e

        summary = {
            "run_id": run_id,
            "agencies_checked": len(agency_ids),
            "repaired": repair and bool(drift),
            "drift": drift,
        }
        await self._finish_run(
            run_id, "completed", {**summary, "drift": drift[:100]}
        )
        metrics.set_counter_drift(len(drift))
        metrics.record_maintenance_run("counter_audit", time.time() - start_time)
        if drift:
            logger.warning(
                "counter_drift_detected",
                run_id=run_id,
                drift_count=len(drift),
                repaired=summary["repaired"],
            )
        else:
            logger.info("counter_audit_clean", run_id=run_id, agencies_checked=len(agency_ids))
        return summary

    async def agency_stats(self, agency_id: uuid.UUID) -> Dict[str, Any]:
        """
        Membership, invitation and verification figures for one agency.

        Raises:
            NotFoundError: AGENCY_NOT_FOUND
        """
        async with self.session_factory() as db:
            agency = await ledger.get_fresh(db, Agency, agency_id)
            if agency is None:
                raise NotFoundError(
                    f"Agency {agency_id} not found",
                    error_code="AGENCY_NOT_FOUND",
                    user_message="Agency not found",
                    agency_id=agency_id,
                )
            memberships = (
                await db.execute(
                    select(Membership.status, func.count(Membership.id))
                    .where(Membership.agency_id == agency_id)
                    .group_by(Membership.status)
                )
            ).all()
            # Unswept PENDING invitations past expires_at count as EXPIRED
            invitation_status = case(
                (
                    and_(
                        Invitation.status == InvitationStatus.PENDING.value,
                        Invitation.expires_at <= self.clock(),
                    ),
                    InvitationStatus.EXPIRED.value,
                ),
                else_=Invitation.status,
            )
            invitations = (
                await db.execute(
                    select(invitation_status, func.count(Invitation.id))
                    .where(Invitation.agency_id == agency_id)
                    .group_by(invitation_status)
                )
            ).all()
            verification_row = (
                await db.execute(
                    select(
                        func.count(Verification.id).label("count"),
                        func.sum(Verification.cost).label("revenue"),
                    ).where(Verification.agency_id == agency_id)
                )
            ).first()

        membership_counts = {status.value: 0 for status in MembershipStatus}
        membership_counts.update({status: count for status, count in memberships})
        invitation_counts = {status.value: 0 for status in InvitationStatus}
        invitation_counts.update({status: count for status, count in invitations})
        return {
            "agency_id": agency.id,
            "display_name": agency.display_name,
            "counters": {
                "total_escorts": agency.total_escorts,
                "active_escorts": agency.active_escorts,
                "verified_escorts": agency.verified_escorts,
                "total_verifications": agency.total_verifications,
            },
            "memberships": membership_counts,
            "invitations": invitation_counts,
            "verifications": {
                "count": int(verification_row.count or 0) if verification_row else 0,
                "revenue": float(verification_row.revenue or 0) if verification_row else 0.0,
            },
        }

