"""
Transactional access to the ledger store.

Every lifecycle transition runs through :class:`LedgerStore.run`, which
opens one transaction, retries it on transient storage failures, and
hands the session to the transition body. The helpers below are the
statements those bodies share: the escort claim, the in-transaction
re-queries, atomic counter increments and the auto-cancel cascade.
"""
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Type, TypeVar

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agency_ledger.config import Settings, get_settings
from agency_ledger.core.exceptions import (
    ConflictError,
    EligibilityError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from agency_ledger.core.state_machine import assert_transition
from agency_ledger.database.connection import get_session_factory
from agency_ledger.database.models import (
    Agency,
    Base,
    Escort,
    Membership,
    MembershipStatus,
    RejectionCause,
)
from agency_ledger.monitoring.logging import transition_context
from agency_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=Base)

# serialization_failure, deadlock_detected, lock_not_available, query_canceled
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014"})
TRANSIENT_MESSAGES = ("database is locked", "database table is locked", "connection", "timeout")


def is_transient(exc: BaseException) -> bool:
    """
    Classify a driver error as retryable.

    Args:
        exc: Exception raised by SQLAlchemy

    Returns:
        bool: True for connection loss, lock timeouts, serialization
        failures and deadlocks
    """
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return True
    text = str(orig).lower()
    return any(marker in text for marker in TRANSIENT_MESSAGES)


def _outcome(exc: BaseException) -> str:
    if isinstance(exc, (ConflictError, EligibilityError)):
        return "conflict"
    if isinstance(exc, (NotFoundError, ValidationError)):
        return "rejected"
    return "error"


class LedgerStore:
    """
    Runs transition bodies inside retried transactions.

    Args:
        session_factory: Session factory bound to the ledger database
        settings: Retry policy source
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()

    async def _run_once(
        self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    return await work(db)
            except DBAPIError as e:
                if is_transient(e):
                    raise TransientStorageError(
                        f"{operation} hit a transient storage failure: {e.orig}",
                        operation=operation,
                    ) from e
                raise

    async def run(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        **context: Any,
    ) -> T:
        """
        Run ``work`` in one transaction, all or nothing.

        Args:
            operation: Operation name for logs and metrics
            work: Coroutine function receiving the transaction's session
            **context: Entity ids bound to every log event of the transition

        Returns:
            Whatever ``work`` returns, after commit

        Raises:
            TransientStorageError: When every attempt hit a transient failure
        """

        def _before_sleep(retry_state: RetryCallState) -> None:
            metrics.record_transaction_retry(operation)
            logger.warning(
                "transaction_retrying",
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.transaction_retry_attempts),
            wait=wait_exponential(
                multiplier=self.settings.transaction_retry_base_delay, max=2.0
            ),
            retry=retry_if_exception_type(TransientStorageError),
            before_sleep=_before_sleep,
            reraise=True,
        )

        start_time = time.time()
        with transition_context(operation, **context):
            try:
                async for attempt in retrying:
                    with attempt:
                        result = await self._run_once(operation, work)
            except Exception as e:
                metrics.record_transition(operation, _outcome(e), time.time() - start_time)
                raise

        metrics.record_transition(operation, "success", time.time() - start_time)
        return result

    async def read(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run a read-only query body in its own session."""
        async with self.session_factory() as db:
            return await work(db)


# ============================================================================
# SHARED STATEMENTS
# ============================================================================

async def claim_escort(db: AsyncSession, escort_id: uuid.UUID) -> Escort:
    """
    Claim the escort row for this transaction.

    The version bump is a write, so it takes the row lock on PostgreSQL and
    the database write lock on SQLite; a concurrent transition for the same
    escort waits here until this transaction ends.

    Raises:
        NotFoundError: ESCORT_NOT_FOUND
    """
    result = await db.execute(
        update(Escort)
        .where(Escort.id == escort_id)
        .values(membership_version=Escort.membership_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(
            f"Escort {escort_id} not found",
            error_code="ESCORT_NOT_FOUND",
            user_message="Escort profile not found",
            escort_id=escort_id,
        )
    escort = (
        await db.execute(
            select(Escort)
            .where(Escort.id == escort_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    return escort


async def get_fresh(
    db: AsyncSession, model: Type[ModelT], row_id: Any, lock: bool = False
) -> Optional[ModelT]:
    """Load a row bypassing the identity map, optionally FOR UPDATE."""
    stmt = select(model).where(model.id == row_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def find_active_membership(
    db: AsyncSession, escort_id: uuid.UUID
) -> Optional[Membership]:
    """The escort's ACTIVE membership, if any."""
    result = await db.execute(
        select(Membership)
        .where(
            Membership.escort_id == escort_id,
            Membership.status == MembershipStatus.ACTIVE.value,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def find_pair_membership(
    db: AsyncSession, escort_id: uuid.UUID, agency_id: uuid.UUID
) -> Optional[Membership]:
    """The membership row for an (escort, agency) pair, if any."""
    result = await db.execute(
        select(Membership)
        .where(Membership.escort_id == escort_id, Membership.agency_id == agency_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def pending_memberships(
    db: AsyncSession, escort_id: uuid.UUID, exclude_id: Optional[uuid.UUID] = None
) -> List[Membership]:
    """PENDING memberships of an escort, oldest first."""
    stmt = select(Membership).where(
        Membership.escort_id == escort_id,
        Membership.status == MembershipStatus.PENDING.value,
    )
    if exclude_id is not None:
        stmt = stmt.where(Membership.id != exclude_id)
    result = await db.execute(
        stmt.order_by(Membership.created_at.asc()).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_pending(db: AsyncSession, escort_id: uuid.UUID) -> int:
    """Number of PENDING memberships of an escort."""
    count = await db.scalar(
        select(func.count(Membership.id)).where(
            Membership.escort_id == escort_id,
            Membership.status == MembershipStatus.PENDING.value,
        )
    )
    return int(count or 0)


async def load_agency(
    db: AsyncSession, agency_id: uuid.UUID, require_active: bool = True
) -> Agency:
    """
    Load an agency.

    Raises:
        NotFoundError: AGENCY_NOT_FOUND
    """
    agency = await get_fresh(db, Agency, agency_id)
    if agency is None or (require_active and not agency.is_active):
        raise NotFoundError(
            f"Agency {agency_id} not found or inactive",
            error_code="AGENCY_NOT_FOUND",
            user_message="Agency not found or inactive",
            agency_id=agency_id,
        )
    return agency


async def bump_counters(db: AsyncSession, agency_id: uuid.UUID, **deltas: int) -> None:
    """
    Apply atomic ``x = x + delta`` increments to agency counters.

    Example:
        await bump_counters(db, agency.id, total_escorts=1, active_escorts=1)
    """
    values = {
        name: getattr(Agency, name) + delta for name, delta in deltas.items() if delta
    }
    if not values:
        return
    await db.execute(
        update(Agency)
        .where(Agency.id == agency_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def reject_membership(
    membership: Membership, cause: RejectionCause, reason: Optional[str], now: datetime
) -> None:
    """Move a membership to REJECTED with its cause."""
    assert_transition("membership", membership.status, MembershipStatus.REJECTED.value)
    membership.status = MembershipStatus.REJECTED.value
    membership.rejection_cause = cause.value
    membership.rejection_reason = reason
    membership.rejected_at = now
    membership.updated_at = now


async def cascade_auto_cancel(
    db: AsyncSession,
    escort_id: uuid.UUID,
    keep_id: Optional[uuid.UUID],
    agency_name: str,
    now: datetime,
) -> List[Membership]:
    """
    Reject every other PENDING request of the escort as AUTO_CANCELLED.

    Returns:
        List[Membership]: The cancelled rows, for notification
    """
    cancelled = await pending_memberships(db, escort_id, exclude_id=keep_id)
    for membership in cancelled:
        reject_membership(
            membership,
            RejectionCause.AUTO_CANCELLED,
            f"Escort joined {agency_name}",
            now,
        )
    if cancelled:
        await db.flush()
        metrics.record_auto_cancellations(len(cancelled))
        logger.info(
            "pending_requests_auto_cancelled",
            escort_id=str(escort_id),
            kept_membership_id=str(keep_id) if keep_id else None,
            cancelled_count=len(cancelled),
        )
    return cancelled
