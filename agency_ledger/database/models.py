"""SQLAlchemy database models for the agency membership ledger."""
import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from agency_ledger.clock import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class MembershipStatus(str, enum.Enum):
    """Membership lifecycle states."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"


class RejectionCause(str, enum.Enum):
    """Why a membership ended up REJECTED."""

    REJECTED_BY_AGENCY = "REJECTED_BY_AGENCY"
    CANCELLED_BY_ESCORT = "CANCELLED_BY_ESCORT"
    AUTO_CANCELLED = "AUTO_CANCELLED"
    LEFT_VOLUNTARILY = "LEFT_VOLUNTARILY"
    REMOVED_BY_AGENCY = "REMOVED_BY_AGENCY"


class InvitationStatus(str, enum.Enum):
    """Invitation lifecycle states."""

    PENDING = "PENDING"  # Awaiting response
    ACCEPTED = "ACCEPTED"  # Escort accepted, membership active
    REJECTED = "REJECTED"  # Escort declined
    EXPIRED = "EXPIRED"  # Past expires_at, flipped by the sweep


class VerificationStatus(str, enum.Enum):
    """Verification record states."""

    COMPLETED = "COMPLETED"
    SUPERSEDED = "SUPERSEDED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


def _status_check(column: str, enum_cls: type[enum.Enum], name: str) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Escort(Base):
    """
    Escort ledger row.

    Holds the verification badge state. The membership_version column is
    bumped by every lifecycle transition; that write is what serializes
    concurrent transitions for the same escort.
    """

    __tablename__ = "escorts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    verified_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    verification_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    membership_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_escorts_verified_expiry", "is_verified", "verification_expires_at"),
    )

    def __repr__(self) -> str:
        """String representation of Escort."""
        return (
            f"<Escort(id={self.id}, name={self.display_name!r}, "
            f"verified={self.is_verified})>"
        )


class Agency(Base):
    """
    Agency ledger row with its running counters.

    Counters are only ever changed by atomic increments inside the
    transaction that changes the membership or verification they summarize.
    """

    __tablename__ = "agencies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_escorts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_escorts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    verified_escorts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_verifications: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    default_commission_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.15)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "default_commission_rate >= 0 AND default_commission_rate <= 1",
            name="valid_default_commission",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Agency."""
        return (
            f"<Agency(id={self.id}, name={self.display_name!r}, "
            f"active={self.active_escorts}, verified={self.verified_escorts})>"
        )


class Membership(Base):
    """
    Escort-to-agency affiliation.

    One row per (escort, agency) pair for its whole lifecycle: rejection,
    cancellation and departure are status changes, and reapplication flips
    the same row back to PENDING.
    """

    __tablename__ = "memberships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escort_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escorts.id"), nullable=False, index=True
    )
    agency_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agencies.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="MEMBER")
    commission_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejection_cause: Mapped[str | None] = mapped_column(String(50), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("escort_id", "agency_id", name="uq_membership_escort_agency"),
        _status_check("status", MembershipStatus, "valid_membership_status"),
        _status_check("rejection_cause", RejectionCause, "valid_rejection_cause"),
        CheckConstraint(
            "commission_rate IS NULL OR (commission_rate >= 0 AND commission_rate <= 1)",
            name="valid_commission_rate",
        ),
        Index("idx_memberships_escort_status", "escort_id", "status"),
        Index("idx_memberships_agency_status", "agency_id", "status"),
        # At most one ACTIVE membership per escort
        Index(
            "uq_memberships_one_active",
            "escort_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of Membership."""
        return (
            f"<Membership(id={self.id}, escort={self.escort_id}, "
            f"agency={self.agency_id}, status={self.status})>"
        )


class Invitation(Base):
    """Agency-initiated offer of membership."""

    __tablename__ = "invitations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agency_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agencies.id"), nullable=False, index=True
    )
    escort_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escorts.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    proposed_commission: Mapped[float] = mapped_column(Float, nullable=False)
    proposed_role: Mapped[str] = mapped_column(String(50), nullable=False, default="MEMBER")
    proposed_benefits: Mapped[Any] = mapped_column(
        JSONType, nullable=True
    )
    invited_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        _status_check("status", InvitationStatus, "valid_invitation_status"),
        CheckConstraint(
            "proposed_commission >= 0 AND proposed_commission <= 1",
            name="valid_proposed_commission",
        ),
        Index("idx_invitations_escort_status", "escort_id", "status", "expires_at"),
    )

    def is_live(self, now: datetime) -> bool:
        """Pending and not past its expiry, whatever the sweep has done so far."""
        return self.status == InvitationStatus.PENDING.value and self.expires_at > now

    def __repr__(self) -> str:
        """String representation of Invitation."""
        return (
            f"<Invitation(id={self.id}, agency={self.agency_id}, "
            f"escort={self.escort_id}, status={self.status})>"
        )


class PricingTier(Base):
    """Purchasable verification tier."""

    __tablename__ = "verification_pricing"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost: Mapped[float] = mapped_column(Float, nullable=False)
    features: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    __table_args__ = (
        CheckConstraint("cost > 0", name="positive_cost"),
        CheckConstraint("duration IS NULL OR duration > 0", name="positive_duration"),
    )

    def __repr__(self) -> str:
        """String representation of PricingTier."""
        return f"<PricingTier(id={self.id}, cost={self.cost}, duration={self.duration})>"


class Verification(Base):
    """
    Verification credential issued by an agency to an escort.

    An escort accumulates a history of these; renewals supersede the
    previous COMPLETED record, departure revokes it and the sweep expires it.
    """

    __tablename__ = "verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agency_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agencies.id"), nullable=False, index=True
    )
    escort_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escorts.id"), nullable=False, index=True
    )
    pricing_tier_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tier_name: Mapped[str] = mapped_column(String(255), nullable=False)
    cost: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    is_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    verified_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        _status_check("status", VerificationStatus, "valid_verification_status"),
        Index("idx_verifications_escort_status", "escort_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Verification."""
        return (
            f"<Verification(id={self.id}, escort={self.escort_id}, "
            f"status={self.status}, expires_at={self.expires_at})>"
        )


class OutboxEvent(Base):
    """
    Side effects awaiting redelivery.

    Notifications and trust bumps whose detached delivery exhausted its
    retry budget land here and are replayed by the outbox publisher worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class ReconciliationRun(Base):
    """
    Maintenance run tracking table.

    Stores the results of expiry sweeps, obsolete-request cleanups and
    counter audits.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    run_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
        Index("idx_reconciliation_runs_type_started", "run_type", "started_at"),
    )

    def __repr__(self) -> str:
        """String representation of ReconciliationRun."""
        return (
            f"<ReconciliationRun(id={self.id}, type={self.run_type}, "
            f"status={self.status})>"
        )
