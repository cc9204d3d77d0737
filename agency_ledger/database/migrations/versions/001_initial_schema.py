"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
BigIntId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """Upgrade database schema."""
    # Create escorts table
    op.create_table(
        "escorts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.Column("verified_by", sa.Uuid(), nullable=True),
        sa.Column("verification_expires_at", sa.DateTime(), nullable=True),
        sa.Column("membership_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_index(
        "idx_escorts_verified_expiry",
        "escorts",
        ["is_verified", "verification_expires_at"],
        unique=False,
    )

    # Create agencies table
    op.create_table(
        "agencies",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("total_escorts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_escorts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("verified_escorts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_verifications", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("default_commission_rate", sa.Float(), nullable=False, server_default="0.15"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "default_commission_rate >= 0 AND default_commission_rate <= 1",
            name="valid_default_commission",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    # Create memberships table
    op.create_table(
        "memberships",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("escort_id", sa.Uuid(), nullable=False),
        sa.Column("agency_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False),
        sa.Column("commission_rate", sa.Float(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("approved_by", sa.Uuid(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_cause", sa.String(length=50), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('PENDING', 'ACTIVE', 'REJECTED')", name="valid_membership_status"
        ),
        sa.CheckConstraint(
            "rejection_cause IN ('REJECTED_BY_AGENCY', 'CANCELLED_BY_ESCORT', "
            "'AUTO_CANCELLED', 'LEFT_VOLUNTARILY', 'REMOVED_BY_AGENCY')",
            name="valid_rejection_cause",
        ),
        sa.CheckConstraint(
            "commission_rate IS NULL OR (commission_rate >= 0 AND commission_rate <= 1)",
            name="valid_commission_rate",
        ),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.id"]),
        sa.ForeignKeyConstraint(["escort_id"], ["escorts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("escort_id", "agency_id", name="uq_membership_escort_agency"),
    )
    op.create_index(op.f("ix_memberships_escort_id"), "memberships", ["escort_id"], unique=False)
    op.create_index(op.f("ix_memberships_agency_id"), "memberships", ["agency_id"], unique=False)
    op.create_index(op.f("ix_memberships_status"), "memberships", ["status"], unique=False)
    op.create_index(
        "idx_memberships_escort_status", "memberships", ["escort_id", "status"], unique=False
    )
    op.create_index(
        "idx_memberships_agency_status", "memberships", ["agency_id", "status"], unique=False
    )
    # At most one ACTIVE membership per escort
    op.create_index(
        "uq_memberships_one_active",
        "memberships",
        ["escort_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    # Create invitations table
    op.create_table(
        "invitations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("agency_id", sa.Uuid(), nullable=False),
        sa.Column("escort_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("proposed_commission", sa.Float(), nullable=False),
        sa.Column("proposed_role", sa.String(length=50), nullable=False),
        sa.Column("proposed_benefits", JSONType, nullable=True),
        sa.Column("invited_by", sa.Uuid(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('PENDING', 'ACCEPTED', 'REJECTED', 'EXPIRED')",
            name="valid_invitation_status",
        ),
        sa.CheckConstraint(
            "proposed_commission >= 0 AND proposed_commission <= 1",
            name="valid_proposed_commission",
        ),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.id"]),
        sa.ForeignKeyConstraint(["escort_id"], ["escorts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_invitations_agency_id"), "invitations", ["agency_id"], unique=False)
    op.create_index(op.f("ix_invitations_escort_id"), "invitations", ["escort_id"], unique=False)
    op.create_index(op.f("ix_invitations_status"), "invitations", ["status"], unique=False)
    op.create_index(op.f("ix_invitations_expires_at"), "invitations", ["expires_at"], unique=False)
    op.create_index(
        "idx_invitations_escort_status",
        "invitations",
        ["escort_id", "status", "expires_at"],
        unique=False,
    )

    # Create verification_pricing table
    op.create_table(
        "verification_pricing",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("cost", sa.Float(), nullable=False),
        sa.Column("features", JSONType, nullable=False),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.CheckConstraint("cost > 0", name="positive_cost"),
        sa.CheckConstraint("duration IS NULL OR duration > 0", name="positive_duration"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_verification_pricing_is_active"),
        "verification_pricing",
        ["is_active"],
        unique=False,
    )

    # Create verifications table
    op.create_table(
        "verifications",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("agency_id", sa.Uuid(), nullable=False),
        sa.Column("escort_id", sa.Uuid(), nullable=False),
        sa.Column("pricing_tier_id", sa.String(length=64), nullable=False),
        sa.Column("tier_name", sa.String(length=255), nullable=False),
        sa.Column("cost", sa.Float(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("is_renewal", sa.Boolean(), nullable=False),
        sa.Column("starts_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("verification_notes", sa.Text(), nullable=True),
        sa.Column("verified_by", sa.Uuid(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('COMPLETED', 'SUPERSEDED', 'EXPIRED', 'REVOKED')",
            name="valid_verification_status",
        ),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.id"]),
        sa.ForeignKeyConstraint(["escort_id"], ["escorts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_verifications_agency_id"), "verifications", ["agency_id"], unique=False
    )
    op.create_index(
        op.f("ix_verifications_escort_id"), "verifications", ["escort_id"], unique=False
    )
    op.create_index(op.f("ix_verifications_status"), "verifications", ["status"], unique=False)
    op.create_index(
        op.f("ix_verifications_expires_at"), "verifications", ["expires_at"], unique=False
    )
    op.create_index(
        "idx_verifications_escort_status", "verifications", ["escort_id", "status"], unique=False
    )

    # Create outbox_events table
    op.create_table(
        "outbox_events",
        sa.Column("id", BigIntId, autoincrement=True, nullable=False),
        sa.Column("aggregate_id", sa.Uuid(), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("published_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_outbox_events_published"), "outbox_events", ["published"], unique=False
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        unique=False,
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(
        "idx_outbox_aggregate",
        "outbox_events",
        ["aggregate_id", "aggregate_type"],
        unique=False,
    )

    # Create reconciliation_runs table
    op.create_table(
        "reconciliation_runs",
        sa.Column("id", BigIntId, autoincrement=True, nullable=False),
        sa.Column("run_type", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("details", JSONType, nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_reconciliation_runs_type_started",
        "reconciliation_runs",
        ["run_type", "started_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_reconciliation_runs_type_started", table_name="reconciliation_runs")
    op.drop_table("reconciliation_runs")

    op.drop_index("idx_outbox_aggregate", table_name="outbox_events")
    op.drop_index("idx_outbox_unpublished", table_name="outbox_events")
    op.drop_index(op.f("ix_outbox_events_published"), table_name="outbox_events")
    op.drop_table("outbox_events")

    op.drop_index("idx_verifications_escort_status", table_name="verifications")
    op.drop_index(op.f("ix_verifications_expires_at"), table_name="verifications")
    op.drop_index(op.f("ix_verifications_status"), table_name="verifications")
    op.drop_index(op.f("ix_verifications_escort_id"), table_name="verifications")
    op.drop_index(op.f("ix_verifications_agency_id"), table_name="verifications")
    op.drop_table("verifications")

    op.drop_index(op.f("ix_verification_pricing_is_active"), table_name="verification_pricing")
    op.drop_table("verification_pricing")

    op.drop_index("idx_invitations_escort_status", table_name="invitations")
    op.drop_index(op.f("ix_invitations_expires_at"), table_name="invitations")
    op.drop_index(op.f("ix_invitations_status"), table_name="invitations")
    op.drop_index(op.f("ix_invitations_escort_id"), table_name="invitations")
    op.drop_index(op.f("ix_invitations_agency_id"), table_name="invitations")
    op.drop_table("invitations")

    op.drop_index("uq_memberships_one_active", table_name="memberships")
    op.drop_index("idx_memberships_agency_status", table_name="memberships")
    op.drop_index("idx_memberships_escort_status", table_name="memberships")
    op.drop_index(op.f("ix_memberships_status"), table_name="memberships")
    op.drop_index(op.f("ix_memberships_agency_id"), table_name="memberships")
    op.drop_index(op.f("ix_memberships_escort_id"), table_name="memberships")
    op.drop_table("memberships")

    op.drop_table("agencies")

    op.drop_index("idx_escorts_verified_expiry", table_name="escorts")
    op.drop_table("escorts")
