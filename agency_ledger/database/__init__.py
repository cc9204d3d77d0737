"""Database package for the agency ledger."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Agency,
    Base,
    Escort,
    Invitation,
    InvitationStatus,
    Membership,
    MembershipStatus,
    OutboxEvent,
    PricingTier,
    ReconciliationRun,
    RejectionCause,
    Verification,
    VerificationStatus,
)

__all__ = [
    "Agency",
    "Base",
    "Escort",
    "Invitation",
    "InvitationStatus",
    "Membership",
    "MembershipStatus",
    "OutboxEvent",
    "PricingTier",
    "ReconciliationRun",
    "RejectionCause",
    "Verification",
    "VerificationStatus",
    "get_db",
    "get_session_factory",
    "init_db",
]
