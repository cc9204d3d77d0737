"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# REQUESTS
# ============================================================================

class JoinRequest(BaseModel):
    """Request schema for an escort asking to join an agency."""

    escort_id: UUID = Field(..., description="Escort requesting membership")
    agency_id: UUID = Field(..., description="Agency to join")
    message: Optional[str] = Field(default=None, max_length=1000, description="Note to the agency")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "escort_id": "123e4567-e89b-12d3-a456-426614174000",
                    "agency_id": "8f14e45f-ceea-467f-a8f1-0e2b2b1d5c11",
                    "message": "I'd like to work with your agency",
                }
            ]
        }
    }


class CancelRequest(BaseModel):
    """Request schema for withdrawing a pending request."""

    escort_id: Optional[UUID] = Field(default=None, description="Caller; must own the request")
    reason: Optional[str] = Field(default=None, max_length=500, description="Why")


class InviteRequest(BaseModel):
    """Request schema for inviting an escort."""

    agency_id: UUID = Field(..., description="Inviting agency")
    escort_id: UUID = Field(..., description="Invited escort")
    proposed_commission: Optional[float] = Field(
        default=None, description="Commission offered; clamped to [0, 1]"
    )
    proposed_role: str = Field(default="MEMBER", max_length=50, description="Role offered")
    message: Optional[str] = Field(default=None, max_length=1000, description="Note to the escort")
    proposed_benefits: Optional[Any] = Field(default=None, description="Free-form benefits")
    invited_by: Optional[UUID] = Field(default=None, description="User sending the invitation")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "agency_id": "8f14e45f-ceea-467f-a8f1-0e2b2b1d5c11",
                    "escort_id": "123e4567-e89b-12d3-a456-426614174000",
                    "proposed_commission": 0.12,
                    "proposed_role": "MEMBER",
                    "proposed_benefits": ["Priority listing"],
                }
            ]
        }
    }


class InvitationResponseRequest(BaseModel):
    """Request schema for answering an invitation."""

    action: str = Field(..., description="accept or reject")
    escort_id: Optional[UUID] = Field(default=None, description="Caller; must be the invitee")
    message: Optional[str] = Field(default=None, max_length=1000, description="Reply")


class ManageMembershipRequest(BaseModel):
    """Request schema for an agency deciding on a pending request."""

    action: str = Field(..., description="approve or reject")
    commission_rate: Optional[float] = Field(
        default=None, description="Commission on approval; clamped to [0, 1]"
    )
    agency_id: Optional[UUID] = Field(default=None, description="Caller; must own the request")
    message: Optional[str] = Field(default=None, max_length=1000, description="Note to the escort")
    approved_by: Optional[UUID] = Field(default=None, description="Approving user")


class LeaveRequest(BaseModel):
    """Request schema for leaving the current agency."""

    escort_id: UUID = Field(..., description="Departing escort")
    reason: Optional[str] = Field(default=None, max_length=500, description="Why")


class RemoveRequest(BaseModel):
    """Request schema for an agency removing a member."""

    agency_id: UUID = Field(..., description="Removing agency")
    reason: Optional[str] = Field(default=None, max_length=500, description="Why")


class VerifyRequest(BaseModel):
    """Request schema for verifying or renewing an escort."""

    agency_id: UUID = Field(..., description="Verifying agency")
    escort_id: UUID = Field(..., description="Escort to verify")
    pricing_tier_id: str = Field(..., min_length=1, max_length=64, description="Pricing tier")
    notes: Optional[str] = Field(default=None, max_length=2000, description="Verification notes")
    verified_by: Optional[UUID] = Field(default=None, description="Verifying user")

    @field_validator("pricing_tier_id")
    @classmethod
    def validate_tier_id(cls, v: str) -> str:
        """Tier ids are stored without surrounding whitespace."""
        return v.strip()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "agency_id": "8f14e45f-ceea-467f-a8f1-0e2b2b1d5c11",
                    "escort_id": "123e4567-e89b-12d3-a456-426614174000",
                    "pricing_tier_id": "default-premium",
                    "notes": "Documents checked in person",
                }
            ]
        }
    }


# ============================================================================
# RESPONSES
# ============================================================================

class MembershipResponse(BaseModel):
    """Response schema for a membership row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    escort_id: UUID
    agency_id: UUID
    status: str
    role: str
    commission_rate: Optional[float] = None
    message: Optional[str] = None
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    rejection_cause: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TransitionResponse(BaseModel):
    """Response schema for a membership transition."""

    model_config = ConfigDict(from_attributes=True)

    membership: MembershipResponse
    cancelled_count: int = Field(default=0, description="Pending requests auto-cancelled")
    reapplication: bool = Field(default=False, description="A rejected request was reopened")


class InvitationResponse(BaseModel):
    """Response schema for an invitation row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agency_id: UUID
    escort_id: UUID
    status: str
    message: Optional[str] = None
    proposed_commission: float
    proposed_role: str
    proposed_benefits: Optional[Any] = None
    invited_by: UUID
    expires_at: datetime
    responded_at: Optional[datetime] = None
    created_at: datetime


class InvitationResultResponse(BaseModel):
    """Response schema for an invitation answer."""

    model_config = ConfigDict(from_attributes=True)

    invitation: InvitationResponse
    membership: Optional[MembershipResponse] = None
    cancelled_count: int = 0


class LeaveResponse(BaseModel):
    """Response schema for a departure."""

    model_config = ConfigDict(from_attributes=True)

    membership: MembershipResponse
    former_agency_id: UUID
    verification_removed: bool


class VerificationResponse(BaseModel):
    """Response schema for a verification record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agency_id: UUID
    escort_id: UUID
    pricing_tier_id: str
    tier_name: str
    cost: float
    status: str
    is_renewal: bool
    starts_at: datetime
    expires_at: Optional[datetime] = None
    verification_notes: Optional[str] = None
    verified_by: UUID
    completed_at: datetime


class VerificationResultResponse(BaseModel):
    """Response schema for verify and renew."""

    model_config = ConfigDict(from_attributes=True)

    verification: VerificationResponse
    is_renewal: bool


class PricingTierResponse(BaseModel):
    """Response schema for a pricing tier."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    cost: float
    features: List[str] = Field(default_factory=list)
    duration: Optional[int] = Field(default=None, description="Days; null means permanent")


class CurrentAgency(BaseModel):
    membership_id: UUID
    agency_id: UUID
    agency_name: str
    role: str
    commission_rate: Optional[float] = None
    joined_at: Optional[datetime] = None


class PendingRequest(BaseModel):
    membership_id: UUID
    agency_id: UUID
    agency_name: str
    requested_at: datetime


class VerificationStatusResponse(BaseModel):
    is_verified: bool
    verified_by: Optional[UUID] = None
    verified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    needs_renewal: bool
    expiring_soon: bool


class MembershipStatusResponse(BaseModel):
    """Response schema for an escort's affiliation summary."""

    escort_id: UUID
    status: str = Field(..., description="agency, pending or independent")
    current_agency: Optional[CurrentAgency] = None
    pending_requests: List[PendingRequest] = Field(default_factory=list)
    verification: VerificationStatusResponse


class ExpiringVerificationResponse(BaseModel):
    """Response schema for a verification about to expire."""

    verification_id: UUID
    escort_id: UUID
    display_name: str
    pricing_tier_id: str
    tier_name: str
    expires_at: datetime
    days_until_expiry: int


class AgencyMember(BaseModel):
    """One row of an agency's roster."""

    membership_id: UUID
    escort_id: UUID
    display_name: str
    status: str
    role: str
    commission_rate: Optional[float] = None
    is_verified: bool
    requested_at: datetime
    approved_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool


class AgencyMembersResponse(BaseModel):
    """Response schema for a page of an agency's roster."""

    members: List[AgencyMember]
    pagination: Pagination
    filters: Dict[str, Optional[str]]


class AgencyStatsResponse(BaseModel):
    """Response schema for agency statistics."""

    agency_id: UUID
    display_name: str
    counters: Dict[str, int]
    memberships: Dict[str, int]
    invitations: Dict[str, int]
    verifications: Dict[str, float]


class SweepResponse(BaseModel):
    """Response schema for an expiry sweep."""

    run_id: int
    invitations_expired: int
    verifications_expired: int


class CleanupResponse(BaseModel):
    """Response schema for obsolete request cleanup."""

    run_id: int
    escorts: int
    cancelled: int


class CounterAuditResponse(BaseModel):
    """Response schema for a counter audit."""

    run_id: int
    agencies_checked: int
    repaired: bool
    drift: List[Dict[str, Any]] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
