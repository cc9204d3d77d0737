"""
API routes for the membership ledger.

Routes are thin: caller identity arrives in the request body, the engine
does the work, and LedgerError subclasses are turned into JSON error
bodies by the handler registered in ``api.main``.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from agency_ledger.core.maintenance import MaintenanceError
from agency_ledger.database.models import InvitationStatus

from .dependencies import LedgerServices, get_services
from .schemas import (
    AgencyMembersResponse,
    AgencyStatsResponse,
    CancelRequest,
    CleanupResponse,
    CounterAuditResponse,
    ExpiringVerificationResponse,
    HealthCheckResponse,
    InvitationResponse,
    InvitationResponseRequest,
    InvitationResultResponse,
    InviteRequest,
    JoinRequest,
    LeaveRequest,
    LeaveResponse,
    ManageMembershipRequest,
    MembershipStatusResponse,
    PricingTierResponse,
    RemoveRequest,
    SweepResponse,
    TransitionResponse,
    VerificationResultResponse,
    VerifyRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
membership_router = APIRouter(prefix="/memberships", tags=["memberships"])
invitation_router = APIRouter(prefix="/invitations", tags=["invitations"])
escort_router = APIRouter(prefix="/escorts", tags=["escorts"])
verification_router = APIRouter(prefix="/verifications", tags=["verifications"])
agency_router = APIRouter(prefix="/agencies", tags=["agencies"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


# ============================================================================
# MEMBERSHIPS
# ============================================================================

@membership_router.post(
    "/requests",
    response_model=TransitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request to join an agency",
)
async def request_join(
    request: JoinRequest, services: LedgerServices = Depends(get_services)
) -> TransitionResponse:
    """Create a PENDING request, or reopen a rejected one."""
    result = await services.engine.request_join(
        request.escort_id, request.agency_id, request.message
    )
    return TransitionResponse.model_validate(result)


@membership_router.post(
    "/requests/{membership_id}/cancel",
    response_model=TransitionResponse,
    summary="Withdraw a pending request",
)
async def cancel_request(
    membership_id: UUID,
    request: CancelRequest,
    services: LedgerServices = Depends(get_services),
) -> TransitionResponse:
    result = await services.engine.cancel_own_request(
        membership_id, request.reason, escort_id=request.escort_id
    )
    return TransitionResponse.model_validate(result)


@membership_router.post(
    "/requests/{membership_id}/decision",
    response_model=TransitionResponse,
    summary="Approve or reject a pending request",
    description="Approval auto-cancels the escort's other pending requests",
)
async def manage_request(
    membership_id: UUID,
    request: ManageMembershipRequest,
    services: LedgerServices = Depends(get_services),
) -> TransitionResponse:
    result = await services.engine.manage_membership_request(
        membership_id,
        request.action,
        commission_rate=request.commission_rate,
        agency_id=request.agency_id,
        message=request.message,
        approved_by=request.approved_by,
    )
    logger.info(
        "api_membership_decision",
        membership_id=str(membership_id),
        action=request.action,
        cancelled_count=result.cancelled_count,
    )
    return TransitionResponse.model_validate(result)


@membership_router.post(
    "/leave",
    response_model=LeaveResponse,
    summary="Leave the current agency",
    description="Verified escorts cannot leave during the grace period after verification",
)
async def leave_agency(
    request: LeaveRequest, services: LedgerServices = Depends(get_services)
) -> LeaveResponse:
    result = await services.engine.leave_agency(request.escort_id, request.reason)
    return LeaveResponse.model_validate(result)


@membership_router.post(
    "/{membership_id}/remove",
    response_model=LeaveResponse,
    summary="Remove a member from the agency",
)
async def remove_escort(
    membership_id: UUID,
    request: RemoveRequest,
    services: LedgerServices = Depends(get_services),
) -> LeaveResponse:
    result = await services.engine.remove_escort(request.agency_id, membership_id, request.reason)
    return LeaveResponse.model_validate(result)


# ============================================================================
# INVITATIONS
# ============================================================================

@invitation_router.post(
    "",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Invite an escort",
)
async def invite(
    request: InviteRequest, services: LedgerServices = Depends(get_services)
) -> InvitationResponse:
    invitation = await services.engine.invite(
        request.agency_id,
        request.escort_id,
        proposed_commission=request.proposed_commission,
        proposed_role=request.proposed_role,
        message=request.message,
        proposed_benefits=request.proposed_benefits,
        invited_by=request.invited_by,
    )
    return InvitationResponse.model_validate(invitation)


@invitation_router.post(
    "/{invitation_id}/respond",
    response_model=InvitationResultResponse,
    summary="Accept or reject an invitation",
)
async def respond_to_invitation(
    invitation_id: UUID,
    request: InvitationResponseRequest,
    services: LedgerServices = Depends(get_services),
) -> InvitationResultResponse:
    result = await services.engine.respond_to_invitation(
        invitation_id, request.action, escort_id=request.escort_id, message=request.message
    )
    return InvitationResultResponse.model_validate(result)


# ============================================================================
# ESCORTS
# ============================================================================

@escort_router.get(
    "/{escort_id}/membership",
    response_model=MembershipStatusResponse,
    summary="Membership and verification status",
)
async def membership_status(
    escort_id: UUID, services: LedgerServices = Depends(get_services)
) -> Dict[str, Any]:
    return await services.engine.get_membership_status(escort_id)


@escort_router.get(
    "/{escort_id}/invitations",
    response_model=List[InvitationResponse],
    summary="Invitations addressed to an escort",
)
async def escort_invitations(
    escort_id: UUID,
    invitation_status: InvitationStatus = Query(
        default=InvitationStatus.PENDING, alias="status"
    ),
    services: LedgerServices = Depends(get_services),
) -> List[InvitationResponse]:
    invitations = await services.engine.list_invitations(escort_id, invitation_status)
    return [InvitationResponse.model_validate(invitation) for invitation in invitations]


# ============================================================================
# VERIFICATIONS
# ============================================================================

@verification_router.get(
    "/pricing",
    response_model=List[PricingTierResponse],
    summary="Verification pricing tiers",
)
async def verification_pricing(
    services: LedgerServices = Depends(get_services),
) -> List[PricingTierResponse]:
    tiers = await services.catalog.list_tiers()
    return [PricingTierResponse.model_validate(tier) for tier in tiers]


@verification_router.post(
    "",
    response_model=VerificationResultResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Verify an escort",
)
async def verify(
    request: VerifyRequest, services: LedgerServices = Depends(get_services)
) -> VerificationResultResponse:
    result = await services.verification.verify(
        request.agency_id,
        request.escort_id,
        request.pricing_tier_id,
        notes=request.notes,
        verified_by=request.verified_by,
    )
    return VerificationResultResponse.model_validate(result)


@verification_router.post(
    "/renew",
    response_model=VerificationResultResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Renew an expiring verification",
)
async def renew(
    request: VerifyRequest, services: LedgerServices = Depends(get_services)
) -> VerificationResultResponse:
    result = await services.verification.renew(
        request.agency_id,
        request.escort_id,
        request.pricing_tier_id,
        notes=request.notes,
        verified_by=request.verified_by,
    )
    return VerificationResultResponse.model_validate(result)


# ============================================================================
# AGENCIES
# ============================================================================

@agency_router.get(
    "/{agency_id}/verifications/expiring",
    response_model=List[ExpiringVerificationResponse],
    summary="Verifications expiring soon",
)
async def expiring_verifications(
    agency_id: UUID,
    within_days: int = Query(default=7, ge=1, le=365),
    services: LedgerServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.verification.list_expiring_verifications(agency_id, within_days)


@agency_router.get(
    "/{agency_id}/members",
    response_model=AgencyMembersResponse,
    summary="List an agency's members and pending requests",
)
async def agency_members(
    agency_id: UUID,
    status_filter: str = Query(default="active", alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: Optional[str] = Query(default=None, max_length=100),
    services: LedgerServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.engine.list_agency_members(
        agency_id, status=status_filter, page=page, limit=limit, search=search
    )


@agency_router.get(
    "/{agency_id}/stats",
    response_model=AgencyStatsResponse,
    summary="Agency statistics",
)
async def agency_stats(
    agency_id: UUID, services: LedgerServices = Depends(get_services)
) -> Dict[str, Any]:
    return await services.reconciler.agency_stats(agency_id)


# ============================================================================
# ADMIN
# ============================================================================

@admin_router.post("/sweep", response_model=SweepResponse, summary="Run the expiry sweep")
async def run_sweep(services: LedgerServices = Depends(get_services)) -> Dict[str, Any]:
    try:
        return await services.sweeper.sweep()
    except MaintenanceError as e:
        logger.error("api_sweep_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@admin_router.post(
    "/cleanup", response_model=CleanupResponse, summary="Cancel obsolete pending requests"
)
async def run_cleanup(services: LedgerServices = Depends(get_services)) -> Dict[str, Any]:
    try:
        return await services.reconciler.cleanup_obsolete_requests()
    except MaintenanceError as e:
        logger.error("api_cleanup_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@admin_router.post(
    "/audit", response_model=CounterAuditResponse, summary="Audit agency counters"
)
async def run_audit(
    repair: bool = Query(default=False, description="Overwrite drifted counters"),
    services: LedgerServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        return await services.reconciler.audit_counters(repair=repair)
    except MaintenanceError as e:
        logger.error("api_audit_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# ============================================================================
# MONITORING
# ============================================================================

@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: LedgerServices = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: LedgerServices = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: LedgerServices = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
