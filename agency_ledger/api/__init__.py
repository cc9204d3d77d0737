"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    InvitationResponse,
    JoinRequest,
    MembershipResponse,
    MembershipStatusResponse,
    TransitionResponse,
    VerificationResultResponse,
    VerifyRequest,
)

__all__ = [
    "app",
    "create_app",
    "InvitationResponse",
    "JoinRequest",
    "MembershipResponse",
    "MembershipStatusResponse",
    "TransitionResponse",
    "VerificationResultResponse",
    "VerifyRequest",
]
