"""
Exception hierarchy for the membership ledger.

Every error carries a stable error code (for client handling), a user-safe
message and the HTTP status the API layer answers with. Extra keyword
arguments become metadata and are returned to the caller as ``details``.
"""
import uuid
from datetime import date, datetime
from typing import Any, Dict, Optional


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        http_status: int = 500,
        user_message: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.http_status = http_status
        self.user_message = user_message or message
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.user_message,
            "type": self.__class__.__name__,
        }
        if self.metadata:
            body["details"] = {key: _jsonable(value) for key, value in self.metadata.items()}
        return {"error": body}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(error_code={self.error_code!r}, message={self.message!r})"


# ============================================================================
# POLICY ERRORS
# ============================================================================

class EligibilityError(LedgerError):
    """
    A policy predicate said no.

    Codes: ACTIVE_MEMBERSHIP, PENDING_REQUESTS, VERIFICATION_GRACE_PERIOD,
    NOT_ACTIVE_MEMBER, ALREADY_VERIFIED, RENEWAL_NOT_NEEDED.
    """

    def __init__(self, message: str, error_code: str, **kwargs: Any) -> None:
        super().__init__(message=message, error_code=error_code, http_status=409, **kwargs)


class ConflictError(LedgerError):
    """
    The ledger already holds state incompatible with the request.

    ESCORT_ALREADY_ACCEPTED_ELSEWHERE is the code a transition gets when a
    competing activation for the same escort committed first.
    """

    def __init__(self, message: str, error_code: str, **kwargs: Any) -> None:
        super().__init__(message=message, error_code=error_code, http_status=409, **kwargs)


class NotFoundError(LedgerError):
    """Referenced row is missing, inactive or not in the state the operation needs."""

    def __init__(self, message: str, error_code: str, **kwargs: Any) -> None:
        super().__init__(message=message, error_code=error_code, http_status=404, **kwargs)


class ValidationError(LedgerError):
    """Malformed request: unknown action or an illegal state transition."""

    def __init__(self, message: str, error_code: str = "INVALID_ACTION", **kwargs: Any) -> None:
        super().__init__(message=message, error_code=error_code, http_status=400, **kwargs)


# ============================================================================
# INFRASTRUCTURE ERRORS
# ============================================================================

class TransientStorageError(LedgerError):
    """
    Connection loss, lock timeout, serialization failure or deadlock.

    Retried inside the engine; surfaced only once the retry budget is spent.
    """

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(
            message=message,
            error_code="TRANSIENT_STORAGE_ERROR",
            http_status=503,
            user_message="The ledger is busy. Please try again.",
            **kwargs,
        )


class SideEffectFailure(LedgerError):
    """
    A notification or trust bump could not be delivered.

    Raised inside the fan-out only; never reaches a transition's caller.
    """

    def __init__(self, message: str, service: str, **kwargs: Any) -> None:
        super().__init__(
            message=message,
            error_code="SIDE_EFFECT_FAILURE",
            http_status=502,
            service=service,
            **kwargs,
        )
