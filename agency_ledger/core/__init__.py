"""Membership and verification lifecycle core."""
from .exceptions import (
    ConflictError,
    EligibilityError,
    LedgerError,
    NotFoundError,
    SideEffectFailure,
    TransientStorageError,
    ValidationError,
)

__all__ = [
    "ConflictError",
    "EligibilityError",
    "LedgerError",
    "NotFoundError",
    "SideEffectFailure",
    "TransientStorageError",
    "ValidationError",
]
