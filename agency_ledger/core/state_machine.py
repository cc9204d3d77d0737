"""Legal status transitions for memberships and invitations."""
from typing import Dict, FrozenSet, Optional, Tuple

from agency_ledger.core.exceptions import ValidationError
from agency_ledger.database.models import InvitationStatus, MembershipStatus

_M = MembershipStatus
_I = InvitationStatus

# None is the "row does not exist yet" state
MEMBERSHIP_TRANSITIONS: Dict[Optional[str], FrozenSet[str]] = {
    None: frozenset({_M.PENDING.value, _M.ACTIVE.value}),
    _M.PENDING.value: frozenset({_M.ACTIVE.value, _M.REJECTED.value}),
    _M.ACTIVE.value: frozenset({_M.REJECTED.value}),
    # Reapplication, or promotion by an accepted invitation
    _M.REJECTED.value: frozenset({_M.PENDING.value, _M.ACTIVE.value}),
}

INVITATION_TRANSITIONS: Dict[Optional[str], FrozenSet[str]] = {
    None: frozenset({_I.PENDING.value}),
    _I.PENDING.value: frozenset({_I.ACCEPTED.value, _I.REJECTED.value, _I.EXPIRED.value}),
    _I.ACCEPTED.value: frozenset(),
    _I.REJECTED.value: frozenset(),
    _I.EXPIRED.value: frozenset(),
}

_TABLES: Dict[str, Dict[Optional[str], FrozenSet[str]]] = {
    "membership": MEMBERSHIP_TRANSITIONS,
    "invitation": INVITATION_TRANSITIONS,
}


def is_legal(kind: str, current: Optional[str], target: str) -> bool:
    """Whether ``current -> target`` is a legal move for ``kind``."""
    return target in _TABLES[kind].get(current, frozenset())


def assert_transition(kind: str, current: Optional[str], target: str) -> Tuple[Optional[str], str]:
    """
    Check a status move against the transition table.

    Args:
        kind: "membership" or "invitation"
        current: Current status, None for a row about to be created
        target: Requested status

    Raises:
        ValidationError: INVALID_TRANSITION
    """
    if not is_legal(kind, current, target):
        raise ValidationError(
            f"Illegal {kind} transition {current} -> {target}",
            error_code="INVALID_TRANSITION",
            user_message=f"This {kind} cannot move from {current} to {target}",
            current_status=current,
            target_status=target,
        )
    return current, target
