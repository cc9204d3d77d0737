"""Wall-clock helpers. The ledger stores naive UTC timestamps."""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time without tzinfo, matching the ledger's column type."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
