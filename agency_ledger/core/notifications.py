"""
Post-commit side-effect fan-out.

Transitions hand their side effects (user notifications and trust bumps)
to :class:`NotificationFanout` after their transaction commits. Each one
runs as a detached task with its own retry policy; a delivery that
exhausts its retries is written to the outbox for the publisher worker.
Nothing here can fail a transition that already committed.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Set, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agency_ledger.clock import Clock, utcnow
from agency_ledger.config import Settings, get_settings
from agency_ledger.core.exceptions import SideEffectFailure
from agency_ledger.database.connection import get_session_factory
from agency_ledger.database.models import OutboxEvent
from agency_ledger.integrations import build_notification_client, build_reputation_client
from agency_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NOTIFICATION_EVENT = "notification"
TRUST_BUMP_EVENT = "trust_bump"


@dataclass
class Notice:
    """A user notification produced by a transition."""

    user_id: uuid.UUID
    type: str
    title: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    aggregate_id: Optional[uuid.UUID] = None
    aggregate_type: str = "membership"

    kind = "notification"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "user_id": str(self.user_id),
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "payload": self.payload,
        }


@dataclass
class TrustBump:
    """A trust score adjustment produced by a verification."""

    user_id: uuid.UUID
    delta: int
    aggregate_id: Optional[uuid.UUID] = None
    aggregate_type: str = "verification"

    kind = "trust"

    def to_payload(self) -> Dict[str, Any]:
        return {"user_id": str(self.user_id), "delta": self.delta}


SideEffect = Union[Notice, TrustBump]


class NotificationFanout:
    """
    Dispatches side effects as tracked background tasks.

    Args:
        notifier: Object with an async ``notify`` method
        reputation: Object with an async ``bump_trust`` method
        session_factory: Session factory used for outbox writes
        settings: Retry policy and enablement source
    """

    def __init__(
        self,
        notifier: Optional[Any] = None,
        reputation: Optional[Any] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.notifier = notifier or build_notification_client(self.settings)
        self.reputation = reputation or build_reputation_client(self.settings)
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock
        self._tasks: Set[asyncio.Task[None]] = set()

    def dispatch(self, effects: Iterable[SideEffect]) -> None:
        """
        Schedule delivery of ``effects`` without waiting for it.

        When fan-out is disabled the effects go straight to the outbox.
        """
        for effect in effects:
            if self.settings.fanout_enabled:
                coro = self._deliver(effect)
            else:
                coro = self._to_outbox(effect, "fan-out disabled")
            task = asyncio.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight delivery (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _send(self, effect: SideEffect) -> None:
        if isinstance(effect, Notice):
            await self.notifier.notify(
                effect.user_id, effect.type, effect.title, effect.message, effect.payload
            )
        else:
            await self.reputation.bump_trust(effect.user_id, effect.delta)

    async def _deliver(self, effect: SideEffect) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.fanout_retry_attempts),
            wait=wait_exponential(multiplier=self.settings.fanout_retry_base_delay, max=10.0),
            retry=retry_if_exception_type(SideEffectFailure),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._send(effect)
        except Exception as e:
            logger.warning(
                "side_effect_delivery_failed",
                kind=effect.kind,
                user_id=str(effect.user_id),
                error=str(e),
            )
            await self._to_outbox(effect, str(e))
            return

        metrics.record_fanout(effect.kind, "delivered")
        logger.debug("side_effect_delivered", kind=effect.kind, user_id=str(effect.user_id))

    async def _to_outbox(self, effect: SideEffect, error: str) -> None:
        event_type = NOTIFICATION_EVENT if isinstance(effect, Notice) else TRUST_BUMP_EVENT
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    db.add(
                        OutboxEvent(
                            aggregate_id=effect.aggregate_id or effect.user_id,
                            aggregate_type=effect.aggregate_type,
                            event_type=event_type,
                            payload=effect.to_payload(),
                            last_error=error,
                            created_at=self.clock(),
                        )
                    )
        except Exception as e:
            # The transition already committed; all that is left is the log
            metrics.record_fanout(effect.kind, "lost")
            logger.error(
                "side_effect_lost",
                kind=effect.kind,
                user_id=str(effect.user_id),
                payload=effect.to_payload(),
                error=str(e),
            )
            return

        metrics.record_fanout(effect.kind, "outboxed")
        logger.info("side_effect_outboxed", kind=effect.kind, event_type=event_type)

    async def redeliver(self, event_type: str, payload: Dict[str, Any]) -> None:
        """
        Deliver an outbox event once, without retry or outbox fallback.

        Raises:
            SideEffectFailure: Delivery failed
            ValueError: Unknown event type
        """
        user_id = uuid.UUID(payload["user_id"])
        if event_type == NOTIFICATION_EVENT:
            await self.notifier.notify(
                user_id,
                payload["type"],
                payload["title"],
                payload["message"],
                payload.get("payload") or {},
            )
        elif event_type == TRUST_BUMP_EVENT:
            await self.reputation.bump_trust(user_id, int(payload["delta"]))
        else:
            raise ValueError(f"Unknown outbox event type: {event_type}")

    async def aclose(self) -> None:
        """Drain pending deliveries and close collaborator clients."""
        await self.drain()
        for client in (self.notifier, self.reputation):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
