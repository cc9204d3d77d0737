"""
Outbox redelivery.

Side effects whose detached delivery ran out of retries sit in the outbox
table. The publisher replays them in creation order, marks delivered rows
as published and counts failed attempts; an event that keeps failing is
left alone once it reaches the attempt limit.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agency_ledger.clock import Clock, utcnow
from agency_ledger.config import Settings, get_settings
from agency_ledger.database.connection import get_session_factory
from agency_ledger.database.models import OutboxEvent
from agency_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DeliverFunc = Callable[[str, Dict[str, Any]], Awaitable[None]]


class OutboxPublisher:
    """
    Replays undelivered side effects from the outbox table.

    Args:
        deliver_func: Coroutine taking (event_type, payload), usually
            ``NotificationFanout.redeliver``
        session_factory: Session factory bound to the ledger database
        settings: Batch size, poll interval and attempt limit
    """

    def __init__(
        self,
        deliver_func: DeliverFunc,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.deliver_func = deliver_func
        self.session_factory = session_factory or get_session_factory()
        self.batch_size = self.settings.outbox_batch_size
        self.poll_interval_seconds = self.settings.outbox_poll_interval_seconds
        self.max_attempts = self.settings.outbox_max_attempts
        self.clock = clock
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.published.is_(False),
                OutboxEvent.attempts < self.max_attempts,
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> Optional[str]:
        """
        Deliver a single event.

        Returns:
            Optional[str]: None on success, the error text otherwise
        """
        try:
            await self.deliver_func(event.event_type, event.payload)
        except Exception as e:
            logger.warning(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                attempts=event.attempts + 1,
                error=str(e),
            )
            return str(e)

        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return None

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        start_time = time.time()
        async with self.session_factory() as db, db.begin():
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            logger.info("outbox_batch_processing_started", batch_size=len(events))

            published_ids = []
            failures: Dict[int, str] = {}
            for event in events:
                error = await self._publish_event(event)
                if error is None:
                    published_ids.append(event.id)
                    metrics.record_outbox_event_published(
                        event.event_type, time.time() - start_time
                    )
                else:
                    failures[event.id] = error

            if published_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(published_ids))
                    .values(
                        published=True,
                        published_at=self.clock(),
                        attempts=OutboxEvent.attempts + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
            for event_id, error in failures.items():
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id == event_id)
                    .values(attempts=OutboxEvent.attempts + 1, last_error=error[:1000])
                    .execution_options(synchronize_session=False)
                )

        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
            failed=len(failures),
        )
        return len(published_ids)

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    await self.get_pending_count()

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # Events were processed, check immediately for more
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Get count of undelivered events and publish it as a gauge.

        Returns:
            int: Number of unpublished events
        """
        async with self.session_factory() as db:
            count = await db.scalar(
                select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
            )
        metrics.set_outbox_queue_depth(count or 0)
        return int(count or 0)
