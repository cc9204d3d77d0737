"""
Outbox publisher background worker.

Continuously polls the outbox table and redelivers side effects that the
detached fan-out could not deliver.
"""
import asyncio
import signal
from typing import Any

import structlog

from agency_ledger.config import get_settings
from agency_ledger.core.notifications import NotificationFanout
from agency_ledger.core.outbox import OutboxPublisher
from agency_ledger.database.connection import close_db
from agency_ledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    settings = get_settings()
    setup_logging(settings, component="outbox")

    logger.info("outbox_publisher_worker_starting")

    fanout = NotificationFanout(settings=settings)
    publisher = OutboxPublisher(deliver_func=fanout.redeliver, settings=settings)

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await fanout.aclose()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
