"""
Maintenance background worker.

Runs the expiry sweep and obsolete-request cleanup on a fixed interval,
and the counter audit once a day at the configured hour.
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from agency_ledger.clock import utcnow
from agency_ledger.config import get_settings
from agency_ledger.core.maintenance import ExpirySweeper, LedgerReconciler
from agency_ledger.database.connection import close_db
from agency_ledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def next_audit_time(now: datetime, target_hour: int) -> datetime:
    """
    Next occurrence of ``target_hour`` (UTC) strictly after ``now``.

    Args:
        now: Current time
        target_hour: Hour of day to run (24-hour format)
    """
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return next_run


async def run_maintenance_cycle(
    sweeper: ExpirySweeper, reconciler: LedgerReconciler, audit: bool = False
) -> None:
    """
    Run one sweep and cleanup, plus the counter audit when due.

    A failing step is logged and does not prevent the next one.
    """
    try:
        await sweeper.sweep()
    except Exception as e:
        logger.error("expiry_sweep_execution_error", error=str(e))

    try:
        await reconciler.cleanup_obsolete_requests()
    except Exception as e:
        logger.error("cleanup_execution_error", error=str(e))

    if not audit:
        return

    try:
        await reconciler.audit_counters(repair=False)
    except Exception as e:
        logger.error("counter_audit_execution_error", error=str(e))


async def start_maintenance_worker(
    interval_seconds: Optional[float] = None, audit_hour: Optional[int] = None
) -> None:
    """
    Start the maintenance worker.

    Args:
        interval_seconds: Seconds between sweeps (default from settings)
        audit_hour: UTC hour of the daily counter audit (default from settings)
    """
    settings = get_settings()
    setup_logging(settings, component="maintenance")
    interval = interval_seconds or settings.maintenance_interval_seconds
    hour = settings.counter_audit_hour if audit_hour is None else audit_hour

    logger.info("maintenance_worker_starting", interval_seconds=interval, audit_hour=hour)

    sweeper = ExpirySweeper(settings=settings)
    reconciler = LedgerReconciler(settings=settings)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("maintenance_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    audit_at = next_audit_time(utcnow(), hour)
    logger.info("counter_audit_next_run_scheduled", next_run=audit_at.isoformat())

    try:
        while running:
            now = utcnow()
            audit_due = now >= audit_at
            await run_maintenance_cycle(sweeper, reconciler, audit=audit_due)
            if audit_due:
                audit_at = next_audit_time(now, hour)
                logger.info("counter_audit_next_run_scheduled", next_run=audit_at.isoformat())

            # Sleep in short steps so a shutdown signal is noticed promptly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step

    except Exception as e:
        logger.error("maintenance_worker_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("maintenance_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Ledger maintenance worker")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between sweeps")
    parser.add_argument(
        "--audit-hour", type=int, default=None, help="UTC hour of the daily counter audit (0-23)"
    )
    args = parser.parse_args()

    asyncio.run(start_maintenance_worker(args.interval, args.audit_hour))


if __name__ == "__main__":
    main()
