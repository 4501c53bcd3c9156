"""
Analytics snapshot background worker.

Computes every metric for the previous day once a day at the configured
hour (UTC).
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from native_payments.config import get_settings
from native_payments.core.analytics import AnalyticsService
from native_payments.database.connection import close_db, session_scope
from native_payments.database.types import utcnow
from native_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_nightly_snapshots(analytics: Optional[AnalyticsService] = None) -> int:
    """
    Snapshot yesterday's metrics.

    Returns:
        int: Number of snapshots written
    """
    logger.info("nightly_snapshots_started")
    analytics = analytics or AnalyticsService()

    async with session_scope() as db:
        snapshots = await analytics.snapshot_day(db, method="scheduled")

    logger.info("nightly_snapshots_completed", count=len(snapshots))
    return len(snapshots)


def seconds_until_next_run(target_hour: int, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until the next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Reference time

    Returns:
        float: Seconds until next run
    """
    now = now or utcnow()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # Already past today's run time
    if now >= next_run:
        next_run += timedelta(days=1)

    return (next_run - now).total_seconds()


async def start_snapshot_worker(target_hour: Optional[int] = None) -> None:
    """
    Start the snapshot worker.

    Args:
        target_hour: Hour of day to run (settings value if not provided)
    """
    setup_logging("snapshot-worker")
    target_hour = get_settings().analytics_snapshot_hour if target_hour is None else target_hour

    logger.info("snapshot_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("snapshot_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = seconds_until_next_run(target_hour)
            logger.info("snapshot_next_run_scheduled", seconds_until=seconds_until)

            # Sleep in short steps so a shutdown signal is noticed
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_nightly_snapshots()
            except Exception as e:
                logger.error("snapshot_execution_error", error=str(e))

    finally:
        await close_db()
        logger.info("snapshot_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Analytics snapshot worker")
    parser.add_argument("--hour", type=int, default=None, help="Hour of day to run (0-23, UTC)")
    args = parser.parse_args()

    asyncio.run(start_snapshot_worker(target_hour=args.hour))


if __name__ == "__main__":
    main()
