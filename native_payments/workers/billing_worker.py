"""
Billing scheduler background worker.

Bills due subscriptions every poll interval until stopped.
"""
import asyncio
import signal
from typing import Any

import structlog

from native_payments.core.scheduler import BillingScheduler
from native_payments.database.connection import close_db, prepare_database
from native_payments.integrations.registry import get_provider_registry
from native_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_billing_worker() -> None:
    """
    Start the billing worker.

    Runs continuously until stopped.
    """
    setup_logging("billing-worker")

    logger.info("billing_worker_starting")

    registry = get_provider_registry()
    await prepare_database(registry)

    scheduler = BillingScheduler()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("billing_worker_shutdown_signal_received", signal=sig)
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await scheduler.start()
    except Exception as e:
        logger.error("billing_worker_error", error=str(e))
        raise
    finally:
        await registry.close()
        await close_db()
        logger.info("billing_worker_stopped")


def main() -> None:
    asyncio.run(start_billing_worker())


if __name__ == "__main__":
    main()
