"""
Outbox publisher background worker.

Continuously polls the outbox table and appends events to a Redis stream.
"""
import asyncio
import json
import signal
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from native_payments.config import get_settings
from native_payments.core.outbox import OutboxPublisher
from native_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class RedisStreamPublisher:
    """Delivers outbox events to a capped Redis stream."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        self.settings = get_settings()
        self.redis_client = redis_client
        self._redis_initialized = redis_client is not None

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None or not self._redis_initialized:
            self.redis_client = await aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    async def __call__(self, event_data: Dict[str, Any]) -> None:
        redis = await self._ensure_redis()
        await redis.xadd(
            self.settings.outbox_stream,
            {
                "event_id": str(event_data["id"]),
                "event_type": event_data["event_type"],
                "aggregate_type": event_data["aggregate_type"],
                "aggregate_id": event_data["aggregate_id"],
                "data": json.dumps(event_data, default=str),
            },
            maxlen=self.settings.outbox_stream_maxlen,
            approximate=True,
        )

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client and self._redis_initialized:
            await self.redis_client.close()


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging("outbox-publisher")
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting", stream=settings.outbox_stream)

    stream = RedisStreamPublisher()
    publisher = OutboxPublisher(
        publisher_func=stream,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_attempts=settings.outbox_max_attempts,
    )

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
        await stream.close()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
