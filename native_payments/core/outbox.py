"""
Transactional outbox relay.

The ledger writes ``outbox_events`` rows in the same transaction as the
payment, invoice or subscription change they describe. This module relays
them to a publisher callable (the Redis stream in production).

Ordering is kept per aggregate: when an event fails, later events of the
same payment or subscription wait for the next batch so consumers never
see ``payment.succeeded`` before ``payment.created``. An event that keeps
failing is parked after ``max_attempts`` deliveries and no longer blocks
its aggregate.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from native_payments.database.connection import get_session_factory
from native_payments.database.models import OutboxEvent
from native_payments.database.types import utcnow
from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Publisher = Callable[[Dict[str, Any]], Awaitable[None]]


def event_to_message(event: OutboxEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "aggregate_id": event.aggregate_id,
        "aggregate_type": event.aggregate_type,
        "event_type": event.event_type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
        "delivery_attempt": event.delivery_attempts + 1,
    }


class OutboxPublisher:
    """
    Polls the outbox and publishes pending events.

    Delivery is at-least-once: an event is marked published only after the
    publisher returned, so consumers must tolerate redelivery (the event id
    is stable across attempts).
    """

    def __init__(
        self,
        publisher_func: Optional[Publisher] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_attempts: int = 10,
    ):
        """
        Args:
            publisher_func: Coroutine delivering one event; raising marks a failure
            batch_size: Events read per poll
            poll_interval_seconds: Sleep between polls when the outbox is empty
            session_factory: Session factory (application factory if not provided)
            max_attempts: Failed deliveries after which an event is parked
        """
        self.publisher_func = publisher_func or self._log_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.session_factory = session_factory or get_session_factory()
        self.max_attempts = max_attempts
        self._running = False

    async def _log_publisher(self, message: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_logged",
            event_type=message["event_type"],
            aggregate_id=message["aggregate_id"],
        )

    def _pending(self) -> Any:
        return (OutboxEvent.published == False) & (  # noqa: E712
            OutboxEvent.delivery_attempts < self.max_attempts
        )

    async def _fetch_pending(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(self._pending())
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def _deliver(self, event: OutboxEvent) -> Optional[str]:
        """Publish one event; returns the error text on failure."""
        try:
            await self.publisher_func(event_to_message(event))
        except Exception as e:
            return f"{type(e).__name__}: {e}"
        metrics.record_outbox_event_published(event.event_type)
        return None

    async def process_batch(self) -> int:
        """
        Relay one batch of pending events.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            events = await self._fetch_pending(db)
            if not events:
                return 0

            published: List[int] = []
            failed: List[Tuple[OutboxEvent, str]] = []
            blocked: Set[Tuple[str, str]] = set()

            for event in events:
                aggregate = (event.aggregate_type, event.aggregate_id)
                if aggregate in blocked:
                    continue
                error = await self._deliver(event)
                if error is None:
                    published.append(event.id)
                    continue
                failed.append((event, error))
                blocked.add(aggregate)

            now = utcnow()
            if published:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(published))
                    .values(published=True, published_at=now)
                )
            for event, error in failed:
                event.delivery_attempts += 1
                event.last_error = error[:1000]
                parked = event.delivery_attempts >= self.max_attempts
                metrics.record_outbox_delivery_failure(event.event_type, parked)
                log = logger.error if parked else logger.warning
                log(
                    "outbox_event_parked" if parked else "outbox_event_delivery_failed",
                    event_id=event.id,
                    event_type=event.event_type,
                    aggregate_id=event.aggregate_id,
                    attempts=event.delivery_attempts,
                    error=error,
                )
            await db.commit()

            logger.info(
                "outbox_batch_processed",
                fetched=len(events),
                published=len(published),
                failed=len(failed),
                deferred=len(events) - len(published) - len(failed),
            )
            return len(published)

    async def start(self) -> None:
        """Relay events until :meth:`stop` is called."""
        self._running = True
        logger.info("outbox_publisher_started", batch_size=self.batch_size)

        try:
            while self._running:
                try:
                    published = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published = 0
                # A full batch means more may be waiting
                await asyncio.sleep(
                    0 if published >= self.batch_size else self.poll_interval_seconds
                )
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        self._running = False

    async def get_pending_count(self) -> int:
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(self._pending())
            return int((await db.execute(stmt)).scalar_one())

    async def get_parked_count(self) -> int:
        """Events that exhausted their deliveries and need a manual look."""
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.delivery_attempts >= self.max_attempts,
            )
            return int((await db.execute(stmt)).scalar_one())
