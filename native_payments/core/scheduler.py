"""
Billing scheduler.

Polls for subscriptions whose billing date has passed and runs them
through the billing engine with bounded concurrency.
"""
import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from native_payments.config import get_settings
from native_payments.core.billing_engine import BillingEngine, LeaseLostError
from native_payments.core.memberships import expire_lapsed_memberships
from native_payments.core.retry_policy import BILLABLE_STATUSES
from native_payments.database.connection import get_session_factory
from native_payments.database.models import Subscription
from native_payments.database.types import utcnow
from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class CycleReport:
    """Counts of billing outcomes for one scheduler cycle."""

    started_at: datetime
    due: int = 0
    outcomes: Counter = field(default_factory=Counter)
    errors: int = 0
    expired_memberships: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "outcomes": dict(self.outcomes),
            "errors": self.errors,
            "expired_memberships": self.expired_memberships,
        }


class BillingScheduler:
    """Runs billing cycles until stopped."""

    def __init__(
        self,
        engine: Optional[BillingEngine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        """
        Initialize billing scheduler.

        Args:
            engine: Billing engine (built with defaults if not provided)
            session_factory: Session factory (application factory if not provided)
            batch_size: Maximum subscriptions billed per cycle
            concurrency: Maximum concurrent billing attempts
            poll_interval_seconds: Sleep between cycles
        """
        settings = get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.engine = engine or BillingEngine(session_factory=self.session_factory)
        self.batch_size = batch_size or settings.billing_batch_size
        self.concurrency = concurrency or settings.billing_concurrency
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.billing_poll_interval_seconds
        )
        self._running = False

        logger.info(
            "billing_scheduler_initialized",
            batch_size=self.batch_size,
            concurrency=self.concurrency,
            poll_interval=self.poll_interval_seconds,
        )

    async def find_due(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[str]:
        """
        Get ids of subscriptions that are due for billing.

        Args:
            now: Reference time
            limit: Maximum number of ids (batch size if not provided)

        Returns:
            List[str]: Subscription ids, oldest billing date first
        """
        now = now or utcnow()
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.billing_status.in_(BILLABLE_STATUSES),
                Subscription.next_billing_date.is_not(None),
                Subscription.next_billing_date <= now,
                or_(
                    Subscription.billing_lease_expires_at.is_(None),
                    Subscription.billing_lease_expires_at <= now,
                ),
            )
            .order_by(Subscription.next_billing_date)
            .limit(limit or self.batch_size)
        )
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def run_once(self, now: Optional[datetime] = None) -> CycleReport:
        """
        Run one billing cycle.

        Returns:
            CycleReport: Outcome counts for the cycle
        """
        now = now or utcnow()
        report = CycleReport(started_at=now)

        async with self.session_factory() as db:
            report.expired_memberships = await expire_lapsed_memberships(db, now)
            await db.commit()

        due = await self.find_due(now)
        report.due = len(due)
        metrics.set_due_subscriptions(len(due))
        if not due:
            return report

        logger.info("billing_cycle_started", due=len(due))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bill(subscription_id: str) -> None:
            async with semaphore:
                try:
                    outcome = await self.engine.bill_subscription(subscription_id, now=now)
                    report.outcomes[outcome.status] += 1
                except LeaseLostError as e:
                    report.outcomes["lease_lost"] += 1
                    logger.warning(
                        "billing_lease_lost", subscription_id=subscription_id, error=str(e)
                    )
                except Exception as e:
                    report.errors += 1
                    logger.error(
                        "billing_attempt_error",
                        subscription_id=subscription_id,
                        error=str(e),
                        exc_info=True,
                    )

        await asyncio.gather(*(bill(subscription_id) for subscription_id in due))

        logger.info("billing_cycle_completed", **report.to_dict())
        return report

    async def start(self) -> None:
        """Run billing cycles until :meth:`stop` is called."""
        self._running = True
        logger.info("billing_scheduler_started")

        try:
            while self._running:
                try:
                    report = await self.run_once()
                    if report.due >= self.batch_size and not report.errors:
                        # Backlog: go again without waiting
                        await asyncio.sleep(0)
                        continue
                except Exception as e:
                    logger.error("billing_scheduler_error", error=str(e))
                await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("billing_scheduler_stopped")

    def stop(self) -> None:
        """Stop the scheduler after the current cycle."""
        self._running = False
        logger.info("billing_scheduler_stop_requested")
