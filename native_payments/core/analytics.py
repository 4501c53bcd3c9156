"""
Revenue and subscription analytics.

Metrics are computed from the payments and subscriptions tables and cached
in ``analytics_snapshots`` by (date, metric type, currency). Past dates are
served from the cache once computed; today's values are recomputed on every
read.
"""
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.config import get_settings
from native_payments.core.billing_periods import monthly_equivalent_cents
from native_payments.core.exceptions import ValidationError
from native_payments.database.models import AnalyticsSnapshot, Payment, Subscription
from native_payments.database.types import utcnow
from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

METRIC_TYPES = (
    "daily_revenue",
    "mrr",
    "active_subscriptions",
    "past_due_subscriptions",
    "churned_subscriptions",
    "failed_payments",
)

MAX_SERIES_DAYS = 366

MetricValue = Tuple[int, Dict[str, Any]]


def _day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, datetime.min.time(), tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def freshness_for(day: date, today: date) -> str:
    if day >= today:
        return "real_time"
    if day == today - timedelta(days=1):
        return "recent"
    return "historical"


def snapshot_to_dict(snapshot: AnalyticsSnapshot) -> Dict[str, Any]:
    return {
        "date": snapshot.snapshot_date.isoformat(),
        "metric_type": snapshot.metric_type,
        "currency": snapshot.currency,
        "value": snapshot.metric_value,
        "breakdown": snapshot.breakdown or {},
        "calculation_method": snapshot.calculation_method,
        "calculation_duration_ms": snapshot.calculation_duration_ms,
        "data_freshness": snapshot.data_freshness,
    }


class AnalyticsService:
    """Computes metrics and maintains the snapshot cache."""

    def __init__(self):
        self.settings = get_settings()
        self._calculators: Dict[
            str, Callable[[AsyncSession, date, str], Awaitable[MetricValue]]
        ] = {
            "daily_revenue": self._daily_revenue,
            "mrr": self._mrr,
            "active_subscriptions": self._active_subscriptions,
            "past_due_subscriptions": self._past_due_subscriptions,
            "churned_subscriptions": self._churned_subscriptions,
            "failed_payments": self._failed_payments,
        }

    # Calculators

    async def _daily_revenue(self, db: AsyncSession, day: date, currency: str) -> MetricValue:
        start, end = _day_bounds(day)
        net = Payment.amount_cents - Payment.refunded_cents
        stmt = (
            select(
                Payment.provider_id,
                func.count(Payment.id).label("count"),
                func.sum(net).label("total_cents"),
            )
            .where(
                Payment.status.in_(("succeeded", "refunded")),
                Payment.currency == currency,
                Payment.completed_at >= start,
                Payment.completed_at < end,
            )
            .group_by(Payment.provider_id)
        )
        by_provider = {}
        total = 0
        count = 0
        for row in (await db.execute(stmt)).all():
            cents = int(row.total_cents or 0)
            by_provider[row.provider_id] = cents
            total += cents
            count += row.count
        return total, {"by_provider": by_provider, "payment_count": count}

    async def _mrr(self, db: AsyncSession, day: date, currency: str) -> MetricValue:
        stmt = select(
            Subscription.total_cents,
            Subscription.billing_interval,
            Subscription.interval_multiplier,
        ).where(
            Subscription.status.in_(("active", "past_due")),
            Subscription.currency == currency,
        )
        by_interval: Dict[str, int] = {}
        for row in (await db.execute(stmt)).all():
            monthly = monthly_equivalent_cents(
                row.total_cents, row.billing_interval, row.interval_multiplier
            )
            by_interval[row.billing_interval] = by_interval.get(row.billing_interval, 0) + monthly
        return sum(by_interval.values()), {"by_interval": by_interval}

    async def _count_by_status(
        self, db: AsyncSession, currency: str, statuses: Tuple[str, ...]
    ) -> MetricValue:
        stmt = (
            select(Subscription.status, func.count(Subscription.id).label("count"))
            .where(Subscription.status.in_(statuses), Subscription.currency == currency)
            .group_by(Subscription.status)
        )
        by_status = {row.status: row.count for row in (await db.execute(stmt)).all()}
        return sum(by_status.values()), {"by_status": by_status}

    async def _active_subscriptions(
        self, db: AsyncSession, day: date, currency: str
    ) -> MetricValue:
        return await self._count_by_status(db, currency, ("active", "trialing"))

    async def _past_due_subscriptions(
        self, db: AsyncSession, day: date, currency: str
    ) -> MetricValue:
        return await self._count_by_status(db, currency, ("past_due",))

    async def _churned_subscriptions(
        self, db: AsyncSession, day: date, currency: str
    ) -> MetricValue:
        start, end = _day_bounds(day)
        stmt = (
            select(Subscription.cancellation_reason, func.count(Subscription.id).label("count"))
            .where(
                Subscription.status == "cancelled",
                Subscription.currency == currency,
                Subscription.cancelled_at >= start,
                Subscription.cancelled_at < end,
            )
            .group_by(Subscription.cancellation_reason)
        )
        by_reason = {
            (row.cancellation_reason or "unknown"): row.count
            for row in (await db.execute(stmt)).all()
        }
        return sum(by_reason.values()), {"by_reason": by_reason}

    async def _failed_payments(self, db: AsyncSession, day: date, currency: str) -> MetricValue:
        start, end = _day_bounds(day)
        stmt = (
            select(Payment.error_code, func.count(Payment.id).label("count"))
            .where(
                Payment.status == "failed",
                Payment.currency == currency,
                Payment.updated_at >= start,
                Payment.updated_at < end,
            )
            .group_by(Payment.error_code)
        )
        by_error = {
            (row.error_code or "unknown"): row.count for row in (await db.execute(stmt)).all()
        }
        return sum(by_error.values()), {"by_error_code": by_error}

    # Snapshot cache

    @staticmethod
    def _validate(metric_type: str, day: date, today: date) -> None:
        if metric_type not in METRIC_TYPES:
            raise ValidationError(
                f"Unknown metric type: {metric_type}",
                error_code="unknown_metric",
                available=list(METRIC_TYPES),
            )
        if day > today:
            raise ValidationError("Metrics cannot be computed for future dates")

    async def _cached(
        self, db: AsyncSession, day: date, metric_type: str, currency: str
    ) -> Optional[AnalyticsSnapshot]:
        stmt = select(AnalyticsSnapshot).where(
            AnalyticsSnapshot.snapshot_date == day,
            AnalyticsSnapshot.metric_type == metric_type,
            AnalyticsSnapshot.currency == currency,
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def compute_snapshot(
        self,
        db: AsyncSession,
        metric_type: str,
        day: date,
        currency: str,
        method: str = "on_demand",
    ) -> AnalyticsSnapshot:
        """
        Compute a metric and write it to the snapshot cache.

        An existing snapshot for the same (date, metric, currency) is
        overwritten, so there is never more than one.

        Args:
            db: Database session
            metric_type: One of ``METRIC_TYPES``
            day: Date the metric is for
            currency: ISO currency
            method: ``scheduled``, ``on_demand`` or ``manual``

        Returns:
            AnalyticsSnapshot: The stored snapshot
        """
        today = utcnow().date()
        self._validate(metric_type, day, today)
        currency = currency.upper()

        started = time.perf_counter()
        value, breakdown = await self._calculators[metric_type](db, day, currency)
        duration = time.perf_counter() - started

        snapshot = await self._cached(db, day, metric_type, currency)
        if snapshot is None:
            snapshot = AnalyticsSnapshot(
                snapshot_date=day, metric_type=metric_type, currency=currency
            )
            db.add(snapshot)
        snapshot.metric_value = value
        snapshot.breakdown = breakdown
        snapshot.calculation_method = method
        snapshot.calculation_duration_ms = int(duration * 1000)
        snapshot.data_freshness = freshness_for(day, today)
        await db.flush()

        metrics.record_snapshot(metric_type, duration, scheduled=method == "scheduled")
        logger.debug(
            "analytics_snapshot_computed",
            metric_type=metric_type,
            snapshot_date=day.isoformat(),
            currency=currency,
            value=value,
        )
        return snapshot

    async def get_metric(
        self,
        db: AsyncSession,
        metric_type: str,
        day: Optional[date] = None,
        currency: Optional[str] = None,
    ) -> AnalyticsSnapshot:
        """
        Get a metric value, from the cache for past dates.

        Raises:
            ValidationError: For an unknown metric type or a future date
        """
        today = utcnow().date()
        day = day or today
        currency = (currency or self.settings.default_currency).upper()
        self._validate(metric_type, day, today)

        if day < today:
            cached = await self._cached(db, day, metric_type, currency)
            if cached is not None:
                return cached
        return await self.compute_snapshot(db, metric_type, day, currency)

    async def revenue_series(
        self,
        db: AsyncSession,
        start: date,
        end: date,
        currency: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Daily revenue for each day in ``[start, end]``.

        Raises:
            ValidationError: If the range is inverted or longer than a year
        """
        if end < start:
            raise ValidationError("end must not be before start")
        days = (end - start).days + 1
        if days > MAX_SERIES_DAYS:
            raise ValidationError(f"Date range is limited to {MAX_SERIES_DAYS} days")

        series = []
        for offset in range(days):
            snapshot = await self.get_metric(
                db, "daily_revenue", start + timedelta(days=offset), currency
            )
            series.append(
                {
                    "date": snapshot.snapshot_date.isoformat(),
                    "value": snapshot.metric_value,
                    "data_freshness": snapshot.data_freshness,
                }
            )
        return series

    async def summary(self, db: AsyncSession, currency: Optional[str] = None) -> Dict[str, Any]:
        """Today's value of every metric plus revenue over the last 30 days."""
        currency = (currency or self.settings.default_currency).upper()
        today = utcnow().date()
        current = {}
        for metric_type in METRIC_TYPES:
            snapshot = await self.get_metric(db, metric_type, today, currency)
            current[metric_type] = snapshot.metric_value

        series = await self.revenue_series(db, today - timedelta(days=29), today, currency)
        return {
            "date": today.isoformat(),
            "currency": currency,
            "metrics": current,
            "revenue_last_30_days": sum(point["value"] for point in series),
        }

    async def _currencies(self, db: AsyncSession) -> List[str]:
        payment_currencies = select(Payment.currency).distinct()
        subscription_currencies = select(Subscription.currency).distinct()
        found = set((await db.execute(payment_currencies)).scalars().all())
        found.update((await db.execute(subscription_currencies)).scalars().all())
        found.add(self.settings.default_currency)
        return sorted(found)

    async def snapshot_day(
        self,
        db: AsyncSession,
        day: Optional[date] = None,
        method: str = "scheduled",
        currencies: Optional[List[str]] = None,
    ) -> List[AnalyticsSnapshot]:
        """
        Compute every metric for every currency in use on ``day``.

        The nightly worker calls this for the previous day.
        """
        day = day or utcnow().date() - timedelta(days=1)
        snapshots = []
        for currency in currencies or await self._currencies(db):
            for metric_type in METRIC_TYPES:
                snapshots.append(
                    await self.compute_snapshot(db, metric_type, day, currency, method=method)
                )
        logger.info(
            "analytics_snapshots_completed",
            snapshot_date=day.isoformat(),
            count=len(snapshots),
            method=method,
        )
        return snapshots
