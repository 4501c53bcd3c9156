"""
API routes for revenue and subscription analytics.
"""
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.api.deps import Services, get_services
from native_payments.api.routes import API_PREFIX
from native_payments.api.schemas import MetricResponse, SnapshotRequest
from native_payments.core.analytics import snapshot_to_dict
from native_payments.database.connection import get_db
from native_payments.database.types import utcnow

logger = structlog.get_logger(__name__)

analytics_router = APIRouter(prefix=f"{API_PREFIX}/analytics", tags=["analytics"])


@analytics_router.get("/summary", summary="Today's metrics and 30-day revenue")
async def analytics_summary(
    currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.analytics.summary(db, currency=currency)


@analytics_router.get("/revenue", summary="Daily revenue series")
async def revenue_series(
    start: Optional[date] = Query(default=None, description="Defaults to 30 days ago"),
    end: Optional[date] = Query(default=None, description="Defaults to today"),
    currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    end = end or utcnow().date()
    start = start or end - timedelta(days=29)
    series = await services.analytics.revenue_series(db, start, end, currency=currency)
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "currency": (currency or services.analytics.settings.default_currency).upper(),
        "total": sum(point["value"] for point in series),
        "series": series,
    }


@analytics_router.get("/metrics/{metric_type}", response_model=MetricResponse)
async def get_metric(
    metric_type: str,
    metric_date: Optional[date] = Query(default=None, alias="date"),
    currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    snapshot = await services.analytics.get_metric(
        db, metric_type, day=metric_date, currency=currency
    )
    return snapshot_to_dict(snapshot)


@analytics_router.post(
    "/snapshots",
    response_model=List[MetricResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Recompute snapshots for a day",
)
async def create_snapshots(
    request: SnapshotRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    snapshots = await services.analytics.snapshot_day(
        db,
        day=request.snapshot_date,
        method="manual",
        currencies=[currency.upper() for currency in request.currencies or []] or None,
    )
    logger.info("api_snapshots_recomputed", count=len(snapshots))
    return [snapshot_to_dict(snapshot) for snapshot in snapshots]
