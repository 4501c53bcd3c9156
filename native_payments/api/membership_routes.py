"""
API routes for memberships and feature access.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.api.deps import Services, get_services
from native_payments.api.routes import API_PREFIX
from native_payments.api.schemas import (
    CancelMembershipRequest,
    CreateMembershipRequest,
    MembershipResponse,
    MembershipTypeResponse,
    PurchaseAddonRequest,
)
from native_payments.core.memberships import membership_snapshot, membership_type_snapshot
from native_payments.database.connection import get_db

logger = structlog.get_logger(__name__)

membership_router = APIRouter(prefix=API_PREFIX, tags=["memberships"])


@membership_router.get("/membership-types", response_model=List[MembershipTypeResponse])
async def list_membership_types(
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    membership_types = await services.memberships.list_membership_types(db)
    return [membership_type_snapshot(membership_type) for membership_type in membership_types]


@membership_router.get(
    "/membership-types/{membership_type_id}", response_model=MembershipTypeResponse
)
async def get_membership_type(
    membership_type_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    membership_type = await services.memberships.get_membership_type(db, membership_type_id)
    return membership_type_snapshot(membership_type)


@membership_router.get(
    "/users/{user_id}/memberships", response_model=List[MembershipResponse]
)
async def list_user_memberships(
    user_id: str,
    membership_status: Optional[str] = Query(default=None, alias="status"),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    memberships = await services.memberships.list_user_memberships(
        db, user_id, status=membership_status
    )
    return [membership_snapshot(membership) for membership in memberships]


@membership_router.get(
    "/users/{user_id}/memberships/{membership_id}", response_model=MembershipResponse
)
async def get_user_membership(
    user_id: str,
    membership_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    membership = await services.memberships.get_user_membership(db, user_id, membership_id)
    return membership_snapshot(membership)


@membership_router.post(
    "/users/{user_id}/memberships",
    response_model=MembershipResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Sign a user up for a membership",
)
async def create_membership(
    user_id: str,
    request: CreateMembershipRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        "api_create_membership_request",
        user_id=user_id,
        membership_type_id=request.membership_type_id,
    )
    membership = await services.memberships.create_membership(
        db,
        user_id,
        request.membership_type_id,
        payment_method_id=request.payment_method_id,
        email=request.email,
    )
    return membership_snapshot(membership)


@membership_router.post(
    "/users/{user_id}/memberships/{membership_id}/cancel", response_model=MembershipResponse
)
async def cancel_membership(
    user_id: str,
    membership_id: str,
    request: CancelMembershipRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    membership = await services.memberships.cancel_membership(
        db, user_id, membership_id, immediately=request.immediately, reason=request.reason
    )
    return membership_snapshot(membership)


@membership_router.post(
    "/users/{user_id}/memberships/{membership_id}/addons",
    response_model=MembershipResponse,
    summary="Buy an add-on feature",
)
async def purchase_addon(
    user_id: str,
    membership_id: str,
    request: PurchaseAddonRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    membership = await services.memberships.purchase_addon(
        db, user_id, membership_id, request.feature_id, request.payment_method_id
    )
    return membership_snapshot(membership)


@membership_router.get(
    "/access/verify",
    summary="Check feature access",
    description="Whether a user can use a feature, with upgrade options when not",
)
async def verify_access(
    user_id: str = Query(..., min_length=1),
    feature_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.memberships.verify_access(db, user_id, feature_id)


@membership_router.get("/memberships/check", summary="Check for an active membership")
async def check_membership(
    user_id: str = Query(..., min_length=1),
    membership_type_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.memberships.check_membership(
        db, user_id, membership_type_id=membership_type_id
    )


@membership_router.get("/features", summary="Feature catalog")
async def list_features(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return services.memberships.feature_catalog()
