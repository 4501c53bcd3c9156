"""
Memberships and feature access.

A membership grants the features of its membership type. Recurring types
are backed by a subscription and follow its billing state; fixed and
lifetime types are bought once through an order. Add-on features can be
bought on top of an active membership.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.core.billing_engine import sync_memberships
from native_payments.core.billing_periods import validate_interval
from native_payments.core.customers import CustomerService
from native_payments.core.exceptions import (
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    ValidationError,
)
from native_payments.core.features import AVAILABLE_FEATURES, get_feature, unknown_features
from native_payments.core.ledger import LedgerWriter
from native_payments.core.orders import OrderService
from native_payments.core.subscriptions import SubscriptionService
from native_payments.database.models import (
    MembershipType,
    Order,
    Payment,
    Product,
    UserMembership,
)
from native_payments.database.types import utcnow
from native_payments.integrations.registry import ProviderRegistry, get_provider_registry

logger = structlog.get_logger(__name__)

DURATION_TYPES = ("recurring", "fixed", "lifetime")

_PRODUCT_NAMESPACE = uuid.UUID("8f6d3c1e-2b7a-4f0e-9c55-6a1d2e4b7c90")


def membership_type_snapshot(membership_type: MembershipType) -> Dict[str, Any]:
    return {
        "id": membership_type.id,
        "name": membership_type.name,
        "description": membership_type.description,
        "duration_type": membership_type.duration_type,
        "duration_days": membership_type.duration_days,
        "billing_interval": membership_type.billing_interval,
        "price_cents": membership_type.price_cents,
        "currency": membership_type.currency,
        "features": list(membership_type.features or []),
    }


def membership_snapshot(membership: UserMembership) -> Dict[str, Any]:
    return {
        "id": membership.id,
        "user_id": membership.user_id,
        "customer_id": membership.customer_id,
        "membership_type_id": membership.membership_type_id,
        "status": membership.status,
        "start_date": membership.start_date.isoformat() if membership.start_date else None,
        "end_date": membership.end_date.isoformat() if membership.end_date else None,
        "auto_renew": membership.auto_renew,
        "addons": list(membership.addons or []),
        "subscription_id": membership.subscription_id,
        "order_id": membership.order_id,
        "cancelled_at": membership.cancelled_at.isoformat() if membership.cancelled_at else None,
        "cancellation_reason": membership.cancellation_reason,
    }


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _lapsed(membership: UserMembership, now: datetime) -> bool:
    # Subscription-backed memberships follow their subscription instead
    return (
        membership.subscription_id is None
        and membership.end_date is not None
        and membership.end_date <= now
    )


def _addon_active(addon: Dict[str, Any], now: datetime) -> bool:
    end = _parse(addon.get("end_date"))
    return end is None or end > now


async def expire_lapsed_memberships(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Mark one-time memberships whose end date has passed as expired.

    Returns:
        int: Number of memberships expired
    """
    now = now or utcnow()
    result = await db.execute(
        update(UserMembership)
        .where(
            UserMembership.status == "active",
            UserMembership.subscription_id.is_(None),
            UserMembership.end_date.is_not(None),
            UserMembership.end_date <= now,
        )
        .values(status="expired", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    expired = result.rowcount or 0
    if expired:
        logger.info("memberships_expired", count=expired)
    return expired


async def activate_order_memberships(
    db: AsyncSession, order_id: str, ledger: LedgerWriter, now: Optional[datetime] = None
) -> None:
    """Activate pending memberships bought through an order that is now paid."""
    now = now or utcnow()
    stmt = select(UserMembership).where(
        UserMembership.order_id == order_id, UserMembership.status == "pending"
    )
    for membership in (await db.execute(stmt)).scalars().all():
        membership_type = await db.get(MembershipType, membership.membership_type_id)
        membership.status = "active"
        membership.start_date = now
        if membership_type is not None and membership_type.duration_type == "fixed":
            membership.end_date = now + timedelta(days=membership_type.duration_days)
        ledger.record_event(
            "membership", membership.id, "membership.active", {"order_id": order_id}
        )


class MembershipService:
    """Membership types, user memberships, add-ons and feature access."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        customers: Optional[CustomerService] = None,
        orders: Optional[OrderService] = None,
        subscriptions: Optional[SubscriptionService] = None,
    ):
        self.registry = registry or get_provider_registry()
        self.customers = customers or CustomerService(self.registry)
        self.orders = orders or OrderService(self.registry, self.customers)
        self.subscriptions = subscriptions or SubscriptionService(
            self.registry, customers=self.customers
        )

    # Membership types

    async def list_membership_types(
        self, db: AsyncSession, include_inactive: bool = False
    ) -> List[MembershipType]:
        stmt = select(MembershipType).order_by(
            MembershipType.sort_order, MembershipType.price_cents
        )
        if not include_inactive:
            stmt = stmt.where(MembershipType.is_active == True)  # noqa: E712
        return list((await db.execute(stmt)).scalars().all())

    async def get_membership_type(
        self, db: AsyncSession, membership_type_id: str
    ) -> MembershipType:
        membership_type = await db.get(MembershipType, membership_type_id)
        if membership_type is None:
            raise NotFoundError("Membership type", membership_type_id)
        return membership_type

    async def create_membership_type(
        self,
        db: AsyncSession,
        name: str,
        duration_type: str,
        price_cents: int,
        currency: str = "USD",
        features: Optional[List[str]] = None,
        duration_days: Optional[int] = None,
        billing_interval: Optional[str] = None,
        description: Optional[str] = None,
        sort_order: int = 0,
    ) -> MembershipType:
        """
        Define a membership type.

        Raises:
            ValidationError: If the duration settings do not fit the duration
                type, the price is negative or a feature is unknown
        """
        if duration_type not in DURATION_TYPES:
            raise ValidationError(
                f"Invalid duration type: {duration_type}", error_code="invalid_duration_type"
            )
        if duration_type == "fixed" and not duration_days:
            raise ValidationError("Fixed memberships need duration_days")
        if duration_type == "recurring":
            if not billing_interval:
                raise ValidationError("Recurring memberships need a billing_interval")
            try:
                validate_interval(billing_interval, 1)
            except ValueError as e:
                raise ValidationError(str(e), error_code="invalid_billing_interval") from e
        if price_cents < 0:
            raise ValidationError("Price must not be negative")
        unknown = unknown_features(features or [])
        if unknown:
            raise ValidationError(
                f"Unknown features: {', '.join(unknown)}", error_code="unknown_feature"
            )

        membership_type = MembershipType(
            name=name,
            description=description,
            duration_type=duration_type,
            duration_days=duration_days if duration_type == "fixed" else None,
            billing_interval=billing_interval if duration_type == "recurring" else None,
            price_cents=price_cents,
            currency=currency.upper(),
            features=list(features or []),
            sort_order=sort_order,
        )
        db.add(membership_type)
        await db.flush()
        logger.info(
            "membership_type_created",
            membership_type_id=membership_type.id,
            duration_type=duration_type,
        )
        return membership_type

    async def _membership_product(
        self, db: AsyncSession, membership_type: MembershipType
    ) -> Product:
        # One recurring product per membership type, under a stable id
        product_id = str(uuid.uuid5(_PRODUCT_NAMESPACE, membership_type.id))
        product = await db.get(Product, product_id)
        if product is None:
            product = Product(
                id=product_id,
                name=membership_type.name,
                description=membership_type.description,
                product_type="membership",
                is_recurring=True,
                price_cents=membership_type.price_cents,
                currency=membership_type.currency,
                billing_interval=membership_type.billing_interval,
                interval_multiplier=1,
                extra_data={"membership_type_id": membership_type.id},
            )
            db.add(product)
            await db.flush()
        return product

    # User memberships

    async def create_membership(
        self,
        db: AsyncSession,
        user_id: str,
        membership_type_id: str,
        payment_method_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> UserMembership:
        """
        Sign a user up for a membership.

        Recurring types start a subscription and the membership becomes
        active once its first charge (or trial) starts. Fixed and lifetime
        types are charged once through an order; free ones are granted
        straight away. Buying a one-time type again while its order is
        still unpaid retries that order instead of opening a second one.

        Args:
            db: Database session
            user_id: Host application user id
            membership_type_id: Membership type to buy
            payment_method_id: Stored payment method to charge
            email: Email used when the user has no customer record yet

        Returns:
            UserMembership: The membership, ``pending`` if payment has not
            completed yet

        Raises:
            ConflictError: If the user already holds this membership
            ValidationError: If a paid membership has no payment method
            PaymentDeclinedError: If a one-time charge was declined
            ProviderUnavailableError: If the provider could not be reached
        """
        membership_type = await self.get_membership_type(db, membership_type_id)
        if not membership_type.is_active:
            raise ValidationError(
                f"Membership type {membership_type_id} is not available",
                error_code="membership_type_inactive",
            )

        existing = (
            await db.execute(
                select(UserMembership).where(
                    UserMembership.user_id == user_id,
                    UserMembership.membership_type_id == membership_type.id,
                    UserMembership.status.in_(("active", "pending")),
                )
            )
        ).scalars().first()
        if existing is not None:
            if await self._payable_order(db, existing) and payment_method_id:
                logger.info(
                    "membership_payment_resumed",
                    membership_id=existing.id,
                    order_id=existing.order_id,
                )
                ledger = LedgerWriter(db)
                await self._pay_for_membership(
                    db, existing, payment_method_id, ledger, utcnow()
                )
                await db.commit()
                return existing
            raise ConflictError(
                "User already holds this membership",
                error_code="membership_exists",
                membership_id=existing.id,
            )

        needs_method = (
            membership_type.duration_type == "recurring" or membership_type.price_cents > 0
        )
        if needs_method and not payment_method_id:
            raise ValidationError(
                "A payment method is required for this membership",
                error_code="payment_method_required",
            )

        customer = await self.customers.create_customer(db, user_id=user_id, email=email)
        ledger = LedgerWriter(db)
        now = utcnow()
        membership = UserMembership(
            user_id=user_id,
            customer_id=customer.id,
            membership_type_id=membership_type.id,
            status="pending",
            start_date=now,
            addons=[],
        )

        if membership_type.duration_type == "recurring":
            product = await self._membership_product(db, membership_type)
            subscription, _ = await self.subscriptions.create_subscription(
                db,
                customer.id,
                product.id,
                payment_method_id,
                description=membership_type.name,
                category="membership",
                metadata={"user_id": user_id, "membership_type_id": membership_type.id},
            )
            membership.subscription_id = subscription.id
            membership.auto_renew = True
            db.add(membership)
            await db.flush()
            await sync_memberships(db, subscription, ledger)
        elif membership_type.price_cents == 0:
            membership.status = "active"
            if membership_type.duration_type == "fixed":
                membership.end_date = now + timedelta(days=membership_type.duration_days)
            db.add(membership)
        else:
            order = await self.orders.create_order(
                db,
                customer.id,
                [
                    {
                        "description": f"{membership_type.name} membership",
                        "unit_price_cents": membership_type.price_cents,
                        "quantity": 1,
                    }
                ],
                currency=membership_type.currency,
                description=f"{membership_type.name} membership",
                metadata={"user_id": user_id, "membership_type_id": membership_type.id},
            )
            membership.order_id = order.id
            db.add(membership)
            await db.flush()
            await self._pay_for_membership(db, membership, payment_method_id, ledger, now)

        await db.flush()
        ledger.record_event(
            "membership",
            membership.id,
            "membership.created",
            {"membership_type_id": membership_type.id, "status": membership.status},
        )
        ledger.write_outbox(
            "membership", membership.id, "membership.created", membership_snapshot(membership)
        )
        await db.commit()

        logger.info(
            "membership_created",
            membership_id=membership.id,
            user_id=user_id,
            duration_type=membership_type.duration_type,
            status=membership.status,
        )
        return membership

    async def _payable_order(self, db: AsyncSession, membership: UserMembership) -> bool:
        """A pending one-time membership whose order can still be charged."""
        if membership.status != "pending" or not membership.order_id:
            return False
        order = await db.get(Order, membership.order_id)
        return order is not None and order.status in ("pending", "processing", "failed")

    async def _pay_for_membership(
        self,
        db: AsyncSession,
        membership: UserMembership,
        payment_method_id: str,
        ledger: LedgerWriter,
        now: datetime,
    ) -> None:
        """
        Charge the order behind a one-time membership.

        An unfinished payment of the order is resumed with its idempotency
        key, so the provider never charges the same attempt twice. A decline
        cancels the membership and the user can buy it again; after a
        provider outage it stays pending on its order.

        Raises:
            PaymentDeclinedError: If the charge was declined
            ProviderUnavailableError: If the provider could not be reached
        """
        order_id = membership.order_id
        in_flight = (
            await db.execute(
                select(Payment)
                .where(Payment.order_id == order_id, Payment.status == "processing")
                .order_by(Payment.attempt_number.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        try:
            payment = await self.orders.pay_order(
                db,
                order_id,
                payment_method_id,
                idempotency_key=in_flight.idempotency_key if in_flight else None,
            )
        except PaymentDeclinedError:
            membership.status = "cancelled"
            membership.cancelled_at = now
            membership.cancellation_reason = "payment_declined"
            ledger.record_event(
                "membership",
                membership.id,
                "membership.cancelled",
                {"order_id": order_id, "reason": "payment_declined"},
            )
            await db.commit()
            raise

        if payment.status == "succeeded":
            await activate_order_memberships(db, order_id, ledger, now)

    async def list_user_memberships(
        self, db: AsyncSession, user_id: str, status: Optional[str] = None
    ) -> List[UserMembership]:
        stmt = (
            select(UserMembership)
            .where(UserMembership.user_id == user_id)
            .order_by(UserMembership.created_at.desc())
        )
        if status:
            stmt = stmt.where(UserMembership.status == status)
        return list((await db.execute(stmt)).scalars().all())

    async def get_user_membership(
        self, db: AsyncSession, user_id: str, membership_id: str
    ) -> UserMembership:
        membership = await db.get(UserMembership, membership_id)
        if membership is None or membership.user_id != user_id:
            raise NotFoundError("Membership", membership_id)
        return membership

    async def cancel_membership(
        self,
        db: AsyncSession,
        user_id: str,
        membership_id: str,
        immediately: bool = False,
        reason: Optional[str] = None,
    ) -> UserMembership:
        """
        Cancel a membership.

        A subscription-backed membership stops renewing and, unless
        ``immediately`` is set, keeps access until the paid period ends.
        One-time memberships are cancelled on the spot.

        Raises:
            ConflictError: If the membership is already cancelled or expired
        """
        membership = await self.get_user_membership(db, user_id, membership_id)
        if membership.status in ("cancelled", "expired"):
            raise ConflictError(
                f"Membership {membership_id} is {membership.status}",
                error_code="membership_not_cancellable",
            )

        ledger = LedgerWriter(db)
        if membership.subscription_id:
            subscription = await self.subscriptions.cancel_subscription(
                db, membership.subscription_id, at_period_end=not immediately, reason=reason
            )
            membership.auto_renew = False
            # An immediate cancel is mirrored onto the membership by the subscription
            if subscription.status != "cancelled":
                membership.cancellation_reason = reason
                ledger.record_event(
                    "membership", membership.id, "membership.cancel_scheduled", {"reason": reason}
                )
        else:
            membership.status = "cancelled"
            membership.auto_renew = False
            membership.cancelled_at = utcnow()
            membership.cancellation_reason = reason
            ledger.record_event(
                "membership", membership.id, "membership.cancelled", {"reason": reason}
            )

        ledger.write_outbox(
            "membership", membership.id, "membership.cancelled", membership_snapshot(membership)
        )
        await db.commit()
        logger.info(
            "membership_cancelled",
            membership_id=membership.id,
            immediately=immediately or membership.subscription_id is None,
        )
        return membership

    async def purchase_addon(
        self,
        db: AsyncSession,
        user_id: str,
        membership_id: str,
        feature_id: str,
        payment_method_id: str,
    ) -> UserMembership:
        """
        Buy an add-on feature for an active membership.

        Buying a timed add-on that is still running extends it from its
        current end date.

        Raises:
            NotFoundError: If the feature does not exist
            ValidationError: If the feature is not sold as an add-on
            ConflictError: If the membership is not active, a permanent
                add-on is already owned or the charge is still pending
        """
        membership = await self.get_user_membership(db, user_id, membership_id)
        feature = get_feature(feature_id)
        if feature is None:
            raise NotFoundError("Feature", feature_id)
        if not feature.is_addon:
            raise ValidationError(
                f"Feature {feature_id} is not sold as an add-on", error_code="not_an_addon"
            )
        if membership.status != "active":
            raise ConflictError(
                f"Membership {membership_id} is {membership.status}",
                error_code="membership_not_active",
            )

        now = utcnow()
        addons = list(membership.addons or [])
        current = next(
            (
                addon
                for addon in addons
                if addon.get("feature_id") == feature_id and _addon_active(addon, now)
            ),
            None,
        )
        if current is not None and current.get("end_date") is None:
            raise ConflictError(
                f"Add-on {feature_id} is already owned", error_code="addon_already_owned"
            )

        order = await self.orders.create_order(
            db,
            membership.customer_id,
            [
                {
                    "description": feature.name,
                    "unit_price_cents": feature.price_cents,
                    "quantity": 1,
                }
            ],
            currency=feature.currency,
            description=f"Add-on {feature.name}",
            metadata={"membership_id": membership.id, "feature_id": feature_id},
        )
        payment = await self.orders.pay_order(db, order.id, payment_method_id)
        if payment.status != "succeeded":
            raise ConflictError(
                "Add-on payment is still being processed",
                error_code="payment_pending",
                payment_id=payment.id,
            )

        start = _parse(current["end_date"]) if current is not None else now
        end = start + timedelta(days=feature.duration_days) if feature.duration_days else None
        addons = [addon for addon in addons if addon is not current]
        addons.append(
            {
                "feature_id": feature_id,
                "name": feature.name,
                "start_date": (current["start_date"] if current is not None else now.isoformat()),
                "end_date": end.isoformat() if end else None,
                "order_id": order.id,
            }
        )
        # Reassign so the JSON column is flagged dirty
        membership.addons = addons

        ledger = LedgerWriter(db)
        ledger.record_event(
            "membership",
            membership.id,
            "membership.addon_purchased",
            {"feature_id": feature_id, "order_id": order.id},
        )
        ledger.write_outbox(
            "membership",
            membership.id,
            "membership.addon_purchased",
            {"membership_id": membership.id, "feature_id": feature_id, "order_id": order.id},
        )
        await db.commit()
        logger.info("addon_purchased", membership_id=membership.id, feature_id=feature_id)
        return membership

    # Access checks

    async def _active_memberships(
        self, db: AsyncSession, user_id: str, now: datetime
    ) -> List[UserMembership]:
        stmt = (
            select(UserMembership)
            .where(UserMembership.user_id == user_id, UserMembership.status == "active")
            .order_by(UserMembership.created_at)
        )
        active = []
        expired = False
        for membership in (await db.execute(stmt)).scalars().all():
            if _lapsed(membership, now):
                membership.status = "expired"
                expired = True
                continue
            active.append(membership)
        if expired:
            await db.commit()
        return active

    async def _types_with_feature(
        self, db: AsyncSession, feature_id: str
    ) -> List[Dict[str, Any]]:
        return [
            membership_type_snapshot(membership_type)
            for membership_type in await self.list_membership_types(db)
            if feature_id in (membership_type.features or [])
        ]

    async def verify_access(
        self, db: AsyncSession, user_id: str, feature_id: str
    ) -> Dict[str, Any]:
        """
        Check whether a user can use a feature.

        Memberships whose end date has passed are expired on the way. A
        feature is granted by an active membership's type first, then by an
        unexpired add-on.

        Returns:
            Dict[str, Any]: ``has_access`` with the granting source, or the
            upgrade and add-on options when access is denied

        Raises:
            NotFoundError: If the feature does not exist
        """
        feature = get_feature(feature_id)
        if feature is None:
            raise NotFoundError("Feature", feature_id)

        now = utcnow()
        memberships = await self._active_memberships(db, user_id, now)
        for membership in memberships:
            membership_type = await db.get(MembershipType, membership.membership_type_id)
            if membership_type is not None and feature_id in (membership_type.features or []):
                return {
                    "has_access": True,
                    "access_source": "membership",
                    "membership": {
                        "id": membership.id,
                        "type": membership_type.name,
                        "expires": (
                            membership.end_date.isoformat() if membership.end_date else None
                        ),
                    },
                }

            for addon in membership.addons or []:
                if addon.get("feature_id") == feature_id and _addon_active(addon, now):
                    return {
                        "has_access": True,
                        "access_source": "addon",
                        "addon": {"name": addon.get("name"), "expires": addon.get("end_date")},
                    }

        response: Dict[str, Any] = {
            "has_access": False,
            "upgrade_options": await self._types_with_feature(db, feature_id),
            "addon_options": [feature.to_dict()] if feature.is_addon else [],
        }
        if memberships:
            current_type = await db.get(MembershipType, memberships[0].membership_type_id)
            response["current_membership"] = {
                "id": memberships[0].id,
                "type": current_type.name if current_type else None,
            }
        else:
            response["reason"] = "no_active_membership"
        return response

    async def check_membership(
        self, db: AsyncSession, user_id: str, membership_type_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Report the user's active memberships, or what is available to buy."""
        memberships = await self._active_memberships(db, user_id, utcnow())
        if membership_type_id:
            memberships = [
                membership
                for membership in memberships
                if membership.membership_type_id == membership_type_id
            ]

        if memberships:
            return {
                "has_active_membership": True,
                "memberships": [membership_snapshot(membership) for membership in memberships],
            }
        return {
            "has_active_membership": False,
            "memberships": [],
            "available_memberships": [
                membership_type_snapshot(membership_type)
                for membership_type in await self.list_membership_types(db)
            ],
        }

    @staticmethod
    def feature_catalog() -> List[Dict[str, Any]]:
        return [feature.to_dict() for feature in AVAILABLE_FEATURES.values()]
