"""
Subscription lifecycle: create, cancel, reactivate, change payment method.

Charging is left to the billing engine; this module only moves a
subscription between states and decides when it is next due.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.config import get_settings
from native_payments.core.billing_engine import BillingEngine, BillingOutcome, sync_memberships
from native_payments.core.billing_periods import validate_interval
from native_payments.core.customers import CustomerService
from native_payments.core.exceptions import ConflictError, NotFoundError, ValidationError
from native_payments.core.ledger import LedgerWriter
from native_payments.database.models import Product, Subscription
from native_payments.database.types import utcnow
from native_payments.integrations.registry import ProviderRegistry, get_provider_registry

logger = structlog.get_logger(__name__)


def subscription_snapshot(subscription: Subscription) -> Dict[str, Any]:
    def iso(value):
        return value.isoformat() if value else None

    return {
        "id": subscription.id,
        "customer_id": subscription.customer_id,
        "product_id": subscription.product_id,
        "provider_id": subscription.provider_id,
        "payment_method_id": subscription.payment_method_id,
        "status": subscription.status,
        "billing_status": subscription.billing_status,
        "subtotal_cents": subscription.subtotal_cents,
        "tax_cents": subscription.tax_cents,
        "discount_cents": subscription.discount_cents,
        "total_cents": subscription.total_cents,
        "currency": subscription.currency,
        "billing_interval": subscription.billing_interval,
        "interval_multiplier": subscription.interval_multiplier,
        "billing_cycle_anchor": iso(subscription.billing_cycle_anchor),
        "current_period_start": iso(subscription.current_period_start),
        "current_period_end": iso(subscription.current_period_end),
        "trial_end": iso(subscription.trial_end),
        "next_billing_date": iso(subscription.next_billing_date),
        "billing_retry_count": subscription.billing_retry_count,
        "max_retry_attempts": subscription.max_retry_attempts,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "cancelled_at": iso(subscription.cancelled_at),
        "cancellation_reason": subscription.cancellation_reason,
        "description": subscription.description,
        "concept": subscription.concept,
        "reference_code": subscription.reference_code,
        "category": subscription.category,
        "tags": subscription.tags or [],
    }


class SubscriptionService:
    """Manages subscriptions on top of the billing engine."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        engine: Optional[BillingEngine] = None,
        customers: Optional[CustomerService] = None,
    ):
        self.settings = get_settings()
        self.registry = registry or get_provider_registry()
        self.engine = engine or BillingEngine(registry=self.registry)
        self.customers = customers or CustomerService(self.registry)

    async def create_subscription(
        self,
        db: AsyncSession,
        customer_id: str,
        product_id: str,
        payment_method_id: str,
        tax_cents: int = 0,
        discount_cents: int = 0,
        trial_days: Optional[int] = None,
        description: Optional[str] = None,
        concept: Optional[str] = None,
        reference_code: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Subscription, Optional[BillingOutcome]]:
        """
        Create a subscription for a recurring product.

        Without a trial the first period is billed immediately; with one,
        the billing cycle is anchored at the end of the trial.

        Returns:
            Tuple[Subscription, Optional[BillingOutcome]]: The subscription and
            the outcome of the first charge (None while trialing)

        Raises:
            NotFoundError: If the product or payment method does not exist
            ValidationError: If the product is not recurring or pricing is invalid
        """
        product = await db.get(Product, product_id)
        if product is None or not product.is_active:
            raise NotFoundError("Product", product_id)
        if not product.is_recurring or not product.billing_interval:
            raise ValidationError(
                f"Product {product_id} is not a recurring product",
                error_code="product_not_recurring",
            )
        try:
            validate_interval(product.billing_interval, product.interval_multiplier)
        except ValueError as e:
            raise ValidationError(str(e), error_code="invalid_billing_interval") from e
        if tax_cents < 0 or discount_cents < 0:
            raise ValidationError("Tax and discount must not be negative")
        total = product.price_cents + tax_cents - discount_cents
        if total < 0:
            raise ValidationError(
                "Discount exceeds subscription price", error_code="negative_total"
            )

        customer = await self.customers.get_customer(db, customer_id)
        method = await self.customers.get_payment_method(
            db, payment_method_id, customer_id=customer.id
        )
        await self.customers.ensure_provider_customer(db, customer, method.provider_id)

        now = utcnow()
        trial = product.trial_days if trial_days is None else trial_days
        if trial < 0:
            raise ValidationError("Trial days must not be negative")

        subscription = Subscription(
            customer_id=customer.id,
            product_id=product.id,
            provider_id=method.provider_id,
            payment_method_id=method.id,
            subtotal_cents=product.price_cents,
            tax_cents=tax_cents,
            discount_cents=discount_cents,
            total_cents=total,
            currency=product.currency,
            billing_interval=product.billing_interval,
            interval_multiplier=product.interval_multiplier,
            billing_cycle_index=0,
            billing_retry_count=0,
            max_retry_attempts=self.settings.billing_max_retry_attempts,
            billing_status="active",
            description=description or product.name,
            concept=concept,
            reference_code=reference_code,
            category=category,
            tags=tags,
            extra_data=metadata,
        )
        if trial > 0:
            trial_end = now + timedelta(days=trial)
            subscription.status = "trialing"
            subscription.trial_end = trial_end
            subscription.billing_cycle_anchor = trial_end
            subscription.current_period_start = now
            subscription.current_period_end = trial_end
            subscription.next_billing_date = trial_end
        else:
            subscription.status = "active"
            subscription.billing_cycle_anchor = now
            subscription.next_billing_date = now
        db.add(subscription)
        await db.flush()

        ledger = LedgerWriter(db)
        ledger.record_event(
            "subscription",
            subscription.id,
            "subscription.created",
            {
                "product_id": product.id,
                "total_cents": total,
                "trial_days": trial,
                "billing_interval": subscription.billing_interval,
            },
        )
        ledger.write_outbox(
            "subscription",
            subscription.id,
            "subscription.created",
            subscription_snapshot(subscription),
        )
        await db.commit()
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            customer_id=customer.id,
            trial_days=trial,
        )

        outcome = None
        if trial == 0:
            outcome = await self.engine.bill_subscription(subscription.id, now=now)
            await db.refresh(subscription)
        return subscription, outcome

    async def get_subscription(self, db: AsyncSession, subscription_id: str) -> Subscription:
        subscription = await db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    async def list_for_customer(self, db: AsyncSession, customer_id: str) -> List[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.customer_id == customer_id)
            .order_by(Subscription.created_at.desc())
        )
        return list((await db.execute(stmt)).scalars().all())

    async def _lock_idle(self, db: AsyncSession, subscription: Subscription) -> None:
        """
        Lock the subscription row for a lifecycle change.

        The conditional UPDATE only matches while no billing attempt holds
        the lease, and the row stays locked until the caller commits, so a
        worker cannot claim it in between.

        Raises:
            ConflictError: If a billing attempt is in progress
        """
        now = utcnow()
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                or_(
                    Subscription.billing_lease_expires_at.is_(None),
                    Subscription.billing_lease_expires_at <= now,
                ),
            )
            .values(billing_lease_token=None, billing_lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "A billing attempt is in progress for this subscription",
                error_code="billing_in_progress",
                subscription_id=subscription.id,
            )
        await db.refresh(subscription)

    async def cancel_subscription(
        self,
        db: AsyncSession,
        subscription_id: str,
        at_period_end: bool = False,
        reason: Optional[str] = None,
    ) -> Subscription:
        """
        Cancel a subscription immediately or at the end of the paid period.

        Raises:
            ConflictError: If it is already cancelled or being billed
        """
        subscription = await self.get_subscription(db, subscription_id)
        await self._lock_idle(db, subscription)
        if subscription.status == "cancelled":
            raise ConflictError(
                f"Subscription {subscription_id} is already cancelled",
                error_code="subscription_cancelled",
            )

        ledger = LedgerWriter(db)
        now = utcnow()
        if at_period_end and subscription.billing_status == "active":
            subscription.cancel_at_period_end = True
            subscription.cancellation_reason = reason
            ledger.record_event(
                "subscription",
                subscription.id,
                "subscription.cancel_scheduled",
                {
                    "reason": reason,
                    "period_end": (
                        subscription.current_period_end.isoformat()
                        if subscription.current_period_end
                        else None
                    ),
                },
            )
            await db.flush()
            logger.info("subscription_cancel_scheduled", subscription_id=subscription.id)
            return subscription

        previous = subscription.billing_status
        subscription.status = "cancelled"
        subscription.billing_status = "cancelled"
        subscription.next_billing_date = None
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason or "cancelled_by_customer"
        await ledger.void_open_invoices(subscription.id)
        await sync_memberships(db, subscription, ledger)

        ledger.record_event(
            "subscription",
            subscription.id,
            "subscription.cancelled",
            {"reason": subscription.cancellation_reason, "previous_billing_status": previous},
        )
        ledger.write_outbox(
            "subscription",
            subscription.id,
            "subscription.cancelled",
            {"subscription_id": subscription.id, "customer_id": subscription.customer_id},
        )
        await db.flush()
        logger.info("subscription_cancelled", subscription_id=subscription.id)
        return subscription

    async def reactivate_subscription(
        self,
        db: AsyncSession,
        subscription_id: str,
        payment_method_id: Optional[str] = None,
    ) -> Tuple[Subscription, BillingOutcome]:
        """
        Bring a suspended subscription back and bill it right away.

        Resets the retry counter; the charge then runs through the normal
        retry policy.

        Raises:
            ConflictError: If the subscription is not suspended
        """
        subscription = await self.get_subscription(db, subscription_id)
        if subscription.billing_status != "suspended":
            raise ConflictError(
                f"Only suspended subscriptions can be reactivated "
                f"(billing_status={subscription.billing_status})",
                error_code="subscription_not_suspended",
            )
        if payment_method_id:
            await self._switch_method(db, subscription, payment_method_id)

        now = utcnow()
        subscription.billing_retry_count = 0
        subscription.billing_status = "active"
        subscription.status = "active"
        subscription.next_billing_date = now
        LedgerWriter(db).record_event(
            "subscription", subscription.id, "subscription.reactivated", {}
        )
        await db.commit()
        logger.info("subscription_reactivated", subscription_id=subscription.id)

        outcome = await self.engine.bill_subscription(subscription.id, now=now, force=True)
        await db.refresh(subscription)
        return subscription, outcome

    async def change_payment_method(
        self, db: AsyncSession, subscription_id: str, payment_method_id: str
    ) -> Subscription:
        """
        Charge future periods to another stored payment method.

        A past-due subscription becomes due immediately so the new method
        is tried without waiting for the backoff delay.
        """
        subscription = await self.get_subscription(db, subscription_id)
        await self._lock_idle(db, subscription)
        if subscription.status == "cancelled":
            raise ConflictError(
                f"Subscription {subscription_id} is cancelled",
                error_code="subscription_cancelled",
            )
        await self._switch_method(db, subscription, payment_method_id)

        if subscription.billing_status == "past_due":
            subscription.next_billing_date = utcnow()
        await db.flush()
        return subscription

    async def _switch_method(
        self, db: AsyncSession, subscription: Subscription, payment_method_id: str
    ) -> None:
        method = await self.customers.get_payment_method(
            db, payment_method_id, customer_id=subscription.customer_id
        )
        customer = await self.customers.get_customer(db, subscription.customer_id)
        await self.customers.ensure_provider_customer(db, customer, method.provider_id)

        previous = subscription.payment_method_id
        subscription.payment_method_id = method.id
        subscription.provider_id = method.provider_id
        LedgerWriter(db).record_event(
            "subscription",
            subscription.id,
            "subscription.payment_method_changed",
            {"previous_payment_method_id": previous, "payment_method_id": method.id},
        )
