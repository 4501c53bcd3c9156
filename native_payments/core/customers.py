"""
Customer entity and stored payment methods.

A customer is either a registered user of the host application
(``user_id`` set) or a guest identified by email.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.core.exceptions import ConflictError, NotFoundError, ValidationError
from native_payments.core.ledger import LedgerWriter
from native_payments.database.models import (
    Customer,
    PaymentMethod,
    ProviderCustomer,
    Subscription,
)
from native_payments.integrations.registry import ProviderRegistry, get_provider_registry

logger = structlog.get_logger(__name__)


def customer_snapshot(customer: Customer) -> Dict[str, Any]:
    return {
        "id": customer.id,
        "user_id": customer.user_id,
        "email": customer.email,
        "name": customer.name,
        "is_guest": customer.is_guest,
        "metadata": customer.extra_data or {},
        "created_at": customer.created_at.isoformat() if customer.created_at else None,
    }


def payment_method_snapshot(method: PaymentMethod) -> Dict[str, Any]:
    return {
        "id": method.id,
        "customer_id": method.customer_id,
        "provider_id": method.provider_id,
        "payment_type": method.payment_type,
        "last_four": method.last_four,
        "card_brand": method.card_brand,
        "expiry_month": method.expiry_month,
        "expiry_year": method.expiry_year,
        "is_default": method.is_default,
    }


class CustomerService:
    """Creates customers and manages their provider identities and payment methods."""

    def __init__(self, registry: Optional[ProviderRegistry] = None):
        self.registry = registry or get_provider_registry()

    async def create_customer(
        self,
        db: AsyncSession,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Customer:
        """
        Create a customer, or return the existing one for ``user_id``.

        A customer without ``user_id`` is a guest and must have an email.

        Raises:
            ValidationError: If neither user_id nor email is given
        """
        if not user_id and not email:
            raise ValidationError(
                "A customer needs a user_id or an email",
                error_code="customer_identity_required",
            )

        if user_id:
            existing = await self.get_by_user_id(db, user_id)
            if existing is not None:
                return existing

        customer = Customer(
            user_id=user_id,
            email=email,
            name=name,
            is_guest=user_id is None,
            extra_data=metadata,
        )
        db.add(customer)
        await db.flush()

        LedgerWriter(db).record_event(
            "customer",
            customer.id,
            "customer.created",
            {"user_id": user_id, "is_guest": customer.is_guest},
        )
        logger.info("customer_created", customer_id=customer.id, is_guest=customer.is_guest)
        return customer

    async def get_customer(self, db: AsyncSession, customer_id: str) -> Customer:
        customer = await db.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError("Customer", customer_id)
        return customer

    async def get_by_user_id(self, db: AsyncSession, user_id: str) -> Optional[Customer]:
        stmt = select(Customer).where(Customer.user_id == user_id)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def ensure_provider_customer(
        self, db: AsyncSession, customer: Customer, provider_id: str
    ) -> ProviderCustomer:
        """
        Get the customer's identity at a provider, creating it there if needed.

        The customer id doubles as the provider idempotency key, so a retry
        after a crash does not create a second provider customer.
        """
        stmt = select(ProviderCustomer).where(
            ProviderCustomer.customer_id == customer.id,
            ProviderCustomer.provider_id == provider_id,
        )
        link = (await db.execute(stmt)).scalar_one_or_none()
        if link is not None:
            return link

        adapter = self.registry.get(provider_id)
        provider_customer_id = await adapter.create_customer(
            customer.email,
            name=customer.name,
            metadata={"customer_id": customer.id, "user_id": customer.user_id or ""},
            idempotency_key=f"customer:{customer.id}:{provider_id}",
        )
        link = ProviderCustomer(
            customer_id=customer.id,
            provider_id=provider_id,
            provider_customer_id=provider_customer_id,
        )
        db.add(link)
        await db.flush()

        logger.info(
            "provider_customer_created",
            customer_id=customer.id,
            provider=provider_id,
            provider_customer_id=provider_customer_id,
        )
        return link

    async def attach_payment_method(
        self,
        db: AsyncSession,
        customer_id: str,
        provider_id: str,
        payment_token: str,
        make_default: bool = True,
    ) -> PaymentMethod:
        """
        Store a payment method tokenised on the client.

        Args:
            db: Database session
            customer_id: Owning customer
            provider_id: Provider that issued the token
            payment_token: Client-side token (Stripe pm_..., PayPal setup token,
                Authorize.Net opaque data value)
            make_default: Make it the customer's default method

        Returns:
            PaymentMethod: Stored method
        """
        customer = await self.get_customer(db, customer_id)
        link = await self.ensure_provider_customer(db, customer, provider_id)
        adapter = self.registry.get(provider_id)
        details = await adapter.attach_payment_method(link.provider_customer_id, payment_token)

        existing_default = (
            await db.execute(
                select(PaymentMethod.id).where(
                    PaymentMethod.customer_id == customer.id,
                    PaymentMethod.is_default == True,  # noqa: E712
                    PaymentMethod.is_active == True,  # noqa: E712
                )
            )
        ).first()
        is_default = make_default or existing_default is None
        if is_default:
            await self._clear_default(db, customer.id)

        method = PaymentMethod(
            customer_id=customer.id,
            provider_id=provider_id,
            provider_payment_method_id=details.provider_payment_method_id,
            payment_type=details.payment_type,
            last_four=details.last_four,
            card_brand=details.card_brand,
            expiry_month=details.expiry_month,
            expiry_year=details.expiry_year,
            is_default=is_default,
            is_active=True,
        )
        db.add(method)
        await db.flush()

        LedgerWriter(db).record_event(
            "payment_method",
            method.id,
            "payment_method.attached",
            {"customer_id": customer.id, "provider_id": provider_id},
        )
        logger.info(
            "payment_method_attached",
            customer_id=customer.id,
            payment_method_id=method.id,
            provider=provider_id,
        )
        return method

    async def list_payment_methods(
        self, db: AsyncSession, customer_id: str
    ) -> List[PaymentMethod]:
        await self.get_customer(db, customer_id)
        stmt = (
            select(PaymentMethod)
            .where(
                PaymentMethod.customer_id == customer_id,
                PaymentMethod.is_active == True,  # noqa: E712
            )
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
        )
        return list((await db.execute(stmt)).scalars().all())

    async def get_payment_method(
        self, db: AsyncSession, payment_method_id: str, customer_id: Optional[str] = None
    ) -> PaymentMethod:
        method = await db.get(PaymentMethod, payment_method_id)
        if (
            method is None
            or not method.is_active
            or (customer_id is not None and method.customer_id != customer_id)
        ):
            raise NotFoundError("Payment method", payment_method_id)
        return method

    async def set_default_payment_method(
        self, db: AsyncSession, payment_method_id: str
    ) -> PaymentMethod:
        method = await self.get_payment_method(db, payment_method_id)
        await self._clear_default(db, method.customer_id)
        method.is_default = True
        await db.flush()
        return method

    async def detach_payment_method(self, db: AsyncSession, payment_method_id: str) -> None:
        """
        Remove a payment method at the provider and deactivate it locally.

        Raises:
            ConflictError: If a live subscription still charges this method
        """
        method = await self.get_payment_method(db, payment_method_id)
        in_use = (
            await db.execute(
                select(Subscription.id).where(
                    Subscription.payment_method_id == method.id,
                    Subscription.billing_status.in_(("active", "past_due")),
                )
            )
        ).first()
        if in_use is not None:
            raise ConflictError(
                "Payment method is used by an active subscription",
                error_code="payment_method_in_use",
                subscription_id=in_use[0],
            )

        link = (
            await db.execute(
                select(ProviderCustomer).where(
                    ProviderCustomer.customer_id == method.customer_id,
                    ProviderCustomer.provider_id == method.provider_id,
                )
            )
        ).scalar_one_or_none()
        if link is not None:
            adapter = self.registry.get(method.provider_id)
            await adapter.detach_payment_method(
                link.provider_customer_id, method.provider_payment_method_id
            )

        method.is_active = False
        method.is_default = False
        LedgerWriter(db).record_event(
            "payment_method",
            method.id,
            "payment_method.detached",
            {"customer_id": method.customer_id},
        )
        await db.flush()
        logger.info("payment_method_detached", payment_method_id=method.id)

    async def _clear_default(self, db: AsyncSession, customer_id: str) -> None:
        await db.execute(
            update(PaymentMethod)
            .where(
                PaymentMethod.customer_id == customer_id,
                PaymentMethod.is_default == True,  # noqa: E712
            )
            .values(is_default=False)
        )
