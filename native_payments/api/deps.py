"""
Service wiring for the API.

Routes depend on :func:`get_services`; tests override it with a container
built around fake providers.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from native_payments.core.analytics import AnalyticsService
from native_payments.core.billing_engine import BillingEngine
from native_payments.core.customers import CustomerService
from native_payments.core.memberships import MembershipService
from native_payments.core.orders import OrderService
from native_payments.core.payment_processor import PaymentProcessor
from native_payments.core.scheduler import BillingScheduler
from native_payments.core.subscriptions import SubscriptionService
from native_payments.integrations.registry import ProviderRegistry, get_provider_registry
from native_payments.integrations.webhook_handler import WebhookHandler
from native_payments.monitoring.health import HealthCheck


class Services:
    """Every service the routes use, sharing one provider registry."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        payments: Optional[PaymentProcessor] = None,
        webhooks: Optional[WebhookHandler] = None,
    ):
        self.registry = registry or get_provider_registry()
        self.customers = CustomerService(self.registry)
        self.orders = OrderService(self.registry, self.customers)
        self.engine = BillingEngine(registry=self.registry, session_factory=session_factory)
        self.subscriptions = SubscriptionService(self.registry, self.engine, self.customers)
        self.memberships = MembershipService(
            self.registry, self.customers, self.orders, self.subscriptions
        )
        self.payments = payments or PaymentProcessor(self.registry, customers=self.customers)
        self.webhooks = webhooks or WebhookHandler(self.registry, billing_engine=self.engine)
        self.analytics = AnalyticsService()
        self.scheduler = BillingScheduler(engine=self.engine, session_factory=session_factory)
        self.health = HealthCheck(self.registry)

    async def close(self) -> None:
        await self.payments.close()
        await self.webhooks.close()
        await self.registry.close()


_services: Optional[Services] = None


def get_services() -> Services:
    """Process-wide service container."""
    global _services
    if _services is None:
        _services = Services()
    return _services


async def close_services() -> None:
    global _services
    if _services is not None:
        await _services.close()
        _services = None
