"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database (aiosqlite); providers are
replaced by an in-memory fake and Redis by an AsyncMock.
"""
import asyncio
import os
import tempfile
from datetime import timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Mapping, Optional, Union
from unittest.mock import AsyncMock

_TEST_DIR = tempfile.mkdtemp(prefix="native_payments_tests_")

# Settings are cached on first use, so the environment goes first
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/payments_test.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake_key_for_testing"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_fake_secret"
os.environ["PAYPAL_CLIENT_ID"] = "paypal-test-client"
os.environ["PAYPAL_CLIENT_SECRET"] = "paypal-test-secret"
os.environ["PAYPAL_WEBHOOK_ID"] = "WH-TEST-1234"
os.environ["AUTHORIZE_NET_API_LOGIN_ID"] = "anet-login"
os.environ["AUTHORIZE_NET_TRANSACTION_KEY"] = "anet-transaction-key"
os.environ["AUTHORIZE_NET_SIGNATURE_KEY"] = "ANET0SIGNATURE0KEY"
os.environ["APP_ENV"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from native_payments.core.billing_engine import BillingEngine  # noqa: E402
from native_payments.core.customers import CustomerService  # noqa: E402
from native_payments.core.retry_policy import RetryPolicy  # noqa: E402
from native_payments.database.connection import (  # noqa: E402
    close_db,
    get_engine,
    get_session_factory,
)
from native_payments.database.models import (  # noqa: E402
    Base,
    Customer,
    PaymentMethod,
    Product,
    Subscription,
)
from native_payments.database.types import utcnow  # noqa: E402
from native_payments.integrations.base import (  # noqa: E402
    ChargeResult,
    PaymentMethodDetails,
    PaymentProviderAdapter,
    ProviderError,
    ProviderErrorType,
    RefundResult,
    WebhookEvent,
)
from native_payments.integrations.registry import ProviderRegistry  # noqa: E402

ChargeOutcome = Union[ChargeResult, ProviderError, str]


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "race: concurrent access scenarios")
    config.addinivalue_line("markers", "integration: exercises several services together")


class FakeProvider(PaymentProviderAdapter):
    """
    In-memory provider.

    ``charge_outcomes`` is consumed one item per charge: a ChargeResult is
    returned, a ProviderError raised, and a plain string is used as the
    result status. An empty queue means the charge succeeds.
    """

    display_name = "Fake Provider"

    def __init__(self, provider_id: str = "stripe"):
        self.provider_id = provider_id
        super().__init__()
        self.charge_outcomes: List[ChargeOutcome] = []
        self.charges: List[Dict[str, Any]] = []
        self.intents: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.customers: List[str] = []
        self.detached: List[str] = []
        self.intent_error: Optional[ProviderError] = None
        self.refund_error: Optional[ProviderError] = None
        self.webhook_event: Optional[WebhookEvent] = None
        self.on_charge: Optional[Callable[[], Awaitable[None]]] = None

    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        provider_customer_id = f"cus_{len(self.customers) + 1}"
        self.customers.append(provider_customer_id)
        return provider_customer_id

    async def attach_payment_method(
        self, provider_customer_id: str, payment_token: str
    ) -> PaymentMethodDetails:
        return PaymentMethodDetails(
            provider_payment_method_id=f"pm_{payment_token}",
            payment_type="card",
            last_four="4242",
            card_brand="visa",
            expiry_month=12,
            expiry_year=2030,
        )

    async def detach_payment_method(
        self, provider_customer_id: str, provider_payment_method_id: str
    ) -> None:
        self.detached.append(provider_payment_method_id)

    async def charge(
        self,
        provider_customer_id: str,
        provider_payment_method_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        payment_type: str = "card",
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        self.charges.append(
            {
                "provider_customer_id": provider_customer_id,
                "provider_payment_method_id": provider_payment_method_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
        )
        # Yield so concurrent attempts interleave
        await asyncio.sleep(0)
        if self.on_charge is not None:
            await self.on_charge()

        outcome: ChargeOutcome = "succeeded"
        if self.charge_outcomes:
            outcome = self.charge_outcomes.pop(0)
        if isinstance(outcome, ProviderError):
            raise outcome
        if isinstance(outcome, ChargeResult):
            return outcome
        return ChargeResult(
            provider_payment_id=f"ch_{len(self.charges)}",
            status=outcome,
            amount_cents=amount_cents,
            currency=currency,
        )

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        provider_customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        self.intents.append(
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "provider_customer_id": provider_customer_id,
                "metadata": metadata or {},
            }
        )
        if self.intent_error is not None:
            raise self.intent_error
        number = len(self.intents)
        return ChargeResult(
            provider_payment_id=f"pi_{number}",
            status="pending",
            amount_cents=amount_cents,
            currency=currency,
            client_secret=f"pi_{number}_secret",
        )

    async def refund(
        self,
        provider_payment_id: str,
        amount_cents: Optional[int],
        idempotency_key: str,
        reason: Optional[str] = None,
        currency: str = "USD",
    ) -> RefundResult:
        self.refunds.append(
            {
                "provider_payment_id": provider_payment_id,
                "amount_cents": amount_cents,
                "idempotency_key": idempotency_key,
            }
        )
        if self.refund_error is not None:
            raise self.refund_error
        return RefundResult(
            provider_refund_id=f"re_{len(self.refunds)}",
            status="succeeded",
            amount_cents=amount_cents or 0,
        )

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        if headers.get("x-fake-signature") != "valid" or self.webhook_event is None:
            raise ProviderError(
                "Invalid signature",
                ProviderErrorType.PERMANENT,
                code="invalid_signature",
                provider_id=self.provider_id,
            )
        return self.webhook_event


class FakeRedlock:
    """Stand-in for redlock.Redlock."""

    def __init__(self, available: bool = True):
        self.available = available
        self.locked: List[str] = []
        self.released = 0

    def lock(self, resource: str, ttl: int) -> Any:
        if not self.available:
            return False
        self.locked.append(resource)
        return {"resource": resource, "ttl": ttl}

    def unlock(self, lock: Any) -> None:
        self.released += 1


def decline(code: str = "card_declined") -> ProviderError:
    return ProviderError("Your card was declined.", ProviderErrorType.PERMANENT, code=code)


def outage(code: str = "network_error") -> ProviderError:
    return ProviderError("Provider unreachable", ProviderErrorType.TRANSIENT, code=code)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider("stripe")


@pytest.fixture
def registry(fake_provider: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry([fake_provider])


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Redis client that never has anything cached."""
    redis = AsyncMock()
    redis.get.return_value = None
    redis.exists.return_value = 0
    return redis


@pytest.fixture
def fake_redlock() -> FakeRedlock:
    return FakeRedlock()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(
        base_delay_hours=24,
        max_delay_hours=168,
        backoff_multiplier=2,
        transient_retry_minutes=30,
        exhausted_action="suspend",
    )


@pytest_asyncio.fixture
async def test_db(registry: ProviderRegistry) -> AsyncGenerator[AsyncSession, Any]:
    """Fresh schema per test with the provider rows seeded."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_session_factory()
    async with session_factory() as session:
        await registry.sync_providers(session)
        await session.commit()
        yield session
        await session.rollback()

    await close_db()


@pytest.fixture
def billing_engine(
    test_db: AsyncSession, registry: ProviderRegistry, retry_policy: RetryPolicy
) -> BillingEngine:
    return BillingEngine(
        registry=registry,
        session_factory=get_session_factory(),
        retry_policy=retry_policy,
        lease_seconds=300,
    )


@pytest.fixture
def customer_service(registry: ProviderRegistry) -> CustomerService:
    return CustomerService(registry)


@pytest_asyncio.fixture
async def customer(test_db: AsyncSession, customer_service: CustomerService) -> Customer:
    customer = await customer_service.create_customer(
        test_db, user_id="user_123", email="jane@example.com", name="Jane Doe"
    )
    await test_db.commit()
    return customer


@pytest_asyncio.fixture
async def payment_method(
    test_db: AsyncSession, customer_service: CustomerService, customer: Customer
) -> PaymentMethod:
    method = await customer_service.attach_payment_method(
        test_db, customer.id, "stripe", "card_visa"
    )
    await test_db.commit()
    return method


@pytest_asyncio.fixture
async def monthly_product(test_db: AsyncSession) -> Product:
    product = Product(
        name="Pro Monthly",
        product_type="digital",
        is_recurring=True,
        price_cents=1999,
        currency="USD",
        billing_interval="monthly",
        interval_multiplier=1,
        trial_days=0,
        is_active=True,
    )
    test_db.add(product)
    await test_db.commit()
    return product


@pytest.fixture
def make_subscription(
    test_db: AsyncSession,
    customer: Customer,
    payment_method: PaymentMethod,
    monthly_product: Product,
) -> Callable[..., Awaitable[Subscription]]:
    """Insert a subscription that is due for billing (no charge is made)."""

    async def _make(**overrides: Any) -> Subscription:
        anchor = overrides.pop("billing_cycle_anchor", utcnow() - timedelta(minutes=5))
        total = overrides.pop("total_cents", monthly_product.price_cents)
        fields: Dict[str, Any] = {
            "customer_id": customer.id,
            "product_id": monthly_product.id,
            "provider_id": payment_method.provider_id,
            "payment_method_id": payment_method.id,
            "status": "active",
            "billing_status": "active",
            "subtotal_cents": total,
            "tax_cents": 0,
            "discount_cents": 0,
            "total_cents": total,
            "currency": "USD",
            "billing_interval": "monthly",
            "interval_multiplier": 1,
            "billing_cycle_anchor": anchor,
            "billing_cycle_index": 0,
            "next_billing_date": anchor,
            "billing_retry_count": 0,
            "max_retry_attempts": 3,
            "cancel_at_period_end": False,
            "description": "Pro Monthly",
        }
        fields.update(overrides)
        subscription = Subscription(**fields)
        test_db.add(subscription)
        await test_db.commit()
        return subscription

    return _make


@pytest.fixture
def sample_intent_data() -> Dict[str, Any]:
    """Sample payment intent request data."""
    return {
        "provider_id": "stripe",
        "amount_cents": 1000,
        "currency": "USD",
        "user_id": "user_123",
        "metadata": {"product": "Premium Pack"},
    }
