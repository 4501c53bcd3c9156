"""SQLAlchemy database models for the payments, billing and membership system."""
from datetime import date, datetime
from typing import Any, Dict, List

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from native_payments.database.types import (
    BigIntegerPK,
    JSONType,
    UTCDateTime,
    new_id,
    utcnow,
)

PAYMENT_STATUSES = ("pending", "processing", "succeeded", "failed", "refunded")
SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "suspended", "cancelled")
BILLING_STATUSES = ("active", "past_due", "suspended", "cancelled")
BILLING_INTERVALS = ("daily", "weekly", "monthly", "yearly")
INVOICE_STATUSES = ("draft", "open", "paid", "void", "uncollectible")
ORDER_STATUSES = ("pending", "processing", "paid", "failed", "cancelled", "refunded")
MEMBERSHIP_STATUSES = ("pending", "active", "suspended", "expired", "cancelled")
DURATION_TYPES = ("recurring", "fixed", "lifetime")


def _in(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentProvider(Base):
    """Supported payment processors (stripe, paypal, authorize_net)."""

    __tablename__ = "payment_providers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    supports_subscriptions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    supports_saved_methods: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    config: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<PaymentProvider(id={self.id}, active={self.is_active})>"


class Customer(Base):
    """
    Customer entity.

    A single abstraction over registered users (``user_id`` set by the host
    application) and guests (identified by email only).
    """

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_guest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extra_data: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "user_id IS NOT NULL OR email IS NOT NULL", name="customer_identified"
        ),
        CheckConstraint(
            "is_guest = false OR email IS NOT NULL", name="guest_requires_email"
        ),
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, user_id={self.user_id}, guest={self.is_guest})>"


class ProviderCustomer(Base):
    """A customer's identity at one payment provider."""

    __tablename__ = "provider_customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("payment_providers.id"), nullable=False
    )
    provider_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider_id", "provider_customer_id", name="uq_provider_customer_ref"),
        UniqueConstraint("customer_id", "provider_id", name="uq_customer_provider"),
    )


class PaymentMethod(Base):
    """Stored payment method, tokenised at the provider."""

    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("payment_providers.id"), nullable=False
    )
    provider_payment_method_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(32), nullable=False, default="card")
    last_four: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String(32), nullable=True)
    expiry_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expiry_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "provider_id", "provider_payment_method_id", name="uq_provider_payment_method"
        ),
        CheckConstraint(
            "expiry_month IS NULL OR (expiry_month BETWEEN 1 AND 12)",
            name="valid_expiry_month",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentMethod(id={self.id}, provider={self.provider_id}, "
            f"type={self.payment_type}, default={self.is_default})>"
        )


class Product(Base):
    """Sellable product; recurring products drive subscriptions."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    product_type: Mapped[str] = mapped_column(String(32), nullable=False, default="digital")
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    billing_interval: Mapped[str | None] = mapped_column(String(16), nullable=True)
    interval_multiplier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    extra_data: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="non_negative_price"),
        CheckConstraint(
            "is_recurring = false OR billing_interval IS NOT NULL",
            name="recurring_requires_interval",
        ),
        CheckConstraint(
            "billing_interval IS NULL OR " + _in("billing_interval", BILLING_INTERVALS),
            name="valid_product_interval",
        ),
    )


class Order(Base):
    """One-time purchase with unified pricing."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_data: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents - discount_cents",
            name="order_total_matches",
        ),
        CheckConstraint(_in("status", ORDER_STATUSES), name="valid_order_status"),
    )


class OrderItem(Base):
    """Line of an order."""

    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=True
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)


class Subscription(Base):
    """
    Recurring billing agreement.

    Periods are derived from ``billing_cycle_anchor`` and
    ``billing_cycle_index`` so that calendar clamping never accumulates.
    ``billing_lease_token``/``billing_lease_expires_at`` hold the lease taken
    by whichever worker is currently charging the subscription.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False)
    provider_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("payment_providers.id"), nullable=False
    )
    payment_method_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_methods.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")

    # Unified pricing
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Billing cycle
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False)
    interval_multiplier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    billing_cycle_anchor: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    billing_cycle_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    last_billing_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Retry controller state
    billing_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    billing_status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    billing_lease_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    billing_lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Enhanced tracking
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    concept: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reference_code: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tags: Mapped[List[str] | None] = mapped_column(JSONType, nullable=True)
    extra_data: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents - discount_cents",
            name="subscription_total_matches",
        ),
        CheckConstraint("total_cents >= 0", name="non_negative_subscription_total"),
        CheckConstraint(
            "interval_multiplier BETWEEN 1 AND 12", name="valid_interval_multiplier"
        ),
        CheckConstraint(
            _in("billing_interval", BILLING_INTERVALS), name="valid_billing_interval"
        ),
        CheckConstraint(
            _in("billing_status", BILLING_STATUSES), name="valid_billing_status"
        ),
        CheckConstraint(_in("status", SUBSCRIPTION_STATUSES), name="valid_subscription_status"),
        CheckConstraint(
            "billing_retry_count >= 0 AND billing_retry_count <= max_retry_attempts",
            name="retry_count_within_max",
        ),
        Index("idx_subscriptions_due", "billing_status", "next_billing_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, status={self.status}, "
            f"billing_status={self.billing_status}, retries={self.billing_retry_count})>"
        )


class Payment(Base):
    """
    Payment records table.

    One row per charge attempt. Subscription charges carry the period they
    pay for; at most one succeeded payment may exist per period.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    idempotency_key: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    customer_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("customers.id"), nullable=True, index=True
    )
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    order_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=True, index=True
    )
    subscription_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), nullable=True, index=True
    )
    billing_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    provider_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("payment_providers.id"), nullable=False
    )
    payment_method_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_methods.id"), nullable=True
    )
    provider_payment_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refunded_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    concept: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reference_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tags: Mapped[List[str] | None] = mapped_column(JSONType, nullable=True)
    extra_data: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_amount"),
        CheckConstraint(
            "refunded_cents >= 0 AND refunded_cents <= amount_cents", name="valid_refund"
        ),
        CheckConstraint(_in("status", PAYMENT_STATUSES), name="valid_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payments_customer_status", "customer_id", "status"),
        Index(
            "uq_payments_subscription_period_succeeded",
            "subscription_id",
            "billing_period_start",
            unique=True,
            postgresql_where=text("status = 'succeeded'"),
            sqlite_where=text("status = 'succeeded'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, provider={self.provider_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class Invoice(Base):
    """Invoice for a subscription period or an order."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id"), nullable=False, index=True
    )
    subscription_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), nullable=True
    )
    order_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=True
    )
    payment_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payments.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    line_items: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    issue_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    due_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    paid_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("subscription_id", "period_start", name="uq_invoice_subscription_period"),
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents - discount_cents",
            name="invoice_total_matches",
        ),
        CheckConstraint(_in("status", INVOICE_STATUSES), name="valid_invoice_status"),
    )


class PaymentWebhook(Base):
    """Received provider webhooks; the row doubles as the durable dedup claim."""

    __tablename__ = "payment_webhooks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    provider_id: Mapped[str] = mapped_column(String(32), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="processing")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_id", "event_id", name="uq_webhook_provider_event"),
        CheckConstraint(
            "status IN ('processing', 'done', 'failed')", name="valid_webhook_status"
        ),
    )


class PaymentEvent(Base):
    """
    Audit trail table.

    Stores every state change of payments, subscriptions, invoices, orders
    and memberships. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        Index("idx_payment_events_entity", "entity_type", "entity_id"),
        Index("idx_payment_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(id={self.id}, {self.entity_type}={self.entity_id}, "
            f"type={self.event_type})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as domain changes,
    then published asynchronously by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class MembershipType(Base):
    """Membership plan and the features it unlocks."""

    __tablename__ = "membership_types"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_type: Mapped[str] = mapped_column(String(16), nullable=False)
    duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    billing_interval: Mapped[str | None] = mapped_column(String(16), nullable=True)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    features: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(_in("duration_type", DURATION_TYPES), name="valid_duration_type"),
        CheckConstraint(
            "duration_type != 'fixed' OR duration_days IS NOT NULL",
            name="fixed_requires_duration",
        ),
        CheckConstraint(
            "duration_type != 'recurring' OR billing_interval IS NOT NULL",
            name="recurring_requires_billing_interval",
        ),
        CheckConstraint("price_cents >= 0", name="non_negative_membership_price"),
    )


class UserMembership(Base):
    """A user's membership, backed by a subscription or a one-time order."""

    __tablename__ = "user_memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id"), nullable=False
    )
    membership_type_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("membership_types.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    addons: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    subscription_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), nullable=True, index=True
    )
    order_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(_in("status", MEMBERSHIP_STATUSES), name="valid_membership_status"),
        Index("idx_user_memberships_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserMembership(id={self.id}, user_id={self.user_id}, "
            f"status={self.status})>"
        )


class AnalyticsSnapshot(Base):
    """Precomputed metric value cached by date, metric type and currency."""

    __tablename__ = "analytics_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    metric_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    breakdown: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    calculation_method: Mapped[str] = mapped_column(String(16), nullable=False)
    calculation_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    data_freshness: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "snapshot_date", "metric_type", "currency", name="uq_snapshot_date_metric_currency"
        ),
        CheckConstraint(
            "calculation_method IN ('scheduled', 'on_demand', 'manual')",
            name="valid_calculation_method",
        ),
        CheckConstraint(
            "data_freshness IN ('historical', 'recent', 'real_time')",
            name="valid_data_freshness",
        ),
    )
