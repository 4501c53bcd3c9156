"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import List, Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = postgresql.JSONB(astext_type=sa.Text())


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _pricing_columns() -> List[sa.Column]:
    return [
        sa.Column("subtotal_cents", sa.BigInteger(), nullable=False),
        sa.Column("tax_cents", sa.BigInteger(), nullable=False),
        sa.Column("discount_cents", sa.BigInteger(), nullable=False),
        sa.Column("total_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table(
        "payment_providers",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("supports_subscriptions", sa.Boolean(), nullable=False),
        sa.Column("supports_saved_methods", sa.Boolean(), nullable=False),
        sa.Column("config", JSONB, nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("is_guest", sa.Boolean(), nullable=False),
        sa.Column("metadata", JSONB, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("user_id IS NOT NULL OR email IS NOT NULL", name="customer_identified"),
        sa.CheckConstraint("is_guest = false OR email IS NOT NULL", name="guest_requires_email"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_index(op.f("ix_customers_email"), "customers", ["email"], unique=False)

    op.create_table(
        "provider_customers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("provider_id", sa.String(length=32), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=255), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["provider_id"], ["payment_providers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider_id", "provider_customer_id", name="uq_provider_customer_ref"
        ),
        sa.UniqueConstraint("customer_id", "provider_id", name="uq_customer_provider"),
    )

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("provider_id", sa.String(length=32), nullable=False),
        sa.Column("provider_payment_method_id", sa.String(length=255), nullable=False),
        sa.Column("payment_type", sa.String(length=32), nullable=False),
        sa.Column("last_four", sa.String(length=4), nullable=True),
        sa.Column("card_brand", sa.String(length=32), nullable=True),
        sa.Column("expiry_month", sa.Integer(), nullable=True),
        sa.Column("expiry_year", sa.Integer(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "expiry_month IS NULL OR (expiry_month BETWEEN 1 AND 12)",
            name="valid_expiry_month",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["provider_id"], ["payment_providers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider_id", "provider_payment_method_id", name="uq_provider_payment_method"
        ),
    )
    op.create_index(
        op.f("ix_payment_methods_customer_id"), "payment_methods", ["customer_id"], unique=False
    )

    op.create_table(
        "products",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("product_type", sa.String(length=32), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False),
        sa.Column("price_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("billing_interval", sa.String(length=16), nullable=True),
        sa.Column("interval_multiplier", sa.Integer(), nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("metadata", JSONB, nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint("price_cents >= 0", name="non_negative_price"),
        sa.CheckConstraint(
            "is_recurring = false OR billing_interval IS NOT NULL",
            name="recurring_requires_interval",
        ),
        sa.CheckConstraint(
            "billing_interval IS NULL OR billing_interval IN "
            "('daily', 'weekly', 'monthly', 'yearly')",
            name="valid_product_interval",
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("order_number", sa.String(length=32), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        *_pricing_columns(),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        _timestamp("paid_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "total_cents = subtotal_cents + tax_cents - discount_cents",
            name="order_total_matches",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'paid', 'failed', 'cancelled', 'refunded')",
            name="valid_order_status",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number"),
    )
    op.create_index(op.f("ix_orders_customer_id"), "orders", ["customer_id"], unique=False)

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.BigInteger(), nullable=False),
        sa.Column("total_cents", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="positive_quantity"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_order_items_order_id"), "order_items", ["order_id"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("provider_id", sa.String(length=32), nullable=False),
        sa.Column("payment_method_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        *_pricing_columns(),
        sa.Column("billing_interval", sa.String(length=16), nullable=False),
        sa.Column("interval_multiplier", sa.Integer(), nullable=False),
        _timestamp("billing_cycle_anchor"),
        sa.Column("billing_cycle_index", sa.Integer(), nullable=False),
        _timestamp("current_period_start", nullable=True),
        _timestamp("current_period_end", nullable=True),
        _timestamp("trial_end", nullable=True),
        _timestamp("next_billing_date", nullable=True),
        _timestamp("last_billing_attempt", nullable=True),
        sa.Column("billing_retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retry_attempts", sa.Integer(), nullable=False),
        sa.Column("billing_status", sa.String(length=16), nullable=False),
        sa.Column("billing_lease_token", sa.String(length=36), nullable=True),
        _timestamp("billing_lease_expires_at", nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        _timestamp("cancelled_at", nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("concept", sa.String(length=255), nullable=True),
        sa.Column("reference_code", sa.String(length=100), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("tags", JSONB, nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "total_cents = subtotal_cents + tax_cents - discount_cents",
            name="subscription_total_matches",
        ),
        sa.CheckConstraint("total_cents >= 0", name="non_negative_subscription_total"),
        sa.CheckConstraint(
            "interval_multiplier BETWEEN 1 AND 12", name="valid_interval_multiplier"
        ),
        sa.CheckConstraint(
            "billing_interval IN ('daily', 'weekly', 'monthly', 'yearly')",
            name="valid_billing_interval",
        ),
        sa.CheckConstraint(
            "billing_status IN ('active', 'past_due', 'suspended', 'cancelled')",
            name="valid_billing_status",
        ),
        sa.CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'suspended', 'cancelled')",
            name="valid_subscription_status",
        ),
        sa.CheckConstraint(
            "billing_retry_count >= 0 AND billing_retry_count <= max_retry_attempts",
            name="retry_count_within_max",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["provider_id"], ["payment_providers.id"]),
        sa.ForeignKeyConstraint(["payment_method_id"], ["payment_methods.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_subscriptions_customer_id"), "subscriptions", ["customer_id"], unique=False
    )
    op.create_index(
        op.f("ix_subscriptions_next_billing_date"),
        "subscriptions",
        ["next_billing_date"],
        unique=False,
    )
    op.create_index(
        op.f("ix_subscriptions_reference_code"), "subscriptions", ["reference_code"], unique=False
    )
    op.create_index(
        "idx_subscriptions_due", "subscriptions", ["billing_status", "next_billing_date"]
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("order_id", sa.String(length=36), nullable=True),
        sa.Column("subscription_id", sa.String(length=36), nullable=True),
        _timestamp("billing_period_start", nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("provider_id", sa.String(length=32), nullable=False),
        sa.Column("payment_method_id", sa.String(length=36), nullable=True),
        sa.Column("provider_payment_id", sa.String(length=255), nullable=True),
        sa.Column("client_secret", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("refunded_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("concept", sa.String(length=255), nullable=True),
        sa.Column("reference_code", sa.String(length=100), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("tags", JSONB, nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("error_code", sa.String(length=100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("completed_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("amount_cents > 0", name="positive_amount"),
        sa.CheckConstraint(
            "refunded_cents >= 0 AND refunded_cents <= amount_cents", name="valid_refund"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed', 'refunded')",
            name="valid_status",
        ),
        sa.CheckConstraint("length(currency) = 3", name="valid_currency"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["provider_id"], ["payment_providers.id"]),
        sa.ForeignKeyConstraint(["payment_method_id"], ["payment_methods.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
        sa.UniqueConstraint("provider_payment_id"),
    )
    op.create_index(
        op.f("ix_payments_idempotency_key"), "payments", ["idempotency_key"], unique=False
    )
    op.create_index(op.f("ix_payments_customer_id"), "payments", ["customer_id"], unique=False)
    op.create_index(op.f("ix_payments_user_id"), "payments", ["user_id"], unique=False)
    op.create_index(op.f("ix_payments_order_id"), "payments", ["order_id"], unique=False)
    op.create_index(
        op.f("ix_payments_subscription_id"), "payments", ["subscription_id"], unique=False
    )
    op.create_index(op.f("ix_payments_status"), "payments", ["status"], unique=False)
    op.create_index(op.f("ix_payments_created_at"), "payments", ["created_at"], unique=False)
    op.create_index("idx_payments_customer_status", "payments", ["customer_id", "status"])
    # At most one succeeded charge per subscription period
    op.create_index(
        "uq_payments_subscription_period_succeeded",
        "payments",
        ["subscription_id", "billing_period_start"],
        unique=True,
        postgresql_where=sa.text("status = 'succeeded'"),
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("invoice_number", sa.String(length=32), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_id", sa.String(length=36), nullable=True),
        sa.Column("order_id", sa.String(length=36), nullable=True),
        sa.Column("payment_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        *_pricing_columns(),
        _timestamp("period_start", nullable=True),
        _timestamp("period_end", nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("line_items", JSONB, nullable=True),
        _timestamp("issue_date"),
        _timestamp("due_date", nullable=True),
        _timestamp("paid_date", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "total_cents = subtotal_cents + tax_cents - discount_cents",
            name="invoice_total_matches",
        ),
        sa.CheckConstraint(
            "status IN ('draft', 'open', 'paid', 'void', 'uncollectible')",
            name="valid_invoice_status",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number"),
        sa.UniqueConstraint(
            "subscription_id", "period_start", name="uq_invoice_subscription_period"
        ),
    )
    op.create_index(op.f("ix_invoices_customer_id"), "invoices", ["customer_id"], unique=False)

    op.create_table(
        "payment_webhooks",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("provider_id", sa.String(length=32), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("received_at"),
        _timestamp("processed_at", nullable=True),
        sa.CheckConstraint(
            "status IN ('processing', 'done', 'failed')", name="valid_webhook_status"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_id", "event_id", name="uq_webhook_provider_event"),
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_data", JSONB, nullable=False),
        sa.Column("correlation_id", sa.String(length=36), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_payment_events_correlation_id"),
        "payment_events",
        ["correlation_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_events_created_at"), "payment_events", ["created_at"], unique=False
    )
    op.create_index("idx_payment_events_entity", "payment_events", ["entity_type", "entity_id"])
    op.create_index("idx_payment_events_type", "payment_events", ["event_type"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", sa.String(length=36), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        _timestamp("created_at"),
        _timestamp("published_at", nullable=True),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_outbox_events_published"), "outbox_events", ["published"], unique=False
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        unique=False,
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(
        "idx_outbox_aggregate", "outbox_events", ["aggregate_id", "aggregate_type"]
    )

    op.create_table(
        "membership_types",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("duration_type", sa.String(length=16), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=True),
        sa.Column("billing_interval", sa.String(length=16), nullable=True),
        sa.Column("price_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("features", JSONB, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "duration_type IN ('recurring', 'fixed', 'lifetime')", name="valid_duration_type"
        ),
        sa.CheckConstraint(
            "duration_type != 'fixed' OR duration_days IS NOT NULL",
            name="fixed_requires_duration",
        ),
        sa.CheckConstraint(
            "duration_type != 'recurring' OR billing_interval IS NOT NULL",
            name="recurring_requires_billing_interval",
        ),
        sa.CheckConstraint("price_cents >= 0", name="non_negative_membership_price"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "user_memberships",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("membership_type_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _timestamp("start_date"),
        _timestamp("end_date", nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False),
        sa.Column("addons", JSONB, nullable=False),
        sa.Column("subscription_id", sa.String(length=36), nullable=True),
        sa.Column("order_id", sa.String(length=36), nullable=True),
        _timestamp("cancelled_at", nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'suspended', 'expired', 'cancelled')",
            name="valid_membership_status",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["membership_type_id"], ["membership_types.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_user_memberships_user_id"), "user_memberships", ["user_id"], unique=False
    )
    op.create_index(
        op.f("ix_user_memberships_subscription_id"),
        "user_memberships",
        ["subscription_id"],
        unique=False,
    )
    op.create_index(
        "idx_user_memberships_user_status", "user_memberships", ["user_id", "status"]
    )

    op.create_table(
        "analytics_snapshots",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("metric_type", sa.String(length=50), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("metric_value", sa.BigInteger(), nullable=False),
        sa.Column("breakdown", JSONB, nullable=True),
        sa.Column("calculation_method", sa.String(length=16), nullable=False),
        sa.Column("calculation_duration_ms", sa.Integer(), nullable=True),
        sa.Column("data_freshness", sa.String(length=16), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "calculation_method IN ('scheduled', 'on_demand', 'manual')",
            name="valid_calculation_method",
        ),
        sa.CheckConstraint(
            "data_freshness IN ('historical', 'recent', 'real_time')",
            name="valid_data_freshness",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "snapshot_date", "metric_type", "currency", name="uq_snapshot_date_metric_currency"
        ),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    # Indexes go with their tables
    for table in (
        "analytics_snapshots",
        "user_memberships",
        "membership_types",
        "outbox_events",
        "payment_events",
        "payment_webhooks",
        "invoices",
        "payments",
        "subscriptions",
        "order_items",
        "orders",
        "products",
        "payment_methods",
        "provider_customers",
        "customers",
        "payment_providers",
    ):
        op.drop_table(table)
