"""
Pydantic schemas for API request/response models.
"""
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# Customers and payment methods


class CreateCustomerRequest(BaseModel):
    """Request schema for creating a customer (registered user or guest)."""

    user_id: Optional[str] = Field(default=None, description="Host application user id")
    email: Optional[str] = Field(default=None, description="Email (required for guests)")
    name: Optional[str] = Field(default=None, description="Display name")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Arbitrary metadata")

    @model_validator(mode="after")
    def require_identity(self) -> "CreateCustomerRequest":
        if not self.user_id and not self.email:
            raise ValueError("Either user_id or email is required")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"user_id": "user_123", "email": "jane@example.com", "name": "Jane Doe"},
                {"email": "guest@example.com"},
            ]
        }
    }


class CustomerResponse(BaseModel):
    id: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    is_guest: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None


class AttachPaymentMethodRequest(BaseModel):
    """Request schema for storing a client-side tokenised payment method."""

    customer_id: str = Field(..., description="Owning customer")
    provider_id: str = Field(..., description="Provider that issued the token")
    payment_token: str = Field(..., min_length=1, description="Provider payment token")
    make_default: bool = Field(default=True, description="Make it the default method")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "customer_id": "0b6c7f8e-2f0e-4d5c-9a3e-7a1f3c4b5d6e",
                    "provider_id": "stripe",
                    "payment_token": "pm_card_visa",
                }
            ]
        }
    }


class PaymentMethodResponse(BaseModel):
    id: str
    customer_id: str
    provider_id: str
    payment_type: str
    last_four: Optional[str] = None
    card_brand: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    is_default: bool


# Payment intents


class CreateIntentRequest(BaseModel):
    """Request schema for creating a one-time payment intent."""

    provider_id: str = Field(..., description="Provider to create the intent at")
    amount_cents: int = Field(..., gt=0, description="Payment amount in cents")
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="Currency code (e.g., USD)"
    )
    customer_id: Optional[str] = Field(default=None, description="Paying customer")
    user_id: Optional[str] = Field(default=None, description="Host application user id")
    description: Optional[str] = Field(default=None, description="Payment description")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Payment metadata")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Normalise currency code to upper case."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "provider_id": "stripe",
                    "amount_cents": 1000,
                    "currency": "USD",
                    "user_id": "user_123",
                    "metadata": {"product": "Premium Pack"},
                }
            ]
        }
    }


class PaymentResponse(BaseModel):
    """Response schema for a payment."""

    id: str
    customer_id: Optional[str] = None
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    provider_id: str
    provider_payment_id: Optional[str] = None
    amount_cents: int
    refunded_cents: int = 0
    currency: str
    status: str
    idempotency_key: str
    client_secret: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount_cents: Optional[int] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )
    reason: Optional[str] = Field(
        default=None, description="Refund reason (requested_by_customer, duplicate, fraudulent)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount_cents": 500, "reason": "requested_by_customer"},
                {"reason": "duplicate"},
            ]
        }
    }


class RefundResponse(BaseModel):
    """Response schema for refund."""

    payment_id: str = Field(..., description="Payment ID")
    refund_id: str = Field(..., description="Provider refund ID")
    status: str = Field(..., description="Refund status")
    amount_cents: int = Field(..., description="Refunded amount in cents")
    refunded_cents: int = Field(..., description="Total refunded so far")
    payment_status: str = Field(..., description="Payment status after the refund")


# Orders


class OrderItemRequest(BaseModel):
    product_id: Optional[str] = Field(default=None, description="Catalog product")
    description: Optional[str] = Field(default=None, description="Line description")
    unit_price_cents: Optional[int] = Field(
        default=None, ge=0, description="Unit price for items without a product"
    )
    quantity: int = Field(default=1, ge=1)


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    customer_id: str
    items: List[OrderItemRequest] = Field(..., min_length=1)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    tax_cents: int = Field(default=0, ge=0)
    discount_cents: int = Field(default=0, ge=0)
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Normalise currency code to upper case."""
        return v.upper() if v else v


class PayOrderRequest(BaseModel):
    payment_method_id: str = Field(..., description="Stored payment method to charge")


class OrderItemResponse(BaseModel):
    id: str
    product_id: Optional[str] = None
    description: str
    quantity: int
    unit_price_cents: int
    total_cents: int


class OrderResponse(BaseModel):
    id: str
    order_number: str
    customer_id: str
    status: str
    subtotal_cents: int
    tax_cents: int
    discount_cents: int
    total_cents: int
    currency: str
    description: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: Optional[str] = None
    items: List[OrderItemResponse] = Field(default_factory=list)


# Subscriptions


class CreateSubscriptionRequest(BaseModel):
    """Request schema for subscribing a customer to a recurring product."""

    customer_id: str
    product_id: str
    payment_method_id: str
    tax_cents: int = Field(default=0, ge=0)
    discount_cents: int = Field(default=0, ge=0)
    trial_days: Optional[int] = Field(default=None, ge=0, description="Overrides the product's")
    description: Optional[str] = None
    concept: Optional[str] = None
    reference_code: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class CancelSubscriptionRequest(BaseModel):
    at_period_end: bool = Field(default=False, description="Keep access until the period ends")
    reason: Optional[str] = None


class ReactivateSubscriptionRequest(BaseModel):
    payment_method_id: Optional[str] = Field(
        default=None, description="Switch to this method before retrying"
    )


class ChangePaymentMethodRequest(BaseModel):
    payment_method_id: str


class BillingOutcomeResponse(BaseModel):
    status: str
    subscription_id: str
    payment_id: Optional[str] = None
    invoice_id: Optional[str] = None
    billing_status: Optional[str] = None
    retry_count: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: str
    customer_id: str
    product_id: str
    provider_id: str
    payment_method_id: Optional[str] = None
    status: str
    billing_status: str
    subtotal_cents: int
    tax_cents: int
    discount_cents: int
    total_cents: int
    currency: str
    billing_interval: str
    interval_multiplier: int
    billing_cycle_anchor: Optional[str] = None
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    trial_end: Optional[str] = None
    next_billing_date: Optional[str] = None
    billing_retry_count: int
    max_retry_attempts: int
    cancel_at_period_end: bool
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    description: Optional[str] = None
    concept: Optional[str] = None
    reference_code: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    billing: Optional[BillingOutcomeResponse] = Field(
        default=None, description="Outcome of the charge made by this request"
    )


# Webhooks


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: str = Field(..., description="Provider event ID")
    event_type: Optional[str] = Field(default=None, description="Normalised event type")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler result")


# Memberships


class MembershipTypeResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    duration_type: str
    duration_days: Optional[int] = None
    billing_interval: Optional[str] = None
    price_cents: int
    currency: str
    features: List[str] = Field(default_factory=list)


class CreateMembershipRequest(BaseModel):
    membership_type_id: str
    payment_method_id: Optional[str] = Field(
        default=None, description="Required unless the membership is free"
    )
    email: Optional[str] = Field(default=None, description="Used for a new customer record")


class CancelMembershipRequest(BaseModel):
    immediately: bool = Field(
        default=False, description="End access now instead of at the end of the paid period"
    )
    reason: Optional[str] = None


class PurchaseAddonRequest(BaseModel):
    feature_id: str
    payment_method_id: str


class MembershipResponse(BaseModel):
    id: str
    user_id: str
    customer_id: str
    membership_type_id: str
    status: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    auto_renew: bool
    addons: List[Dict[str, Any]] = Field(default_factory=list)
    subscription_id: Optional[str] = None
    order_id: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None


# Analytics and admin


class MetricResponse(BaseModel):
    date: str
    metric_type: str
    currency: str
    value: int
    breakdown: Dict[str, Any] = Field(default_factory=dict)
    calculation_method: str
    calculation_duration_ms: Optional[int] = None
    data_freshness: str


class SnapshotRequest(BaseModel):
    snapshot_date: Optional[date] = Field(default=None, description="Defaults to yesterday")
    currencies: Optional[List[str]] = Field(default=None, description="Defaults to all in use")


class BillingRunResponse(BaseModel):
    started_at: str
    due: int
    outcomes: Dict[str, int]
    errors: int
    expired_memberships: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
