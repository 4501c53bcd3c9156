"""
API routes for customers, payments, orders, subscriptions and webhooks.

Domain errors raised by the services are turned into responses by the
exception handlers registered in :mod:`native_payments.api.main`.
"""
import time
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.api.deps import Services, get_services
from native_payments.api.schemas import (
    AttachPaymentMethodRequest,
    BillingRunResponse,
    CancelSubscriptionRequest,
    ChangePaymentMethodRequest,
    CreateCustomerRequest,
    CreateIntentRequest,
    CreateOrderRequest,
    CreateSubscriptionRequest,
    CustomerResponse,
    HealthCheckResponse,
    OrderResponse,
    PaymentMethodResponse,
    PaymentResponse,
    PayOrderRequest,
    ReactivateSubscriptionRequest,
    RefundRequest,
    RefundResponse,
    SubscriptionResponse,
    WebhookResponse,
)
from native_payments.core.customers import customer_snapshot, payment_method_snapshot
from native_payments.core.ledger import payment_snapshot
from native_payments.core.orders import order_snapshot
from native_payments.core.subscriptions import subscription_snapshot
from native_payments.database.connection import get_db

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/payment"

# Create routers
customer_router = APIRouter(prefix=API_PREFIX, tags=["customers"])
payment_router = APIRouter(prefix=f"{API_PREFIX}/intents", tags=["payments"])
order_router = APIRouter(prefix=f"{API_PREFIX}/orders", tags=["orders"])
subscription_router = APIRouter(prefix=f"{API_PREFIX}/subscriptions", tags=["subscriptions"])
webhook_router = APIRouter(prefix=f"{API_PREFIX}/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix=f"{API_PREFIX}/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


# Customers and payment methods


@customer_router.post(
    "/customers",
    response_model=CustomerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a customer",
    description="Create a registered or guest customer (returns the existing one for a user_id)",
)
async def create_customer(
    request: CreateCustomerRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    customer = await services.customers.create_customer(
        db,
        user_id=request.user_id,
        email=request.email,
        name=request.name,
        metadata=request.metadata,
    )
    return customer_snapshot(customer)


@customer_router.get("/customers/{customer_id}", response_model=CustomerResponse)
async def get_customer(
    customer_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return customer_snapshot(await services.customers.get_customer(db, customer_id))


@customer_router.post(
    "/methods",
    response_model=PaymentMethodResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a payment method",
)
async def attach_payment_method(
    request: AttachPaymentMethodRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        "api_attach_payment_method_request",
        customer_id=request.customer_id,
        provider=request.provider_id,
    )
    method = await services.customers.attach_payment_method(
        db,
        request.customer_id,
        request.provider_id,
        request.payment_token,
        make_default=request.make_default,
    )
    return payment_method_snapshot(method)


@customer_router.get(
    "/customers/{customer_id}/methods", response_model=List[PaymentMethodResponse]
)
async def list_payment_methods(
    customer_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    methods = await services.customers.list_payment_methods(db, customer_id)
    return [payment_method_snapshot(method) for method in methods]


@customer_router.post("/methods/{payment_method_id}/default", response_model=PaymentMethodResponse)
async def set_default_payment_method(
    payment_method_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    method = await services.customers.set_default_payment_method(db, payment_method_id)
    return payment_method_snapshot(method)


@customer_router.delete("/methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def detach_payment_method(
    payment_method_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Response:
    await services.customers.detach_payment_method(db, payment_method_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Payment intents


@payment_router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent",
    description="Create a one-time payment intent with idempotency guarantees",
)
async def create_intent(
    request: CreateIntentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Create a new payment intent.

    This endpoint is idempotent: a repeated Idempotency-Key returns the same payment.
    """
    start_time = time.time()
    logger.info(
        "api_create_intent_request",
        provider=request.provider_id,
        amount_cents=request.amount_cents,
        currency=request.currency,
    )

    payment = await services.payments.create_intent(
        db,
        provider_id=request.provider_id,
        amount_cents=request.amount_cents,
        currency=request.currency,
        customer_id=request.customer_id,
        user_id=request.user_id,
        description=request.description,
        metadata=request.metadata,
        idempotency_key=idempotency_key,
    )

    logger.info(
        "api_create_intent_success",
        payment_id=payment["id"],
        status=payment["status"],
        duration_seconds=time.time() - start_time,
    )
    return payment


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    summary="Get payment status",
)
async def get_payment_status(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.payments.get_payment_status(db, payment_id)


@payment_router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment",
    description="Create a full or partial refund for a payment",
)
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        "api_refund_payment_request",
        payment_id=payment_id,
        amount_cents=request.amount_cents,
        reason=request.reason,
    )
    refund = await services.payments.refund_payment(
        db, payment_id, amount_cents=request.amount_cents, reason=request.reason
    )
    logger.info("api_refund_payment_success", payment_id=payment_id, refund_id=refund["refund_id"])
    return refund


# Orders


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    order = await services.orders.create_order(
        db,
        request.customer_id,
        [item.model_dump(exclude_none=True) for item in request.items],
        currency=request.currency,
        tax_cents=request.tax_cents,
        discount_cents=request.discount_cents,
        description=request.description,
        metadata=request.metadata,
    )
    return order_snapshot(order, await services.orders.get_items(db, order.id))


@order_router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    order = await services.orders.get_order(db, order_id)
    return order_snapshot(order, await services.orders.get_items(db, order.id))


@order_router.post(
    "/{order_id}/pay",
    response_model=PaymentResponse,
    summary="Pay an order with a stored payment method",
)
async def pay_order(
    order_id: str,
    request: PayOrderRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_pay_order_request", order_id=order_id)
    payment = await services.orders.pay_order(
        db, order_id, request.payment_method_id, idempotency_key=idempotency_key
    )
    return payment_snapshot(payment)


# Subscriptions


@subscription_router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription",
    description="Subscribe a customer to a recurring product; bills at once unless trialing",
)
async def create_subscription(
    request: CreateSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        "api_create_subscription_request",
        customer_id=request.customer_id,
        product_id=request.product_id,
    )
    subscription, outcome = await services.subscriptions.create_subscription(
        db,
        request.customer_id,
        request.product_id,
        request.payment_method_id,
        tax_cents=request.tax_cents,
        discount_cents=request.discount_cents,
        trial_days=request.trial_days,
        description=request.description,
        concept=request.concept,
        reference_code=request.reference_code,
        category=request.category,
        tags=request.tags,
        metadata=request.metadata,
    )
    body = subscription_snapshot(subscription)
    body["billing"] = outcome.to_dict() if outcome else None
    return body


@subscription_router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return subscription_snapshot(await services.subscriptions.get_subscription(db, subscription_id))


@subscription_router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    request: CancelSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    subscription = await services.subscriptions.cancel_subscription(
        db, subscription_id, at_period_end=request.at_period_end, reason=request.reason
    )
    return subscription_snapshot(subscription)


@subscription_router.post("/{subscription_id}/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(
    subscription_id: str,
    request: ReactivateSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    subscription, outcome = await services.subscriptions.reactivate_subscription(
        db, subscription_id, payment_method_id=request.payment_method_id
    )
    body = subscription_snapshot(subscription)
    body["billing"] = outcome.to_dict()
    return body


@subscription_router.post("/{subscription_id}/payment-method", response_model=SubscriptionResponse)
async def change_payment_method(
    subscription_id: str,
    request: ChangePaymentMethodRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    subscription = await services.subscriptions.change_payment_method(
        db, subscription_id, request.payment_method_id
    )
    return subscription_snapshot(subscription)


# Webhooks


@webhook_router.post(
    "/{provider_id}",
    response_model=WebhookResponse,
    summary="Provider webhook endpoint",
    description="Verify and process a provider webhook delivery",
)
async def provider_webhook(
    provider_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle provider webhook events.

    Verifies the signature and processes the event with deduplication.
    """
    body = await request.body()
    result = await services.webhooks.handle(provider_id, body, dict(request.headers), db)
    logger.info(
        "api_webhook_handled",
        provider=provider_id,
        event_id=result["event_id"],
        status=result["status"],
    )
    return result


# Admin


@admin_router.post(
    "/billing/run",
    response_model=BillingRunResponse,
    summary="Run a billing cycle",
    description="Bill every due subscription now instead of waiting for the scheduler",
)
async def run_billing(services: Services = Depends(get_services)) -> Dict[str, Any]:
    report = await services.scheduler.run_once()
    logger.info("api_billing_run_completed", due=report.due, errors=report.errors)
    return report.to_dict()


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        result = await services.health.readiness()
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        ) from e
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
