"""
Provider webhook handler with signature verification and event deduplication.

Implements:
- Signature verification delegated to each provider adapter
- Event deduplication using Redis (fast path) and the payment_webhooks table
- Routing of normalised events to handlers
- Reprocessing of events whose earlier delivery failed
"""
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.config import get_settings
from native_payments.core.billing_engine import BillingEngine
from native_payments.core.ledger import LedgerWriter
from native_payments.core.memberships import activate_order_memberships
from native_payments.database.models import (
    Invoice,
    Order,
    Payment,
    PaymentWebhook,
    Subscription,
)
from native_payments.database.types import utcnow
from native_payments.integrations.base import ProviderError, WebhookEvent
from native_payments.integrations.registry import ProviderRegistry, get_provider_registry
from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[WebhookEvent, AsyncSession], Awaitable[Dict[str, Any]]]


class WebhookError(Exception):
    """Raised when webhook verification or processing fails."""

    pass


class WebhookHandler:
    """
    Handles provider webhook events with deduplication and processing.

    Features:
    - Signature verification through the provider adapter
    - Event deduplication (Redis, backed by a durable database claim)
    - Event type routing to appropriate handlers
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        redis_client: Optional[aioredis.Redis] = None,
        billing_engine: Optional[BillingEngine] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            registry: Provider registry (process-wide registry if not provided)
            redis_client: Optional Redis client for event deduplication
            billing_engine: Applies asynchronous subscription declines
        """
        self.settings = get_settings()
        self.registry = registry or get_provider_registry()
        self.billing_engine = billing_engine or BillingEngine(registry=self.registry)
        self.redis_client = redis_client
        self._redis_initialized = redis_client is not None
        self.event_handlers: Dict[str, EventHandler] = {
            "payment.succeeded": self.handle_payment_succeeded,
            "payment.failed": self.handle_payment_failed,
            "payment.refunded": self.handle_payment_refunded,
        }

        logger.info("webhook_handler_initialized")

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None or not self._redis_initialized:
            self.redis_client = await aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a normalised event type.

        Args:
            event_type: Normalised event type (e.g., 'payment.succeeded')
            handler: Async callable taking the event and a database session
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    @staticmethod
    def _dedup_key(provider_id: str, event_id: str) -> str:
        return f"webhook:processed:{provider_id}:{event_id}"

    async def is_event_processed(self, provider_id: str, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            provider_id: Provider that sent the event
            event_id: Provider event ID

        Returns:
            bool: True if event already processed, False otherwise
        """
        try:
            redis = await self._ensure_redis()
            exists = await redis.exists(self._dedup_key(provider_id, event_id))
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # The database claim still catches duplicates while Redis is down
            return False

    async def mark_event_processed(self, provider_id: str, event_id: str) -> None:
        """
        Mark webhook event as processed.

        Args:
            provider_id: Provider that sent the event
            event_id: Provider event ID
        """
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                self._dedup_key(provider_id, event_id),
                self.settings.webhook_dedup_ttl,
                "1",
            )
            logger.info("webhook_marked_processed", provider=provider_id, event_id=event_id)
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def verify(
        self, provider_id: str, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent:
        """
        Verify webhook signature and normalise the event.

        Raises:
            UnknownProviderError: If the provider is not configured
            WebhookError: If signature verification fails
        """
        adapter = self.registry.get(provider_id)
        try:
            return await adapter.verify_webhook(payload, headers)
        except ProviderError as e:
            metrics.record_webhook_event(provider_id, "unknown", "invalid_signature", 0.0)
            raise WebhookError(f"Webhook verification failed: {str(e)}") from e

    async def handle(
        self,
        provider_id: str,
        payload: bytes,
        headers: Mapping[str, str],
        db: AsyncSession,
    ) -> Dict[str, Any]:
        """Verify and process one webhook delivery."""
        event = await self.verify(provider_id, payload, headers)
        return await self.process_event(event, db)

    async def _claim(self, event: WebhookEvent, db: AsyncSession) -> Optional[PaymentWebhook]:
        """
        Claim processing rights for an event.

        The insert wins for the first delivery; later deliveries can only
        reclaim a row whose processing failed.

        Returns:
            Optional[PaymentWebhook]: Claimed row, or None for a duplicate
        """
        row = PaymentWebhook(
            provider_id=event.provider_id,
            event_id=event.event_id,
            event_type=event.provider_event_type,
            payload=event.data,
            status="processing",
            attempts=1,
        )
        db.add(row)
        try:
            await db.commit()
            return row
        except IntegrityError:
            await db.rollback()

        result = await db.execute(
            update(PaymentWebhook)
            .where(
                PaymentWebhook.provider_id == event.provider_id,
                PaymentWebhook.event_id == event.event_id,
                PaymentWebhook.status == "failed",
            )
            .values(
                status="processing",
                attempts=PaymentWebhook.attempts + 1,
                error_message=None,
            )
        )
        await db.commit()
        if result.rowcount != 1:
            return None

        stmt = select(PaymentWebhook).where(
            PaymentWebhook.provider_id == event.provider_id,
            PaymentWebhook.event_id == event.event_id,
        )
        row = (await db.execute(stmt)).scalar_one()
        logger.info("webhook_event_reclaimed", event_id=event.event_id, attempts=row.attempts)
        return row

    async def process_event(self, event: WebhookEvent, db: AsyncSession) -> Dict[str, Any]:
        """
        Process a verified webhook event exactly once.

        Args:
            event: Verified, normalised event
            db: Database session

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            WebhookError: If event processing fails
        """
        start = time.time()
        log = logger.bind(
            provider=event.provider_id,
            event_id=event.event_id,
            event_type=event.event_type,
        )
        log.info("processing_webhook_event", provider_event_type=event.provider_event_type)

        if await self.is_event_processed(event.provider_id, event.event_id):
            log.info("webhook_event_already_processed")
            metrics.record_webhook_event(
                event.provider_id, event.event_type, "duplicate", time.time() - start
            )
            return {"status": "duplicate", "event_id": event.event_id}

        row = await self._claim(event, db)
        if row is None:
            log.info("webhook_event_already_claimed")
            metrics.record_webhook_event(
                event.provider_id, event.event_type, "duplicate", time.time() - start
            )
            return {"status": "duplicate", "event_id": event.event_id}
        row_id = row.id

        handler = self.event_handlers.get(event.event_type)
        try:
            if handler is None:
                result: Dict[str, Any] = {"status": "ignored"}
            else:
                result = await handler(event, db)
            row.status = "done"
            row.processed_at = utcnow()
            await db.commit()
        except Exception as e:
            await db.rollback()
            await db.execute(
                update(PaymentWebhook)
                .where(PaymentWebhook.id == row_id)
                .values(status="failed", error_message=str(e))
            )
            await db.commit()
            log.error("webhook_event_processing_failed", error=str(e))
            metrics.record_webhook_event(
                event.provider_id, event.event_type, "failed", time.time() - start
            )
            raise WebhookError(f"Failed to process event {event.event_id}: {str(e)}") from e

        await self.mark_event_processed(event.provider_id, event.event_id)
        outcome = "ignored" if handler is None else "processed"
        metrics.record_webhook_event(
            event.provider_id, event.event_type, outcome, time.time() - start
        )
        log.info("webhook_event_processed_successfully", outcome=outcome)

        return {
            "status": outcome,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "result": result,
        }

    async def _find_payment(self, event: WebhookEvent, db: AsyncSession) -> Optional[Payment]:
        if not event.provider_payment_id:
            return None
        stmt = select(Payment).where(
            Payment.provider_id == event.provider_id,
            Payment.provider_payment_id == event.provider_payment_id,
        )
        payment = (await db.execute(stmt)).scalar_one_or_none()
        if payment is None:
            logger.warning(
                "webhook_payment_not_found",
                provider=event.provider_id,
                provider_payment_id=event.provider_payment_id,
            )
        return payment

    async def handle_payment_succeeded(
        self, event: WebhookEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Handle a captured payment.

        Order payments settle the order and its invoice here. Subscription
        payments settle their period invoice and become due immediately so
        the billing engine advances the period.
        """
        payment = await self._find_payment(event, db)
        if payment is None:
            return {"status": "skipped", "reason": "payment_not_found"}
        if payment.status in ("succeeded", "refunded"):
            return {"status": "unchanged", "payment_id": payment.id}

        ledger = LedgerWriter(db)
        now = utcnow()
        payment.status = "succeeded"
        payment.error_code = None
        payment.error_message = None
        payment.completed_at = now
        ledger.record_event(
            "payment", payment.id, "payment.succeeded", {"source": "webhook"}
        )
        ledger.write_outbox(
            "payment",
            payment.id,
            "payment.succeeded",
            {"payment_id": payment.id, "amount_cents": payment.amount_cents},
        )

        if payment.order_id:
            order = await db.get(Order, payment.order_id)
            if order is not None and order.status != "paid":
                order.status = "paid"
                order.paid_at = now
                ledger.record_event("order", order.id, "order.paid", {"payment_id": payment.id})
                await activate_order_memberships(db, order.id, ledger, now)
            await self._settle_invoice(db, ledger, payment, Invoice.order_id == payment.order_id)

        if payment.subscription_id:
            await self._settle_invoice(
                db,
                ledger,
                payment,
                (Invoice.subscription_id == payment.subscription_id)
                & (Invoice.period_start == payment.billing_period_start),
            )
            subscription = await db.get(Subscription, payment.subscription_id)
            if (
                subscription is not None
                and subscription.next_billing_date is not None
                and subscription.next_billing_date > now
            ):
                subscription.next_billing_date = now

        return {"status": "succeeded", "payment_id": payment.id}

    async def _settle_invoice(
        self, db: AsyncSession, ledger: LedgerWriter, payment: Payment, condition: Any
    ) -> None:
        stmt = select(Invoice).where(condition, Invoice.status == "open")
        for invoice in (await db.execute(stmt)).scalars().all():
            ledger.mark_invoice_paid(invoice, payment)

    async def handle_payment_failed(
        self, event: WebhookEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Handle an asynchronously failed payment.

        A subscription payment for the open period counts as a decline and
        goes through the retry policy. If a billing attempt holds the lease
        the delivery fails and the provider redelivers it later.
        """
        payment = await self._find_payment(event, db)
        if payment is None:
            return {"status": "skipped", "reason": "payment_not_found"}
        if payment.status != "processing" and payment.status != "pending":
            return {"status": "unchanged", "payment_id": payment.id}

        error_message = event.error_message or "Payment failed at provider"
        if payment.subscription_id:
            outcome = await self.billing_engine.record_async_failure(
                db, payment, "provider_declined", error_message
            )
            result: Dict[str, Any] = {
                "status": "failed",
                "payment_id": payment.id,
                "error": payment.error_message,
            }
            if outcome is not None:
                result["billing_status"] = outcome.transition.billing_status
                result["retry_count"] = outcome.transition.retry_count
            return result

        ledger = LedgerWriter(db)
        ledger.fail_payment(payment, "provider_declined", error_message)

        if payment.order_id:
            order = await db.get(Order, payment.order_id)
            if order is not None and order.status in ("pending", "processing"):
                order.status = "failed"
                ledger.record_event("order", order.id, "order.failed", {"payment_id": payment.id})

        return {"status": "failed", "payment_id": payment.id, "error": payment.error_message}

    async def handle_payment_refunded(
        self, event: WebhookEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Handle a refund made at the provider.

        The event amount is read as the payment's total refunded so far, so a
        refund already recorded through the API is not counted twice.
        """
        payment = await self._find_payment(event, db)
        if payment is None:
            return {"status": "skipped", "reason": "payment_not_found"}

        refunded_total = min(event.amount_cents or payment.amount_cents, payment.amount_cents)
        delta = refunded_total - payment.refunded_cents
        if delta <= 0:
            return {"status": "unchanged", "payment_id": payment.id}

        ledger = LedgerWriter(db)
        ledger.refund_payment(payment, event.event_id, delta)

        if payment.order_id and payment.status == "refunded":
            order = await db.get(Order, payment.order_id)
            if order is not None:
                order.status = "refunded"
                ledger.record_event(
                    "order", order.id, "order.refunded", {"payment_id": payment.id}
                )

        return {
            "status": payment.status,
            "payment_id": payment.id,
            "refunded_cents": payment.refunded_cents,
        }

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client and self._redis_initialized:
            await self.redis_client.close()
