"""
Ledger writer.

Records payments, invoices, audit events and outbox events. It only ever
adds to the session it is given; committing is the caller's job, which is
what keeps ledger rows atomic with the state transition they describe.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.config import get_settings
from native_payments.database.models import (
    Invoice,
    Order,
    OutboxEvent,
    Payment,
    PaymentEvent,
    Subscription,
)
from native_payments.database.types import utcnow
from native_payments.integrations.base import ChargeResult

logger = structlog.get_logger(__name__)


def _reference(prefix: str, now: datetime) -> str:
    return f"{prefix}-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def payment_snapshot(payment: Payment) -> Dict[str, Any]:
    """Serializable view of a payment for events and API responses."""
    return {
        "id": payment.id,
        "customer_id": payment.customer_id,
        "user_id": payment.user_id,
        "order_id": payment.order_id,
        "subscription_id": payment.subscription_id,
        "provider_id": payment.provider_id,
        "provider_payment_id": payment.provider_payment_id,
        "amount_cents": payment.amount_cents,
        "refunded_cents": payment.refunded_cents,
        "currency": payment.currency,
        "status": payment.status,
        "idempotency_key": payment.idempotency_key,
        "client_secret": payment.client_secret,
        "error_code": payment.error_code,
        "error_message": payment.error_message,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "updated_at": payment.updated_at.isoformat() if payment.updated_at else None,
    }


class LedgerWriter:
    """
    Writes ledger rows into a caller-owned transaction.

    All rows written by one instance share a correlation id.
    """

    def __init__(self, db: AsyncSession, correlation_id: Optional[str] = None):
        self.db = db
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.settings = get_settings()

    def record_event(
        self,
        entity_type: str,
        entity_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an audit event."""
        self.db.add(
            PaymentEvent(
                entity_type=entity_type,
                entity_id=entity_id,
                event_type=event_type,
                event_data=data or {},
                correlation_id=self.correlation_id,
                created_at=utcnow(),
            )
        )

    def write_outbox(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> None:
        """Write event to transactional outbox."""
        self.db.add(
            OutboxEvent(
                aggregate_id=aggregate_id,
                aggregate_type=aggregate_type,
                event_type=event_type,
                payload=payload,
                published=False,
                created_at=utcnow(),
            )
        )

    # Payments

    async def start_payment(self, **fields: Any) -> Payment:
        """
        Insert a payment in ``processing`` state.

        Args:
            **fields: Payment column values (idempotency_key, amount_cents...)

        Returns:
            Payment: Flushed payment row
        """
        fields.setdefault("status", "processing")
        payment = Payment(**fields)
        self.db.add(payment)
        await self.db.flush()

        self.record_event(
            "payment",
            payment.id,
            "payment.created",
            {
                "amount_cents": payment.amount_cents,
                "currency": payment.currency,
                "status": payment.status,
                "attempt_number": payment.attempt_number,
                "idempotency_key": payment.idempotency_key,
            },
        )
        return payment

    def complete_payment(self, payment: Payment, result: ChargeResult) -> None:
        """Apply a provider charge result to the payment."""
        payment.provider_payment_id = result.provider_payment_id or payment.provider_payment_id
        payment.client_secret = result.client_secret or payment.client_secret
        payment.status = "succeeded" if result.status == "succeeded" else "processing"
        payment.error_code = None
        payment.error_message = None
        if payment.status == "succeeded":
            payment.completed_at = utcnow()

        self.record_event(
            "payment",
            payment.id,
            f"payment.{payment.status}",
            {"provider_payment_id": payment.provider_payment_id, "status": payment.status},
        )
        if payment.status == "succeeded":
            self.write_outbox("payment", payment.id, "payment.succeeded", payment_snapshot(payment))

    def fail_payment(
        self, payment: Payment, error_code: Optional[str], error_message: str
    ) -> None:
        """Mark the payment as failed."""
        payment.status = "failed"
        payment.error_code = error_code
        payment.error_message = error_message
        payment.completed_at = utcnow()

        self.record_event(
            "payment",
            payment.id,
            "payment.failed",
            {"error_code": error_code, "error": error_message},
        )
        self.write_outbox("payment", payment.id, "payment.failed", payment_snapshot(payment))

    def refund_payment(self, payment: Payment, refund_id: str, amount_cents: int) -> None:
        """Record a (partial) refund against the payment."""
        payment.refunded_cents = min(payment.refunded_cents + amount_cents, payment.amount_cents)
        if payment.refunded_cents >= payment.amount_cents:
            payment.status = "refunded"

        self.record_event(
            "payment",
            payment.id,
            "payment.refunded",
            {
                "refund_id": refund_id,
                "amount_cents": amount_cents,
                "refunded_cents": payment.refunded_cents,
            },
        )
        self.write_outbox("payment", payment.id, "payment.refunded", payment_snapshot(payment))

    # Invoices

    async def open_period_invoice(
        self, subscription: Subscription, period_start: datetime, period_end: datetime
    ) -> Invoice:
        """
        Get or create the invoice for one subscription period.

        Returns:
            Invoice: The period's invoice (one per subscription and period)
        """
        stmt = select(Invoice).where(
            Invoice.subscription_id == subscription.id,
            Invoice.period_start == period_start,
        )
        invoice = (await self.db.execute(stmt)).scalar_one_or_none()
        if invoice is not None:
            return invoice

        now = utcnow()
        invoice = Invoice(
            invoice_number=self.next_invoice_number(now),
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            status="open",
            subtotal_cents=subscription.subtotal_cents,
            tax_cents=subscription.tax_cents,
            discount_cents=subscription.discount_cents,
            total_cents=subscription.total_cents,
            currency=subscription.currency,
            period_start=period_start,
            period_end=period_end,
            attempt_count=0,
            line_items=[
                {
                    "description": subscription.description or "Subscription",
                    "quantity": 1,
                    "unit_price_cents": subscription.subtotal_cents,
                    "total_cents": subscription.subtotal_cents,
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                }
            ],
            issue_date=now,
            due_date=now + timedelta(days=self.settings.invoice_due_days),
        )
        self.db.add(invoice)
        await self.db.flush()

        self.record_event(
            "invoice",
            invoice.id,
            "invoice.created",
            {"subscription_id": subscription.id, "total_cents": invoice.total_cents},
        )
        return invoice

    async def create_order_invoice(self, order: Order, line_items: List[Dict[str, Any]]) -> Invoice:
        """Create the open invoice for an order."""
        now = utcnow()
        invoice = Invoice(
            invoice_number=self.next_invoice_number(now),
            customer_id=order.customer_id,
            order_id=order.id,
            status="open",
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            discount_cents=order.discount_cents,
            total_cents=order.total_cents,
            currency=order.currency,
            line_items=line_items,
            issue_date=now,
            due_date=now + timedelta(days=self.settings.invoice_due_days),
        )
        self.db.add(invoice)
        await self.db.flush()
        self.record_event("invoice", invoice.id, "invoice.created", {"order_id": order.id})
        return invoice

    def record_invoice_attempt(self, invoice: Invoice, payment: Payment) -> None:
        invoice.attempt_count += 1
        invoice.payment_id = payment.id

    def mark_invoice_paid(self, invoice: Invoice, payment: Payment) -> None:
        invoice.status = "paid"
        invoice.payment_id = payment.id
        invoice.paid_date = utcnow()
        self.record_event("invoice", invoice.id, "invoice.paid", {"payment_id": payment.id})
        self.write_outbox(
            "invoice",
            invoice.id,
            "invoice.paid",
            {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "payment_id": payment.id,
                "total_cents": invoice.total_cents,
                "currency": invoice.currency,
            },
        )

    def mark_invoice_uncollectible(self, invoice: Invoice) -> None:
        invoice.status = "uncollectible"
        self.record_event(
            "invoice", invoice.id, "invoice.uncollectible", {"attempts": invoice.attempt_count}
        )

    async def void_open_invoices(self, subscription_id: str) -> int:
        """Void every open invoice of a subscription (used on cancellation)."""
        result = await self.db.execute(
            update(Invoice)
            .where(Invoice.subscription_id == subscription_id, Invoice.status == "open")
            .values(status="void", updated_at=utcnow())
        )
        return result.rowcount or 0

    # Numbering

    @staticmethod
    def next_invoice_number(now: Optional[datetime] = None) -> str:
        return _reference("INV", now or utcnow())

    @staticmethod
    def next_order_number(now: Optional[datetime] = None) -> str:
        return _reference("ORD", now or utcnow())
