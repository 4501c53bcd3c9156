"""One-time orders and their payment."""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.config import get_settings
from native_payments.core.customers import CustomerService
from native_payments.core.exceptions import (
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    ProviderUnavailableError,
    ValidationError,
)
from native_payments.core.ledger import LedgerWriter
from native_payments.database.models import Invoice, Order, OrderItem, Payment, Product
from native_payments.database.types import utcnow
from native_payments.integrations.base import ProviderError
from native_payments.integrations.registry import ProviderRegistry, get_provider_registry
from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def order_snapshot(order: Order, items: Optional[List[OrderItem]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "status": order.status,
        "subtotal_cents": order.subtotal_cents,
        "tax_cents": order.tax_cents,
        "discount_cents": order.discount_cents,
        "total_cents": order.total_cents,
        "currency": order.currency,
        "description": order.description,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }
    if items is not None:
        body["items"] = [
            {
                "id": item.id,
                "product_id": item.product_id,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price_cents": item.unit_price_cents,
                "total_cents": item.total_cents,
            }
            for item in items
        ]
    return body


class OrderService:
    """Creates orders and charges them against a stored payment method."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        customers: Optional[CustomerService] = None,
    ):
        self.settings = get_settings()
        self.registry = registry or get_provider_registry()
        self.customers = customers or CustomerService(self.registry)

    async def create_order(
        self,
        db: AsyncSession,
        customer_id: str,
        items: List[Dict[str, Any]],
        currency: Optional[str] = None,
        tax_cents: int = 0,
        discount_cents: int = 0,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """
        Create a pending order with its items and open invoice.

        Args:
            db: Database session
            customer_id: Buying customer
            items: Lines, each either ``{"product_id", "quantity"}`` or
                ``{"description", "unit_price_cents", "quantity"}``
            currency: ISO currency (default currency if not provided)
            tax_cents: Tax added to the subtotal
            discount_cents: Discount subtracted from the subtotal
            description: Free-text description
            metadata: Arbitrary metadata

        Returns:
            Order: Pending order

        Raises:
            ValidationError: For empty orders, unknown products, currency
                mismatches or a negative total
        """
        await self.customers.get_customer(db, customer_id)
        currency = (currency or self.settings.default_currency).upper()
        if not items:
            raise ValidationError("An order needs at least one item", error_code="empty_order")
        if tax_cents < 0 or discount_cents < 0:
            raise ValidationError("Tax and discount must not be negative")

        lines: List[OrderItem] = []
        for raw in items:
            quantity = int(raw.get("quantity", 1))
            if quantity < 1:
                raise ValidationError("Quantity must be at least 1", error_code="invalid_quantity")

            product_id = raw.get("product_id")
            if product_id:
                product = await db.get(Product, product_id)
                if product is None or not product.is_active:
                    raise NotFoundError("Product", product_id)
                if product.currency != currency:
                    raise ValidationError(
                        f"Product {product_id} is priced in {product.currency}, not {currency}",
                        error_code="currency_mismatch",
                    )
                unit_price = product.price_cents
                line_description = raw.get("description") or product.name
            else:
                if raw.get("unit_price_cents") is None or not raw.get("description"):
                    raise ValidationError(
                        "Items without product_id need description and unit_price_cents"
                    )
                unit_price = int(raw["unit_price_cents"])
                line_description = raw["description"]

            lines.append(
                OrderItem(
                    product_id=product_id,
                    description=line_description,
                    quantity=quantity,
                    unit_price_cents=unit_price,
                    total_cents=unit_price * quantity,
                )
            )

        subtotal = sum(line.total_cents for line in lines)
        total = subtotal + tax_cents - discount_cents
        if total < 0:
            raise ValidationError("Discount exceeds order amount", error_code="negative_total")

        order = Order(
            order_number=LedgerWriter.next_order_number(),
            customer_id=customer_id,
            status="pending",
            subtotal_cents=subtotal,
            tax_cents=tax_cents,
            discount_cents=discount_cents,
            total_cents=total,
            currency=currency,
            description=description,
            extra_data=metadata,
        )
        db.add(order)
        await db.flush()
        for line in lines:
            line.order_id = order.id
            db.add(line)

        ledger = LedgerWriter(db)
        await ledger.create_order_invoice(
            order,
            [
                {
                    "description": line.description,
                    "quantity": line.quantity,
                    "unit_price_cents": line.unit_price_cents,
                    "total_cents": line.total_cents,
                }
                for line in lines
            ],
        )
        ledger.record_event(
            "order", order.id, "order.created", {"total_cents": total, "currency": currency}
        )
        await db.flush()

        logger.info("order_created", order_id=order.id, total_cents=total, currency=currency)
        return order

    async def get_order(self, db: AsyncSession, order_id: str) -> Order:
        order = await db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def get_items(self, db: AsyncSession, order_id: str) -> List[OrderItem]:
        stmt = select(OrderItem).where(OrderItem.order_id == order_id)
        return list((await db.execute(stmt)).scalars().all())

    async def pay_order(
        self,
        db: AsyncSession,
        order_id: str,
        payment_method_id: str,
        idempotency_key: Optional[str] = None,
    ) -> Payment:
        """
        Charge an order against a stored payment method.

        The payment row is committed before the provider is called so a
        retried request with the same key reuses it instead of charging again.

        Raises:
            ConflictError: If the order is already paid or cancelled
            PaymentDeclinedError: If the provider declined the charge
            ProviderUnavailableError: If the provider could not be reached
        """
        order = await self.get_order(db, order_id)
        payment = None
        if idempotency_key:
            payment = (
                await db.execute(select(Payment).where(Payment.idempotency_key == idempotency_key))
            ).scalar_one_or_none()
            if payment is not None and payment.status != "processing":
                return payment
        if order.status in ("paid", "refunded", "cancelled"):
            raise ConflictError(
                f"Order {order.id} is {order.status}", error_code="order_not_payable"
            )
        if order.total_cents < self.settings.minimum_charge_cents:
            raise ValidationError(
                f"Order total is below the minimum charge of {self.settings.minimum_charge_cents}",
                error_code="amount_too_small",
            )

        method = await self.customers.get_payment_method(
            db, payment_method_id, customer_id=order.customer_id
        )
        customer = await self.customers.get_customer(db, order.customer_id)
        link = await self.customers.ensure_provider_customer(db, customer, method.provider_id)
        adapter = self.registry.get(method.provider_id)
        ledger = LedgerWriter(db)

        if payment is None:
            attempts = (
                await db.execute(
                    select(func.count(Payment.id)).where(Payment.order_id == order.id)
                )
            ).scalar_one()
            payment = await ledger.start_payment(
                idempotency_key=idempotency_key or f"order:{order.id}:{attempts + 1}",
                customer_id=order.customer_id,
                user_id=customer.user_id,
                order_id=order.id,
                attempt_number=attempts + 1,
                provider_id=method.provider_id,
                payment_method_id=method.id,
                amount_cents=order.total_cents,
                currency=order.currency,
                description=order.description,
            )
        order.status = "processing"
        await db.commit()

        try:
            result = await adapter.charge(
                link.provider_customer_id,
                method.provider_payment_method_id,
                payment.amount_cents,
                payment.currency,
                payment.idempotency_key,
                payment_type=method.payment_type,
                description=order.description or f"Order {order.order_number}",
                metadata={"order_id": order.id, "payment_id": payment.id},
            )
        except ProviderError as e:
            metrics.record_payment_request(
                method.provider_id, "failed", payment.currency, payment.amount_cents
            )
            if e.retryable:
                payment.error_code = e.code
                payment.error_message = str(e)
                await db.commit()
                raise ProviderUnavailableError(
                    str(e), provider_id=method.provider_id, payment_id=payment.id
                ) from e

            ledger.fail_payment(payment, e.code or "payment_declined", str(e))
            order.status = "failed"
            ledger.record_event("order", order.id, "order.failed", {"payment_id": payment.id})
            await db.commit()
            raise PaymentDeclinedError(
                str(e), error_code=e.code or "payment_declined", payment_id=payment.id
            ) from e

        metrics.record_payment_request(
            method.provider_id, result.status, payment.currency, payment.amount_cents
        )
        ledger.complete_payment(payment, result)
        if payment.status == "succeeded":
            self.mark_paid(ledger, order, payment)
            invoice = (
                await db.execute(
                    select(Invoice).where(Invoice.order_id == order.id, Invoice.status == "open")
                )
            ).scalar_one_or_none()
            if invoice is not None:
                ledger.mark_invoice_paid(invoice, payment)
        await db.commit()

        logger.info(
            "order_payment_completed",
            order_id=order.id,
            payment_id=payment.id,
            status=payment.status,
        )
        return payment

    @staticmethod
    def mark_paid(ledger: LedgerWriter, order: Order, payment: Payment) -> None:
        order.status = "paid"
        order.paid_at = utcnow()
        ledger.record_event("order", order.id, "order.paid", {"payment_id": payment.id})
        ledger.write_outbox(
            "order",
            order.id,
            "order.paid",
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "payment_id": payment.id,
                "total_cents": order.total_cents,
                "currency": order.currency,
            },
        )
