"""
One-time payment intents with distributed locking and idempotency.

Orchestrates the intent flow:
1. Validate input
2. Check idempotency (Redis, then database)
3. Acquire distributed lock on the idempotency key
4. Create payment record
5. Create the intent at the provider
6. Write to outbox and commit
7. Release lock

Also serves payment status lookups and refunds.
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from redlock import Redlock
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
from native_payments.core.idempotency import IdempotencyManager
from native_payments.core.ledger import LedgerWriter, payment_snapshot
from native_payments.database.models import Order, Payment
from native_payments.integrations.base import ProviderError
from native_payments.integrations.registry import ProviderRegistry, get_provider_registry
from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentProcessor:
    """
    Payment intent orchestrator.

    Handles the intent lifecycle with idempotency and distributed locking;
    the client confirms the intent and the provider webhook settles it.
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        idempotency_manager: Optional[IdempotencyManager] = None,
        customers: Optional[CustomerService] = None,
        redlock: Optional[Redlock] = None,
    ):
        """
        Initialize payment processor.

        Args:
            registry: Provider registry
            idempotency_manager: Optional idempotency manager
            customers: Optional customer service
            redlock: Optional Redlock instance for distributed locking
        """
        self.settings = get_settings()
        self.registry = registry or get_provider_registry()
        self.idempotency_manager = idempotency_manager or IdempotencyManager()
        self.customers = customers or CustomerService(self.registry)
        self.redlock = redlock

        logger.info("payment_processor_initialized")

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            self.redlock = Redlock([self.settings.redis_url])
        return self.redlock

    def _validate_intent_request(self, amount_cents: int, currency: str) -> None:
        """
        Validate intent request parameters.

        Raises:
            ValidationError: If validation fails
        """
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive", error_code="invalid_amount")

        if amount_cents < self.settings.minimum_charge_cents:
            raise ValidationError(
                f"Amount must be at least {self.settings.minimum_charge_cents} cents",
                error_code="amount_too_small",
            )

        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be 3-letter code", error_code="invalid_currency")

    async def create_intent(
        self,
        db: AsyncSession,
        provider_id: str,
        amount_cents: int,
        currency: Optional[str] = None,
        customer_id: Optional[str] = None,
        user_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a one-time payment intent the client then confirms.

        Args:
            db: Database session
            provider_id: Provider to create the intent at
            amount_cents: Amount in cents
            currency: Currency code (default currency if not provided)
            customer_id: Optional paying customer
            user_id: Optional host application user id
            description: Optional description
            metadata: Optional payment metadata
            idempotency_key: Client-supplied key (generated if not provided)

        Returns:
            Dict[str, Any]: Payment, including the provider client secret

        Raises:
            ValidationError: If input validation fails or the provider is unknown
            ConflictError: If the same request is already being processed, or the
                key was used for a different request
            PaymentDeclinedError: If the provider rejected the intent
            ProviderUnavailableError: If the provider could not be reached
        """
        correlation_id = str(uuid.uuid4())
        currency = (currency or self.settings.default_currency).upper()

        logger.info(
            "intent_creation_started",
            correlation_id=correlation_id,
            provider=provider_id,
            amount_cents=amount_cents,
            currency=currency,
        )

        self._validate_intent_request(amount_cents, currency)
        adapter = self.registry.get(provider_id)

        customer = None
        if customer_id:
            customer = await self.customers.get_customer(db, customer_id)
            user_id = user_id or customer.user_id

        idempotency_key = idempotency_key or IdempotencyManager.new_key()
        fingerprint = {
            "provider_id": provider_id,
            "amount_cents": amount_cents,
            "currency": currency,
        }

        cached_response = await self.idempotency_manager.check_idempotency(
            idempotency_key, db, request=fingerprint
        )
        if cached_response:
            logger.info(
                "intent_idempotent_return",
                correlation_id=correlation_id,
                idempotency_key=idempotency_key,
            )
            return cached_response

        lock_key = f"payment:lock:{idempotency_key}"
        redlock = self._get_redlock()
        lock = redlock.lock(lock_key, self.settings.redis_lock_timeout * 1000)
        if not lock:
            metrics.record_distributed_lock("failed")
            logger.warning(
                "payment_lock_acquisition_failed",
                correlation_id=correlation_id,
                lock_key=lock_key,
            )
            raise ConflictError(
                "Payment already in progress", error_code="payment_in_progress"
            )
        metrics.record_distributed_lock("acquired")

        try:
            # A request holding the lock before us may have finished meanwhile
            finished = await self.idempotency_manager.check_idempotency(
                idempotency_key, db, request=fingerprint
            )
            if finished:
                return finished

            provider_customer_id = None
            if customer is not None:
                link = await self.customers.ensure_provider_customer(db, customer, provider_id)
                provider_customer_id = link.provider_customer_id

            ledger = LedgerWriter(db, correlation_id=correlation_id)
            payment = await ledger.start_payment(
                idempotency_key=idempotency_key,
                customer_id=customer_id,
                user_id=user_id,
                provider_id=provider_id,
                amount_cents=amount_cents,
                currency=currency,
                description=description,
                extra_data=metadata,
                status="pending",
            )

            provider_metadata = {"payment_id": payment.id, "correlation_id": correlation_id}
            if metadata:
                provider_metadata.update({k: str(v) for k, v in metadata.items()})

            try:
                result = await adapter.create_intent(
                    amount_cents,
                    currency,
                    idempotency_key,
                    provider_customer_id=provider_customer_id,
                    metadata=provider_metadata,
                )
            except ProviderError as e:
                metrics.record_payment_request(provider_id, "failed", currency, amount_cents)
                logger.error(
                    "intent_creation_failed",
                    correlation_id=correlation_id,
                    payment_id=payment.id,
                    error=str(e),
                    error_type=e.error_type.value,
                )
                if e.retryable:
                    await db.rollback()
                    raise ProviderUnavailableError(str(e), provider_id=provider_id) from e

                ledger.fail_payment(payment, e.code or "intent_rejected", str(e))
                await db.commit()
                raise PaymentDeclinedError(
                    str(e), error_code=e.code or "intent_rejected", payment_id=payment.id
                ) from e

            payment.provider_payment_id = result.provider_payment_id
            payment.client_secret = result.client_secret
            if result.status == "succeeded":
                ledger.complete_payment(payment, result)
            else:
                ledger.record_event(
                    "payment",
                    payment.id,
                    "payment.intent_created",
                    {"provider_payment_id": result.provider_payment_id, "status": result.status},
                )

            ledger.write_outbox("payment", payment.id, "payment.created", payment_snapshot(payment))
            await db.commit()
            metrics.record_payment_request(provider_id, payment.status, currency, amount_cents)

            logger.info(
                "intent_created_successfully",
                correlation_id=correlation_id,
                payment_id=payment.id,
                status=payment.status,
            )

            response = payment_snapshot(payment)
            await self.idempotency_manager.store_response(idempotency_key, response)
            return response

        finally:
            redlock.unlock(lock)
            logger.info("payment_lock_released", correlation_id=correlation_id, lock_key=lock_key)

    async def get_payment(self, db: AsyncSession, payment_id: str) -> Payment:
        payment = await db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def get_payment_status(self, db: AsyncSession, payment_id: str) -> Dict[str, Any]:
        """
        Get payment status by ID.

        Raises:
            NotFoundError: If the payment does not exist
        """
        return payment_snapshot(await self.get_payment(db, payment_id))

    async def refund_payment(
        self,
        db: AsyncSession,
        payment_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Refund a payment, fully or partially.

        Args:
            db: Database session
            payment_id: Payment ID
            amount_cents: Partial amount (the unrefunded remainder if not provided)
            reason: Optional refund reason

        Returns:
            Dict[str, Any]: Refund response

        Raises:
            NotFoundError: If the payment does not exist
            ConflictError: If the payment is not in a refundable state
            ValidationError: If the amount exceeds what is left to refund
        """
        correlation_id = str(uuid.uuid4())
        payment = await self.get_payment(db, payment_id)

        if payment.status != "succeeded":
            raise ConflictError(
                f"Cannot refund payment with status: {payment.status}",
                error_code="payment_not_refundable",
            )
        if not payment.provider_payment_id:
            raise ConflictError(
                "Payment has no provider payment id", error_code="payment_not_refundable"
            )

        remaining = payment.amount_cents - payment.refunded_cents
        amount = remaining if amount_cents is None else amount_cents
        if amount <= 0 or amount > remaining:
            raise ValidationError(
                f"Refund amount must be between 1 and {remaining} cents",
                error_code="invalid_refund_amount",
            )

        logger.info(
            "refund_started",
            correlation_id=correlation_id,
            payment_id=payment.id,
            amount_cents=amount,
        )

        adapter = self.registry.get(payment.provider_id)
        try:
            refund = await adapter.refund(
                payment.provider_payment_id,
                amount,
                # Stable per refund step so a retried request cannot refund twice
                f"refund:{payment.id}:{payment.refunded_cents}:{amount}",
                reason=reason,
                currency=payment.currency,
            )
        except ProviderError as e:
            logger.error(
                "refund_failed",
                correlation_id=correlation_id,
                payment_id=payment.id,
                error=str(e),
            )
            if e.retryable:
                raise ProviderUnavailableError(
                    f"Refund failed: {e}", provider_id=payment.provider_id
                ) from e
            raise PaymentDeclinedError(
                f"Refund failed: {e}", error_code=e.code or "refund_failed"
            ) from e

        ledger = LedgerWriter(db, correlation_id=correlation_id)
        ledger.refund_payment(payment, refund.provider_refund_id, refund.amount_cents)
        if payment.status == "refunded" and payment.order_id:
            order = await db.get(Order, payment.order_id)
            if order is not None:
                order.status = "refunded"
                ledger.record_event("order", order.id, "order.refunded", {"payment_id": payment.id})
        await db.commit()
        await self.idempotency_manager.invalidate(payment.idempotency_key)

        logger.info(
            "refund_created_successfully",
            correlation_id=correlation_id,
            payment_id=payment.id,
            refund_id=refund.provider_refund_id,
        )

        return {
            "payment_id": payment.id,
            "refund_id": refund.provider_refund_id,
            "status": refund.status,
            "amount_cents": refund.amount_cents,
            "refunded_cents": payment.refunded_cents,
            "payment_status": payment.status,
        }

    async def close(self) -> None:
        await self.idempotency_manager.close()
