"""
Billing engine: one billing attempt for one subscription.

An attempt runs under a lease taken with a compare-and-set UPDATE on the
subscription row, so concurrent schedulers never charge the same
subscription at the same time. Within a period each attempt has a stable
idempotency key (``billing:{subscription_id}:{period_index}:{attempt}``)
that is forwarded to the provider; a worker that crashes mid-charge leaves
a ``processing`` payment behind which the next attempt reuses, key and all.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from native_payments.config import get_settings
from native_payments.core.billing_periods import period_bounds
from native_payments.core.exceptions import ConflictError
from native_payments.core.ledger import LedgerWriter
from native_payments.core.retry_policy import BILLABLE_STATUSES, RetryPolicy, Transition
from native_payments.database.connection import get_session_factory
from native_payments.database.models import (
    Invoice,
    Payment,
    PaymentMethod,
    ProviderCustomer,
    Subscription,
    UserMembership,
)
from native_payments.database.types import new_id, utcnow
from native_payments.integrations.base import ChargeResult, ProviderError, ProviderErrorType
from native_payments.integrations.registry import (
    ProviderRegistry,
    UnknownProviderError,
    get_provider_registry,
)
from native_payments.monitoring.logging import billing_log_context
from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LeaseLostError(Exception):
    """Raised when another worker took over the subscription mid-attempt."""

    pass


@dataclass
class BillingOutcome:
    """
    Result of one billing attempt.

    ``status`` is one of ``charged``, ``declined``, ``deferred``,
    ``suspended``, ``cancelled`` or ``skipped``.
    """

    status: str
    subscription_id: str
    payment_id: Optional[str] = None
    invoice_id: Optional[str] = None
    transition: Optional[Transition] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "subscription_id": self.subscription_id,
            "payment_id": self.payment_id,
            "invoice_id": self.invoice_id,
            "billing_status": self.transition.billing_status if self.transition else None,
            "retry_count": self.transition.retry_count if self.transition else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


def billing_idempotency_key(subscription_id: str, period_index: int, attempt: int) -> str:
    return f"billing:{subscription_id}:{period_index}:{attempt}"


async def sync_memberships(
    db: AsyncSession, subscription: Subscription, ledger: LedgerWriter
) -> None:
    """
    Mirror a subscription's state onto the memberships it backs.

    A past-due subscription leaves them untouched: access continues until
    the retries run out.
    """
    stmt = select(UserMembership).where(UserMembership.subscription_id == subscription.id)
    for membership in (await db.execute(stmt)).scalars().all():
        previous = membership.status
        if subscription.status in ("active", "trialing"):
            membership.status = "active"
            membership.end_date = subscription.current_period_end
        elif subscription.status == "suspended":
            membership.status = "suspended"
        elif subscription.status == "cancelled":
            membership.status = "cancelled"
            membership.auto_renew = False
            membership.cancelled_at = membership.cancelled_at or subscription.cancelled_at
            membership.cancellation_reason = (
                membership.cancellation_reason or subscription.cancellation_reason
            )
        if membership.status != previous:
            ledger.record_event(
                "membership",
                membership.id,
                f"membership.{membership.status}",
                {"subscription_id": subscription.id, "previous_status": previous},
            )


class BillingEngine:
    """
    Charges subscriptions one period at a time.

    Each attempt: claim the lease, write a ``processing`` payment and commit
    it, call the provider, then finalise payment, invoice, retry state,
    memberships, audit events and outbox in a single transaction.
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        lease_seconds: Optional[int] = None,
    ):
        """
        Initialize billing engine.

        Args:
            registry: Provider registry (process-wide registry if not provided)
            session_factory: Session factory (application factory if not provided)
            retry_policy: Retry/backoff controller
            lease_seconds: Lease TTL (settings value if not provided)
        """
        settings = get_settings()
        self.registry = registry or get_provider_registry()
        self.session_factory = session_factory or get_session_factory()
        self.retry_policy = retry_policy or RetryPolicy()
        self.lease_seconds = lease_seconds or settings.billing_lease_seconds

    async def claim_lease(
        self, subscription_id: str, now: Optional[datetime] = None, force: bool = False
    ) -> Optional[str]:
        """
        Take the billing lease on a subscription.

        The UPDATE only matches a billable subscription whose lease is free
        or expired and, unless ``force`` is set, whose billing date has
        passed. It commits immediately.

        Args:
            subscription_id: Subscription to lease
            now: Current time
            force: Ignore ``next_billing_date`` (reactivation, first charge)

        Returns:
            Optional[str]: Lease token, or None if the lease was not obtained
        """
        now = now or utcnow()
        token = new_id()
        eligible = [
            Subscription.id == subscription_id,
            Subscription.billing_status.in_(BILLABLE_STATUSES),
        ]
        if not force:
            eligible.append(Subscription.next_billing_date <= now)
        lease_free = or_(
            Subscription.billing_lease_expires_at.is_(None),
            Subscription.billing_lease_expires_at <= now,
        )

        async with self.session_factory() as db:
            result = await db.execute(
                update(Subscription)
                .where(*eligible, lease_free)
                .values(
                    billing_lease_token=token,
                    billing_lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1:
                return token

            # Not due and not billable are not conflicts
            leased_by_other = (
                await db.execute(
                    select(func.count(Subscription.id)).where(
                        *eligible, Subscription.billing_lease_expires_at > now
                    )
                )
            ).scalar_one()

        if leased_by_other:
            metrics.record_lease_conflict()
            logger.info("billing_lease_not_acquired", subscription_id=subscription_id)
        else:
            logger.debug("billing_subscription_not_due", subscription_id=subscription_id)
        return None

    async def release_lease(self, subscription_id: str, token: str) -> bool:
        """
        Release a lease if it is still held with ``token``.

        Returns:
            bool: True if the lease was released
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.billing_lease_token == token,
                )
                .values(billing_lease_token=None, billing_lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def _hold_lease(
        self, db: AsyncSession, subscription_id: str, token: str, now: datetime
    ) -> None:
        """
        Re-assert the lease inside the finalising transaction.

        Also fails once the subscription is no longer billable.

        Raises:
            LeaseLostError: If the lease has been taken over or the
                subscription is no longer billable
        """
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.billing_lease_token == token,
                Subscription.billing_status.in_(BILLABLE_STATUSES),
            )
            .values(billing_lease_expires_at=now + timedelta(seconds=self.lease_seconds))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LeaseLostError(f"Billing lease on subscription {subscription_id} was lost")

    async def bill_subscription(
        self,
        subscription_id: str,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> BillingOutcome:
        """
        Run one billing attempt.

        Args:
            subscription_id: Subscription to bill
            now: Current time (defaults to now)
            force: Bill even if ``next_billing_date`` is in the future

        Returns:
            BillingOutcome: What happened

        Raises:
            LeaseLostError: If the lease expired and was taken by another worker
        """
        now = now or utcnow()
        start = time.time()

        token = await self.claim_lease(subscription_id, now, force=force)
        if token is None:
            metrics.record_billing_attempt("skipped", time.time() - start)
            return BillingOutcome(status="skipped", subscription_id=subscription_id)

        with billing_log_context(subscription_id, correlation_id=token):
            logger.info("billing_attempt_started")
            try:
                outcome = await self._bill(subscription_id, token, now)
            finally:
                await self.release_lease(subscription_id, token)

        metrics.record_billing_attempt(outcome.status, time.time() - start)
        if outcome.transition is not None and outcome.transition.changed:
            metrics.record_billing_transition(
                outcome.transition.previous_status, outcome.transition.billing_status
            )
        logger.info(
            "billing_attempt_finished",
            subscription_id=subscription_id,
            outcome=outcome.status,
            payment_id=outcome.payment_id,
            error_code=outcome.error_code,
        )
        return outcome

    async def _bill(self, subscription_id: str, token: str, now: datetime) -> BillingOutcome:
        async with self.session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None or subscription.billing_status not in BILLABLE_STATUSES:
                logger.info("billing_subscription_not_billable")
                return BillingOutcome(status="skipped", subscription_id=subscription_id)
            ledger = LedgerWriter(db)

            if (
                subscription.cancel_at_period_end
                and subscription.current_period_end is not None
                and subscription.current_period_end <= now
            ):
                return await self._cancel_at_period_end(db, ledger, subscription, token, now)

            index = subscription.billing_cycle_index
            period_start, period_end = period_bounds(
                subscription.billing_cycle_anchor,
                subscription.billing_interval,
                subscription.interval_multiplier,
                index,
            )
            invoice = await ledger.open_period_invoice(subscription, period_start, period_end)

            if subscription.total_cents == 0:
                await self._hold_lease(db, subscription.id, token, now)
                invoice.status = "paid"
                invoice.paid_date = now
                transition = self._advance(ledger, subscription, period_start, period_end, now)
                await sync_memberships(db, subscription, ledger)
                await db.commit()
                return BillingOutcome(
                    status="charged",
                    subscription_id=subscription.id,
                    invoice_id=invoice.id,
                    transition=transition,
                )

            paid = (
                await db.execute(
                    select(Payment).where(
                        Payment.subscription_id == subscription.id,
                        Payment.billing_period_start == period_start,
                        Payment.status == "succeeded",
                    )
                )
            ).scalar_one_or_none()
            if paid is not None:
                # The charge went through but the period was never advanced
                logger.warning(
                    "billing_period_already_paid",
                    subscription_id=subscription.id,
                    payment_id=paid.id,
                    period_index=index,
                )
                await self._hold_lease(db, subscription.id, token, now)
                if invoice.status != "paid":
                    ledger.mark_invoice_paid(invoice, paid)
                transition = self._advance(ledger, subscription, period_start, period_end, now)
                await sync_memberships(db, subscription, ledger)
                await db.commit()
                return BillingOutcome(
                    status="charged",
                    subscription_id=subscription.id,
                    payment_id=paid.id,
                    invoice_id=invoice.id,
                    transition=transition,
                )

            payment = await self._current_attempt(
                db, ledger, subscription, invoice, index, period_start
            )
            subscription.last_billing_attempt = now
            await db.commit()

            result, error = await self._charge(db, subscription, payment)

            await self._hold_lease(db, subscription.id, token, now)
            outcome = self._finalise(
                ledger,
                subscription,
                invoice,
                payment,
                (period_start, period_end),
                result,
                error,
                now,
            )
            await sync_memberships(db, subscription, ledger)
            await db.commit()
            return outcome

    async def _current_attempt(
        self,
        db: AsyncSession,
        ledger: LedgerWriter,
        subscription: Subscription,
        invoice: Invoice,
        index: int,
        period_start: datetime,
    ) -> Payment:
        """Reuse the in-flight payment for this period or start the next attempt."""
        in_flight = (
            await db.execute(
                select(Payment)
                .where(
                    Payment.subscription_id == subscription.id,
                    Payment.billing_period_start == period_start,
                    Payment.status == "processing",
                )
                .order_by(Payment.attempt_number.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if in_flight is not None:
            logger.info(
                "billing_attempt_resumed",
                subscription_id=subscription.id,
                payment_id=in_flight.id,
                attempt=in_flight.attempt_number,
            )
            return in_flight

        previous_attempts = (
            await db.execute(
                select(func.count(Payment.id)).where(
                    Payment.subscription_id == subscription.id,
                    Payment.billing_period_start == period_start,
                )
            )
        ).scalar_one()
        attempt = previous_attempts + 1

        payment = await ledger.start_payment(
            idempotency_key=billing_idempotency_key(subscription.id, index, attempt),
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            billing_period_start=period_start,
            attempt_number=attempt,
            provider_id=subscription.provider_id,
            payment_method_id=subscription.payment_method_id,
            amount_cents=subscription.total_cents,
            currency=subscription.currency,
            description=subscription.description,
            concept=subscription.concept,
            reference_code=subscription.reference_code,
            category=subscription.category,
            tags=subscription.tags,
        )
        ledger.record_invoice_attempt(invoice, payment)
        return payment

    async def _charge(
        self, db: AsyncSession, subscription: Subscription, payment: Payment
    ) -> Tuple[Optional[ChargeResult], Optional[ProviderError]]:
        """Call the provider. Provider errors are returned, not raised."""
        try:
            adapter = self.registry.get(subscription.provider_id)
        except UnknownProviderError as e:
            return None, ProviderError(
                e.message,
                ProviderErrorType.TRANSIENT,
                code="provider_not_configured",
                provider_id=subscription.provider_id,
            )

        method = None
        if subscription.payment_method_id:
            method = await db.get(PaymentMethod, subscription.payment_method_id)
        provider_customer = (
            await db.execute(
                select(ProviderCustomer).where(
                    ProviderCustomer.customer_id == subscription.customer_id,
                    ProviderCustomer.provider_id == subscription.provider_id,
                )
            )
        ).scalar_one_or_none()
        if method is None or not method.is_active or provider_customer is None:
            return None, ProviderError(
                "Subscription has no usable payment method",
                ProviderErrorType.PERMANENT,
                code="no_payment_method",
                provider_id=subscription.provider_id,
            )

        try:
            result = await adapter.charge(
                provider_customer.provider_customer_id,
                method.provider_payment_method_id,
                payment.amount_cents,
                payment.currency,
                payment.idempotency_key,
                payment_type=method.payment_type,
                description=subscription.description,
                metadata={
                    "payment_id": payment.id,
                    "subscription_id": subscription.id,
                    "billing_period_start": payment.billing_period_start.isoformat(),
                },
            )
        except ProviderError as e:
            logger.warning(
                "billing_charge_failed",
                subscription_id=subscription.id,
                payment_id=payment.id,
                error_type=e.error_type.value,
                error_code=e.code,
                error=str(e),
            )
            return None, e

        metrics.record_payment_request(
            subscription.provider_id, result.status, payment.currency, payment.amount_cents
        )
        return result, None

    def _advance(
        self,
        ledger: LedgerWriter,
        subscription: Subscription,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> Transition:
        """Close the paid period and schedule the next one."""
        subscription.billing_cycle_index += 1
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        transition = self.retry_policy.on_success(subscription, now)

        ledger.record_event(
            "subscription",
            subscription.id,
            "subscription.renewed",
            {
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "billing_cycle_index": subscription.billing_cycle_index,
            },
        )
        ledger.write_outbox(
            "subscription",
            subscription.id,
            "subscription.renewed",
            {
                "subscription_id": subscription.id,
                "customer_id": subscription.customer_id,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
            },
        )
        return transition

    def _finalise(
        self,
        ledger: LedgerWriter,
        subscription: Subscription,
        invoice: Invoice,
        payment: Payment,
        period: Tuple[datetime, datetime],
        result: Optional[ChargeResult],
        error: Optional[ProviderError],
        now: datetime,
    ) -> BillingOutcome:
        outcome = BillingOutcome(
            status="charged",
            subscription_id=subscription.id,
            payment_id=payment.id,
            invoice_id=invoice.id,
        )

        if error is None and result is not None and result.status == "succeeded":
            ledger.complete_payment(payment, result)
            ledger.mark_invoice_paid(invoice, payment)
            outcome.transition = self._advance(ledger, subscription, *period, now)
            return outcome

        if error is None and result is not None and result.status == "failed":
            payment.provider_payment_id = result.provider_payment_id or payment.provider_payment_id
            error = ProviderError(
                "Payment failed at provider",
                ProviderErrorType.PERMANENT,
                code="payment_failed",
                provider_id=subscription.provider_id,
            )

        if error is None and result is not None:
            # Accepted but not captured yet; the webhook or the next attempt settles it
            ledger.complete_payment(payment, result)
            outcome.status = "deferred"
            outcome.transition = self.retry_policy.on_transient_error(subscription, now)
            return outcome

        if error.retryable:
            payment.error_code = error.code
            payment.error_message = str(error)
            outcome.status = "deferred"
            outcome.error_code = error.code
            outcome.error_message = str(error)
            outcome.transition = self.retry_policy.on_transient_error(subscription, now)
            ledger.record_event(
                "subscription",
                subscription.id,
                "subscription.billing_deferred",
                {"payment_id": payment.id, "error_code": error.code, "error": str(error)},
            )
            return outcome

        return self._decline(
            ledger,
            subscription,
            invoice,
            payment,
            error.code or "payment_declined",
            str(error),
            now,
        )

    def _decline(
        self,
        ledger: LedgerWriter,
        subscription: Subscription,
        invoice: Invoice,
        payment: Payment,
        error_code: str,
        error_message: str,
        now: datetime,
    ) -> BillingOutcome:
        """Fail the payment and move the subscription through the retry policy."""
        ledger.fail_payment(payment, error_code, error_message)
        transition = self.retry_policy.on_decline(subscription, now)
        outcome = BillingOutcome(
            status="declined",
            subscription_id=subscription.id,
            payment_id=payment.id,
            invoice_id=invoice.id,
            transition=transition,
            error_code=payment.error_code,
            error_message=payment.error_message,
        )

        event_data = {
            "payment_id": payment.id,
            "retry_count": transition.retry_count,
            "max_retry_attempts": subscription.max_retry_attempts,
            "next_billing_date": (
                transition.next_billing_date.isoformat() if transition.next_billing_date else None
            ),
            "error_code": payment.error_code,
        }
        if transition.exhausted:
            ledger.mark_invoice_uncollectible(invoice)
            outcome.status = transition.billing_status
            event_type = f"subscription.{transition.billing_status}"
        else:
            event_type = "subscription.payment_failed"

        ledger.record_event("subscription", subscription.id, event_type, event_data)
        ledger.write_outbox(
            "subscription",
            subscription.id,
            event_type,
            {
                "subscription_id": subscription.id,
                "customer_id": subscription.customer_id,
                **event_data,
            },
        )
        return outcome

    async def record_async_failure(
        self,
        db: AsyncSession,
        payment: Payment,
        error_code: str,
        error_message: str,
        now: Optional[datetime] = None,
    ) -> Optional[BillingOutcome]:
        """
        Fail a subscription payment that the provider declined after accepting it.

        A charge can come back ``processing`` and fail later. For the current
        period that failure counts as a decline like a synchronous one: the
        retry counter, backoff, invoice and memberships move the same way.
        Writes go to the caller's session and the caller commits; the lease
        row is locked by the conditional UPDATE until then, so no billing
        attempt starts in between.

        Args:
            db: Caller's session
            payment: The failed subscription payment
            error_code: Provider error code
            error_message: Provider error message
            now: Current time

        Returns:
            Optional[BillingOutcome]: The decline, or None if the payment no
            longer belongs to the subscription's open period

        Raises:
            ConflictError: If a billing attempt currently holds the lease
        """
        now = now or utcnow()
        ledger = LedgerWriter(db)
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.id == payment.subscription_id,
                or_(
                    Subscription.billing_lease_expires_at.is_(None),
                    Subscription.billing_lease_expires_at <= now,
                ),
            )
            .values(billing_lease_token=None, billing_lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "A billing attempt is in progress for this subscription",
                error_code="billing_in_progress",
                subscription_id=payment.subscription_id,
            )

        subscription = await db.get(
            Subscription, payment.subscription_id, populate_existing=True
        )
        period_start, period_end = period_bounds(
            subscription.billing_cycle_anchor,
            subscription.billing_interval,
            subscription.interval_multiplier,
            subscription.billing_cycle_index,
        )
        if (
            subscription.billing_status not in BILLABLE_STATUSES
            or payment.billing_period_start != period_start
        ):
            ledger.fail_payment(payment, error_code, error_message)
            logger.info(
                "billing_async_failure_outside_period",
                subscription_id=subscription.id,
                payment_id=payment.id,
                billing_status=subscription.billing_status,
            )
            return None

        invoice = await ledger.open_period_invoice(subscription, period_start, period_end)
        outcome = self._decline(
            ledger, subscription, invoice, payment, error_code, error_message, now
        )
        await sync_memberships(db, subscription, ledger)
        if outcome.transition.changed:
            metrics.record_billing_transition(
                outcome.transition.previous_status, outcome.transition.billing_status
            )
        logger.info(
            "billing_async_failure_recorded",
            subscription_id=subscription.id,
            payment_id=payment.id,
            outcome=outcome.status,
            retry_count=outcome.transition.retry_count,
        )
        return outcome

    async def _cancel_at_period_end(
        self,
        db: AsyncSession,
        ledger: LedgerWriter,
        subscription: Subscription,
        token: str,
        now: datetime,
    ) -> BillingOutcome:
        await self._hold_lease(db, subscription.id, token, now)
        previous = subscription.billing_status
        subscription.status = "cancelled"
        subscription.billing_status = "cancelled"
        subscription.next_billing_date = None
        subscription.cancelled_at = now
        subscription.cancellation_reason = (
            subscription.cancellation_reason or "cancel_at_period_end"
        )
        await ledger.void_open_invoices(subscription.id)

        ledger.record_event(
            "subscription",
            subscription.id,
            "subscription.cancelled",
            {"reason": subscription.cancellation_reason, "at_period_end": True},
        )
        ledger.write_outbox(
            "subscription",
            subscription.id,
            "subscription.cancelled",
            {"subscription_id": subscription.id, "customer_id": subscription.customer_id},
        )
        await sync_memberships(db, subscription, ledger)
        await db.commit()

        return BillingOutcome(
            status="cancelled",
            subscription_id=subscription.id,
            transition=Transition(
                previous_status=previous,
                billing_status="cancelled",
                retry_count=subscription.billing_retry_count,
                next_billing_date=None,
            ),
        )
