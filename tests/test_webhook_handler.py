"""
Tests for webhook verification, deduplication and event processing.
"""
from datetime import timedelta
from typing import Any, Dict

import pytest
from sqlalchemy import select

from native_payments.core.orders import OrderService
from native_payments.database.models import Invoice, Order, Payment, PaymentWebhook
from native_payments.database.types import utcnow
from native_payments.integrations.base import WebhookEvent
from native_payments.integrations.webhook_handler import WebhookError, WebhookHandler


def make_event(event_type: str = "payment.succeeded", **fields: Any) -> WebhookEvent:
    defaults: Dict[str, Any] = {
        "provider_id": "stripe",
        "event_id": "evt_1",
        "event_type": event_type,
        "provider_event_type": "payment_intent.succeeded",
        "provider_payment_id": "pi_1",
        "data": {"id": "evt_1"},
    }
    defaults.update(fields)
    return WebhookEvent(**defaults)


@pytest.fixture
def handler(registry, mock_redis, billing_engine) -> WebhookHandler:
    return WebhookHandler(
        registry=registry, redis_client=mock_redis, billing_engine=billing_engine
    )


@pytest.fixture
def make_order_payment(test_db, registry, customer):
    """Pending order with a payment awaiting the provider's confirmation."""

    async def _make(status: str = "processing", amount_cents: int = 1000) -> Payment:
        orders = OrderService(registry)
        order = await orders.create_order(
            test_db,
            customer.id,
            [{"description": "Premium Pack", "unit_price_cents": amount_cents, "quantity": 1}],
        )
        order.status = "processing"
        payment = Payment(
            idempotency_key=f"order:{order.id}:1",
            customer_id=customer.id,
            order_id=order.id,
            provider_id="stripe",
            provider_payment_id="pi_1",
            amount_cents=amount_cents,
            currency="USD",
            status=status,
        )
        test_db.add(payment)
        await test_db.commit()
        return payment

    return _make


async def webhook_rows(db):
    return list((await db.execute(select(PaymentWebhook))).scalars().all())


class TestDeduplication:
    """Each provider event is processed once."""

    @pytest.mark.asyncio
    async def test_redis_hit_short_circuits(
        self, test_db, handler: WebhookHandler, mock_redis
    ) -> None:
        mock_redis.exists.return_value = 1

        result = await handler.process_event(make_event(), test_db)

        assert result["status"] == "duplicate"
        mock_redis.exists.assert_called_once_with("webhook:processed:stripe:evt_1")
        assert await webhook_rows(test_db) == []

    @pytest.mark.asyncio
    async def test_database_claim_catches_duplicate(
        self, test_db, handler: WebhookHandler
    ) -> None:
        """Redis lost the marker (or is down) but the database still knows."""
        first = await handler.process_event(make_event("ignored"), test_db)
        second = await handler.process_event(make_event("ignored"), test_db)

        assert first["status"] == "ignored"
        assert second["status"] == "duplicate"
        rows = await webhook_rows(test_db)
        assert len(rows) == 1
        assert rows[0].status == "done"

    @pytest.mark.asyncio
    async def test_redis_outage_does_not_block(self, test_db, handler, mock_redis) -> None:
        mock_redis.exists.side_effect = ConnectionError("redis down")
        mock_redis.setex.side_effect = ConnectionError("redis down")

        result = await handler.process_event(make_event("ignored"), test_db)

        assert result["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_same_event_id_from_other_provider_is_distinct(
        self, test_db, handler: WebhookHandler
    ) -> None:
        await handler.process_event(make_event("ignored"), test_db)
        result = await handler.process_event(
            make_event("ignored", provider_id="paypal"), test_db
        )

        assert result["status"] == "ignored"
        assert len(await webhook_rows(test_db)) == 2

    @pytest.mark.asyncio
    async def test_failed_event_is_reprocessed(self, test_db, handler: WebhookHandler) -> None:
        """A delivery whose processing failed can be claimed again by a retry."""

        async def broken(event, db):
            raise RuntimeError("downstream unavailable")

        async def working(event, db):
            return {"status": "ok"}

        handler.register_handler("payment.succeeded", broken)
        with pytest.raises(WebhookError, match="downstream unavailable"):
            await handler.process_event(make_event(), test_db)

        rows = await webhook_rows(test_db)
        assert rows[0].status == "failed"
        assert rows[0].error_message == "downstream unavailable"

        handler.register_handler("payment.succeeded", working)
        result = await handler.process_event(make_event(), test_db)

        assert result["status"] == "processed"
        await test_db.refresh(rows[0])
        assert rows[0].status == "done"
        assert rows[0].attempts == 2


class TestEventHandlers:
    """Effects of normalised events on payments and orders."""

    @pytest.mark.asyncio
    async def test_payment_succeeded_settles_order(
        self, test_db, handler: WebhookHandler, make_order_payment, mock_redis
    ) -> None:
        payment = await make_order_payment()

        result = await handler.process_event(make_event(), test_db)

        assert result["status"] == "processed"
        assert result["result"] == {"status": "succeeded", "payment_id": payment.id}
        await test_db.refresh(payment)
        assert payment.status == "succeeded"
        order = await test_db.get(Order, payment.order_id)
        await test_db.refresh(order)
        assert order.status == "paid"
        invoice = (
            await test_db.execute(select(Invoice).where(Invoice.order_id == order.id))
        ).scalar_one()
        assert invoice.status == "paid"
        mock_redis.setex.assert_called_once()

    @pytest.mark.asyncio
    async def test_payment_succeeded_for_unknown_payment(
        self, test_db, handler: WebhookHandler
    ) -> None:
        result = await handler.process_event(make_event(provider_payment_id="pi_other"), test_db)

        assert result["result"] == {"status": "skipped", "reason": "payment_not_found"}

    @pytest.mark.asyncio
    async def test_payment_failed(
        self, test_db, handler: WebhookHandler, make_order_payment
    ) -> None:
        payment = await make_order_payment()
        event = make_event(
            "payment.failed",
            provider_event_type="payment_intent.payment_failed",
            error_message="Insufficient funds",
        )

        result = await handler.process_event(event, test_db)

        assert result["result"]["status"] == "failed"
        await test_db.refresh(payment)
        assert payment.status == "failed"
        assert payment.error_code == "provider_declined"
        assert payment.error_message == "Insufficient funds"
        order = await test_db.get(Order, payment.order_id)
        await test_db.refresh(order)
        assert order.status == "failed"

    @pytest.mark.asyncio
    async def test_refund_amount_is_cumulative(
        self, test_db, handler: WebhookHandler, make_order_payment
    ) -> None:
        """A refund already recorded through the API is not counted again."""
        payment = await make_order_payment(status="succeeded")
        payment.refunded_cents = 300
        await test_db.commit()

        partial = make_event(
            "payment.refunded",
            event_id="evt_refund_1",
            provider_event_type="charge.refunded",
            amount_cents=300,
        )
        result = await handler.process_event(partial, test_db)
        assert result["result"]["status"] == "unchanged"

        full = make_event(
            "payment.refunded",
            event_id="evt_refund_2",
            provider_event_type="charge.refunded",
            amount_cents=1000,
        )
        result = await handler.process_event(full, test_db)

        assert result["result"]["status"] == "refunded"
        assert result["result"]["refunded_cents"] == 1000
        await test_db.refresh(payment)
        assert payment.status == "refunded"
        order = await test_db.get(Order, payment.order_id)
        await test_db.refresh(order)
        assert order.status == "refunded"


def failed_event(number: int) -> WebhookEvent:
    return make_event(
        "payment.failed",
        event_id=f"evt_failed_{number}",
        provider_event_type="payment_intent.payment_failed",
        provider_payment_id=f"ch_{number}",
        error_message="Insufficient funds",
    )


class TestSubscriptionPaymentFailures:
    """Subscription charges that are accepted first and fail later."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_async_failures_exhaust_retries(
        self, test_db, handler: WebhookHandler, billing_engine, fake_provider, make_subscription
    ) -> None:
        """Each late failure counts as a decline until the subscription is suspended."""
        subscription = await make_subscription()
        fake_provider.charge_outcomes = ["processing", "processing", "processing"]

        statuses = []
        for number in range(1, 4):
            outcome = await billing_engine.bill_subscription(subscription.id, force=True)
            assert outcome.status == "deferred"

            result = await handler.process_event(failed_event(number), test_db)
            statuses.append(result["result"]["billing_status"])

        assert statuses == ["past_due", "past_due", "suspended"]
        await test_db.refresh(subscription)
        assert subscription.billing_retry_count == 3
        assert subscription.billing_status == "suspended"
        assert subscription.next_billing_date is None

        payments = (
            await test_db.execute(
                select(Payment)
                .where(Payment.subscription_id == subscription.id)
                .order_by(Payment.attempt_number)
            )
        ).scalars().all()
        assert [p.status for p in payments] == ["failed", "failed", "failed"]
        assert [p.attempt_number for p in payments] == [1, 2, 3]
        invoice = (
            await test_db.execute(
                select(Invoice).where(Invoice.subscription_id == subscription.id)
            )
        ).scalar_one()
        assert invoice.status == "uncollectible"

        outcome = await billing_engine.bill_subscription(subscription.id, force=True)
        assert outcome.status == "skipped"
        assert len(fake_provider.charges) == 3

    @pytest.mark.asyncio
    async def test_first_async_failure_schedules_backoff(
        self, test_db, handler: WebhookHandler, billing_engine, fake_provider, make_subscription
    ) -> None:
        subscription = await make_subscription()
        fake_provider.charge_outcomes = ["processing"]
        await billing_engine.bill_subscription(subscription.id)

        before = utcnow()
        result = await handler.process_event(failed_event(1), test_db)

        assert result["result"]["retry_count"] == 1
        await test_db.refresh(subscription)
        assert subscription.billing_status == "past_due"
        assert subscription.next_billing_date >= before + timedelta(hours=24)
        assert await billing_engine.claim_lease(subscription.id) is None

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_failure_during_billing_attempt_is_redelivered(
        self, test_db, handler: WebhookHandler, billing_engine, fake_provider, make_subscription
    ) -> None:
        """While a worker holds the lease the delivery fails and a retry applies it."""
        subscription = await make_subscription()
        fake_provider.charge_outcomes = ["processing"]
        subscription_id = subscription.id
        await billing_engine.bill_subscription(subscription_id)
        token = await billing_engine.claim_lease(subscription_id, force=True)

        with pytest.raises(WebhookError):
            await handler.process_event(failed_event(1), test_db)

        payment = (
            await test_db.execute(select(Payment).where(Payment.provider_payment_id == "ch_1"))
        ).scalar_one()
        await test_db.refresh(payment)
        assert payment.status == "processing"

        await billing_engine.release_lease(subscription_id, token)
        result = await handler.process_event(failed_event(1), test_db)

        assert result["result"]["billing_status"] == "past_due"
        await test_db.refresh(payment)
        assert payment.status == "failed"

    @pytest.mark.asyncio
    async def test_failure_after_cancellation_only_fails_payment(
        self, test_db, handler: WebhookHandler, billing_engine, fake_provider, make_subscription
    ) -> None:
        subscription = await make_subscription()
        fake_provider.charge_outcomes = ["processing"]
        await billing_engine.bill_subscription(subscription.id)
        await test_db.refresh(subscription)
        subscription.status = "cancelled"
        subscription.billing_status = "cancelled"
        subscription.next_billing_date = None
        await test_db.commit()

        result = await handler.process_event(failed_event(1), test_db)

        assert result["result"]["status"] == "failed"
        assert "billing_status" not in result["result"]
        await test_db.refresh(subscription)
        assert subscription.billing_status == "cancelled"
        assert subscription.billing_retry_count == 0



class TestVerification:
    """Signature checks happen before anything is stored."""

    @pytest.mark.asyncio
    async def test_invalid_signature(self, test_db, handler: WebhookHandler) -> None:
        with pytest.raises(WebhookError, match="verification failed"):
            await handler.handle("stripe", b"{}", {"x-fake-signature": "forged"}, test_db)

        assert await webhook_rows(test_db) == []

    @pytest.mark.asyncio
    async def test_valid_delivery(
        self, test_db, handler: WebhookHandler, fake_provider
    ) -> None:
        fake_provider.webhook_event = make_event("ignored", event_id="evt_valid")

        result = await handler.handle(
            "stripe", b"{}", {"x-fake-signature": "valid"}, test_db
        )

        assert result == {
            "status": "ignored",
            "event_id": "evt_valid",
            "event_type": "ignored",
            "result": {"status": "ignored"},
        }
