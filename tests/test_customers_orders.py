"""
Tests for customers, stored payment methods and one-time orders.
"""
import pytest
from sqlalchemy import select

from native_payments.core.customers import CustomerService
from native_payments.core.exceptions import (
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    ProviderUnavailableError,
    ValidationError,
)
from native_payments.core.orders import OrderService
from native_payments.database.models import Invoice, Payment, ProviderCustomer

from conftest import decline, outage

FEE = {"description": "Setup fee", "unit_price_cents": 100}

@pytest.fixture
def orders(registry, customer_service) -> OrderService:
    return OrderService(registry, customer_service)


class TestCustomers:
    """Test suite for CustomerService."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent_per_user(
        self, test_db, customer_service: CustomerService
    ) -> None:
        first = await customer_service.create_customer(test_db, user_id="u1", email="a@x.io")
        second = await customer_service.create_customer(test_db, user_id="u1", email="b@x.io")

        assert first.id == second.id
        assert first.is_guest is False

    @pytest.mark.asyncio
    async def test_guest_customer(self, test_db, customer_service: CustomerService) -> None:
        guest = await customer_service.create_customer(test_db, email="guest@example.com")

        assert guest.is_guest is True
        assert guest.user_id is None

    @pytest.mark.asyncio
    async def test_identity_required(self, test_db, customer_service: CustomerService) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await customer_service.create_customer(test_db, name="Nobody")

        assert exc_info.value.error_code == "customer_identity_required"

    @pytest.mark.asyncio
    async def test_unknown_customer(self, test_db, customer_service: CustomerService) -> None:
        with pytest.raises(NotFoundError):
            await customer_service.get_customer(test_db, "missing")

    @pytest.mark.asyncio
    async def test_provider_customer_created_once(
        self, test_db, customer_service: CustomerService, customer, fake_provider
    ) -> None:
        await customer_service.attach_payment_method(test_db, customer.id, "stripe", "tok_a")
        await customer_service.attach_payment_method(test_db, customer.id, "stripe", "tok_b")

        links = (
            await test_db.execute(
                select(ProviderCustomer).where(ProviderCustomer.customer_id == customer.id)
            )
        ).scalars().all()
        assert len(links) == 1
        assert fake_provider.customers == [links[0].provider_customer_id]

    @pytest.mark.asyncio
    async def test_newest_method_becomes_default(
        self, test_db, customer_service: CustomerService, customer
    ) -> None:
        first = await customer_service.attach_payment_method(
            test_db, customer.id, "stripe", "tok_a"
        )
        second = await customer_service.attach_payment_method(
            test_db, customer.id, "stripe", "tok_b"
        )
        await test_db.refresh(first)

        assert second.is_default is True
        assert first.is_default is False
        assert second.last_four == "4242"
        assert second.provider_payment_method_id == "pm_tok_b"

        methods = await customer_service.list_payment_methods(test_db, customer.id)
        assert [method.id for method in methods][0] == second.id

    @pytest.mark.asyncio
    async def test_first_method_is_default_even_if_not_requested(
        self, test_db, customer_service: CustomerService, customer
    ) -> None:
        method = await customer_service.attach_payment_method(
            test_db, customer.id, "stripe", "tok_a", make_default=False
        )

        assert method.is_default is True

    @pytest.mark.asyncio
    async def test_unknown_provider(
        self, test_db, customer_service: CustomerService, customer
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await customer_service.attach_payment_method(test_db, customer.id, "square", "tok")

        assert exc_info.value.error_code == "unknown_provider"

    @pytest.mark.asyncio
    async def test_detach(
        self, test_db, customer_service: CustomerService, payment_method, fake_provider
    ) -> None:
        await customer_service.detach_payment_method(test_db, payment_method.id)

        assert fake_provider.detached == ["pm_card_visa"]
        with pytest.raises(NotFoundError):
            await customer_service.get_payment_method(test_db, payment_method.id)

    @pytest.mark.asyncio
    async def test_detach_refused_while_subscription_uses_it(
        self, test_db, customer_service: CustomerService, payment_method, make_subscription
    ) -> None:
        await make_subscription()

        with pytest.raises(ConflictError) as exc_info:
            await customer_service.detach_payment_method(test_db, payment_method.id)

        assert exc_info.value.error_code == "payment_method_in_use"

    @pytest.mark.asyncio
    async def test_method_of_other_customer_not_found(
        self, test_db, customer_service: CustomerService, payment_method
    ) -> None:
        other = await customer_service.create_customer(test_db, user_id="intruder")

        with pytest.raises(NotFoundError):
            await customer_service.get_payment_method(
                test_db, payment_method.id, customer_id=other.id
            )


class TestOrders:
    """Test suite for OrderService."""

    @pytest.mark.asyncio
    async def test_create_order_totals(
        self, test_db, orders: OrderService, customer, monthly_product
    ) -> None:
        order = await orders.create_order(
            test_db,
            customer.id,
            [
                {"product_id": monthly_product.id, "quantity": 2},
                {"description": "Setup fee", "unit_price_cents": 500},
            ],
            tax_cents=300,
            discount_cents=100,
        )

        assert order.status == "pending"
        assert order.subtotal_cents == 2 * 1999 + 500
        assert order.total_cents == 2 * 1999 + 500 + 300 - 100
        assert order.order_number.startswith("ORD")

        items = await orders.get_items(test_db, order.id)
        assert sorted(item.total_cents for item in items) == [500, 3998]

        invoice = (
            await test_db.execute(select(Invoice).where(Invoice.order_id == order.id))
        ).scalar_one()
        assert invoice.status == "open"
        assert invoice.total_cents == order.total_cents

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "items,kwargs,code",
        [
            ([], {}, "empty_order"),
            ([dict(FEE, quantity=0)], {}, "invalid_quantity"),
            ([FEE], {"tax_cents": -1}, "validation_error"),
            ([FEE], {"discount_cents": 500}, "negative_total"),
        ],
        ids=["empty", "zero_quantity", "negative_tax", "discount_too_large"],
    )
    async def test_invalid_orders(
        self, test_db, orders: OrderService, customer, items, kwargs, code
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await orders.create_order(test_db, customer.id, items, **kwargs)

        assert exc_info.value.error_code == code

    @pytest.mark.asyncio
    async def test_currency_mismatch(
        self, test_db, orders: OrderService, customer, monthly_product
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await orders.create_order(
                test_db, customer.id, [{"product_id": monthly_product.id}], currency="EUR"
            )

        assert exc_info.value.error_code == "currency_mismatch"

    @pytest.mark.asyncio
    async def test_pay_order(
        self, test_db, orders: OrderService, customer, payment_method, fake_provider
    ) -> None:
        order = await orders.create_order(
            test_db, customer.id, [{"description": "Pack", "unit_price_cents": 1500}]
        )

        payment = await orders.pay_order(test_db, order.id, payment_method.id)

        assert payment.status == "succeeded"
        assert payment.idempotency_key == f"order:{order.id}:1"
        assert fake_provider.charges[0]["idempotency_key"] == payment.idempotency_key
        assert order.status == "paid"
        assert order.paid_at is not None
        invoice = (
            await test_db.execute(select(Invoice).where(Invoice.order_id == order.id))
        ).scalar_one()
        assert invoice.status == "paid"

        with pytest.raises(ConflictError):
            await orders.pay_order(test_db, order.id, payment_method.id)

    @pytest.mark.asyncio
    async def test_replayed_key_returns_same_payment(
        self, test_db, orders: OrderService, customer, payment_method, fake_provider
    ) -> None:
        order = await orders.create_order(
            test_db, customer.id, [{"description": "Pack", "unit_price_cents": 1500}]
        )

        first = await orders.pay_order(test_db, order.id, payment_method.id, "client-key-1")
        second = await orders.pay_order(test_db, order.id, payment_method.id, "client-key-1")

        assert first.id == second.id
        assert len(fake_provider.charges) == 1

    @pytest.mark.asyncio
    async def test_declined_order(
        self, test_db, orders: OrderService, customer, payment_method, fake_provider
    ) -> None:
        order = await orders.create_order(
            test_db, customer.id, [{"description": "Pack", "unit_price_cents": 1500}]
        )
        fake_provider.charge_outcomes = [decline("insufficient_funds")]

        with pytest.raises(PaymentDeclinedError) as exc_info:
            await orders.pay_order(test_db, order.id, payment_method.id)

        assert exc_info.value.error_code == "insufficient_funds"
        assert exc_info.value.http_status == 402
        assert order.status == "failed"
        payment = (
            await test_db.execute(select(Payment).where(Payment.order_id == order.id))
        ).scalar_one()
        assert payment.status == "failed"

    @pytest.mark.asyncio
    async def test_outage_keeps_payment_for_retry(
        self, test_db, orders: OrderService, customer, payment_method, fake_provider
    ) -> None:
        order = await orders.create_order(
            test_db, customer.id, [{"description": "Pack", "unit_price_cents": 1500}]
        )
        fake_provider.charge_outcomes = [outage()]

        with pytest.raises(ProviderUnavailableError):
            await orders.pay_order(test_db, order.id, payment_method.id, "client-key-2")

        payment = await orders.pay_order(test_db, order.id, payment_method.id, "client-key-2")

        assert payment.status == "succeeded"
        keys = {charge["idempotency_key"] for charge in fake_provider.charges}
        assert keys == {"client-key-2"}

    @pytest.mark.asyncio
    async def test_below_minimum_charge(
        self, test_db, orders: OrderService, customer, payment_method
    ) -> None:
        order = await orders.create_order(
            test_db, customer.id, [{"description": "Sticker", "unit_price_cents": 25}]
        )

        with pytest.raises(ValidationError) as exc_info:
            await orders.pay_order(test_db, order.id, payment_method.id)

        assert exc_info.value.error_code == "amount_too_small"
