"""
Tests for membership types, user memberships, add-ons and feature access.
"""
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from native_payments.core.exceptions import (
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    ProviderUnavailableError,
    ValidationError,
)
from native_payments.core.memberships import MembershipService
from native_payments.core.orders import OrderService
from native_payments.core.subscriptions import SubscriptionService
from native_payments.database.models import Subscription
from native_payments.database.types import utcnow

from conftest import decline, outage


@pytest.fixture
def memberships(registry, billing_engine, customer_service) -> MembershipService:
    return MembershipService(
        registry,
        customer_service,
        OrderService(registry, customer_service),
        SubscriptionService(registry, billing_engine, customer_service),
    )


@pytest_asyncio.fixture
async def premium(test_db, memberships: MembershipService):
    membership_type = await memberships.create_membership_type(
        test_db,
        name="Premium",
        duration_type="recurring",
        billing_interval="monthly",
        price_cents=1499,
        features=["streaming", "hd", "download"],
        sort_order=2,
    )
    await test_db.commit()
    return membership_type


@pytest_asyncio.fixture
async def season_pass(test_db, memberships: MembershipService):
    membership_type = await memberships.create_membership_type(
        test_db,
        name="Season Pass",
        duration_type="fixed",
        duration_days=90,
        price_cents=2999,
        features=["streaming", "ad_free"],
        sort_order=1,
    )
    await test_db.commit()
    return membership_type


@pytest_asyncio.fixture
async def free_tier(test_db, memberships: MembershipService):
    membership_type = await memberships.create_membership_type(
        test_db, name="Free", duration_type="lifetime", price_cents=0, features=["streaming"]
    )
    await test_db.commit()
    return membership_type


class TestMembershipTypes:
    """Test suite for membership type definitions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs,code",
        [
            ({"duration_type": "weekly"}, "invalid_duration_type"),
            ({"duration_type": "fixed"}, "validation_error"),
            ({"duration_type": "recurring"}, "validation_error"),
            (
                {"duration_type": "recurring", "billing_interval": "fortnightly"},
                "invalid_billing_interval",
            ),
            ({"duration_type": "lifetime", "price_cents": -1}, "validation_error"),
            ({"duration_type": "lifetime", "features": ["teleport"]}, "unknown_feature"),
        ],
    )
    async def test_invalid_definitions(
        self, test_db, memberships: MembershipService, kwargs, code
    ) -> None:
        fields = {"name": "Broken", "price_cents": 100}
        fields.update(kwargs)

        with pytest.raises(ValidationError) as exc_info:
            await memberships.create_membership_type(test_db, **fields)

        assert exc_info.value.error_code == code

    @pytest.mark.asyncio
    async def test_listing_order(
        self, test_db, memberships: MembershipService, premium, season_pass, free_tier
    ) -> None:
        types = await memberships.list_membership_types(test_db)

        assert [t.name for t in types] == ["Free", "Season Pass", "Premium"]
        assert season_pass.billing_interval is None
        assert premium.duration_days is None

    @pytest.mark.asyncio
    async def test_unknown_type(self, test_db, memberships: MembershipService) -> None:
        with pytest.raises(NotFoundError):
            await memberships.get_membership_type(test_db, "missing")


class TestCreateMembership:
    """Test suite for signing users up."""

    @pytest.mark.asyncio
    async def test_recurring_membership_follows_subscription(
        self,
        test_db,
        memberships: MembershipService,
        premium,
        customer,
        payment_method,
        fake_provider,
    ) -> None:
        membership = await memberships.create_membership(
            test_db, customer.user_id, premium.id, payment_method.id
        )

        assert membership.status == "active"
        assert membership.auto_renew is True
        assert membership.customer_id == customer.id
        subscription = await test_db.get(Subscription, membership.subscription_id)
        assert subscription.category == "membership"
        assert membership.end_date == subscription.current_period_end
        assert fake_provider.charges[0]["amount_cents"] == 1499

    @pytest.mark.asyncio
    async def test_recurring_membership_pending_after_decline(
        self,
        test_db,
        memberships: MembershipService,
        premium,
        customer,
        payment_method,
        fake_provider,
    ) -> None:
        fake_provider.charge_outcomes = [decline()]

        membership = await memberships.create_membership(
            test_db, customer.user_id, premium.id, payment_method.id
        )

        assert membership.status == "pending"

    @pytest.mark.asyncio
    async def test_fixed_membership_paid_by_order(
        self, test_db, memberships: MembershipService, season_pass, customer, payment_method
    ) -> None:
        membership = await memberships.create_membership(
            test_db, customer.user_id, season_pass.id, payment_method.id
        )

        assert membership.status == "active"
        assert membership.order_id is not None
        assert membership.subscription_id is None
        assert membership.end_date - membership.start_date == timedelta(days=90)

    @pytest.mark.asyncio
    async def test_fixed_membership_declined(
        self,
        test_db,
        memberships: MembershipService,
        season_pass,
        customer,
        payment_method,
        fake_provider,
    ) -> None:
        """A declined purchase releases the membership so it can be bought again."""
        fake_provider.charge_outcomes = [decline()]

        with pytest.raises(PaymentDeclinedError):
            await memberships.create_membership(
                test_db, customer.user_id, season_pass.id, payment_method.id
            )

        declined = await memberships.list_user_memberships(test_db, customer.user_id)
        assert [m.status for m in declined] == ["cancelled"]
        assert declined[0].cancellation_reason == "payment_declined"

        membership = await memberships.create_membership(
            test_db, customer.user_id, season_pass.id, payment_method.id
        )

        assert membership.status == "active"
        assert membership.id != declined[0].id
        assert membership.order_id != declined[0].order_id
        assert len(fake_provider.charges) == 2

    @pytest.mark.asyncio
    async def test_fixed_membership_resumed_after_outage(
        self,
        test_db,
        memberships: MembershipService,
        season_pass,
        customer,
        payment_method,
        fake_provider,
    ) -> None:
        fake_provider.charge_outcomes = [outage()]

        with pytest.raises(ProviderUnavailableError):
            await memberships.create_membership(
                test_db, customer.user_id, season_pass.id, payment_method.id
            )

        pending = await memberships.list_user_memberships(test_db, customer.user_id)
        assert [m.status for m in pending] == ["pending"]

        membership = await memberships.create_membership(
            test_db, customer.user_id, season_pass.id, payment_method.id
        )

        assert membership.id == pending[0].id
        assert membership.status == "active"
        first, second = fake_provider.charges
        assert first["idempotency_key"] == second["idempotency_key"]

    @pytest.mark.asyncio
    async def test_free_membership_needs_no_payment_method(
        self, test_db, memberships: MembershipService, free_tier, fake_provider
    ) -> None:
        membership = await memberships.create_membership(
            test_db, "new_user", free_tier.id, email="new@example.com"
        )

        assert membership.status == "active"
        assert membership.end_date is None
        assert fake_provider.charges == []

    @pytest.mark.asyncio
    async def test_paid_membership_requires_payment_method(
        self, test_db, memberships: MembershipService, season_pass
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await memberships.create_membership(test_db, "user_999", season_pass.id)

        assert exc_info.value.error_code == "payment_method_required"

    @pytest.mark.asyncio
    async def test_duplicate_membership(
        self, test_db, memberships: MembershipService, free_tier
    ) -> None:
        await memberships.create_membership(test_db, "user_1", free_tier.id)

        with pytest.raises(ConflictError) as exc_info:
            await memberships.create_membership(test_db, "user_1", free_tier.id)

        assert exc_info.value.error_code == "membership_exists"


class TestCancelMembership:
    """Test suite for cancelling memberships."""

    @pytest.mark.asyncio
    async def test_one_time_membership_cancelled_now(
        self, test_db, memberships: MembershipService, free_tier
    ) -> None:
        membership = await memberships.create_membership(test_db, "user_1", free_tier.id)

        cancelled = await memberships.cancel_membership(
            test_db, "user_1", membership.id, reason="not_needed"
        )

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "not_needed"
        with pytest.raises(ConflictError):
            await memberships.cancel_membership(test_db, "user_1", membership.id)

    @pytest.mark.asyncio
    async def test_recurring_membership_runs_to_period_end(
        self, test_db, memberships: MembershipService, premium, customer, payment_method
    ) -> None:
        membership = await memberships.create_membership(
            test_db, customer.user_id, premium.id, payment_method.id
        )

        cancelled = await memberships.cancel_membership(
            test_db, customer.user_id, membership.id
        )

        assert cancelled.status == "active"
        assert cancelled.auto_renew is False
        subscription = await test_db.get(Subscription, membership.subscription_id)
        assert subscription.cancel_at_period_end is True

    @pytest.mark.asyncio
    async def test_recurring_membership_cancelled_immediately(
        self, test_db, memberships: MembershipService, premium, customer, payment_method
    ) -> None:
        membership = await memberships.create_membership(
            test_db, customer.user_id, premium.id, payment_method.id
        )

        cancelled = await memberships.cancel_membership(
            test_db, customer.user_id, membership.id, immediately=True, reason="moving"
        )

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "moving"

    @pytest.mark.asyncio
    async def test_other_users_membership_not_found(
        self, test_db, memberships: MembershipService, free_tier
    ) -> None:
        membership = await memberships.create_membership(test_db, "user_1", free_tier.id)

        with pytest.raises(NotFoundError):
            await memberships.cancel_membership(test_db, "user_2", membership.id)


class TestAddons:
    """Test suite for add-on purchases."""

    @pytest_asyncio.fixture
    async def membership(self, test_db, memberships, season_pass, customer, payment_method):
        return await memberships.create_membership(
            test_db, customer.user_id, season_pass.id, payment_method.id
        )

    @pytest.mark.asyncio
    async def test_timed_addon_extends_from_current_end(
        self, test_db, memberships: MembershipService, membership, customer, payment_method
    ) -> None:
        await memberships.purchase_addon(
            test_db, customer.user_id, membership.id, "family_sharing", payment_method.id
        )
        first_end = datetime.fromisoformat(membership.addons[0]["end_date"])

        updated = await memberships.purchase_addon(
            test_db, customer.user_id, membership.id, "family_sharing", payment_method.id
        )

        assert len(updated.addons) == 1
        second_end = datetime.fromisoformat(updated.addons[0]["end_date"])
        assert second_end - first_end == timedelta(days=30)

    @pytest.mark.asyncio
    async def test_permanent_addon_bought_once(
        self,
        test_db,
        memberships: MembershipService,
        membership,
        customer,
        payment_method,
        fake_provider,
    ) -> None:
        updated = await memberships.purchase_addon(
            test_db, customer.user_id, membership.id, "lifetime_downloads", payment_method.id
        )
        assert updated.addons[0]["end_date"] is None
        assert fake_provider.charges[-1]["amount_cents"] == 9900

        with pytest.raises(ConflictError) as exc_info:
            await memberships.purchase_addon(
                test_db, customer.user_id, membership.id, "lifetime_downloads", payment_method.id
            )
        assert exc_info.value.error_code == "addon_already_owned"

    @pytest.mark.asyncio
    async def test_included_feature_is_not_an_addon(
        self, test_db, memberships: MembershipService, membership, customer, payment_method
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await memberships.purchase_addon(
                test_db, customer.user_id, membership.id, "hd", payment_method.id
            )

        assert exc_info.value.error_code == "not_an_addon"

    @pytest.mark.asyncio
    async def test_unknown_feature(
        self, test_db, memberships: MembershipService, membership, customer, payment_method
    ) -> None:
        with pytest.raises(NotFoundError):
            await memberships.purchase_addon(
                test_db, customer.user_id, membership.id, "teleport", payment_method.id
            )


class TestAccess:
    """Test suite for feature access checks."""

    @pytest.mark.asyncio
    async def test_granted_by_membership(
        self, test_db, memberships: MembershipService, free_tier
    ) -> None:
        await memberships.create_membership(test_db, "user_1", free_tier.id)

        access = await memberships.verify_access(test_db, "user_1", "streaming")

        assert access["has_access"] is True
        assert access["access_source"] == "membership"
        assert access["membership"]["type"] == "Free"

    @pytest.mark.asyncio
    async def test_granted_by_addon(
        self, test_db, memberships: MembershipService, season_pass, customer, payment_method
    ) -> None:
        membership = await memberships.create_membership(
            test_db, customer.user_id, season_pass.id, payment_method.id
        )
        await memberships.purchase_addon(
            test_db, customer.user_id, membership.id, "cloud_storage", payment_method.id
        )

        access = await memberships.verify_access(test_db, customer.user_id, "cloud_storage")

        assert access["has_access"] is True
        assert access["access_source"] == "addon"
        assert access["addon"]["name"] == "Cloud Storage"

    @pytest.mark.asyncio
    async def test_denied_with_upgrade_options(
        self, test_db, memberships: MembershipService, free_tier, premium
    ) -> None:
        await memberships.create_membership(test_db, "user_1", free_tier.id)

        access = await memberships.verify_access(test_db, "user_1", "hd")

        assert access["has_access"] is False
        assert [option["name"] for option in access["upgrade_options"]] == ["Premium"]
        assert access["addon_options"] == []
        assert access["current_membership"]["type"] == "Free"

    @pytest.mark.asyncio
    async def test_denied_without_membership(
        self, test_db, memberships: MembershipService
    ) -> None:
        access = await memberships.verify_access(test_db, "nobody", "priority_support")

        assert access["reason"] == "no_active_membership"
        assert access["addon_options"][0]["price_cents"] == 499

    @pytest.mark.asyncio
    async def test_lapsed_membership_expires_on_check(
        self, test_db, memberships: MembershipService, season_pass, customer, payment_method
    ) -> None:
        membership = await memberships.create_membership(
            test_db, customer.user_id, season_pass.id, payment_method.id
        )
        membership.end_date = utcnow() - timedelta(minutes=1)
        await test_db.commit()

        access = await memberships.verify_access(test_db, customer.user_id, "streaming")

        assert access["has_access"] is False
        assert membership.status == "expired"

    @pytest.mark.asyncio
    async def test_unknown_feature(self, test_db, memberships: MembershipService) -> None:
        with pytest.raises(NotFoundError):
            await memberships.verify_access(test_db, "user_1", "teleport")

    @pytest.mark.asyncio
    async def test_check_membership(
        self, test_db, memberships: MembershipService, free_tier, season_pass
    ) -> None:
        before = await memberships.check_membership(test_db, "user_1")
        assert before["has_active_membership"] is False
        assert len(before["available_memberships"]) == 2

        await memberships.create_membership(test_db, "user_1", free_tier.id)

        after = await memberships.check_membership(test_db, "user_1")
        assert after["has_active_membership"] is True
        assert after["memberships"][0]["membership_type_id"] == free_tier.id
        filtered = await memberships.check_membership(test_db, "user_1", season_pass.id)
        assert filtered["has_active_membership"] is False

    @pytest.mark.unit
    def test_feature_catalog(self) -> None:
        catalog = MembershipService.feature_catalog()

        assert len(catalog) == 11
        addons = {feature["id"] for feature in catalog if feature["is_addon"]}
        assert addons == {
            "family_sharing",
            "exclusive_content",
            "lifetime_downloads",
            "cloud_storage",
            "priority_support",
        }
