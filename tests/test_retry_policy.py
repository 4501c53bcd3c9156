"""
Unit tests for the billing retry/backoff policy.
"""
from datetime import datetime, timedelta, timezone

import pytest

from native_payments.core.retry_policy import RetryPolicy
from native_payments.database.models import Subscription

NOW = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


def make_subscription(**fields) -> Subscription:
    defaults = dict(
        id="sub_1",
        status="active",
        billing_status="active",
        billing_retry_count=0,
        max_retry_attempts=3,
        next_billing_date=NOW,
    )
    defaults.update(fields)
    return Subscription(**defaults)


class TestRetryDelay:
    """Exponential backoff between declines."""

    @pytest.mark.unit
    def test_delay_grows_exponentially(self, retry_policy: RetryPolicy) -> None:
        assert retry_policy.retry_delay(1) == timedelta(hours=24)
        assert retry_policy.retry_delay(2) == timedelta(hours=48)
        assert retry_policy.retry_delay(3) == timedelta(hours=96)

    @pytest.mark.unit
    def test_delay_is_capped(self, retry_policy: RetryPolicy) -> None:
        assert retry_policy.retry_delay(10) == timedelta(hours=168)

    @pytest.mark.unit
    def test_invalid_exhausted_action(self) -> None:
        with pytest.raises(ValueError, match="exhausted_action"):
            RetryPolicy(exhausted_action="delete")


class TestTransitions:
    """The billing_status state machine."""

    @pytest.mark.unit
    def test_first_decline_moves_to_past_due(self, retry_policy: RetryPolicy) -> None:
        subscription = make_subscription()

        transition = retry_policy.on_decline(subscription, NOW)

        assert transition.previous_status == "active"
        assert transition.billing_status == "past_due"
        assert transition.changed
        assert not transition.exhausted
        assert subscription.billing_retry_count == 1
        assert subscription.status == "past_due"
        assert subscription.next_billing_date == NOW + timedelta(hours=24)

    @pytest.mark.unit
    def test_second_decline_backs_off_further(self, retry_policy: RetryPolicy) -> None:
        subscription = make_subscription(billing_status="past_due", billing_retry_count=1)

        transition = retry_policy.on_decline(subscription, NOW)

        assert not transition.changed
        assert subscription.billing_retry_count == 2
        assert subscription.next_billing_date == NOW + timedelta(hours=48)

    @pytest.mark.unit
    def test_last_decline_suspends(self, retry_policy: RetryPolicy) -> None:
        subscription = make_subscription(billing_status="past_due", billing_retry_count=2)

        transition = retry_policy.on_decline(subscription, NOW)

        assert transition.exhausted
        assert subscription.billing_status == "suspended"
        assert subscription.status == "suspended"
        assert subscription.billing_retry_count == 3
        assert subscription.next_billing_date is None

    @pytest.mark.unit
    def test_last_decline_cancels_when_configured(self) -> None:
        policy = RetryPolicy(exhausted_action="cancel")
        subscription = make_subscription(billing_status="past_due", billing_retry_count=2)

        transition = policy.on_decline(subscription, NOW)

        assert transition.billing_status == "cancelled"
        assert subscription.cancelled_at == NOW
        assert subscription.cancellation_reason == "billing_retries_exhausted"

    @pytest.mark.unit
    def test_retry_count_never_exceeds_max(self, retry_policy: RetryPolicy) -> None:
        subscription = make_subscription(max_retry_attempts=1)

        retry_policy.on_decline(subscription, NOW)

        assert subscription.billing_retry_count == 1
        assert subscription.billing_status == "suspended"

    @pytest.mark.unit
    def test_success_resets_retries(self, retry_policy: RetryPolicy) -> None:
        next_date = NOW + timedelta(days=30)
        subscription = make_subscription(
            status="past_due",
            billing_status="past_due",
            billing_retry_count=2,
            current_period_end=next_date,
        )

        transition = retry_policy.on_success(subscription, NOW)

        assert transition.billing_status == "active"
        assert transition.changed
        assert subscription.billing_retry_count == 0
        assert subscription.status == "active"
        assert subscription.next_billing_date == next_date

    @pytest.mark.unit
    def test_success_without_period_is_due_now(self, retry_policy: RetryPolicy) -> None:
        subscription = make_subscription(next_billing_date=None)

        transition = retry_policy.on_success(subscription, NOW)

        assert transition.next_billing_date == NOW

    @pytest.mark.unit
    def test_transient_error_does_not_count(self, retry_policy: RetryPolicy) -> None:
        subscription = make_subscription(billing_status="past_due", billing_retry_count=1)

        transition = retry_policy.on_transient_error(subscription, NOW)

        assert not transition.changed
        assert subscription.billing_retry_count == 1
        assert subscription.next_billing_date == NOW + timedelta(minutes=30)
