"""
Retry/backoff controller for subscription billing.

Owns the ``billing_status`` state machine::

    active --decline--> past_due --decline--> ... --last decline--> suspended | cancelled
       ^                    |
       +------success-------+

Declines count against ``max_retry_attempts``; provider outages and rate
limits do not, they only push the next attempt back.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from native_payments.config import get_settings
from native_payments.database.models import Subscription

logger = structlog.get_logger(__name__)

BILLABLE_STATUSES = ("active", "past_due")


@dataclass(frozen=True)
class Transition:
    """Result of applying a billing outcome to a subscription."""

    previous_status: str
    billing_status: str
    retry_count: int
    next_billing_date: Optional[datetime]

    @property
    def changed(self) -> bool:
        return self.previous_status != self.billing_status

    @property
    def exhausted(self) -> bool:
        return self.billing_status in ("suspended", "cancelled")


class RetryPolicy:
    """
    Decides what happens to a subscription after each billing attempt.

    Retry delay after the n-th decline is
    ``min(base * multiplier ** (n - 1), max)`` hours.
    """

    def __init__(
        self,
        base_delay_hours: Optional[float] = None,
        max_delay_hours: Optional[float] = None,
        backoff_multiplier: Optional[float] = None,
        transient_retry_minutes: Optional[int] = None,
        exhausted_action: Optional[str] = None,
    ):
        """
        Initialize retry policy.

        Args:
            base_delay_hours: Delay before the first retry
            max_delay_hours: Cap on the retry delay
            backoff_multiplier: Growth factor between consecutive retries
            transient_retry_minutes: Delay after a provider outage
            exhausted_action: ``suspend`` or ``cancel`` once retries run out
        """
        settings = get_settings()
        self.base_delay_hours = (
            base_delay_hours
            if base_delay_hours is not None
            else settings.billing_retry_base_delay_hours
        )
        self.max_delay_hours = (
            max_delay_hours
            if max_delay_hours is not None
            else settings.billing_retry_max_delay_hours
        )
        self.backoff_multiplier = (
            backoff_multiplier
            if backoff_multiplier is not None
            else settings.billing_retry_backoff_multiplier
        )
        self.transient_retry_minutes = (
            transient_retry_minutes
            if transient_retry_minutes is not None
            else settings.billing_transient_retry_minutes
        )
        self.exhausted_action = exhausted_action or settings.billing_exhausted_action
        if self.exhausted_action not in ("suspend", "cancel"):
            raise ValueError("exhausted_action must be 'suspend' or 'cancel'")

    def retry_delay(self, retry_count: int) -> timedelta:
        """
        Delay before the next attempt after ``retry_count`` declines.

        Args:
            retry_count: Number of declines so far (>= 1)

        Returns:
            timedelta: Backoff delay
        """
        exponent = max(retry_count - 1, 0)
        hours = min(self.base_delay_hours * self.backoff_multiplier**exponent, self.max_delay_hours)
        return timedelta(hours=hours)

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        return now + self.retry_delay(retry_count)

    def on_success(self, subscription: Subscription, now: datetime) -> Transition:
        """
        Apply a successful charge.

        Resets the retry counter and reactivates the subscription. The next
        charge is due when the period just paid for ends.
        """
        previous = subscription.billing_status
        subscription.billing_retry_count = 0
        subscription.billing_status = "active"
        subscription.status = "active"
        subscription.next_billing_date = subscription.current_period_end or now
        return self._transition(previous, subscription)

    def on_decline(self, subscription: Subscription, now: datetime) -> Transition:
        """
        Apply a declined charge.

        Increments the retry counter. Once it reaches ``max_retry_attempts``
        the subscription leaves the billable states and is never due again.
        """
        previous = subscription.billing_status
        retry_count = min(subscription.billing_retry_count + 1, subscription.max_retry_attempts)
        subscription.billing_retry_count = retry_count

        if retry_count >= subscription.max_retry_attempts:
            final_status = "cancelled" if self.exhausted_action == "cancel" else "suspended"
            subscription.billing_status = final_status
            subscription.status = final_status
            subscription.next_billing_date = None
            if final_status == "cancelled":
                subscription.cancelled_at = now
                subscription.cancellation_reason = "billing_retries_exhausted"
            logger.warning(
                "subscription_billing_retries_exhausted",
                subscription_id=subscription.id,
                retry_count=retry_count,
                billing_status=final_status,
            )
        else:
            subscription.billing_status = "past_due"
            subscription.status = "past_due"
            subscription.next_billing_date = self.next_retry_at(retry_count, now)
            logger.info(
                "subscription_billing_retry_scheduled",
                subscription_id=subscription.id,
                retry_count=retry_count,
                next_billing_date=subscription.next_billing_date.isoformat(),
            )

        return self._transition(previous, subscription)

    def on_transient_error(self, subscription: Subscription, now: datetime) -> Transition:
        """
        Apply a provider outage or rate limit.

        The retry counter is untouched; the attempt is simply deferred.
        """
        previous = subscription.billing_status
        subscription.next_billing_date = now + timedelta(minutes=self.transient_retry_minutes)
        return self._transition(previous, subscription)

    @staticmethod
    def _transition(previous: str, subscription: Subscription) -> Transition:
        return Transition(
            previous_status=previous,
            billing_status=subscription.billing_status,
            retry_count=subscription.billing_retry_count,
            next_billing_date=subscription.next_billing_date,
        )
