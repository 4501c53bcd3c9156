"""
Provider adapter interface shared by Stripe, PayPal and Authorize.Net.

Implements:
- Error classification used for retry decisions
- Circuit breaker guarding each provider
- Provider-neutral result types
"""
import abc
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from native_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these (declines, bad requests)
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ProviderError(Exception):
    """Base exception for provider API errors."""

    def __init__(
        self,
        message: str,
        error_type: ProviderErrorType,
        code: Optional[str] = None,
        provider_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            error_type: Classification of error
            code: Provider decline/error code (e.g. 'card_declined')
            provider_id: Provider that raised the error
            original_error: Original SDK/HTTP exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.code = code
        self.provider_id = provider_id
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type in (ProviderErrorType.TRANSIENT, ProviderErrorType.RATE_LIMIT)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


# Retries transient failures inside a single API call; declines surface immediately
provider_retry = retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        provider_id: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider_id: Provider the breaker protects
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider_id = provider_id
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Reject the call while the circuit is open.

        Raises:
            ProviderError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.provider_id)
            else:
                raise ProviderError(
                    "Circuit breaker is open",
                    ProviderErrorType.TRANSIENT,
                    code="circuit_open",
                    provider_id=self.provider_id,
                )

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute a coroutine function with circuit breaker protection.

        Only transient failures trip the breaker; a declined card says
        nothing about the provider's health.
        """
        self.before_call()
        try:
            result = await func(*args, **kwargs)
        except ProviderError as e:
            if e.retryable:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.provider_id)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider_id,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider_id, state)


@dataclass
class PaymentMethodDetails:
    """Stored payment method as reported by the provider."""

    provider_payment_method_id: str
    payment_type: str = "card"
    last_four: Optional[str] = None
    card_brand: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None


@dataclass
class ChargeResult:
    """Outcome of a charge or intent creation."""

    provider_payment_id: Optional[str]
    status: str  # succeeded, processing, pending, failed
    amount_cents: int
    currency: str
    client_secret: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Outcome of a refund."""

    provider_refund_id: str
    status: str
    amount_cents: int


@dataclass
class WebhookEvent:
    """
    Verified webhook normalised to provider-neutral event types.

    ``event_type`` is one of ``payment.succeeded``, ``payment.failed``,
    ``payment.refunded`` or ``ignored``.
    """

    provider_id: str
    event_id: str
    event_type: str
    provider_event_type: str
    provider_payment_id: Optional[str] = None
    amount_cents: Optional[int] = None
    error_message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class PaymentProviderAdapter(abc.ABC):
    """
    One interface over every payment processor.

    Every mutating call takes an idempotency key which adapters forward to
    the provider's own idempotency mechanism, so a retried call can never
    produce a second charge.
    """

    provider_id: str = ""
    display_name: str = ""
    supports_subscriptions: bool = True
    supports_saved_methods: bool = True

    def __init__(self) -> None:
        self.circuit_breaker = CircuitBreaker(self.provider_id)

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run a provider call through the breaker and record metrics."""
        start = time.time()
        try:
            result = await self.circuit_breaker.call(func, *args)
        except ProviderError as e:
            metrics.record_provider_api_call(
                self.provider_id, operation, "error", time.time() - start
            )
            metrics.record_provider_api_error(self.provider_id, e.error_type.value)
            raise
        metrics.record_provider_api_call(
            self.provider_id, operation, "success", time.time() - start
        )
        return result

    @abc.abstractmethod
    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Create the customer at the provider and return its id."""

    @abc.abstractmethod
    async def attach_payment_method(
        self, provider_customer_id: str, payment_token: str
    ) -> PaymentMethodDetails:
        """Turn a client-side token into a reusable stored payment method."""

    @abc.abstractmethod
    async def detach_payment_method(
        self, provider_customer_id: str, provider_payment_method_id: str
    ) -> None:
        """Remove a stored payment method at the provider."""

    @abc.abstractmethod
    async def charge(
        self,
        provider_customer_id: str,
        provider_payment_method_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        payment_type: str = "card",
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """
        Charge a stored payment method without the customer present.

        Raises:
            ProviderError: PERMANENT for declines, TRANSIENT/RATE_LIMIT otherwise
        """

    @abc.abstractmethod
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        provider_customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """Create a payment the client confirms (card form, PayPal approval...)."""

    @abc.abstractmethod
    async def refund(
        self,
        provider_payment_id: str,
        amount_cents: Optional[int],
        idempotency_key: str,
        reason: Optional[str] = None,
        currency: str = "USD",
    ) -> RefundResult:
        """Refund a captured payment, fully or partially."""

    @abc.abstractmethod
    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Verify a webhook's authenticity and normalise it.

        Raises:
            ProviderError: PERMANENT with code 'invalid_signature' when verification fails
        """

    async def ping(self) -> None:
        """Cheap authenticated call used by health checks."""
        return None

    async def close(self) -> None:
        """Release network resources."""
        return None
