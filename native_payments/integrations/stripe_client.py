"""
Stripe adapter with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent customer, charge and refund creation
- Webhook signature verification
"""
import asyncio
from typing import Any, Callable, Dict, Mapping, Optional

import stripe
import structlog

from native_payments.config import get_settings
from native_payments.integrations.base import (
    ChargeResult,
    PaymentMethodDetails,
    PaymentProviderAdapter,
    ProviderError,
    ProviderErrorType,
    RefundResult,
    WebhookEvent,
    provider_retry,
)

logger = structlog.get_logger(__name__)

# Stripe event type -> provider-neutral event type
EVENT_TYPE_MAP = {
    "payment_intent.succeeded": "payment.succeeded",
    "payment_intent.payment_failed": "payment.failed",
    "charge.refunded": "payment.refunded",
}

_INTENT_STATUS_MAP = {
    "succeeded": "succeeded",
    "processing": "processing",
    "requires_capture": "processing",
    "canceled": "failed",
}


class StripeClient(PaymentProviderAdapter):
    """
    Stripe implementation of the provider adapter.

    Features:
    - Off-session PaymentIntents for stored payment methods
    - Client-confirmed PaymentIntents for one-time payments
    - Comprehensive error classification
    """

    provider_id = "stripe"
    display_name = "Stripe"

    def __init__(self) -> None:
        """Initialize Stripe client."""
        super().__init__()
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> ProviderErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            ProviderErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return ProviderErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return ProviderErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return ProviderErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return ProviderErrorType.TRANSIENT

    def _to_provider_error(self, error: stripe.StripeError) -> ProviderError:
        error_type = self._classify_error(error)
        code = getattr(error, "code", None)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=code,
            error_message=str(error),
        )

        return ProviderError(
            message=getattr(error, "user_message", None) or str(error),
            error_type=error_type,
            code=code,
            provider_id=self.provider_id,
            original_error=error,
        )

    async def _request(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run a blocking SDK call off the event loop, guarded by the breaker."""

        async def _run() -> Any:
            try:
                return await asyncio.to_thread(func)
            except stripe.StripeError as e:
                raise self._to_provider_error(e) from e

        return await self._call(operation, _run)

    @provider_retry
    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        logger.info("creating_stripe_customer", has_email=email is not None)

        def _create() -> stripe.Customer:
            kwargs: Dict[str, Any] = {"metadata": metadata or {}}
            if email:
                kwargs["email"] = email
            if name:
                kwargs["name"] = name
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.Customer.create(**kwargs)

        customer = await self._request("create_customer", _create)
        return customer.id

    @provider_retry
    async def attach_payment_method(
        self, provider_customer_id: str, payment_token: str
    ) -> PaymentMethodDetails:
        logger.info(
            "attaching_stripe_payment_method",
            customer_id=provider_customer_id,
        )

        def _attach() -> stripe.PaymentMethod:
            return stripe.PaymentMethod.attach(payment_token, customer=provider_customer_id)

        payment_method = await self._request("attach_payment_method", _attach)
        details = PaymentMethodDetails(
            provider_payment_method_id=payment_method.id,
            payment_type=payment_method.type,
        )
        card = getattr(payment_method, "card", None)
        if card is not None:
            details.last_four = card.last4
            details.card_brand = card.brand
            details.expiry_month = card.exp_month
            details.expiry_year = card.exp_year
        return details

    @provider_retry
    async def detach_payment_method(
        self, provider_customer_id: str, provider_payment_method_id: str
    ) -> None:
        def _detach() -> stripe.PaymentMethod:
            return stripe.PaymentMethod.detach(provider_payment_method_id)

        await self._request("detach_payment_method", _detach)
        logger.info(
            "stripe_payment_method_detached",
            payment_method_id=provider_payment_method_id,
        )

    @provider_retry
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
        Create and confirm an off-session PaymentIntent.

        Raises:
            ProviderError: If the charge fails
        """
        logger.info(
            "creating_off_session_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            kwargs: Dict[str, Any] = {
                "amount": amount_cents,
                "currency": currency.lower(),
                "customer": provider_customer_id,
                "payment_method": provider_payment_method_id,
                "off_session": True,
                "confirm": True,
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
            if description:
                kwargs["description"] = description
            return stripe.PaymentIntent.create(**kwargs)

        payment_intent = await self._request("charge", _create)
        status = _INTENT_STATUS_MAP.get(payment_intent.status)

        if status is None:
            # requires_action / requires_payment_method: the customer is not
            # present to authenticate, so the off-session charge is declined
            raise ProviderError(
                f"Payment requires customer action ({payment_intent.status})",
                ProviderErrorType.PERMANENT,
                code="authentication_required",
                provider_id=self.provider_id,
            )

        logger.info(
            "payment_intent_confirmed",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        return ChargeResult(
            provider_payment_id=payment_intent.id,
            status=status,
            amount_cents=amount_cents,
            currency=currency.upper(),
        )

    @provider_retry
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        provider_customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """
        Create a Stripe PaymentIntent with idempotency.

        Raises:
            ProviderError: If payment creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            kwargs: Dict[str, Any] = {
                "amount": amount_cents,
                "currency": currency.lower(),
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
                "automatic_payment_methods": {"enabled": True},
            }
            if provider_customer_id:
                kwargs["customer"] = provider_customer_id
            return stripe.PaymentIntent.create(**kwargs)

        payment_intent = await self._request("create_intent", _create)

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        return ChargeResult(
            provider_payment_id=payment_intent.id,
            status=_INTENT_STATUS_MAP.get(payment_intent.status, "pending"),
            amount_cents=amount_cents,
            currency=currency.upper(),
            client_secret=payment_intent.client_secret,
        )

    @provider_retry
    async def refund(
        self,
        provider_payment_id: str,
        amount_cents: Optional[int],
        idempotency_key: str,
        reason: Optional[str] = None,
        currency: str = "USD",
    ) -> RefundResult:
        """
        Create a refund for a payment.

        Raises:
            ProviderError: If refund creation fails
        """
        logger.info(
            "creating_refund",
            payment_intent_id=provider_payment_id,
            amount_cents=amount_cents,
        )

        def _create_refund() -> stripe.Refund:
            kwargs: Dict[str, Any] = {
                "payment_intent": provider_payment_id,
                "idempotency_key": idempotency_key,
            }
            if amount_cents:
                kwargs["amount"] = amount_cents
            if reason:
                kwargs["reason"] = reason
            return stripe.Refund.create(**kwargs)

        refund = await self._request("refund", _create_refund)

        logger.info("refund_created", refund_id=refund.id, status=refund.status)

        return RefundResult(
            provider_refund_id=refund.id,
            status=refund.status,
            amount_cents=refund.amount,
        )

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Verify webhook signature and normalise the event.

        Raises:
            ProviderError: If signature verification fails
        """
        signature = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not signature:
            raise ProviderError(
                "Missing Stripe-Signature header",
                ProviderErrorType.PERMANENT,
                code="invalid_signature",
                provider_id=self.provider_id,
            )

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.settings.stripe_webhook_secret,
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise ProviderError(
                f"Invalid webhook signature: {str(e)}",
                ProviderErrorType.PERMANENT,
                code="invalid_signature",
                provider_id=self.provider_id,
            ) from e

        obj = event.data.object
        normalised = EVENT_TYPE_MAP.get(event.type, "ignored")

        provider_payment_id = None
        amount_cents = None
        error_message = None
        if event.type.startswith("payment_intent."):
            provider_payment_id = obj.get("id")
            amount_cents = obj.get("amount")
            last_error = obj.get("last_payment_error") or {}
            error_message = last_error.get("message")
        elif event.type == "charge.refunded":
            provider_payment_id = obj.get("payment_intent")
            amount_cents = obj.get("amount_refunded")

        logger.info(
            "webhook_signature_verified",
            provider=self.provider_id,
            event_id=event.id,
            event_type=event.type,
        )

        return WebhookEvent(
            provider_id=self.provider_id,
            event_id=event.id,
            event_type=normalised,
            provider_event_type=event.type,
            provider_payment_id=provider_payment_id,
            amount_cents=amount_cents,
            error_message=error_message,
            data=obj.to_dict() if hasattr(obj, "to_dict") else dict(obj),
        )

    async def ping(self) -> None:
        await self._request("ping", lambda: stripe.Balance.retrieve())
