"""
PayPal REST adapter.

API Reference:
- Orders API v2: https://developer.paypal.com/docs/api/orders/v2/
- Payment Method Tokens v3: https://developer.paypal.com/docs/api/payment-tokens/v3/
- Webhooks: https://developer.paypal.com/api/rest/webhooks/
"""
import base64
import json
import time
import uuid
from typing import Any, Dict, Mapping, Optional

import httpx
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

EVENT_TYPE_MAP = {
    "PAYMENT.CAPTURE.COMPLETED": "payment.succeeded",
    "PAYMENT.CAPTURE.DENIED": "payment.failed",
    "PAYMENT.CAPTURE.DECLINED": "payment.failed",
    "PAYMENT.CAPTURE.REFUNDED": "payment.refunded",
}

_CAPTURE_STATUS_MAP = {
    "COMPLETED": "succeeded",
    "PENDING": "processing",
}

# Seconds shaved off the token lifetime so it is never used at the edge of expiry
_TOKEN_EXPIRY_MARGIN = 60


def to_decimal_string(amount_cents: int) -> str:
    """Format cents as the decimal string PayPal expects ("10.00")."""
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


def to_cents(value: str) -> int:
    """Parse a PayPal decimal amount into cents."""
    whole, _, fraction = value.partition(".")
    return int(whole) * 100 + int((fraction + "00")[:2])


class PayPalClient(PaymentProviderAdapter):
    """
    PayPal implementation of the provider adapter.

    Stored payment methods are vaulted payment tokens; charges are Orders
    API v2 captures against a ``vault_id``. The ``PayPal-Request-Id`` header
    carries the idempotency key.
    """

    provider_id = "paypal"
    display_name = "PayPal"

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize PayPal client.

        Args:
            http_client: Optional httpx client (created lazily if not provided)
        """
        super().__init__()
        self.settings = get_settings()
        if not self.settings.paypal_client_id or not self.settings.paypal_client_secret:
            raise ValueError("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET are required")

        self.base_url = (
            "https://api-m.paypal.com"
            if self.settings.paypal_env == "live"
            else "https://api-m.sandbox.paypal.com"
        )
        self.http_client = http_client
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

        logger.info("paypal_client_initialized", env=self.settings.paypal_env)

    def _client(self) -> httpx.AsyncClient:
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(base_url=self.base_url, timeout=30.0)
        return self.http_client

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def get_access_token(self) -> str:
        """
        Get (cached) OAuth 2.0 access token from PayPal.

        Raises:
            ProviderError: If token request fails
        """
        if self._access_token and time.time() < self._token_expires_at:
            return self._access_token

        credentials = f"{self.settings.paypal_client_id}:{self.settings.paypal_client_secret}"
        encoded_credentials = base64.b64encode(credentials.encode()).decode()

        try:
            response = await self._client().post(
                self._url("/v1/oauth2/token"),
                headers={
                    "Authorization": f"Basic {encoded_credentials}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data={"grant_type": "client_credentials"},
            )
        except httpx.HTTPError as e:
            raise self._network_error(e) from e

        if response.status_code >= 400:
            raise self._http_error(response)

        result = response.json()
        self._access_token = result["access_token"]
        self._token_expires_at = (
            time.time() + int(result.get("expires_in", 3600)) - _TOKEN_EXPIRY_MARGIN
        )
        return self._access_token

    def _network_error(self, error: httpx.HTTPError) -> ProviderError:
        logger.error("paypal_network_error", error=str(error))
        return ProviderError(
            f"PayPal request failed: {str(error)}",
            ProviderErrorType.TRANSIENT,
            code="network_error",
            provider_id=self.provider_id,
            original_error=error,
        )

    def _http_error(self, response: httpx.Response) -> ProviderError:
        """Classify a PayPal error response."""
        try:
            body = response.json()
        except ValueError:
            body = {}

        details = body.get("details") or [{}]
        code = details[0].get("issue") or body.get("name") or str(response.status_code)
        message = details[0].get("description") or body.get("message") or response.text

        if response.status_code == 429:
            error_type = ProviderErrorType.RATE_LIMIT
        elif response.status_code >= 500:
            error_type = ProviderErrorType.TRANSIENT
        else:
            error_type = ProviderErrorType.PERMANENT

        logger.error(
            "paypal_api_error",
            status_code=response.status_code,
            error_type=error_type.value,
            error_code=code,
            error_message=message,
        )
        return ProviderError(message, error_type, code=code, provider_id=self.provider_id)

    async def _send(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        access_token = await self.get_access_token()
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {access_token}",
        }
        # PayPal-Request-Id for idempotency
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        try:
            response = await self._client().request(
                method, self._url(path), headers=headers, json=json_body
            )
        except httpx.HTTPError as e:
            raise self._network_error(e) from e

        if response.status_code >= 400:
            raise self._http_error(response)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def _api(
        self,
        operation: str,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._call(operation, self._send, method, path, json_body, request_id)

    @provider_retry
    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        PayPal has no customer object; the vault customer id is ours to choose.
        """
        customer_id = uuid.uuid4().hex
        logger.info("paypal_vault_customer_assigned", customer_id=customer_id)
        return customer_id

    @provider_retry
    async def attach_payment_method(
        self, provider_customer_id: str, payment_token: str
    ) -> PaymentMethodDetails:
        """
        Exchange an approved setup token for a permanent payment token.
        """
        result = await self._api(
            "attach_payment_method",
            "POST",
            "/v3/vault/payment-tokens",
            json_body={
                "customer": {"id": provider_customer_id},
                "payment_source": {"token": {"id": payment_token, "type": "SETUP_TOKEN"}},
            },
            request_id=f"vault:{provider_customer_id}:{payment_token}",
        )

        source = result.get("payment_source", {})
        details = PaymentMethodDetails(provider_payment_method_id=result["id"])
        if "card" in source:
            card = source["card"]
            details.payment_type = "card"
            details.last_four = card.get("last_digits")
            details.card_brand = (card.get("brand") or "").lower() or None
            expiry = card.get("expiry")  # YYYY-MM
            if expiry:
                year, _, month = expiry.partition("-")
                details.expiry_year = int(year)
                details.expiry_month = int(month)
        else:
            details.payment_type = "paypal"

        logger.info(
            "paypal_payment_token_created",
            payment_token_id=details.provider_payment_method_id,
            payment_type=details.payment_type,
        )
        return details

    @provider_retry
    async def detach_payment_method(
        self, provider_customer_id: str, provider_payment_method_id: str
    ) -> None:
        await self._api(
            "detach_payment_method",
            "DELETE",
            f"/v3/vault/payment-tokens/{provider_payment_method_id}",
        )
        logger.info("paypal_payment_token_deleted", payment_token_id=provider_payment_method_id)

    def _capture_result(
        self, order: Dict[str, Any], amount_cents: int, currency: str
    ) -> ChargeResult:
        captures = (
            order.get("purchase_units", [{}])[0].get("payments", {}).get("captures", [])
        )
        if not captures:
            raise ProviderError(
                f"PayPal order {order.get('id')} has no capture",
                ProviderErrorType.PERMANENT,
                code="capture_missing",
                provider_id=self.provider_id,
            )

        capture = captures[0]
        status = _CAPTURE_STATUS_MAP.get(capture.get("status", ""))
        if status is None:
            raise ProviderError(
                f"PayPal capture {capture.get('id')} was {capture.get('status')}",
                ProviderErrorType.PERMANENT,
                code=(capture.get("status_details") or {}).get("reason", "capture_declined"),
                provider_id=self.provider_id,
            )

        return ChargeResult(
            provider_payment_id=capture["id"],
            status=status,
            amount_cents=amount_cents,
            currency=currency.upper(),
            raw={"order_id": order.get("id")},
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
        Charge a vaulted payment token with a CAPTURE order.

        Raises:
            ProviderError: If the order or capture fails
        """
        source_key = "paypal" if payment_type == "paypal" else "card"
        purchase_unit: Dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": to_decimal_string(amount_cents)},
            "custom_id": (metadata or {}).get("payment_id", idempotency_key)[:127],
        }
        if description:
            purchase_unit["description"] = description[:127]

        logger.info(
            "creating_paypal_vault_order",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        order = await self._api(
            "charge",
            "POST",
            "/v2/checkout/orders",
            json_body={
                "intent": "CAPTURE",
                "purchase_units": [purchase_unit],
                "payment_source": {source_key: {"vault_id": provider_payment_method_id}},
            },
            request_id=idempotency_key,
        )

        # Card vault orders complete on creation; PayPal wallet orders need a capture
        if order.get("status") != "COMPLETED":
            order = await self._api(
                "capture",
                "POST",
                f"/v2/checkout/orders/{order['id']}/capture",
                json_body={},
                request_id=f"{idempotency_key}:capture",
            )

        result = self._capture_result(order, amount_cents, currency)
        logger.info(
            "paypal_order_captured",
            order_id=order.get("id"),
            capture_id=result.provider_payment_id,
            status=result.status,
        )
        return result

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
        Create a CAPTURE order the buyer approves in the PayPal UI.

        The order id is returned as the client secret; the capture id only
        exists once the buyer has approved and the order is captured.
        """
        order = await self._api(
            "create_intent",
            "POST",
            "/v2/checkout/orders",
            json_body={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "custom_id": (metadata or {}).get("payment_id", idempotency_key)[:127],
                        "amount": {
                            "currency_code": currency.upper(),
                            "value": to_decimal_string(amount_cents),
                        },
                    }
                ],
            },
            request_id=idempotency_key,
        )

        approve_url = next(
            (
                link["href"]
                for link in order.get("links", [])
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        logger.info("paypal_order_created", order_id=order.get("id"), status=order.get("status"))

        return ChargeResult(
            provider_payment_id=None,
            status="pending",
            amount_cents=amount_cents,
            currency=currency.upper(),
            client_secret=order["id"],
            raw={"order_id": order["id"], "approve_url": approve_url},
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
        body: Dict[str, Any] = {}
        if amount_cents:
            body["amount"] = {"value": to_decimal_string(amount_cents), "currency_code": currency}
        if reason:
            body["note_to_payer"] = reason[:255]

        result = await self._api(
            "refund",
            "POST",
            f"/v2/payments/captures/{provider_payment_id}/refund",
            json_body=body,
            request_id=idempotency_key,
        )

        refunded = result.get("amount", {}).get("value")
        logger.info(
            "paypal_refund_created", refund_id=result.get("id"), status=result.get("status")
        )
        return RefundResult(
            provider_refund_id=result["id"],
            status=result.get("status", "").lower(),
            amount_cents=to_cents(refunded) if refunded else (amount_cents or 0),
        )

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Verify a webhook through PayPal's verify-webhook-signature API.

        Raises:
            ProviderError: If verification fails
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        try:
            webhook_event = json.loads(payload)
        except ValueError as e:
            raise ProviderError(
                "Webhook payload is not valid JSON",
                ProviderErrorType.PERMANENT,
                code="invalid_payload",
                provider_id=self.provider_id,
            ) from e

        verification = await self._api(
            "verify_webhook",
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json_body={
                "auth_algo": lowered.get("paypal-auth-algo"),
                "cert_url": lowered.get("paypal-cert-url"),
                "transmission_id": lowered.get("paypal-transmission-id"),
                "transmission_sig": lowered.get("paypal-transmission-sig"),
                "transmission_time": lowered.get("paypal-transmission-time"),
                "webhook_id": self.settings.paypal_webhook_id,
                "webhook_event": webhook_event,
            },
        )

        if verification.get("verification_status") != "SUCCESS":
            logger.error(
                "webhook_signature_verification_failed",
                provider=self.provider_id,
                verification_status=verification.get("verification_status"),
            )
            raise ProviderError(
                "Invalid PayPal webhook signature",
                ProviderErrorType.PERMANENT,
                code="invalid_signature",
                provider_id=self.provider_id,
            )

        provider_event_type = webhook_event.get("event_type", "")
        resource = webhook_event.get("resource", {})
        provider_payment_id = resource.get("id")
        if provider_event_type == "PAYMENT.CAPTURE.REFUNDED":
            # The resource is the refund; the capture is its "up" link
            provider_payment_id = next(
                (
                    link["href"].rstrip("/").rsplit("/", 1)[-1]
                    for link in resource.get("links", [])
                    if link.get("rel") == "up"
                ),
                None,
            )

        amount = resource.get("amount", {}).get("value")
        if provider_event_type == "PAYMENT.CAPTURE.REFUNDED":
            # Refunded amounts are reported as the capture's running total
            breakdown = resource.get("seller_payable_breakdown", {})
            amount = breakdown.get("total_refunded_amount", {}).get("value", amount)
        return WebhookEvent(
            provider_id=self.provider_id,
            event_id=webhook_event.get("id") or lowered.get("paypal-transmission-id", ""),
            event_type=EVENT_TYPE_MAP.get(provider_event_type, "ignored"),
            provider_event_type=provider_event_type,
            provider_payment_id=provider_payment_id,
            amount_cents=to_cents(amount) if amount else None,
            error_message=(resource.get("status_details") or {}).get("reason"),
            data=resource,
        )

    async def ping(self) -> None:
        await self.get_access_token()

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
