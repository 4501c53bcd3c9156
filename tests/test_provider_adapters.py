"""
Tests for the Stripe, PayPal and Authorize.Net adapters.

HTTP providers run against httpx.MockTransport; the Stripe SDK is patched.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, List
from unittest.mock import MagicMock

import httpx
import pytest
import stripe
from tenacity import wait_none

from native_payments.integrations.authorize_net_client import AuthorizeNetClient
from native_payments.integrations.base import CircuitBreaker, ProviderError, ProviderErrorType
from native_payments.integrations.paypal_client import PayPalClient, to_cents, to_decimal_string
from native_payments.integrations.stripe_client import StripeClient

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch) -> None:
    """Retried provider calls run back to back."""
    for method in (PayPalClient.charge, AuthorizeNetClient.charge):
        monkeypatch.setattr(method.retry, "wait", wait_none())


def mock_http(handler: Handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class RecordingPayPal:
    """PayPal API double that records every request."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {
            "/v1/oauth2/token": lambda request: httpx.Response(
                200, json={"access_token": "A21AAtoken", "expires_in": 32400}
            ),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.routes[request.url.path](request)

    def calls(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


def completed_order(capture_status: str = "COMPLETED") -> Dict[str, Any]:
    return {
        "id": "5O190127TN364715T",
        "status": "COMPLETED",
        "purchase_units": [
            {"payments": {"captures": [{"id": "3C679366HH908993F", "status": capture_status}]}}
        ],
    }


class TestPayPalClient:
    """Test suite for the PayPal adapter."""

    @pytest.mark.unit
    def test_amount_formatting(self) -> None:
        assert to_decimal_string(1999) == "19.99"
        assert to_decimal_string(5) == "0.05"
        assert to_cents("19.99") == 1999
        assert to_cents("10") == 1000
        assert to_cents("10.5") == 1050

    @pytest.mark.asyncio
    async def test_charge_vaulted_card(self) -> None:
        api = RecordingPayPal()
        api.routes["/v2/checkout/orders"] = lambda request: httpx.Response(
            201, json=completed_order()
        )
        client = PayPalClient(http_client=mock_http(api))

        result = await client.charge(
            "vault-customer",
            "8kk8451t",
            1999,
            "usd",
            "billing:sub_1:0:1",
            metadata={"payment_id": "pay_1"},
        )

        assert result.status == "succeeded"
        assert result.provider_payment_id == "3C679366HH908993F"
        assert result.currency == "USD"

        order_request = api.calls("/v2/checkout/orders")[0]
        assert order_request.headers["PayPal-Request-Id"] == "billing:sub_1:0:1"
        assert order_request.headers["Authorization"] == "Bearer A21AAtoken"
        body = json.loads(order_request.content)
        assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "19.99"}
        assert body["purchase_units"][0]["custom_id"] == "pay_1"
        assert body["payment_source"] == {"card": {"vault_id": "8kk8451t"}}

    @pytest.mark.asyncio
    async def test_wallet_order_is_captured(self) -> None:
        api = RecordingPayPal()
        api.routes["/v2/checkout/orders"] = lambda request: httpx.Response(
            201, json={"id": "ORDER-2", "status": "APPROVED"}
        )
        api.routes["/v2/checkout/orders/ORDER-2/capture"] = lambda request: httpx.Response(
            201, json=completed_order("PENDING")
        )
        client = PayPalClient(http_client=mock_http(api))

        result = await client.charge(
            "vault-customer", "wallet-token", 500, "USD", "key-1", payment_type="paypal"
        )

        assert result.status == "processing"
        capture = api.calls("/v2/checkout/orders/ORDER-2/capture")[0]
        assert capture.headers["PayPal-Request-Id"] == "key-1:capture"

    @pytest.mark.asyncio
    async def test_access_token_is_cached(self) -> None:
        api = RecordingPayPal()
        api.routes["/v2/checkout/orders"] = lambda request: httpx.Response(
            201, json=completed_order()
        )
        client = PayPalClient(http_client=mock_http(api))

        await client.charge("c", "t", 1000, "USD", "key-1")
        await client.charge("c", "t", 1000, "USD", "key-2")

        assert len(api.calls("/v1/oauth2/token")) == 1

    @pytest.mark.asyncio
    async def test_decline_is_permanent_and_not_retried(self) -> None:
        api = RecordingPayPal()
        api.routes["/v2/checkout/orders"] = lambda request: httpx.Response(
            422,
            json={
                "name": "UNPROCESSABLE_ENTITY",
                "details": [
                    {
                        "issue": "INSTRUMENT_DECLINED",
                        "description": "The instrument presented was declined.",
                    }
                ],
            },
        )
        client = PayPalClient(http_client=mock_http(api))

        with pytest.raises(ProviderError) as exc_info:
            await client.charge("c", "t", 1000, "USD", "key-1")

        assert exc_info.value.error_type == ProviderErrorType.PERMANENT
        assert exc_info.value.code == "INSTRUMENT_DECLINED"
        assert len(api.calls("/v2/checkout/orders")) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried_with_same_request_id(self) -> None:
        api = RecordingPayPal()
        responses = [
            httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"}),
            httpx.Response(201, json=completed_order()),
        ]
        api.routes["/v2/checkout/orders"] = lambda request: responses.pop(0)
        client = PayPalClient(http_client=mock_http(api))

        result = await client.charge("c", "t", 1000, "USD", "key-1")

        assert result.status == "succeeded"
        request_ids = [r.headers["PayPal-Request-Id"] for r in api.calls("/v2/checkout/orders")]
        assert request_ids == ["key-1", "key-1"]

    @pytest.mark.asyncio
    async def test_declined_capture(self) -> None:
        api = RecordingPayPal()
        order = completed_order("DECLINED")
        order["purchase_units"][0]["payments"]["captures"][0]["status_details"] = {
            "reason": "RISK_DECLINED"
        }
        api.routes["/v2/checkout/orders"] = lambda request: httpx.Response(201, json=order)
        client = PayPalClient(http_client=mock_http(api))

        with pytest.raises(ProviderError) as exc_info:
            await client.charge("c", "t", 1000, "USD", "key-1")

        assert exc_info.value.code == "RISK_DECLINED"

    @pytest.mark.asyncio
    async def test_create_intent_returns_order_for_approval(self) -> None:
        api = RecordingPayPal()
        api.routes["/v2/checkout/orders"] = lambda request: httpx.Response(
            201,
            json={
                "id": "ORDER-9",
                "status": "CREATED",
                "links": [{"rel": "approve", "href": "https://paypal.test/approve/ORDER-9"}],
            },
        )
        client = PayPalClient(http_client=mock_http(api))

        result = await client.create_intent(2500, "EUR", "intent-key")

        assert result.status == "pending"
        assert result.provider_payment_id is None
        assert result.client_secret == "ORDER-9"
        assert result.raw["approve_url"] == "https://paypal.test/approve/ORDER-9"

    @pytest.mark.asyncio
    async def test_verify_refund_webhook(self) -> None:
        api = RecordingPayPal()
        api.routes["/v1/notifications/verify-webhook-signature"] = lambda request: httpx.Response(
            200, json={"verification_status": "SUCCESS"}
        )
        client = PayPalClient(http_client=mock_http(api))
        payload = json.dumps(
            {
                "id": "WH-EVENT-1",
                "event_type": "PAYMENT.CAPTURE.REFUNDED",
                "resource": {
                    "id": "REFUND-1",
                    "amount": {"value": "5.00", "currency_code": "USD"},
                    "seller_payable_breakdown": {
                        "total_refunded_amount": {"value": "7.50", "currency_code": "USD"}
                    },
                    "links": [
                        {
                            "rel": "up",
                            "href": "https://api.paypal.com/v2/payments/captures/CAPTURE-1",
                        }
                    ],
                },
            }
        ).encode()

        event = await client.verify_webhook(
            payload, {"PAYPAL-TRANSMISSION-ID": "tx-1", "PAYPAL-AUTH-ALGO": "SHA256withRSA"}
        )

        assert event.event_type == "payment.refunded"
        assert event.event_id == "WH-EVENT-1"
        assert event.provider_payment_id == "CAPTURE-1"
        assert event.amount_cents == 750

        verification = json.loads(
            api.calls("/v1/notifications/verify-webhook-signature")[0].content
        )
        assert verification["webhook_id"] == "WH-TEST-1234"
        assert verification["transmission_id"] == "tx-1"

    @pytest.mark.asyncio
    async def test_verify_webhook_rejects_failed_verification(self) -> None:
        api = RecordingPayPal()
        api.routes["/v1/notifications/verify-webhook-signature"] = lambda request: httpx.Response(
            200, json={"verification_status": "FAILURE"}
        )
        client = PayPalClient(http_client=mock_http(api))

        with pytest.raises(ProviderError) as exc_info:
            await client.verify_webhook(b'{"id": "WH-1"}', {})

        assert exc_info.value.code == "invalid_signature"


BOM = b"\xef\xbb\xbf"


def anet_response(body: Dict[str, Any]) -> httpx.Response:
    return httpx.Response(200, content=BOM + json.dumps(body).encode())


def sign_anet(payload: bytes, key: str = "ANET0SIGNATURE0KEY") -> str:
    return "sha512=" + hmac.new(key.encode(), payload, hashlib.sha512).hexdigest().upper()


class TestAuthorizeNetClient:
    """Test suite for the Authorize.Net adapter."""

    @pytest.mark.asyncio
    async def test_charge_approved(self) -> None:
        requests: List[Dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return anet_response(
                {
                    "transactionResponse": {
                        "responseCode": "1",
                        "authCode": "HH5414",
                        "transId": "60115585081",
                    },
                    "messages": {"resultCode": "Ok", "message": [{"code": "I00001"}]},
                }
            )

        client = AuthorizeNetClient(http_client=mock_http(handler))

        result = await client.charge("1929820324", "1841987457", 1999, "USD", "billing:s:0:1")

        assert result.status == "succeeded"
        assert result.provider_payment_id == "60115585081"
        assert result.raw == {"auth_code": "HH5414"}

        envelope = requests[0]["createTransactionRequest"]
        assert envelope["merchantAuthentication"] == {
            "name": "anet-login",
            "transactionKey": "anet-transaction-key",
        }
        transaction = envelope["transactionRequest"]
        assert transaction["amount"] == "19.99"
        assert transaction["profile"]["paymentProfile"]["paymentProfileId"] == "1841987457"
        assert len(transaction["order"]["invoiceNumber"]) == 20

    @pytest.mark.asyncio
    async def test_charge_declined(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return anet_response(
                {
                    "transactionResponse": {
                        "responseCode": "2",
                        "transId": "0",
                        "errors": [
                            {"errorCode": "2", "errorText": "This transaction has been declined."}
                        ],
                    },
                    "messages": {"resultCode": "Error", "message": [{"code": "E00027"}]},
                }
            )

        client = AuthorizeNetClient(http_client=mock_http(handler))

        with pytest.raises(ProviderError) as exc_info:
            await client.charge("1", "2", 1000, "USD", "key")

        assert exc_info.value.error_type == ProviderErrorType.PERMANENT
        assert exc_info.value.code == "2"
        assert str(exc_info.value) == "This transaction has been declined."

    @pytest.mark.asyncio
    async def test_held_for_review_is_processing(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return anet_response(
                {
                    "transactionResponse": {"responseCode": "4", "transId": "777"},
                    "messages": {"resultCode": "Ok"},
                }
            )

        client = AuthorizeNetClient(http_client=mock_http(handler))

        result = await client.charge("1", "2", 1000, "USD", "key")

        assert result.status == "processing"

    @pytest.mark.asyncio
    async def test_gateway_busy_is_retried(self) -> None:
        responses = [
            anet_response(
                {
                    "messages": {
                        "resultCode": "Error",
                        "message": [{"code": "E00053", "text": "Server too busy"}],
                    }
                }
            ),
            anet_response(
                {
                    "transactionResponse": {"responseCode": "1", "transId": "42"},
                    "messages": {"resultCode": "Ok"},
                }
            ),
        ]
        client = AuthorizeNetClient(http_client=mock_http(lambda request: responses.pop(0)))

        result = await client.charge("1", "2", 1000, "USD", "key")

        assert result.provider_payment_id == "42"
        assert responses == []

    @pytest.mark.asyncio
    async def test_verify_webhook(self) -> None:
        client = AuthorizeNetClient(http_client=mock_http(lambda request: httpx.Response(500)))
        payload = json.dumps(
            {
                "notificationId": "d0e8e7fe-c3e7-4add-a480-27bc5ce28e23",
                "eventType": "net.authorize.payment.authcapture.created",
                "payload": {"responseCode": 1, "authAmount": 45.00, "id": "60020981676"},
            }
        ).encode()

        event = await client.verify_webhook(payload, {"X-ANET-Signature": sign_anet(payload)})

        assert event.event_type == "payment.succeeded"
        assert event.event_id == "d0e8e7fe-c3e7-4add-a480-27bc5ce28e23"
        assert event.provider_payment_id == "60020981676"
        assert event.amount_cents == 4500

    @pytest.mark.asyncio
    async def test_verify_webhook_declined_capture(self) -> None:
        client = AuthorizeNetClient(http_client=mock_http(lambda request: httpx.Response(500)))
        payload = json.dumps(
            {
                "notificationId": "n-2",
                "eventType": "net.authorize.payment.authcapture.created",
                "payload": {"responseCode": 2, "id": "600"},
            }
        ).encode()
        signature = sign_anet(payload).lower()

        event = await client.verify_webhook(payload, {"x-anet-signature": signature})

        assert event.event_type == "payment.failed"

    @pytest.mark.asyncio
    async def test_verify_webhook_rejects_bad_signature(self) -> None:
        client = AuthorizeNetClient(http_client=mock_http(lambda request: httpx.Response(500)))
        payload = b'{"notificationId": "n-3"}'

        with pytest.raises(ProviderError) as exc_info:
            await client.verify_webhook(
                payload, {"X-ANET-Signature": sign_anet(payload, key="wrong")}
            )

        assert exc_info.value.code == "invalid_signature"


def stripe_signature(payload: str, secret: str = "whsec_test_fake_secret") -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestStripeClient:
    """Test suite for the Stripe adapter."""

    @pytest.mark.asyncio
    async def test_verify_refund_webhook(self) -> None:
        client = StripeClient()
        payload = json.dumps(
            {
                "id": "evt_1NG8Du2eZvKYlo2CUI79vXWy",
                "object": "event",
                "type": "charge.refunded",
                "data": {
                    "object": {
                        "id": "ch_3MmlLrLkdIwHu7ix0snN0B15",
                        "object": "charge",
                        "payment_intent": "pi_3MmlLrLkdIwHu7ix0uke3Ezy",
                        "amount": 1000,
                        "amount_refunded": 400,
                    }
                },
            }
        )

        event = await client.verify_webhook(
            payload.encode(), {"stripe-signature": stripe_signature(payload)}
        )

        assert event.event_type == "payment.refunded"
        assert event.provider_event_type == "charge.refunded"
        assert event.provider_payment_id == "pi_3MmlLrLkdIwHu7ix0uke3Ezy"
        assert event.amount_cents == 400

    @pytest.mark.asyncio
    async def test_verify_webhook_bad_signature(self) -> None:
        client = StripeClient()
        payload = '{"id": "evt_1", "object": "event", "type": "payment_intent.succeeded"}'

        with pytest.raises(ProviderError) as exc_info:
            await client.verify_webhook(
                payload.encode(), {"stripe-signature": stripe_signature(payload, "whsec_other")}
            )

        assert exc_info.value.code == "invalid_signature"

    @pytest.mark.asyncio
    async def test_verify_webhook_missing_header(self) -> None:
        with pytest.raises(ProviderError, match="Missing Stripe-Signature"):
            await StripeClient().verify_webhook(b"{}", {})

    @pytest.mark.asyncio
    async def test_off_session_charge(self, mocker) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            return_value=MagicMock(id="pi_123", status="succeeded"),
        )

        result = await StripeClient().charge("cus_1", "pm_1", 1999, "USD", "billing:s:0:1")

        assert result.status == "succeeded"
        assert result.provider_payment_id == "pi_123"
        kwargs = create.call_args.kwargs
        assert kwargs["idempotency_key"] == "billing:s:0:1"
        assert kwargs["off_session"] is True
        assert kwargs["confirm"] is True
        assert kwargs["currency"] == "usd"

    @pytest.mark.asyncio
    async def test_charge_requiring_authentication_is_declined(self, mocker) -> None:
        mocker.patch(
            "stripe.PaymentIntent.create",
            return_value=MagicMock(id="pi_123", status="requires_action"),
        )

        with pytest.raises(ProviderError) as exc_info:
            await StripeClient().charge("cus_1", "pm_1", 1999, "USD", "key")

        assert exc_info.value.code == "authentication_required"
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_card_error_is_permanent(self, mocker) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.CardError("Your card was declined.", None, "card_declined"),
        )

        with pytest.raises(ProviderError) as exc_info:
            await StripeClient().charge("cus_1", "pm_1", 1999, "USD", "key")

        assert exc_info.value.error_type == ProviderErrorType.PERMANENT
        assert exc_info.value.code == "card_declined"
        assert create.call_count == 1

    @pytest.mark.unit
    def test_error_classification(self) -> None:
        classify = StripeClient._classify_error
        assert classify(stripe.RateLimitError("slow down")) == ProviderErrorType.RATE_LIMIT
        assert classify(stripe.APIConnectionError("reset")) == ProviderErrorType.TRANSIENT
        assert classify(stripe.InvalidRequestError("bad", "amount")) == (
            ProviderErrorType.PERMANENT
        )


class TestCircuitBreaker:
    """Test suite for the provider circuit breaker."""

    @staticmethod
    async def failing() -> None:
        raise ProviderError("timeout", ProviderErrorType.TRANSIENT, code="network_error")

    @pytest.mark.asyncio
    async def test_opens_after_transient_failures(self) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=2, timeout=60)
        for _ in range(2):
            with pytest.raises(ProviderError):
                await breaker.call(self.failing)

        assert breaker.state == "open"

        called = MagicMock()

        async def should_not_run() -> None:
            called()

        with pytest.raises(ProviderError) as exc_info:
            await breaker.call(should_not_run)
        assert exc_info.value.code == "circuit_open"
        called.assert_not_called()

    @pytest.mark.asyncio
    async def test_declines_do_not_trip(self) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=1)

        async def declined() -> None:
            raise ProviderError("declined", ProviderErrorType.PERMANENT, code="card_declined")

        with pytest.raises(ProviderError):
            await breaker.call(declined)

        assert breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=1, timeout=60, success_threshold=2)
        with pytest.raises(ProviderError):
            await breaker.call(self.failing)
        breaker.last_failure_time = time.time() - 61

        async def ok() -> str:
            return "ok"

        assert await breaker.call(ok) == "ok"
        assert breaker.state == "half_open"
        assert await breaker.call(ok) == "ok"
        assert breaker.state == "closed"
