"""
Authorize.Net adapter over the JSON API.

Stored payment methods are Customer Information Manager (CIM) payment
profiles; charges are ``authCaptureTransaction`` requests against a profile.
Webhooks are signed with HMAC-SHA512 in the ``X-ANET-Signature`` header.
"""
import hashlib
import hmac
import json
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

SANDBOX_URL = "https://apitest.authorize.net/xml/v1/request.api"
PRODUCTION_URL = "https://api.authorize.net/xml/v1/request.api"

EVENT_TYPE_MAP = {
    "net.authorize.payment.authcapture.created": "payment.succeeded",
    "net.authorize.payment.fraud.declined": "payment.failed",
    "net.authorize.payment.refund.created": "payment.refunded",
}

# Gateway-side failures worth retrying (E00001 internal error, E00053 server busy)
_TRANSIENT_CODES = {"E00001", "E00053"}

# Transaction response codes
_APPROVED = "1"
_DECLINED = "2"
_HELD_FOR_REVIEW = "4"


def to_decimal_string(amount_cents: int) -> str:
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


class AuthorizeNetClient(PaymentProviderAdapter):
    """Authorize.Net implementation of the provider adapter."""

    provider_id = "authorize_net"
    display_name = "Authorize.Net"

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize Authorize.Net client.

        Args:
            http_client: Optional httpx client (created lazily if not provided)
        """
        super().__init__()
        self.settings = get_settings()
        settings = self.settings
        if not settings.authorize_net_api_login_id or not settings.authorize_net_transaction_key:
            raise ValueError(
                "AUTHORIZE_NET_API_LOGIN_ID and AUTHORIZE_NET_TRANSACTION_KEY are required"
            )
        self.endpoint = (
            PRODUCTION_URL if settings.authorize_net_env == "production" else SANDBOX_URL
        )
        self.http_client = http_client

        logger.info("authorize_net_client_initialized", env=self.settings.authorize_net_env)

    def _client(self) -> httpx.AsyncClient:
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(timeout=30.0)
        return self.http_client

    def _auth(self) -> Dict[str, str]:
        return {
            "name": self.settings.authorize_net_api_login_id,
            "transactionKey": self.settings.authorize_net_transaction_key,
        }

    async def _send(self, request_name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Post one API request and check the envelope result code.

        Raises:
            ProviderError: On network failures or an ``Error`` result code
        """
        envelope = {request_name: {"merchantAuthentication": self._auth(), **body}}
        try:
            response = await self._client().post(self.endpoint, json=envelope)
        except httpx.HTTPError as e:
            logger.error("authorize_net_network_error", error=str(e))
            raise ProviderError(
                f"Authorize.Net request failed: {str(e)}",
                ProviderErrorType.TRANSIENT,
                code="network_error",
                provider_id=self.provider_id,
                original_error=e,
            ) from e

        if response.status_code == 429:
            raise ProviderError(
                "Authorize.Net rate limit",
                ProviderErrorType.RATE_LIMIT,
                code="rate_limited",
                provider_id=self.provider_id,
            )
        if response.status_code >= 500:
            raise ProviderError(
                f"Authorize.Net returned HTTP {response.status_code}",
                ProviderErrorType.TRANSIENT,
                code=str(response.status_code),
                provider_id=self.provider_id,
            )

        # The gateway prefixes JSON responses with a UTF-8 BOM
        result = json.loads(response.content.decode("utf-8-sig"))
        messages = result.get("messages", {})
        if messages.get("resultCode") == "Error":
            # Declined transactions also report Error; let the caller read the
            # transaction response for the real decline reason
            if result.get("transactionResponse"):
                return result
            first = (messages.get("message") or [{}])[0]
            code = first.get("code")
            if code in _TRANSIENT_CODES:
                error_type = ProviderErrorType.TRANSIENT
            else:
                error_type = ProviderErrorType.PERMANENT
            logger.error(
                "authorize_net_api_error",
                request=request_name,
                error_code=code,
                error_message=first.get("text"),
            )
            raise ProviderError(
                first.get("text", "Authorize.Net request failed"),
                error_type,
                code=code,
                provider_id=self.provider_id,
            )
        return result

    async def _api(
        self, operation: str, request_name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._call(operation, self._send, request_name, body)

    def _transaction_result(
        self, result: Dict[str, Any], amount_cents: int, currency: str
    ) -> ChargeResult:
        transaction = result.get("transactionResponse") or {}
        response_code = transaction.get("responseCode")

        if response_code == _APPROVED:
            status = "succeeded"
        elif response_code == _HELD_FOR_REVIEW:
            status = "processing"
        else:
            error = (transaction.get("errors") or [{}])[0]
            # Code 3 without error details is a gateway fault, not a decline
            if response_code == _DECLINED or transaction.get("errors"):
                error_type = ProviderErrorType.PERMANENT
            else:
                error_type = ProviderErrorType.TRANSIENT
            raise ProviderError(
                error.get("errorText", "Transaction declined"),
                error_type,
                code=error.get("errorCode", "declined"),
                provider_id=self.provider_id,
            )

        return ChargeResult(
            provider_payment_id=transaction["transId"],
            status=status,
            amount_cents=amount_cents,
            currency=currency.upper(),
            raw={"auth_code": transaction.get("authCode")},
        )

    @provider_retry
    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        profile: Dict[str, Any] = {
            "merchantCustomerId": str((metadata or {}).get("customer_id", ""))[:20],
        }
        if name:
            profile["description"] = name[:255]
        if email:
            profile["email"] = email
        result = await self._api(
            "create_customer", "createCustomerProfileRequest", {"profile": profile}
        )
        logger.info(
            "authorize_net_customer_profile_created",
            customer_profile_id=result["customerProfileId"],
        )
        return result["customerProfileId"]

    @provider_retry
    async def attach_payment_method(
        self, provider_customer_id: str, payment_token: str
    ) -> PaymentMethodDetails:
        """Store an Accept.js opaque token as a customer payment profile."""
        result = await self._api(
            "attach_payment_method",
            "createCustomerPaymentProfileRequest",
            {
                "customerProfileId": provider_customer_id,
                "paymentProfile": {
                    "payment": {
                        "opaqueData": {
                            "dataDescriptor": "COMMON.ACCEPT.INAPP.PAYMENT",
                            "dataValue": payment_token,
                        }
                    }
                },
                "validationMode": "liveMode" if self.settings.is_production else "testMode",
            },
        )
        return PaymentMethodDetails(
            provider_payment_method_id=result["customerPaymentProfileId"],
            payment_type="card",
        )

    @provider_retry
    async def detach_payment_method(
        self, provider_customer_id: str, provider_payment_method_id: str
    ) -> None:
        await self._api(
            "detach_payment_method",
            "deleteCustomerPaymentProfileRequest",
            {
                "customerProfileId": provider_customer_id,
                "customerPaymentProfileId": provider_payment_method_id,
            },
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
        Charge a payment profile.

        The gateway's duplicate window rejects a repeat of the same invoice
        number and amount, which makes the idempotency key effective.
        """
        invoice_number = hashlib.sha256(idempotency_key.encode()).hexdigest()[:20]
        transaction: Dict[str, Any] = {
            "transactionType": "authCaptureTransaction",
            "amount": to_decimal_string(amount_cents),
            "currencyCode": currency.upper(),
            "profile": {
                "customerProfileId": provider_customer_id,
                "paymentProfile": {"paymentProfileId": provider_payment_method_id},
            },
            "order": {
                "invoiceNumber": invoice_number,
                "description": (description or "")[:255],
            },
            "transactionSettings": {
                "setting": [{"settingName": "duplicateWindow", "settingValue": "28800"}]
            },
        }

        logger.info(
            "creating_authorize_net_transaction",
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )
        result = await self._api(
            "charge",
            "createTransactionRequest",
            {"refId": invoice_number, "transactionRequest": transaction},
        )
        charge = self._transaction_result(result, amount_cents, currency)
        logger.info(
            "authorize_net_transaction_completed",
            transaction_id=charge.provider_payment_id,
            status=charge.status,
        )
        return charge

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
        Create an Accept Hosted payment form token.

        The client renders the hosted form with the returned token.
        """
        transaction: Dict[str, Any] = {
            "transactionType": "authCaptureTransaction",
            "amount": to_decimal_string(amount_cents),
            "order": {"invoiceNumber": hashlib.sha256(idempotency_key.encode()).hexdigest()[:20]},
        }
        if provider_customer_id:
            transaction["profile"] = {"customerProfileId": provider_customer_id}

        result = await self._api(
            "create_intent",
            "getHostedPaymentPageRequest",
            {
                "transactionRequest": transaction,
                "hostedPaymentSettings": {
                    "setting": [
                        {
                            "settingName": "hostedPaymentReturnOptions",
                            "settingValue": json.dumps({"showReceipt": False}),
                        }
                    ]
                },
            },
        )
        return ChargeResult(
            provider_payment_id=None,
            status="pending",
            amount_cents=amount_cents,
            currency=currency.upper(),
            client_secret=result["token"],
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
        Refund a settled transaction.

        Refunds must quote the card's last four digits, so the original
        transaction is looked up first.
        """
        details = await self._api(
            "get_transaction",
            "getTransactionDetailsRequest",
            {"transId": provider_payment_id},
        )
        original = details.get("transaction", {})
        card = original.get("payment", {}).get("creditCard", {})
        settle_amount = original.get("settleAmount") or original.get("authAmount")
        if amount_cents is None and settle_amount is not None:
            amount_cents = round(float(settle_amount) * 100)
        if amount_cents is None:
            raise ProviderError(
                "Refund amount could not be determined",
                ProviderErrorType.PERMANENT,
                code="refund_amount_unknown",
                provider_id=self.provider_id,
            )

        result = await self._api(
            "refund",
            "createTransactionRequest",
            {
                "refId": hashlib.sha256(idempotency_key.encode()).hexdigest()[:20],
                "transactionRequest": {
                    "transactionType": "refundTransaction",
                    "amount": to_decimal_string(amount_cents),
                    "payment": {
                        "creditCard": {
                            "cardNumber": card.get("cardNumber", "XXXX")[-4:],
                            "expirationDate": "XXXX",
                        }
                    },
                    "refTransId": provider_payment_id,
                },
            },
        )
        refund = self._transaction_result(result, amount_cents, currency)
        return RefundResult(
            provider_refund_id=refund.provider_payment_id or "",
            status="succeeded",
            amount_cents=amount_cents,
        )

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Verify the ``X-ANET-Signature`` HMAC-SHA512 header.

        Raises:
            ProviderError: If the signature is missing or does not match
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        header = lowered.get("x-anet-signature", "")
        signature = header.split("=", 1)[1] if header.lower().startswith("sha512=") else ""

        expected = hmac.new(
            self.settings.authorize_net_signature_key.encode(),
            payload,
            hashlib.sha512,
        ).hexdigest()

        if not signature or not hmac.compare_digest(expected.upper(), signature.upper()):
            logger.error("webhook_signature_verification_failed", provider=self.provider_id)
            raise ProviderError(
                "Invalid Authorize.Net webhook signature",
                ProviderErrorType.PERMANENT,
                code="invalid_signature",
                provider_id=self.provider_id,
            )

        notification = json.loads(payload)
        provider_event_type = notification.get("eventType", "")
        body = notification.get("payload", {})
        event_type = EVENT_TYPE_MAP.get(provider_event_type, "ignored")
        if (
            event_type == "payment.succeeded"
            and str(body.get("responseCode", _APPROVED)) != _APPROVED
        ):
            event_type = "payment.failed"

        amount = body.get("authAmount")
        return WebhookEvent(
            provider_id=self.provider_id,
            event_id=notification.get("notificationId", ""),
            event_type=event_type,
            provider_event_type=provider_event_type,
            provider_payment_id=body.get("id"),
            amount_cents=round(float(amount) * 100) if amount is not None else None,
            data=body,
        )

    async def ping(self) -> None:
        await self._api("ping", "authenticateTestRequest", {})

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
