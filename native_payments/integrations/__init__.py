"""External integrations for payment processing."""
from .base import (
    ChargeResult,
    PaymentMethodDetails,
    PaymentProviderAdapter,
    ProviderError,
    ProviderErrorType,
    RefundResult,
    WebhookEvent,
)
from .registry import ProviderRegistry, UnknownProviderError, get_provider_registry

__all__ = [
    "ChargeResult",
    "PaymentMethodDetails",
    "PaymentProviderAdapter",
    "ProviderError",
    "ProviderErrorType",
    "ProviderRegistry",
    "RefundResult",
    "UnknownProviderError",
    "WebhookEvent",
    "get_provider_registry",
]
