"""Lookup of configured provider adapters by provider id."""
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from native_payments.config import get_settings
from native_payments.core.exceptions import ValidationError
from native_payments.database.models import PaymentProvider
from native_payments.integrations.base import PaymentProviderAdapter

logger = structlog.get_logger(__name__)


class UnknownProviderError(ValidationError):
    """Raised when a request names a provider that is not configured."""

    default_code = "unknown_provider"


class ProviderRegistry:
    """
    Holds one adapter per enabled provider.

    Adapters are built from settings on first use; tests pass their own.
    """

    def __init__(self, adapters: Optional[Iterable[PaymentProviderAdapter]] = None):
        """
        Initialize registry.

        Args:
            adapters: Optional pre-built adapters (built from settings if not provided)
        """
        self._adapters: Dict[str, PaymentProviderAdapter] = {}
        self._loaded = adapters is not None
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: PaymentProviderAdapter) -> None:
        self._adapters[adapter.provider_id] = adapter
        logger.info("payment_provider_registered", provider=adapter.provider_id)

    def _load_from_settings(self) -> None:
        # Imported here so unused SDKs are never configured
        from native_payments.integrations.authorize_net_client import AuthorizeNetClient
        from native_payments.integrations.paypal_client import PayPalClient
        from native_payments.integrations.stripe_client import StripeClient

        factories = {
            "stripe": StripeClient,
            "paypal": PayPalClient,
            "authorize_net": AuthorizeNetClient,
        }
        for provider_id in get_settings().get_enabled_providers():
            self.register(factories[provider_id]())
        self._loaded = True

    def get(self, provider_id: str) -> PaymentProviderAdapter:
        """
        Get adapter for a provider.

        Raises:
            UnknownProviderError: If the provider is not enabled
        """
        if not self._loaded:
            self._load_from_settings()
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise UnknownProviderError(
                f"Payment provider '{provider_id}' is not available",
                provider_id=provider_id,
            )
        return adapter

    def available(self) -> List[PaymentProviderAdapter]:
        if not self._loaded:
            self._load_from_settings()
        return list(self._adapters.values())

    async def sync_providers(self, db: AsyncSession) -> None:
        """Make sure every available adapter has a ``payment_providers`` row."""
        existing = set((await db.execute(select(PaymentProvider.id))).scalars().all())
        for adapter in self.available():
            if adapter.provider_id in existing:
                continue
            db.add(
                PaymentProvider(
                    id=adapter.provider_id,
                    display_name=adapter.display_name,
                    is_active=True,
                    supports_subscriptions=adapter.supports_subscriptions,
                    supports_saved_methods=adapter.supports_saved_methods,
                )
            )
        await db.flush()

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """Process-wide registry built from settings."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
    return _registry
