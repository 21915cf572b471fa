"""
Payment provider registry.

Built once at startup from settings and handed to the billing service, so
tests and alternative deployments can construct their own.
"""

import logging

from billing_core.config import Settings
from billing_core.errors import ProviderNotConfiguredError
from billing_core.models.billing import ProviderType
from billing_core.providers.base import PaymentProvider
from billing_core.providers.flutterwave_provider import FlutterwaveProvider
from billing_core.providers.stripe_provider import StripeProvider

logger = logging.getLogger(__name__)

# Default provider order when the caller does not choose one
PROVIDER_PRIORITY: tuple[ProviderType, ...] = (ProviderType.STRIPE, ProviderType.FLUTTERWAVE)


class ProviderRegistry:
    """Holds the configured payment provider adapters."""

    def __init__(self, providers: list[PaymentProvider] | None = None):
        self._providers: dict[ProviderType, PaymentProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: PaymentProvider) -> None:
        """Register an adapter (replaces any adapter of the same type)."""
        self._providers[provider.type] = provider
        logger.info(f"Registered payment provider: {provider.type.value}")

    def is_configured(self, provider_type: ProviderType) -> bool:
        return provider_type in self._providers

    def configured(self) -> list[ProviderType]:
        """Configured providers in priority order."""
        return [p for p in PROVIDER_PRIORITY if p in self._providers]

    def resolve(self, provider_type: ProviderType | str) -> PaymentProvider:
        """
        Get the adapter for a provider.

        Raises:
            ProviderNotConfiguredError: If the provider is unknown or not registered
        """
        try:
            key = ProviderType(provider_type)
        except ValueError:
            raise ProviderNotConfiguredError(str(provider_type))

        provider = self._providers.get(key)
        if provider is None:
            raise ProviderNotConfiguredError(key.value)
        return provider

    def default_provider(self) -> ProviderType:
        """
        First configured provider in priority order (Stripe, then Flutterwave).

        Raises:
            ProviderNotConfiguredError: If no provider is configured
        """
        configured = self.configured()
        if not configured:
            raise ProviderNotConfiguredError("any")
        return configured[0]


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    """
    Create adapters for every provider with credentials in settings.

    Returns:
        ProviderRegistry: Possibly empty registry
    """
    registry = ProviderRegistry()

    if settings.stripe.is_configured:
        registry.register(StripeProvider(settings.stripe, settings.provider_policy))

    if settings.flutterwave.is_configured:
        registry.register(FlutterwaveProvider(settings.flutterwave, settings.provider_policy))

    if not registry.configured():
        logger.warning("No payment providers configured")

    return registry
