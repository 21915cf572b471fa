"""
Payment provider adapters.

- base.py: PaymentProvider interface
- stripe_provider.py: Stripe (cards, global)
- flutterwave_provider.py: Flutterwave (cards, mobile money, African markets)
- registry.py: configured providers and default selection
"""

from billing_core.providers.base import PaymentProvider
from billing_core.providers.flutterwave_provider import FlutterwaveProvider
from billing_core.providers.registry import (
    PROVIDER_PRIORITY,
    ProviderRegistry,
    build_provider_registry,
)
from billing_core.providers.stripe_provider import StripeProvider

__all__ = [
    "PROVIDER_PRIORITY",
    "FlutterwaveProvider",
    "PaymentProvider",
    "ProviderRegistry",
    "StripeProvider",
    "build_provider_registry",
]
