"""
Tests for the payment provider registry.
"""

import pytest
from fakes import FakeProvider

from billing_core.config import FlutterwaveConfig, Settings, StripeConfig
from billing_core.errors import ErrorKind, ProviderNotConfiguredError
from billing_core.models.billing import ProviderType
from billing_core.providers.flutterwave_provider import FlutterwaveProvider
from billing_core.providers.registry import ProviderRegistry, build_provider_registry
from billing_core.providers.stripe_provider import StripeProvider


def test_default_follows_priority_not_registration_order():
    registry = ProviderRegistry(
        [FakeProvider(ProviderType.FLUTTERWAVE), FakeProvider(ProviderType.STRIPE)]
    )

    assert registry.configured() == [ProviderType.STRIPE, ProviderType.FLUTTERWAVE]
    assert registry.default_provider() == ProviderType.STRIPE


def test_flutterwave_is_default_when_alone():
    registry = ProviderRegistry([FakeProvider(ProviderType.FLUTTERWAVE)])

    assert registry.default_provider() == ProviderType.FLUTTERWAVE
    assert not registry.is_configured(ProviderType.STRIPE)


def test_resolve_by_name_or_enum():
    stripe_fake = FakeProvider(ProviderType.STRIPE)
    registry = ProviderRegistry([stripe_fake])

    assert registry.resolve("stripe") is stripe_fake
    assert registry.resolve(ProviderType.STRIPE) is stripe_fake


@pytest.mark.parametrize("name", ["flutterwave", "paypal", ""])
def test_resolve_unconfigured(name):
    registry = ProviderRegistry([FakeProvider(ProviderType.STRIPE)])

    with pytest.raises(ProviderNotConfiguredError) as exc_info:
        registry.resolve(name)

    assert exc_info.value.kind == ErrorKind.CONFIGURATION


def test_empty_registry_has_no_default():
    with pytest.raises(ProviderNotConfiguredError):
        ProviderRegistry().default_provider()


def test_build_from_settings():
    settings = Settings(
        stripe=StripeConfig(secret_key="sk_test_123", webhook_secret="whsec_1"),
        flutterwave=FlutterwaveConfig(secret_key="FLWSECK_TEST-1", webhook_secret="hash"),
    )

    registry = build_provider_registry(settings)

    assert isinstance(registry.resolve(ProviderType.STRIPE), StripeProvider)
    assert isinstance(registry.resolve(ProviderType.FLUTTERWAVE), FlutterwaveProvider)
    registry.resolve(ProviderType.FLUTTERWAVE).close()


def test_build_skips_providers_without_credentials():
    settings = Settings(stripe=StripeConfig(secret_key=""), flutterwave=FlutterwaveConfig(secret_key=""))

    assert build_provider_registry(settings).configured() == []
