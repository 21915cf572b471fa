"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Temporary billing database with the default plans seeded
- Test organization
- Fake payment provider adapters (no network)
- Recording notifier
- Billing service wired to all of the above
"""

import pytest
from fakes import FakeProvider, RecordingNotifier

from billing_core.config import BillingPolicyConfig
from billing_core.models.billing import ProviderType
from billing_core.models.organization import Organization
from billing_core.providers.registry import ProviderRegistry
from billing_core.resilience.circuit_breakers import reset_all_breakers
from billing_core.services.billing_service import BillingService
from billing_core.storage.database import BillingDatabase
from billing_core.storage.seed import seed_plans


@pytest.fixture(autouse=True)
def reset_breakers():
    """Circuit breakers are process-wide; start every test closed."""
    reset_all_breakers()
    yield
    reset_all_breakers()


@pytest.fixture
def policy() -> BillingPolicyConfig:
    return BillingPolicyConfig(web_url="https://app.example.com")


@pytest.fixture
async def db(tmp_path):
    """Initialized database with the default plans."""
    database = BillingDatabase(db_path=str(tmp_path / "billing.db"))
    await database.initialize()
    await seed_plans(database)
    yield database
    database.close()


@pytest.fixture
async def organization(db) -> Organization:
    org = Organization(id="org_acme", name="Acme Inc")
    await db.create_organization(org)
    return org


@pytest.fixture
def stripe_fake() -> FakeProvider:
    return FakeProvider(ProviderType.STRIPE)


@pytest.fixture
def flutterwave_fake() -> FakeProvider:
    return FakeProvider(ProviderType.FLUTTERWAVE)


@pytest.fixture
def registry(stripe_fake, flutterwave_fake) -> ProviderRegistry:
    return ProviderRegistry([stripe_fake, flutterwave_fake])


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(db, registry, policy, notifier) -> BillingService:
    return BillingService(db, registry, policy, notifier)


@pytest.fixture
async def subscription(service, organization):
    """Active Stripe subscription to the pro plan."""
    return await service.create_subscription(organization.id, "pro", email="billing@acme.io")
