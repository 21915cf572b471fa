"""
Tests for BillingService.

Tests:
- Lazy customer creation and provider linking
- Subscription creation preconditions (organization, plan, price, customer link)
- Provider failures surfaced as upstream errors
- Checkout, cancel and resume
- History, violations and dunning admin operations
- Plan edits
"""

from datetime import UTC, datetime, timedelta

import pytest

from billing_core.config import BillingPolicyConfig
from billing_core.errors import (
    BillingError,
    ConflictError,
    CustomerNotLinkedError,
    ErrorKind,
    NotFoundError,
    PlanNotConfiguredError,
    ProviderNotConfiguredError,
    UpstreamProviderError,
    ValidationError,
)
from billing_core.models.billing import (
    ProviderResult,
    ProviderType,
    Subscription,
    SubscriptionStatus,
    ViolationType,
    WebhookEventType,
)
from billing_core.models.organization import Organization, UsageRecord
from billing_core.providers.registry import ProviderRegistry
from billing_core.services.billing_service import BillingService
from billing_core.storage.database import new_id
from fakes import VALID_SIGNATURE, FakeProvider, make_event


# ============================================================================
# Customers
# ============================================================================


@pytest.mark.asyncio
async def test_customer_created_once_with_default_provider(service, organization, stripe_fake):
    first = await service.get_or_create_customer(organization.id, "Billing@Acme.io", "Acme Inc")
    second = await service.get_or_create_customer(organization.id, "other@acme.io")

    assert first.id == second.id
    assert first.email == "billing@acme.io"
    assert first.default_provider == ProviderType.STRIPE
    assert first.provider_id(ProviderType.STRIPE) == "stripe_cus_1"
    assert stripe_fake.operations() == ["create_customer"]


@pytest.mark.asyncio
async def test_customer_with_preferred_provider(service, organization, flutterwave_fake):
    customer = await service.get_or_create_customer(
        organization.id, "billing@acme.io", preferred_provider=ProviderType.FLUTTERWAVE
    )

    assert customer.default_provider == ProviderType.FLUTTERWAVE
    assert customer.provider_id(ProviderType.FLUTTERWAVE) == "flutterwave_cus_1"


@pytest.mark.asyncio
async def test_customer_provider_failure_stores_nothing(service, organization, stripe_fake, db):
    stripe_fake.failure = ProviderResult.failure("Stripe is down", code="api_error")

    with pytest.raises(UpstreamProviderError) as exc_info:
        await service.get_or_create_customer(organization.id, "billing@acme.io")

    assert exc_info.value.provider == "stripe"
    assert exc_info.value.code == "api_error"
    assert await db.get_customer_by_organization(organization.id) is None


@pytest.mark.asyncio
async def test_no_provider_configured(db, organization, policy):
    service = BillingService(db, ProviderRegistry(), policy)

    with pytest.raises(ProviderNotConfiguredError) as exc_info:
        await service.get_or_create_customer(organization.id, "billing@acme.io")

    assert exc_info.value.kind == ErrorKind.CONFIGURATION


@pytest.mark.asyncio
@pytest.mark.parametrize("email", ["not-an-email", "billing@localhost"])
async def test_malformed_email_rejected_before_provider_call(service, organization, stripe_fake, db, email):
    with pytest.raises(ValidationError) as exc_info:
        await service.get_or_create_customer(organization.id, email)

    assert exc_info.value.kind == ErrorKind.VALIDATION
    assert stripe_fake.calls == []
    assert await db.get_customer_by_organization(organization.id) is None


@pytest.mark.asyncio
async def test_link_customer_to_second_provider(service, subscription, organization, flutterwave_fake):
    customer = await service.link_provider_customer(organization.id, ProviderType.FLUTTERWAVE)

    assert customer.provider_id(ProviderType.STRIPE) == "stripe_cus_1"
    assert customer.provider_id(ProviderType.FLUTTERWAVE) == "flutterwave_cus_1"
    assert customer.default_provider == ProviderType.STRIPE
    [(_, call)] = flutterwave_fake.calls
    assert call == {"email": "billing@acme.io", "organization_id": organization.id}

    # Now subscribable through the linked provider
    flutterwave_sub = await service.create_subscription(
        organization.id, "pro", provider=ProviderType.FLUTTERWAVE
    )
    assert flutterwave_sub.provider == ProviderType.FLUTTERWAVE


@pytest.mark.asyncio
async def test_link_already_linked_provider_is_noop(service, subscription, organization, stripe_fake):
    calls_before = list(stripe_fake.calls)

    customer = await service.link_provider_customer(organization.id, ProviderType.STRIPE)

    assert customer.provider_id(ProviderType.STRIPE) == "stripe_cus_1"
    assert stripe_fake.calls == calls_before


@pytest.mark.asyncio
async def test_link_provider_without_customer(service, organization):
    with pytest.raises(NotFoundError):
        await service.link_provider_customer(organization.id, ProviderType.FLUTTERWAVE)


@pytest.mark.asyncio
async def test_link_provider_failure_links_nothing(service, subscription, organization, flutterwave_fake, db):
    flutterwave_fake.failure = ProviderResult.failure("Flutterwave is down")

    with pytest.raises(UpstreamProviderError):
        await service.link_provider_customer(organization.id, ProviderType.FLUTTERWAVE)

    stored = await db.get_customer_by_organization(organization.id)
    assert stored.provider_id(ProviderType.FLUTTERWAVE) is None


# ============================================================================
# Plans
# ============================================================================


@pytest.mark.asyncio
async def test_update_plan_details(service):
    plan = await service.update_plan_details(
        "pro", description="For growing teams", limits={"max_team_members": 25}
    )

    assert plan.description == "For growing teams"
    assert plan.limit("max_team_members") == 25
    assert plan.amount == (await service.get_plan_by_slug("pro")).amount
    assert (await service.get_plan_by_slug("pro")).description == "For growing teams"


@pytest.mark.asyncio
async def test_hidden_plan_leaves_catalog(service):
    await service.update_plan_details("enterprise", is_active=False)

    assert "enterprise" not in [p.slug for p in await service.get_plans()]


@pytest.mark.asyncio
async def test_update_unknown_plan(service):
    with pytest.raises(NotFoundError):
        await service.update_plan_details("platinum", description="?")


# ============================================================================
# Subscriptions
# ============================================================================


@pytest.mark.asyncio
async def test_create_subscription(service, organization, stripe_fake, db):
    subscription = await service.create_subscription(
        organization.id, "pro", payment_method_id="pm_card", email="billing@acme.io"
    )

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.provider == ProviderType.STRIPE
    assert subscription.provider_sub_id == "stripe_sub_2"
    assert subscription.plan_id == "plan_pro"
    assert subscription.trial_end is not None

    _, call = stripe_fake.calls[-1]
    assert call == {"customer_id": "stripe_cus_1", "plan_id": "price_pro_monthly", "trial_days": 14}

    assert (await db.get_organization(organization.id)).plan == "pro"
    assert (await service.get_subscription(organization.id)).id == subscription.id


@pytest.mark.asyncio
async def test_create_subscription_returns_row_stored_by_webhook(service, organization, db):
    customer = await service.get_or_create_customer(organization.id, "billing@acme.io")
    now = datetime.now(UTC)
    # The provider's webhook arrived before the subscribe call returned
    stored_by_webhook = await db.create_subscription(
        Subscription(
            id=new_id("sub"),
            customer_id=customer.id,
            plan_id="plan_pro",
            provider=ProviderType.STRIPE,
            provider_sub_id="stripe_sub_2",
            status=SubscriptionStatus.INCOMPLETE,
            current_period_start=now,
            current_period_end=now,
        )
    )

    subscription = await service.create_subscription(organization.id, "pro")

    assert subscription.id == stored_by_webhook.id
    assert (await db.get_organization(organization.id)).plan == "pro"


@pytest.mark.asyncio
async def test_create_subscription_requires_email_for_first_use(service, organization):
    with pytest.raises(ValidationError):
        await service.create_subscription(organization.id, "pro")


@pytest.mark.asyncio
async def test_create_subscription_unknown_organization(service):
    with pytest.raises(NotFoundError):
        await service.create_subscription("org_missing", "pro", email="a@b.io")


@pytest.mark.asyncio
async def test_create_subscription_unknown_plan(service, organization):
    with pytest.raises(NotFoundError):
        await service.create_subscription(organization.id, "platinum", email="a@b.io")


@pytest.mark.asyncio
async def test_plan_without_price_for_provider(service, organization, flutterwave_fake):
    with pytest.raises(PlanNotConfiguredError):
        await service.create_subscription(
            organization.id,
            "enterprise",
            provider=ProviderType.FLUTTERWAVE,
            email="billing@acme.io",
        )

    assert "create_subscription" not in flutterwave_fake.operations()


@pytest.mark.asyncio
async def test_customer_not_linked_to_requested_provider(service, subscription, organization):
    # Customer exists with Stripe only
    with pytest.raises(CustomerNotLinkedError) as exc_info:
        await service.create_subscription(organization.id, "pro", provider=ProviderType.FLUTTERWAVE)

    assert exc_info.value.kind == ErrorKind.PRECONDITION


@pytest.mark.asyncio
async def test_create_subscription_provider_failure(service, organization, stripe_fake, db):
    await service.get_or_create_customer(organization.id, "billing@acme.io")
    stripe_fake.failure = ProviderResult.failure("Your card was declined.", code="card_declined")

    with pytest.raises(UpstreamProviderError):
        await service.create_subscription(organization.id, "pro")

    assert await service.get_subscription(organization.id) is None
    assert (await db.get_organization(organization.id)).plan == "free"


@pytest.mark.asyncio
async def test_provider_configuration_failure_keeps_kind(service, organization, stripe_fake):
    await service.get_or_create_customer(organization.id, "billing@acme.io")
    stripe_fake.failure = ProviderResult.failure("No such price", kind=ErrorKind.CONFIGURATION)

    with pytest.raises(BillingError) as exc_info:
        await service.create_subscription(organization.id, "pro")

    assert exc_info.value.kind == ErrorKind.CONFIGURATION


@pytest.mark.asyncio
async def test_checkout_session(service, organization, stripe_fake):
    session = await service.create_checkout_session(
        organization.id,
        "pro",
        success_url="https://app.example.com/ok",
        cancel_url="https://app.example.com/cancel",
        email="billing@acme.io",
    )

    assert session == {"url": "https://pay.example.com/price_pro_monthly"}

    name, call = stripe_fake.calls[-1]
    assert name == "create_checkout_session"
    assert call["metadata"] == {"organization_id": organization.id, "plan_id": "plan_pro"}
    assert call["customer_email"] == "billing@acme.io"

    # Nothing stored until the provider reports the subscription
    assert await service.get_subscription(organization.id) is None


@pytest.mark.asyncio
async def test_cancel_at_period_end(service, subscription, stripe_fake):
    cancelled = await service.cancel_subscription(subscription.id)

    assert cancelled.status == SubscriptionStatus.ACTIVE
    assert cancelled.cancel_at_period_end is True
    assert cancelled.cancelled_at is None
    assert stripe_fake.calls[-1] == (
        "cancel_subscription",
        {"provider_id": "stripe_sub_2", "immediately": False},
    )


@pytest.mark.asyncio
async def test_cancel_immediately(service, subscription):
    cancelled = await service.cancel_subscription(subscription.id, immediately=True)

    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert cancelled.cancel_at_period_end is False

    with pytest.raises(ConflictError):
        await service.cancel_subscription(subscription.id)


@pytest.mark.asyncio
async def test_cancel_unknown_subscription(service):
    with pytest.raises(NotFoundError):
        await service.cancel_subscription("sub_missing")


@pytest.mark.asyncio
async def test_resume_scheduled_cancellation(service, subscription, stripe_fake):
    await service.cancel_subscription(subscription.id)

    resumed = await service.resume_subscription(subscription.id)

    assert resumed.status == SubscriptionStatus.ACTIVE
    assert resumed.cancel_at_period_end is False
    assert stripe_fake.operations()[-1] == "resume_subscription"


@pytest.mark.asyncio
async def test_resume_requires_scheduled_cancellation(service, subscription, stripe_fake):
    with pytest.raises(ConflictError) as exc_info:
        await service.resume_subscription(subscription.id)

    assert exc_info.value.kind == ErrorKind.PRECONDITION
    assert "resume_subscription" not in stripe_fake.operations()


@pytest.mark.asyncio
async def test_resume_cancelled_subscription(service, subscription):
    await service.cancel_subscription(subscription.id, immediately=True)

    with pytest.raises(ConflictError) as exc_info:
        await service.resume_subscription(subscription.id)

    assert exc_info.value.kind == ErrorKind.CONFLICT


# ============================================================================
# History
# ============================================================================


@pytest.mark.asyncio
async def test_history_empty_without_customer(service, organization):
    assert await service.get_payment_history(organization.id) == []
    assert await service.get_invoices(organization.id) == []


@pytest.mark.asyncio
async def test_history_after_payments(service, subscription, organization):
    for i in range(3):
        payload = make_event(
            WebhookEventType.PAYMENT_SUCCEEDED,
            "stripe_sub_2",
            event_id=f"evt_{i}",
            amount=1500,
            currency="usd",
        )
        await service.handle_webhook(ProviderType.STRIPE, payload, VALID_SIGNATURE)

    assert len(await service.get_payment_history(organization.id)) == 3
    assert len(await service.get_invoices(organization.id, limit=2)) == 2


# ============================================================================
# Plan violations
# ============================================================================


@pytest.mark.asyncio
async def test_check_plan_violations_is_a_preview(service, organization, db):
    period = datetime.now(UTC).strftime("%Y-%m")
    await db.upsert_usage(UsageRecord(organization_id=organization.id, period=period, meetings_count=9))

    violations = await service.check_plan_violations(organization.id, "free")

    assert [v.type for v in violations] == [ViolationType.MEETINGS]
    assert await service.get_active_violations(organization.id) == []


@pytest.mark.asyncio
async def test_check_plan_violations_unknown_organization(service):
    with pytest.raises(NotFoundError):
        await service.check_plan_violations("org_missing", "free")


@pytest.mark.asyncio
async def test_clear_violations(service, subscription, organization, db):
    period = datetime.now(UTC).strftime("%Y-%m")
    await db.upsert_usage(UsageRecord(organization_id=organization.id, period=period, meetings_count=9))
    payload = make_event(WebhookEventType.SUBSCRIPTION_CANCELLED, "stripe_sub_2")
    await service.handle_webhook(ProviderType.STRIPE, payload, VALID_SIGNATURE)

    assert len(await service.get_active_violations(organization.id)) == 1

    await service.clear_violations(organization.id)

    assert await service.get_active_violations(organization.id) == []


# ============================================================================
# Dunning admin
# ============================================================================


async def _fail_payment(service, event_id="evt_fail"):
    payload = make_event(WebhookEventType.PAYMENT_FAILED, "stripe_sub_2", event_id=event_id)
    await service.handle_webhook(ProviderType.STRIPE, payload, VALID_SIGNATURE)


@pytest.mark.asyncio
async def test_list_past_due(service, subscription, organization):
    await _fail_payment(service)

    items, total = await service.list_past_due()

    assert total == 1
    [item] = items
    assert item.subscription.id == subscription.id
    assert item.organization_name == "Acme Inc"
    assert item.customer_email == "billing@acme.io"
    assert item.plan_slug == "pro"
    assert item.days_until_suspension in (6, 7)


@pytest.mark.asyncio
async def test_extend_grace_period(service, subscription):
    await _fail_payment(service)
    before = (await service.db.get_subscription(subscription.id)).grace_period_end

    extended = await service.extend_grace_period(subscription.id, 5)

    assert extended.grace_period_end == before + timedelta(days=5)
    assert extended.status == SubscriptionStatus.PAST_DUE


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [0, -3, 31])
async def test_extend_grace_period_out_of_range(service, subscription, days):
    await _fail_payment(service)

    with pytest.raises(ValidationError):
        await service.extend_grace_period(subscription.id, days)


@pytest.mark.asyncio
async def test_extend_grace_period_requires_past_due(service, subscription):
    with pytest.raises(ConflictError):
        await service.extend_grace_period(subscription.id, 3)


@pytest.mark.asyncio
async def test_extend_grace_period_unknown_subscription(service):
    with pytest.raises(NotFoundError):
        await service.extend_grace_period("sub_missing", 3)


# ============================================================================
# Flutterwave-only deployment
# ============================================================================


@pytest.mark.asyncio
async def test_flutterwave_only_registry(db, policy):
    org = Organization(id="org_lagos", name="Lagos Studio")
    await db.create_organization(org)
    flutterwave = FakeProvider(ProviderType.FLUTTERWAVE)
    service = BillingService(db, ProviderRegistry([flutterwave]), BillingPolicyConfig())

    subscription = await service.create_subscription(org.id, "pro", email="team@lagos.ng")

    assert subscription.provider == ProviderType.FLUTTERWAVE
    _, call = flutterwave.calls[-1]
    assert call["plan_id"] == "1001"
