"""
Tests for webhook dispatch.

Tests:
- Signature verification happens before any write
- Idempotency (duplicates, release on handler failure)
- Payment failed / succeeded and the dunning state
- Subscription updated / cancelled, downgrade and violation snapshot
- Cancelled subscriptions are terminal
- Subscriptions started through checkout are created from their first event
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from billing_core.errors import (
    ProviderNotConfiguredError,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from billing_core.models.billing import (
    DunningTemplate,
    InvoiceStatus,
    PaymentStatus,
    ProviderType,
    Subscription,
    SubscriptionStatus,
    ViolationAction,
    ViolationType,
    WebhookEventType,
    WebhookOutcomeStatus,
)
from billing_core.models.organization import OrganizationMember
from billing_core.services.webhooks import SubscriptionLocks
from billing_core.storage.database import new_id
from fakes import VALID_SIGNATURE, make_event

STRIPE_SUB = "stripe_sub_2"


async def _deliver(service, event_type, ref=STRIPE_SUB, event_id="evt_1", **fields):
    payload = make_event(event_type, ref, event_id=event_id, **fields)
    return await service.handle_webhook(ProviderType.STRIPE, payload, VALID_SIGNATURE)


# ============================================================================
# Verification and idempotency
# ============================================================================


@pytest.mark.asyncio
async def test_invalid_signature_rejected_without_writes(service, subscription, db):
    payload = make_event(WebhookEventType.PAYMENT_FAILED, STRIPE_SUB)

    with pytest.raises(WebhookAuthenticationError):
        await service.handle_webhook(ProviderType.STRIPE, payload, "forged")

    stored = await db.get_subscription(subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.version == subscription.version

    # Event id was not claimed
    assert await db.mark_webhook_processed(ProviderType.STRIPE, "evt_1", "payment_failed") is True


@pytest.mark.asyncio
async def test_missing_signature_rejected(service, subscription):
    payload = make_event(WebhookEventType.PAYMENT_FAILED, STRIPE_SUB)

    with pytest.raises(WebhookAuthenticationError):
        await service.handle_webhook(ProviderType.STRIPE, payload, None)


@pytest.mark.asyncio
async def test_malformed_payload_rejected(service):
    with pytest.raises(WebhookPayloadError):
        await service.handle_webhook(ProviderType.STRIPE, b"not json", VALID_SIGNATURE)


@pytest.mark.asyncio
async def test_unknown_provider_rejected(service):
    with pytest.raises(ProviderNotConfiguredError):
        await service.handle_webhook("paypal", b"{}", VALID_SIGNATURE)


@pytest.mark.asyncio
async def test_unhandled_event_type_ignored(service, subscription, db):
    outcome = await _deliver(service, None, raw_type="customer.created")

    assert outcome.status == WebhookOutcomeStatus.IGNORED
    assert outcome.event_type == "customer.created"
    assert (await db.get_subscription(subscription.id)).version == subscription.version


@pytest.mark.asyncio
async def test_duplicate_delivery_applied_once(service, subscription, db, notifier):
    first = await _deliver(service, WebhookEventType.PAYMENT_FAILED)
    second = await _deliver(service, WebhookEventType.PAYMENT_FAILED)

    assert first.status == WebhookOutcomeStatus.PROCESSED
    assert second.status == WebhookOutcomeStatus.DUPLICATE

    stored = await db.get_subscription(subscription.id)
    assert stored.payment_retry_count == 1
    assert len(notifier.notices) == 1


@pytest.mark.asyncio
async def test_handler_failure_releases_event_for_redelivery(service, subscription, db):
    dispatcher = service.webhooks
    original = dispatcher._handlers[WebhookEventType.PAYMENT_FAILED]
    dispatcher._handlers[WebhookEventType.PAYMENT_FAILED] = AsyncMock(side_effect=RuntimeError("db down"))

    with pytest.raises(RuntimeError):
        await _deliver(service, WebhookEventType.PAYMENT_FAILED)

    dispatcher._handlers[WebhookEventType.PAYMENT_FAILED] = original
    outcome = await _deliver(service, WebhookEventType.PAYMENT_FAILED)

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    assert (await db.get_subscription(subscription.id)).payment_retry_count == 1


@pytest.mark.asyncio
async def test_unknown_subscription_not_found(service, subscription):
    outcome = await _deliver(service, WebhookEventType.PAYMENT_FAILED, ref="sub_elsewhere")

    assert outcome.status == WebhookOutcomeStatus.NOT_FOUND
    assert outcome.subscription_id is None


@pytest.mark.asyncio
async def test_event_without_subscription_reference_not_found(service, subscription):
    outcome = await _deliver(service, WebhookEventType.PAYMENT_SUCCEEDED, ref=None)

    assert outcome.status == WebhookOutcomeStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_subscription_refs_are_scoped_per_provider(service, subscription):
    payload = make_event(
        WebhookEventType.PAYMENT_FAILED, STRIPE_SUB, provider=ProviderType.FLUTTERWAVE
    )

    outcome = await service.handle_webhook(ProviderType.FLUTTERWAVE, payload, VALID_SIGNATURE)

    assert outcome.status == WebhookOutcomeStatus.NOT_FOUND


# ============================================================================
# Payments and dunning
# ============================================================================


@pytest.mark.asyncio
async def test_payment_failed_starts_dunning(service, subscription, db, notifier):
    before = datetime.now(UTC)

    outcome = await _deliver(
        service,
        WebhookEventType.PAYMENT_FAILED,
        amount=1500,
        currency="usd",
        failure_reason="card_declined",
    )

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    assert outcome.subscription_id == subscription.id

    stored = await db.get_subscription(subscription.id)
    assert stored.status == SubscriptionStatus.PAST_DUE
    assert stored.payment_retry_count == 1
    assert stored.payment_failed_at >= before
    expected_grace = before + timedelta(days=7)
    assert abs((stored.grace_period_end - expected_grace).total_seconds()) < 5

    [notice] = notifier.notices
    assert notice.template == DunningTemplate.FIRST
    assert notice.email == "billing@acme.io"
    assert notice.user_name == "Acme Inc"
    assert notice.update_url == "https://app.example.com/settings/billing"

    [payment] = await db.list_payments(subscription.customer_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.description == "card_declined"


@pytest.mark.asyncio
async def test_repeated_failures_keep_grace_period_and_escalate(service, subscription, db, notifier):
    await _deliver(service, WebhookEventType.PAYMENT_FAILED, event_id="evt_1")
    first_grace = (await db.get_subscription(subscription.id)).grace_period_end

    for i in range(2, 5):
        await _deliver(service, WebhookEventType.PAYMENT_FAILED, event_id=f"evt_{i}")

    stored = await db.get_subscription(subscription.id)
    assert stored.payment_retry_count == 4
    assert stored.grace_period_end == first_grace
    assert [n.template for n in notifier.notices] == [
        DunningTemplate.FIRST,
        DunningTemplate.SECOND,
        DunningTemplate.SECOND,
        DunningTemplate.FINAL,
    ]


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_webhook(service, subscription, db, notifier):
    service.dunning.notifier.send_dunning_notice = AsyncMock(side_effect=ConnectionError("smtp"))

    outcome = await _deliver(service, WebhookEventType.PAYMENT_FAILED)

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    assert (await db.get_subscription(subscription.id)).status == SubscriptionStatus.PAST_DUE


@pytest.mark.asyncio
async def test_payment_succeeded_clears_dunning_and_records_ledger(service, subscription, db):
    await _deliver(service, WebhookEventType.PAYMENT_FAILED, event_id="evt_fail")

    outcome = await _deliver(
        service,
        WebhookEventType.PAYMENT_SUCCEEDED,
        event_id="evt_paid",
        amount=1500,
        currency="usd",
        payment_ref="pi_1",
        invoice_ref="in_1",
        invoice_url="https://invoices.example.com/in_1",
    )

    assert outcome.status == WebhookOutcomeStatus.PROCESSED

    stored = await db.get_subscription(subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.grace_period_end is None
    assert stored.payment_failed_at is None
    assert stored.payment_retry_count == 0

    [payment] = await db.list_payments(subscription.customer_id)
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.provider_payment_id == "pi_1"

    [invoice] = await db.list_invoices(subscription.customer_id)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.amount == 1500
    assert invoice.invoice_url == "https://invoices.example.com/in_1"


@pytest.mark.asyncio
async def test_payment_without_amount_records_nothing(service, subscription, db):
    await _deliver(service, WebhookEventType.PAYMENT_SUCCEEDED)

    assert await db.list_payments(subscription.customer_id) == []
    assert await db.list_invoices(subscription.customer_id) == []


# ============================================================================
# Subscription lifecycle
# ============================================================================


@pytest.mark.asyncio
async def test_subscription_updated_keeps_unreported_fields(service, subscription, db):
    new_end = datetime.now(UTC) + timedelta(days=60)

    await _deliver(
        service,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        current_period_end=new_end,
        cancel_at_period_end=True,
    )

    stored = await db.get_subscription(subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.cancel_at_period_end is True
    assert stored.current_period_end == new_end
    assert stored.current_period_start == subscription.current_period_start
    assert stored.trial_end == subscription.trial_end


@pytest.mark.asyncio
async def test_subscription_updated_back_to_active_clears_dunning(service, subscription, db):
    await _deliver(service, WebhookEventType.PAYMENT_FAILED, event_id="evt_fail")

    await _deliver(
        service,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        event_id="evt_update",
        status=SubscriptionStatus.ACTIVE,
    )

    stored = await db.get_subscription(subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.grace_period_end is None
    assert stored.payment_retry_count == 0


@pytest.mark.asyncio
async def test_subscription_updated_invalid_transition_keeps_status(service, subscription, db):
    await _deliver(service, WebhookEventType.SUBSCRIPTION_UPDATED, status=SubscriptionStatus.TRIALING)

    assert (await db.get_subscription(subscription.id)).status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_cancelled_subscription_is_terminal(service, subscription, db):
    await _deliver(service, WebhookEventType.SUBSCRIPTION_CANCELLED, event_id="evt_cancel")

    await _deliver(service, WebhookEventType.PAYMENT_SUCCEEDED, event_id="evt_paid", amount=1500)
    await _deliver(service, WebhookEventType.PAYMENT_FAILED, event_id="evt_failed")
    await _deliver(
        service,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        event_id="evt_update",
        status=SubscriptionStatus.ACTIVE,
    )

    stored = await db.get_subscription(subscription.id)
    assert stored.status == SubscriptionStatus.CANCELLED
    assert stored.cancelled_at is not None
    assert stored.payment_retry_count == 0

    # The money still moved
    [payment] = await db.list_payments(subscription.customer_id)
    assert payment.status == PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_cancellation_downgrades_to_free_with_violations(service, subscription, db, organization):
    for user_id in ("u1", "u2", "u3"):
        await db.add_member(OrganizationMember(organization_id=organization.id, user_id=user_id))

    outcome = await _deliver(service, WebhookEventType.SUBSCRIPTION_CANCELLED)

    assert outcome.status == WebhookOutcomeStatus.PROCESSED

    org = await db.get_organization(organization.id)
    assert org.plan == "free"
    [violation] = org.plan_violations
    assert violation.type == ViolationType.TEAM_MEMBERS
    assert violation.current == 3
    assert violation.limit == 1
    assert violation.action == ViolationAction.NOTIFY_ADMIN
    assert org.violations_detected_at is not None


@pytest.mark.asyncio
async def test_cancellation_within_limits_stores_no_violations(service, subscription, db, organization):
    await _deliver(service, WebhookEventType.SUBSCRIPTION_CANCELLED)

    org = await db.get_organization(organization.id)
    assert org.plan == "free"
    assert org.plan_violations is None


@pytest.mark.asyncio
async def test_cancellation_skips_downgrade_when_replaced(service, subscription, db, organization):
    now = datetime.now(UTC)
    replacement = await db.create_subscription(
        Subscription(
            id=new_id("sub"),
            customer_id=subscription.customer_id,
            plan_id="plan_pro_yearly",
            provider=ProviderType.STRIPE,
            provider_sub_id="stripe_sub_new",
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=now + timedelta(days=365),
            created_at=now + timedelta(seconds=1),
        )
    )
    await db.update_organization_plan(organization.id, "pro-yearly")

    await _deliver(service, WebhookEventType.SUBSCRIPTION_CANCELLED)

    assert (await db.get_subscription(subscription.id)).status == SubscriptionStatus.CANCELLED
    assert (await db.get_subscription(replacement.id)).status == SubscriptionStatus.ACTIVE
    assert (await db.get_organization(organization.id)).plan == "pro-yearly"


# ============================================================================
# Checkout-started subscriptions
# ============================================================================


CHECKOUT_SUB = "stripe_sub_checkout"


async def _checkout_metadata(service, organization, stripe_fake) -> dict:
    await service.create_checkout_session(
        organization.id,
        "pro",
        success_url="https://app.example.com/ok",
        cancel_url="https://app.example.com/cancel",
        email="billing@acme.io",
    )
    [params] = [params for name, params in stripe_fake.calls if name == "create_checkout_session"]
    return params["metadata"]


@pytest.mark.asyncio
async def test_checkout_round_trip_creates_subscription(service, organization, db, stripe_fake):
    metadata = await _checkout_metadata(service, organization, stripe_fake)
    assert await service.get_subscription(organization.id) is None

    trial_end = datetime.now(UTC) + timedelta(days=14)
    outcome = await _deliver(
        service,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        ref=CHECKOUT_SUB,
        status=SubscriptionStatus.TRIALING,
        trial_end=trial_end,
        **metadata,
    )

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    current = await service.get_subscription(organization.id)
    assert current.id == outcome.subscription_id
    assert current.status == SubscriptionStatus.TRIALING
    assert current.plan_id == "plan_pro"
    assert current.provider_sub_id == CHECKOUT_SUB
    assert current.trial_end == trial_end
    assert (await db.get_organization(organization.id)).plan == "pro"


@pytest.mark.asyncio
async def test_zero_amount_invoice_keeps_trial(service, organization, db, stripe_fake):
    metadata = await _checkout_metadata(service, organization, stripe_fake)
    await _deliver(
        service,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        ref=CHECKOUT_SUB,
        event_id="evt_created",
        status=SubscriptionStatus.TRIALING,
        trial_end=datetime.now(UTC) + timedelta(days=14),
        **metadata,
    )

    await _deliver(
        service,
        WebhookEventType.PAYMENT_SUCCEEDED,
        ref=CHECKOUT_SUB,
        event_id="evt_invoice",
        amount=0,
        currency="usd",
    )

    current = await service.get_subscription(organization.id)
    assert current.status == SubscriptionStatus.TRIALING
    [invoice] = await db.list_invoices(current.customer_id)
    assert invoice.amount == 0


@pytest.mark.asyncio
async def test_checkout_payment_first_creates_active_subscription(service, organization, db, stripe_fake):
    metadata = await _checkout_metadata(service, organization, stripe_fake)

    outcome = await _deliver(
        service,
        WebhookEventType.PAYMENT_SUCCEEDED,
        ref=CHECKOUT_SUB,
        amount=1500,
        currency="usd",
        **metadata,
    )

    assert outcome.status == WebhookOutcomeStatus.PROCESSED
    current = await service.get_subscription(organization.id)
    assert current.status == SubscriptionStatus.ACTIVE
    [payment] = await db.list_payments(current.customer_id)
    assert payment.amount == 1500


@pytest.mark.asyncio
async def test_concurrent_checkout_events_create_one_subscription(service, organization, db, stripe_fake):
    metadata = await _checkout_metadata(service, organization, stripe_fake)

    outcomes = await asyncio.gather(
        _deliver(service, WebhookEventType.SUBSCRIPTION_UPDATED, ref=CHECKOUT_SUB, event_id="evt_a", **metadata),
        _deliver(
            service,
            WebhookEventType.PAYMENT_SUCCEEDED,
            ref=CHECKOUT_SUB,
            event_id="evt_b",
            amount=1500,
            **metadata,
        ),
    )

    assert {o.status for o in outcomes} == {WebhookOutcomeStatus.PROCESSED}
    assert outcomes[0].subscription_id == outcomes[1].subscription_id
    stored = await db.get_subscription_by_provider_id(ProviderType.STRIPE, CHECKOUT_SUB)
    assert stored.id == outcomes[0].subscription_id
    assert stored.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_checkout_event_without_customer_not_found(service, organization, db):
    outcome = await _deliver(
        service,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        ref=CHECKOUT_SUB,
        organization_id=organization.id,
        plan_id="plan_pro",
    )

    assert outcome.status == WebhookOutcomeStatus.NOT_FOUND
    assert await db.get_subscription_by_provider_id(ProviderType.STRIPE, CHECKOUT_SUB) is None


@pytest.mark.asyncio
async def test_checkout_event_with_unknown_plan_not_found(service, organization, db, stripe_fake):
    metadata = await _checkout_metadata(service, organization, stripe_fake)

    outcome = await _deliver(
        service,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        ref=CHECKOUT_SUB,
        organization_id=metadata["organization_id"],
        plan_id="plan_missing",
    )

    assert outcome.status == WebhookOutcomeStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_cancellation_never_creates_subscription(service, organization, db, stripe_fake):
    metadata = await _checkout_metadata(service, organization, stripe_fake)

    outcome = await _deliver(service, WebhookEventType.SUBSCRIPTION_CANCELLED, ref=CHECKOUT_SUB, **metadata)

    assert outcome.status == WebhookOutcomeStatus.NOT_FOUND
    assert await db.get_subscription_by_provider_id(ProviderType.STRIPE, CHECKOUT_SUB) is None


@pytest.mark.asyncio
async def test_cleanup_ledger_uses_retention_window(service, db):
    db.cleanup_processed_webhooks = AsyncMock(return_value=3)

    assert await service.webhooks.cleanup_ledger() == 3
    db.cleanup_processed_webhooks.assert_awaited_once_with(7)


def test_subscription_locks_shared_while_in_use():
    locks = SubscriptionLocks()

    first = locks.get("sub_1")
    assert locks.get("sub_1") is first
    assert locks.get("sub_2") is not first
    assert len(locks) >= 1
