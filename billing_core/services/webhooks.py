"""
Provider webhook dispatch.

Flow for every delivery:
1. Resolve the provider adapter and verify/parse the event (nothing is written
   before the signature checks out)
2. Claim the event id in the idempotency ledger; redeliveries are reported as
   duplicates and not reapplied
3. Apply the normalized event under a per-subscription lock; writes are
   version-checked so other processes cannot interleave
4. Release the claim if a handler fails, so the provider's retry is processed

A subscription started through hosted checkout has no local row until its
first subscription_updated or payment_succeeded event; that event creates it
from the organization and plan in the checkout metadata.

Handled events:
- payment_succeeded: subscription active (trials kept), dunning state cleared, ledger rows
- payment_failed: subscription past_due, grace period, dunning notice
- subscription_updated: status and billing period from the provider
- subscription_cancelled: subscription cancelled, organization downgraded to free
"""

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from billing_core.config import BillingPolicyConfig
from billing_core.errors import (
    BillingError,
    ErrorKind,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from billing_core.models.billing import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    ProviderType,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventType,
    WebhookOutcome,
    WebhookOutcomeStatus,
)
from billing_core.observability.metrics import (
    track_subscription_transition,
    track_webhook_event,
)
from billing_core.providers.registry import ProviderRegistry
from billing_core.services.dunning import DunningEngine
from billing_core.services.violations import PlanViolationEvaluator
from billing_core.storage.database import BillingDatabase, new_id

logger = logging.getLogger(__name__)


class SubscriptionLocks:
    """
    One asyncio.Lock per subscription id (or provider subscription reference
    while a checkout subscription is being created).

    Locks are held weakly: an entry disappears once no coroutine is using it.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


Handler = Callable[[WebhookEvent, Subscription], Awaitable[str]]

# Events that may be the first sight of a checkout-started subscription
CHECKOUT_EVENTS = (WebhookEventType.SUBSCRIPTION_UPDATED, WebhookEventType.PAYMENT_SUCCEEDED)


class WebhookDispatcher:
    """Verifies provider webhooks and applies them to billing state."""

    def __init__(
        self,
        registry: ProviderRegistry,
        db: BillingDatabase,
        dunning: DunningEngine,
        evaluator: PlanViolationEvaluator,
        policy: BillingPolicyConfig,
    ):
        self.registry = registry
        self.db = db
        self.dunning = dunning
        self.evaluator = evaluator
        self.policy = policy
        self.locks = SubscriptionLocks()

        self._handlers: dict[WebhookEventType, Handler] = {
            WebhookEventType.PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            WebhookEventType.PAYMENT_FAILED: self._handle_payment_failed,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            WebhookEventType.SUBSCRIPTION_CANCELLED: self._handle_subscription_cancelled,
        }

    async def dispatch(
        self,
        provider: ProviderType | str,
        payload: bytes | str,
        signature: str | None,
    ) -> WebhookOutcome:
        """
        Process one webhook delivery.

        Args:
            provider: Provider the delivery came from
            payload: Raw request body (signature is computed over it)
            signature: Stripe-Signature / verif-hash header value

        Returns:
            WebhookOutcome: processed, ignored, duplicate or not_found

        Raises:
            ProviderNotConfiguredError: If the provider is not registered
            WebhookAuthenticationError: If the signature is missing or invalid
            WebhookPayloadError: If the body cannot be parsed
            BillingError: If the provider has no webhook secret (configuration)
        """
        adapter = self.registry.resolve(provider)
        provider_type = adapter.type

        result = await adapter.construct_webhook_event(payload, signature)
        if not result.ok or result.data is None:
            track_webhook_event(provider_type.value, "unknown", "rejected")
            logger.warning(
                "Webhook rejected",
                extra={"provider": provider_type.value, "error": result.error, "kind": result.kind},
            )
            message = result.error or "Invalid webhook"
            if result.kind == ErrorKind.AUTHENTICATION:
                raise WebhookAuthenticationError(message)
            if result.kind == ErrorKind.CONFIGURATION:
                raise BillingError(message, kind=ErrorKind.CONFIGURATION)
            raise WebhookPayloadError(message)

        event = result.data

        if event.type is None:
            logger.info(
                "Unhandled webhook event type",
                extra={"provider": provider_type.value, "event_type": event.raw_type},
            )
            track_webhook_event(provider_type.value, event.raw_type, WebhookOutcomeStatus.IGNORED.value)
            return self._outcome(WebhookOutcomeStatus.IGNORED, event, message="Unhandled event type")

        event_type = event.type.value

        if not await self.db.mark_webhook_processed(provider_type, event.id, event_type):
            track_webhook_event(provider_type.value, event_type, WebhookOutcomeStatus.DUPLICATE.value)
            return self._outcome(WebhookOutcomeStatus.DUPLICATE, event, message="Event already processed")

        logger.info(
            "Processing webhook event",
            extra={"provider": provider_type.value, "event_type": event_type, "event_id": event.id},
        )

        try:
            outcome = await self._apply(event)
        except Exception as e:
            await self.db.release_webhook(provider_type, event.id)
            track_webhook_event(provider_type.value, event_type, "error")
            logger.error(
                "Webhook event processing failed",
                extra={
                    "provider": provider_type.value,
                    "event_type": event_type,
                    "event_id": event.id,
                    "error": str(e),
                },
            )
            raise

        track_webhook_event(provider_type.value, event_type, outcome.status.value)
        logger.info(
            "Webhook event processed",
            extra={
                "provider": provider_type.value,
                "event_type": event_type,
                "event_id": event.id,
                "outcome": outcome.status.value,
                "result": outcome.message,
            },
        )
        return outcome

    async def cleanup_ledger(self) -> int:
        """Drop idempotency records older than the retention window."""
        return await self.db.cleanup_processed_webhooks(self.policy.webhook_retention_days)

    async def _apply(self, event: WebhookEvent) -> WebhookOutcome:
        if not event.subscription_ref:
            logger.warning(
                "Webhook event has no subscription reference",
                extra={"provider": event.provider.value, "event_type": event.raw_type, "event_id": event.id},
            )
            return self._outcome(WebhookOutcomeStatus.NOT_FOUND, event, message="No subscription reference")

        subscription = await self.db.get_subscription_by_provider_id(event.provider, event.subscription_ref)
        if subscription is None:
            subscription = await self._create_from_checkout(event)
        if subscription is None:
            logger.warning(
                "Webhook for unknown subscription",
                extra={"provider": event.provider.value, "provider_sub_id": event.subscription_ref},
            )
            return self._outcome(
                WebhookOutcomeStatus.NOT_FOUND,
                event,
                message=f"Unknown subscription {event.subscription_ref}",
            )

        handler = self._handlers[event.type]
        async with self.locks.get(subscription.id):
            message = await handler(event, subscription)

        return self._outcome(
            WebhookOutcomeStatus.PROCESSED, event, subscription_id=subscription.id, message=message
        )

    async def _create_from_checkout(self, event: WebhookEvent) -> Subscription | None:
        """
        Store a subscription started through hosted checkout.

        The provider subscription carries the organization and plan from the
        checkout metadata. The row is created incomplete; the event's handler
        then moves it to the reported state.
        """
        if event.type not in CHECKOUT_EVENTS or not (event.organization_id and event.plan_id):
            return None

        async with self.locks.get(f"{event.provider.value}:{event.subscription_ref}"):
            existing = await self.db.get_subscription_by_provider_id(event.provider, event.subscription_ref)
            if existing is not None:
                return existing

            customer = await self.db.get_customer_by_organization(event.organization_id)
            if customer is None:
                logger.warning(
                    "Checkout subscription for organization without billing customer",
                    extra={"organization_id": event.organization_id, "provider_sub_id": event.subscription_ref},
                )
                return None

            plan = await self.db.get_plan(event.plan_id)
            if plan is None:
                logger.warning(
                    "Checkout subscription for unknown plan",
                    extra={"plan_id": event.plan_id, "provider_sub_id": event.subscription_ref},
                )
                return None

            now = datetime.now(UTC)
            created = await self.db.create_subscription(
                Subscription(
                    id=new_id("sub"),
                    customer_id=customer.id,
                    plan_id=plan.id,
                    provider=event.provider,
                    provider_sub_id=event.subscription_ref,
                    status=SubscriptionStatus.INCOMPLETE,
                    current_period_start=event.current_period_start or now,
                    current_period_end=event.current_period_end or now,
                    cancel_at_period_end=bool(event.cancel_at_period_end),
                    trial_end=event.trial_end,
                )
            )
            if created is None:
                # Stored by another worker or by the subscribe call itself
                return await self.db.get_subscription_by_provider_id(event.provider, event.subscription_ref)

            await self.db.update_organization_plan(event.organization_id, plan.slug)

        logger.info(
            "Subscription created from checkout",
            extra={
                "organization_id": event.organization_id,
                "subscription_id": created.id,
                "plan": plan.slug,
                "provider": event.provider.value,
            },
        )
        return created

    # ------------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------------

    async def _handle_payment_succeeded(self, event: WebhookEvent, subscription: Subscription) -> str:
        """Payment went through: reactivate and clear dunning state."""

        def succeed(current: Subscription) -> Subscription | None:
            if current.status == SubscriptionStatus.CANCELLED:
                return None
            return self.dunning.apply_success(current, amount=event.amount)

        before, after = await self.db.modify_subscription(subscription.id, succeed)
        self._track_transition(before, after)

        if event.amount is not None:
            currency = event.currency or "usd"
            await self.db.record_payment(
                Payment(
                    id=new_id("pay"),
                    customer_id=subscription.customer_id,
                    amount=event.amount,
                    currency=currency,
                    status=PaymentStatus.SUCCEEDED,
                    description="Subscription payment",
                    receipt_url=event.receipt_url,
                    provider_payment_id=event.payment_ref,
                )
            )
            await self.db.record_invoice(
                Invoice(
                    id=new_id("inv"),
                    customer_id=subscription.customer_id,
                    amount=event.amount,
                    currency=currency,
                    status=InvoiceStatus.PAID,
                    provider_invoice_id=event.invoice_ref,
                    invoice_url=event.invoice_url,
                )
            )

        if after is None or after.status == SubscriptionStatus.CANCELLED:
            return f"Payment recorded for cancelled subscription {subscription.id}"

        logger.info(
            "Payment succeeded, subscription reactivated",
            extra={"subscription_id": subscription.id, "amount": event.amount},
        )
        return f"Payment succeeded for {subscription.id}"

    async def _handle_payment_failed(self, event: WebhookEvent, subscription: Subscription) -> str:
        """Payment failed: start or continue dunning."""
        now = datetime.now(UTC)

        def fail(current: Subscription) -> Subscription | None:
            if current.status == SubscriptionStatus.CANCELLED:
                return None
            return self.dunning.apply_failure(current, now)

        before, after = await self.db.modify_subscription(subscription.id, fail)
        self._track_transition(before, after)

        if event.amount is not None:
            await self.db.record_payment(
                Payment(
                    id=new_id("pay"),
                    customer_id=subscription.customer_id,
                    amount=event.amount,
                    currency=event.currency or "usd",
                    status=PaymentStatus.FAILED,
                    description=event.failure_reason or "Subscription payment failed",
                    provider_payment_id=event.payment_ref,
                )
            )

        if after is None or after.status == SubscriptionStatus.CANCELLED:
            return f"Payment failure ignored for cancelled subscription {subscription.id}"

        logger.error(
            "Payment failed for subscription",
            extra={
                "subscription_id": subscription.id,
                "retry_count": after.payment_retry_count,
                "grace_period_end": after.grace_period_end.isoformat() if after.grace_period_end else None,
                "reason": event.failure_reason,
            },
        )

        customer = await self.db.get_customer(subscription.customer_id)
        if customer is not None:
            organization = await self.db.get_organization(customer.organization_id)
            user_name = customer.name or (organization.name if organization else customer.email)
            await self.dunning.notify_failure(after, customer, user_name)

        return f"Payment failed for {subscription.id} (attempt {after.payment_retry_count})"

    async def _handle_subscription_updated(self, event: WebhookEvent, subscription: Subscription) -> str:
        """Provider-side change to status, period or scheduled cancellation."""
        now = datetime.now(UTC)

        def update(current: Subscription) -> Subscription | None:
            if current.status == SubscriptionStatus.CANCELLED:
                return None

            target = event.status or current.status
            if not current.status.can_transition(target):
                logger.warning(
                    "Ignoring invalid status transition",
                    extra={
                        "subscription_id": current.id,
                        "from_status": current.status.value,
                        "to_status": target.value,
                    },
                )
                target = current.status

            changes: dict = {
                "status": target,
                "current_period_start": event.current_period_start or current.current_period_start,
                "current_period_end": event.current_period_end or current.current_period_end,
                "cancel_at_period_end": (
                    event.cancel_at_period_end
                    if event.cancel_at_period_end is not None
                    else current.cancel_at_period_end
                ),
                "trial_end": event.trial_end or current.trial_end,
            }

            if current.status == SubscriptionStatus.PAST_DUE and target == SubscriptionStatus.ACTIVE:
                changes.update(grace_period_end=None, payment_failed_at=None, payment_retry_count=0)
            if target == SubscriptionStatus.CANCELLED:
                changes["cancelled_at"] = current.cancelled_at or now
                changes["cancel_at_period_end"] = False

            return current.model_copy(update=changes)

        before, after = await self.db.modify_subscription(subscription.id, update)
        self._track_transition(before, after)

        if after is None or (before is not None and before.status == SubscriptionStatus.CANCELLED):
            return f"Subscription {subscription.id} already cancelled"

        return f"Subscription {subscription.id} updated ({after.status.value})"

    async def _handle_subscription_cancelled(self, event: WebhookEvent, subscription: Subscription) -> str:
        """Subscription ended: mark cancelled and downgrade the organization."""
        now = datetime.now(UTC)

        def cancel(current: Subscription) -> Subscription | None:
            if current.status == SubscriptionStatus.CANCELLED:
                return None
            return current.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELLED,
                    "cancelled_at": current.cancelled_at or now,
                    "cancel_at_period_end": False,
                }
            )

        before, after = await self.db.modify_subscription(subscription.id, cancel)
        self._track_transition(before, after)

        customer = await self.db.get_customer(subscription.customer_id)
        if customer is None:
            return f"Subscription {subscription.id} cancelled"

        current = await self.db.get_current_subscription(customer.id)
        if current is not None and current.id != subscription.id:
            logger.info(
                "Organization has another current subscription, skipping downgrade",
                extra={"organization_id": customer.organization_id, "subscription_id": current.id},
            )
            return f"Subscription {subscription.id} cancelled"

        await self._downgrade(customer.organization_id, now)
        return f"Subscription {subscription.id} cancelled, organization downgraded"

    async def _downgrade(self, organization_id: str, now: datetime) -> None:
        free_plan = self.policy.free_plan_slug
        violations = await self.evaluator.evaluate(organization_id, free_plan, now)

        await self.db.update_organization_plan(organization_id, free_plan)
        await self.db.set_plan_violations(organization_id, violations or None, now)

        logger.info(
            "Organization downgraded",
            extra={
                "organization_id": organization_id,
                "plan": free_plan,
                "violations": [v.type.value for v in violations],
            },
        )

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    @staticmethod
    def _track_transition(before: Subscription | None, after: Subscription | None) -> None:
        if before is not None and after is not None:
            track_subscription_transition(before.status.value, after.status.value)

    @staticmethod
    def _outcome(
        status: WebhookOutcomeStatus,
        event: WebhookEvent,
        subscription_id: str | None = None,
        message: str | None = None,
    ) -> WebhookOutcome:
        return WebhookOutcome(
            status=status,
            provider=event.provider,
            event_id=event.id,
            event_type=event.type.value if event.type else event.raw_type,
            subscription_id=subscription_id,
            message=message,
        )
