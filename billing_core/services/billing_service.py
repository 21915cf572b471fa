"""
Provider-agnostic billing service.

Features:
- Plan catalog
- Lazy billing customers (one per organization, created on first use)
- Subscriptions and hosted checkout through the configured providers
- Cancel / resume with local state kept in step with the provider
- Payment and invoice history
- Webhook handling, dunning and plan-violation checks
- Admin views: past-due subscriptions, grace extensions, trial sweep
"""

import logging
from datetime import UTC, datetime

from billing_core.config import BillingPolicyConfig
from billing_core.errors import (
    BillingError,
    ConflictError,
    CustomerNotLinkedError,
    ErrorKind,
    NotFoundError,
    PlanNotConfiguredError,
    UpstreamProviderError,
    ValidationError,
)
from billing_core.models.billing import (
    Customer,
    Invoice,
    PastDueSubscription,
    Payment,
    Plan,
    PlanViolation,
    ProviderResult,
    ProviderType,
    Subscription,
    SubscriptionStatus,
    WebhookOutcome,
    normalize_email,
)
from billing_core.notifications import LoggingNotifier, Notifier
from billing_core.observability.metrics import track_subscription_transition
from billing_core.providers.base import PaymentProvider
from billing_core.providers.registry import ProviderRegistry, build_provider_registry
from billing_core.services.dunning import DunningEngine
from billing_core.services.trials import TrialExpiryPolicy
from billing_core.services.violations import PlanViolationEvaluator
from billing_core.services.webhooks import WebhookDispatcher
from billing_core.storage.database import BillingDatabase, get_billing_db, new_id

logger = logging.getLogger(__name__)


class BillingService:
    """
    Billing operations for organizations.

    Every operation that reaches a provider calls exactly one adapter and then
    persists the provider-reported state.
    """

    def __init__(
        self,
        db: BillingDatabase,
        registry: ProviderRegistry,
        policy: BillingPolicyConfig,
        notifier: Notifier | None = None,
    ):
        """
        Initialize billing service.

        Args:
            db: Billing database
            registry: Configured payment providers
            policy: Grace period, dunning and trial settings
            notifier: Dunning notice delivery (logs only when omitted)
        """
        self.db = db
        self.registry = registry
        self.policy = policy

        self.dunning = DunningEngine(policy, notifier or LoggingNotifier())
        self.evaluator = PlanViolationEvaluator(db, policy)
        self.trials = TrialExpiryPolicy(db, self.dunning, policy)
        self.webhooks = WebhookDispatcher(registry, db, self.dunning, self.evaluator, policy)

    # ========================================================================
    # PLANS
    # ========================================================================

    async def get_plans(self) -> list[Plan]:
        """Active plans ordered by sort_order."""
        return await self.db.list_active_plans()

    async def get_plan_by_slug(self, slug: str) -> Plan | None:
        return await self.db.get_plan_by_slug(slug)

    async def update_plan_details(
        self,
        slug: str,
        description: str | None = None,
        features: list[str] | None = None,
        limits: dict[str, int | None] | None = None,
        is_active: bool | None = None,
        sort_order: int | None = None,
    ) -> Plan:
        """
        Edit a plan's description, features, limits, visibility or order.

        Raises:
            NotFoundError: Plan does not exist
        """
        plan = await self.db.get_plan_by_slug(slug)
        if plan is None:
            raise NotFoundError(f"Plan {slug} not found")

        updated = await self.db.update_plan_details(
            plan.id,
            description=description,
            features=features,
            limits=limits,
            is_active=is_active,
            sort_order=sort_order,
        )
        if updated is None:
            raise NotFoundError(f"Plan {slug} not found")

        logger.info("Plan updated", extra={"plan": slug})
        return updated

    # ========================================================================
    # CUSTOMERS
    # ========================================================================

    async def get_or_create_customer(
        self,
        organization_id: str,
        email: str,
        name: str | None = None,
        preferred_provider: ProviderType | None = None,
    ) -> Customer:
        """
        Get the organization's billing customer, creating it on first use.

        The customer is created with the preferred provider (or the default one)
        and linked to the provider-side record that call returns.

        Raises:
            ValidationError: If the email is malformed (checked before any provider call)
            ProviderNotConfiguredError: If the provider is not configured
            UpstreamProviderError: If the provider rejects the customer
        """
        customer = await self.db.get_customer_by_organization(organization_id)
        if customer:
            return customer

        try:
            email = normalize_email(email)
        except ValueError as e:
            raise ValidationError("Invalid billing email format") from e

        provider_type = preferred_provider or self.registry.default_provider()
        provider = self.registry.resolve(provider_type)

        result = await provider.create_customer(email, name, organization_id)
        provider_customer_id = self._unwrap(provider, result)

        customer = Customer(
            id=new_id("cust"),
            organization_id=organization_id,
            email=email,
            name=name,
            default_provider=provider.type,
            provider_ids={provider.type: provider_customer_id},
        )
        created = await self.db.create_customer(customer)
        if created is None:
            # Lost a race with a concurrent first use
            existing = await self.db.get_customer_by_organization(organization_id)
            if existing is None:
                raise ConflictError(f"Could not create customer for organization {organization_id}")
            return existing

        logger.info(
            "Created billing customer",
            extra={
                "organization_id": organization_id,
                "customer_id": customer.id,
                "provider": provider.type.value,
            },
        )
        return created

    async def link_provider_customer(self, organization_id: str, provider: ProviderType) -> Customer:
        """
        Set up the organization's existing customer at another provider.

        No-op if the customer is already linked there.

        Raises:
            NotFoundError: Organization has no billing customer yet
            ProviderNotConfiguredError: If the provider is not configured
            UpstreamProviderError: If the provider rejects the customer
        """
        customer = await self.db.get_customer_by_organization(organization_id)
        if customer is None:
            raise NotFoundError(f"No billing customer for organization {organization_id}")

        adapter = self.registry.resolve(provider)
        if customer.provider_id(adapter.type):
            return customer

        result = await adapter.create_customer(customer.email, customer.name, organization_id)
        provider_customer_id = self._unwrap(adapter, result)

        linked = await self.db.set_customer_provider_id(customer.id, adapter.type, provider_customer_id)
        if linked is None:
            raise NotFoundError(f"Customer {customer.id} not found")

        logger.info(
            "Linked billing customer to provider",
            extra={
                "organization_id": organization_id,
                "customer_id": customer.id,
                "provider": adapter.type.value,
            },
        )
        return linked

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    async def create_subscription(
        self,
        organization_id: str,
        plan_slug: str,
        payment_method_id: str | None = None,
        provider: ProviderType | None = None,
        email: str | None = None,
    ) -> Subscription:
        """
        Subscribe an organization to a plan.

        Args:
            organization_id: Subscribing organization
            plan_slug: Plan to subscribe to
            payment_method_id: Default payment method (provider-native)
            provider: Provider to bill through (defaults to the customer's)
            email: Billing email, required only if the organization has no customer yet

        Returns:
            Subscription: Stored subscription with the provider-reported status

        Raises:
            NotFoundError: Organization or plan does not exist
            PlanNotConfiguredError: Plan has no price for the provider
            CustomerNotLinkedError: Customer has no record at the provider
            UpstreamProviderError: Provider call failed
        """
        adapter, customer, plan, price_id, provider_customer_id = await self._prepare(
            organization_id, plan_slug, provider, email
        )

        result = await adapter.create_subscription(
            customer_id=provider_customer_id,
            plan_id=price_id,
            payment_method_id=payment_method_id,
            trial_days=plan.trial_days,
        )
        remote = self._unwrap(adapter, result)

        now = datetime.now(UTC)
        subscription = await self.db.create_subscription(
            Subscription(
                id=new_id("sub"),
                customer_id=customer.id,
                plan_id=plan.id,
                provider=adapter.type,
                provider_sub_id=remote.provider_id,
                status=remote.status,
                current_period_start=remote.current_period_start or now,
                current_period_end=remote.current_period_end or now,
                cancel_at_period_end=remote.cancel_at_period_end,
                trial_end=remote.trial_end,
            )
        )
        if subscription is None:
            # The provider's webhook stored it first
            subscription = await self.db.get_subscription_by_provider_id(adapter.type, remote.provider_id)
            if subscription is None:
                raise ConflictError(f"Could not store subscription {remote.provider_id}")

        await self.db.update_organization_plan(organization_id, plan.slug)

        logger.info(
            "Subscription created",
            extra={
                "organization_id": organization_id,
                "subscription_id": subscription.id,
                "plan": plan.slug,
                "provider": adapter.type.value,
                "status": subscription.status.value,
            },
        )
        return subscription

    async def create_checkout_session(
        self,
        organization_id: str,
        plan_slug: str,
        success_url: str,
        cancel_url: str,
        provider: ProviderType | None = None,
        email: str | None = None,
    ) -> dict[str, str]:
        """
        Create a hosted checkout page for a plan.

        Same preconditions as create_subscription. Nothing is stored: the
        subscription arrives through the provider's webhooks.

        Returns:
            dict: {"url": checkout URL}
        """
        adapter, customer, plan, price_id, provider_customer_id = await self._prepare(
            organization_id, plan_slug, provider, email
        )

        result = await adapter.create_checkout_session(
            customer_id=provider_customer_id,
            plan_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            trial_days=plan.trial_days,
            metadata={"organization_id": organization_id, "plan_id": plan.id},
            customer_email=customer.email,
        )
        session = self._unwrap(adapter, result)

        logger.info(
            "Checkout session created",
            extra={
                "organization_id": organization_id,
                "plan": plan.slug,
                "provider": adapter.type.value,
                "session_id": session.id,
            },
        )
        return {"url": session.url}

    async def cancel_subscription(self, subscription_id: str, immediately: bool = False) -> Subscription:
        """
        Cancel now, or at the end of the current period.

        Raises:
            NotFoundError: Subscription missing or never reached the provider
            ConflictError: Subscription already cancelled
            UpstreamProviderError: Provider call failed
        """
        subscription = await self._get_provider_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise ConflictError(f"Subscription {subscription_id} is already cancelled")

        adapter = self.registry.resolve(subscription.provider)
        result = await adapter.cancel_subscription(subscription.provider_sub_id, immediately)
        remote = self._unwrap(adapter, result)

        now = datetime.now(UTC)

        def apply(current: Subscription) -> Subscription | None:
            if current.status == SubscriptionStatus.CANCELLED:
                return None
            changes: dict = {
                "status": self._next_status(current, remote.status),
                "cancel_at_period_end": remote.cancel_at_period_end,
            }
            if immediately:
                changes["cancelled_at"] = now
            if changes["status"] == SubscriptionStatus.CANCELLED:
                changes["cancelled_at"] = current.cancelled_at or now
                changes["cancel_at_period_end"] = False
            return current.model_copy(update=changes)

        before, after = await self.db.modify_subscription(subscription_id, apply)
        if before is not None and after is not None:
            track_subscription_transition(before.status.value, after.status.value)

        logger.info(
            "Subscription cancelled",
            extra={
                "subscription_id": subscription_id,
                "immediately": immediately,
                "status": after.status.value if after else None,
            },
        )
        return after

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        """
        Undo a scheduled cancellation.

        Raises:
            NotFoundError: Subscription missing or never reached the provider
            ConflictError: Subscription is cancelled, or not scheduled to cancel
            UpstreamProviderError: Provider call failed
        """
        subscription = await self._get_provider_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise ConflictError(f"Subscription {subscription_id} is cancelled and cannot be resumed")
        if not subscription.cancel_at_period_end:
            raise ConflictError(
                "Subscription is not scheduled for cancellation",
                kind=ErrorKind.PRECONDITION,
            )

        adapter = self.registry.resolve(subscription.provider)
        result = await adapter.resume_subscription(subscription.provider_sub_id)
        remote = self._unwrap(adapter, result)

        def apply(current: Subscription) -> Subscription | None:
            if current.status == SubscriptionStatus.CANCELLED:
                return None
            return current.model_copy(
                update={
                    "status": self._next_status(current, remote.status),
                    "cancel_at_period_end": False,
                    "cancelled_at": None,
                }
            )

        before, after = await self.db.modify_subscription(subscription_id, apply)
        if before is not None and after is not None:
            track_subscription_transition(before.status.value, after.status.value)
        if after is not None and after.status == SubscriptionStatus.CANCELLED:
            raise ConflictError(f"Subscription {subscription_id} was cancelled while resuming")

        logger.info("Subscription resumed", extra={"subscription_id": subscription_id})
        return after

    async def get_subscription(self, organization_id: str) -> Subscription | None:
        """Organization's current (active, trialing or past due) subscription."""
        customer = await self.db.get_customer_by_organization(organization_id)
        if customer is None:
            return None
        return await self.db.get_current_subscription(customer.id)

    # ========================================================================
    # HISTORY
    # ========================================================================

    async def get_payment_history(self, organization_id: str, limit: int | None = None) -> list[Payment]:
        customer = await self.db.get_customer_by_organization(organization_id)
        if customer is None:
            return []
        return await self.db.list_payments(customer.id, limit or self.policy.history_limit)

    async def get_invoices(self, organization_id: str, limit: int | None = None) -> list[Invoice]:
        customer = await self.db.get_customer_by_organization(organization_id)
        if customer is None:
            return []
        return await self.db.list_invoices(customer.id, limit or self.policy.history_limit)

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    async def handle_webhook(
        self, provider: ProviderType | str, raw_payload: bytes | str, signature: str | None
    ) -> WebhookOutcome:
        """Verify and apply a provider webhook (see WebhookDispatcher)."""
        return await self.webhooks.dispatch(provider, raw_payload, signature)

    # ========================================================================
    # PLAN VIOLATIONS
    # ========================================================================

    async def check_plan_violations(
        self, organization_id: str, target_plan_slug: str
    ) -> list[PlanViolation]:
        """
        Violations the organization would have on ``target_plan_slug``.

        Nothing is stored.

        Raises:
            NotFoundError: Organization or plan does not exist
        """
        await self._require_organization(organization_id)
        return await self.evaluator.evaluate(organization_id, target_plan_slug)

    async def get_active_violations(self, organization_id: str) -> list[PlanViolation]:
        """Stored violation snapshot (empty if none)."""
        organization = await self._require_organization(organization_id)
        return organization.plan_violations or []

    async def clear_violations(self, organization_id: str) -> None:
        await self._require_organization(organization_id)
        await self.db.set_plan_violations(organization_id, None)
        logger.info("Plan violations cleared", extra={"organization_id": organization_id})

    # ========================================================================
    # DUNNING ADMIN
    # ========================================================================

    async def list_past_due(
        self, limit: int = 50, offset: int = 0
    ) -> tuple[list[PastDueSubscription], int]:
        """Past-due subscriptions, most recent failure first, with total count."""
        return await self.db.list_past_due(limit=limit, offset=offset)

    async def extend_grace_period(self, subscription_id: str, days: int) -> Subscription:
        """
        Push a past-due subscription's grace period out by ``days``.

        Raises:
            ValidationError: days outside 1..max_grace_extension_days
            NotFoundError: Subscription does not exist
            ConflictError: Subscription is not past due
        """
        if days < 1 or days > self.policy.max_grace_extension_days:
            raise ValidationError(
                f"Grace extension must be between 1 and {self.policy.max_grace_extension_days} days"
            )

        def extend(current: Subscription) -> Subscription | None:
            if current.status != SubscriptionStatus.PAST_DUE:
                raise ConflictError(
                    f"Subscription {subscription_id} is {current.status.value}, not past_due"
                )
            return self.dunning.extend_grace(current, days)

        _, after = await self.db.modify_subscription(subscription_id, extend)
        if after is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if after.status != SubscriptionStatus.PAST_DUE:
            raise ConflictError(f"Subscription {subscription_id} is {after.status.value}, not past_due")

        logger.info(
            "Grace period extended",
            extra={
                "subscription_id": subscription_id,
                "days": days,
                "grace_period_end": after.grace_period_end.isoformat(),
            },
        )
        return after

    async def expire_trials(self, now: datetime | None = None) -> int:
        """Move overdue trials to past_due (only when trial_expiry_mode is sweep)."""
        return await self.trials.expire_trials(now)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    async def _require_organization(self, organization_id: str):
        organization = await self.db.get_organization(organization_id)
        if organization is None:
            raise NotFoundError(f"Organization {organization_id} not found")
        return organization

    async def _prepare(
        self,
        organization_id: str,
        plan_slug: str,
        provider: ProviderType | None,
        email: str | None,
    ) -> tuple[PaymentProvider, Customer, Plan, str, str]:
        """Resolve and check everything a subscription or checkout needs."""
        organization = await self._require_organization(organization_id)

        plan = await self.db.get_plan_by_slug(plan_slug)
        if plan is None:
            raise NotFoundError(f"Plan {plan_slug} not found")

        customer = await self.db.get_customer_by_organization(organization_id)
        if customer is None:
            if not email:
                raise ValidationError("A billing email is required to set up billing")
            customer = await self.get_or_create_customer(
                organization_id, email, organization.name, provider
            )

        adapter = self.registry.resolve(provider or customer.default_provider)

        price_id = plan.price_id(adapter.type)
        if not price_id:
            raise PlanNotConfiguredError(f"Plan {plan.slug} not configured for {adapter.type.value}")

        provider_customer_id = customer.provider_id(adapter.type)
        if not provider_customer_id:
            raise CustomerNotLinkedError(f"Customer not set up for {adapter.type.value}")

        return adapter, customer, plan, price_id, provider_customer_id

    async def _get_provider_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.db.get_subscription(subscription_id)
        if subscription is None or not subscription.provider_sub_id:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    @staticmethod
    def _next_status(current: Subscription, reported: SubscriptionStatus) -> SubscriptionStatus:
        if current.status.can_transition(reported):
            return reported
        logger.warning(
            "Provider reported an invalid status transition",
            extra={
                "subscription_id": current.id,
                "from_status": current.status.value,
                "to_status": reported.value,
            },
        )
        return current.status

    @staticmethod
    def _unwrap(provider: PaymentProvider, result: ProviderResult):
        """Data of a successful result; raise the matching BillingError otherwise."""
        if result.ok and result.data is not None:
            return result.data
        message = result.error or f"{provider.name} request failed"
        if result.kind in (None, ErrorKind.UPSTREAM):
            raise UpstreamProviderError(provider.type.value, message, result.code)
        raise BillingError(message, kind=result.kind)


# Global instance
_billing_service: BillingService | None = None


async def get_billing_service() -> BillingService:
    """
    Get global billing service instance (singleton).

    Returns:
        BillingService: Service wired to the global database and provider registry
    """
    global _billing_service
    if _billing_service is None:
        from billing_core.config import get_settings

        settings = get_settings()
        db = await get_billing_db()
        _billing_service = BillingService(db, build_provider_registry(settings), settings.billing)
    return _billing_service
