"""
Stripe payment provider adapter.

Features:
- Customer and subscription management through the Stripe SDK
- Hosted Checkout sessions in subscription mode
- Webhook verification with Stripe's signing scheme
- Status normalization onto the billing state machine
"""

import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

import stripe

from billing_core.config import ProviderPolicyConfig, StripeConfig
from billing_core.errors import ErrorKind
from billing_core.models.billing import (
    CheckoutSession,
    ProviderResult,
    ProviderSubscription,
    ProviderType,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventType,
)
from billing_core.providers.base import PaymentProvider
from billing_core.resilience.circuit_breakers import ProviderCallPolicy

logger = logging.getLogger(__name__)


STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "trialing": SubscriptionStatus.TRIALING,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
}

EVENT_TYPE_MAP: dict[str, WebhookEventType] = {
    "checkout.session.completed": WebhookEventType.SUBSCRIPTION_UPDATED,
    "invoice.paid": WebhookEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "customer.subscription.created": WebhookEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": WebhookEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_CANCELLED,
}


def map_status(status: str | None) -> SubscriptionStatus:
    """Normalize a Stripe subscription status (unknown values count as incomplete)."""
    return STATUS_MAP.get(status or "", SubscriptionStatus.INCOMPLETE)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _timestamp(value: Any) -> datetime | None:
    """Stripe timestamps are unix seconds."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _period_bounds(subscription: Any) -> tuple[datetime | None, datetime | None]:
    """
    Current period of a subscription.

    Newer API versions report the period on the subscription items instead of
    the subscription itself.
    """
    start = _field(subscription, "current_period_start")
    end = _field(subscription, "current_period_end")
    if start is None or end is None:
        items = _field(_field(subscription, "items"), "data") or []
        if items:
            start = start if start is not None else _field(items[0], "current_period_start")
            end = end if end is not None else _field(items[0], "current_period_end")
    return _timestamp(start), _timestamp(end)


def _to_provider_subscription(subscription: Any) -> ProviderSubscription:
    start, end = _period_bounds(subscription)
    return ProviderSubscription(
        provider_id=_field(subscription, "id"),
        status=map_status(_field(subscription, "status")),
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=bool(_field(subscription, "cancel_at_period_end", False)),
        trial_end=_timestamp(_field(subscription, "trial_end")),
    )


def _idempotency_key(operation: str) -> str:
    """
    Key for one logical create call.

    Generated before the call so every retry attempt reuses it and Stripe
    replays the first result instead of creating a duplicate.
    """
    return f"billing-{operation}-{uuid.uuid4().hex}"


def _object_id(value: Any) -> str | None:
    """Id of a reference that may be expanded into an object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _checkout_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Organization and plan attached when the checkout session was created."""
    metadata = metadata or {}
    return {"organization_id": metadata.get("organization_id"), "plan_id": metadata.get("plan_id")}


def _invoice_subscription_details(invoice: dict[str, Any]) -> dict[str, Any]:
    """Subscription details on an invoice (top level on older API versions, under parent on newer)."""
    return invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription id on an invoice (top level on older API versions, under parent on newer)."""
    subscription = _object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    return _object_id(_invoice_subscription_details(invoice).get("subscription"))


class StripeProvider(PaymentProvider):
    """Stripe adapter."""

    type = ProviderType.STRIPE
    name = "Stripe"

    def __init__(self, config: StripeConfig, policy_config: ProviderPolicyConfig):
        """
        Initialize Stripe adapter.

        Args:
            config: Stripe credentials
            policy_config: Timeout/retry/breaker policy
        """
        super().__init__(
            ProviderCallPolicy(
                self.type.value,
                policy_config,
                retry_on=(stripe.APIConnectionError, stripe.RateLimitError),
                exclude=(stripe.CardError, stripe.InvalidRequestError),
            )
        )
        self.config = config

        stripe.api_key = config.secret_key
        if config.api_version:
            stripe.api_version = config.api_version

        logger.info("Stripe provider initialized")

    async def create_customer(
        self, email: str, name: str | None, organization_id: str
    ) -> ProviderResult[str]:
        try:
            customer = await self._call(
                "create_customer",
                stripe.Customer.create,
                email=email,
                name=name,
                metadata={"organization_id": organization_id},
                idempotency_key=_idempotency_key("create_customer"),
            )
        except Exception as e:
            return self._failure("create_customer", e)

        logger.info(
            "Created Stripe customer",
            extra={"organization_id": organization_id, "stripe_customer_id": _field(customer, "id")},
        )
        return ProviderResult.success(_field(customer, "id"))

    async def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        payment_method_id: str | None = None,
        trial_days: int = 0,
    ) -> ProviderResult[ProviderSubscription]:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": plan_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "idempotency_key": _idempotency_key("create_subscription"),
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        if trial_days > 0:
            params["trial_period_days"] = trial_days

        try:
            subscription = await self._call(
                "create_subscription", stripe.Subscription.create, **params
            )
        except Exception as e:
            return self._failure("create_subscription", e)

        result = _to_provider_subscription(subscription)
        logger.info(
            "Created Stripe subscription",
            extra={
                "stripe_customer_id": customer_id,
                "subscription_id": result.provider_id,
                "status": result.status.value,
            },
        )
        return ProviderResult.success(result)

    async def create_checkout_session(
        self,
        customer_id: str,
        plan_id: str,
        success_url: str,
        cancel_url: str,
        trial_days: int = 0,
        metadata: dict[str, str] | None = None,
        customer_email: str | None = None,
    ) -> ProviderResult[CheckoutSession]:
        subscription_data: dict[str, Any] = {"metadata": metadata or {}}
        if trial_days > 0:
            subscription_data["trial_period_days"] = trial_days

        try:
            session = await self._call(
                "create_checkout_session",
                stripe.checkout.Session.create,
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": plan_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                subscription_data=subscription_data,
                metadata=metadata or {},
                idempotency_key=_idempotency_key("create_checkout_session"),
            )
        except Exception as e:
            return self._failure("create_checkout_session", e)

        return ProviderResult.success(
            CheckoutSession(
                id=_field(session, "id"),
                url=_field(session, "url"),
                expires_at=_timestamp(_field(session, "expires_at")),
            )
        )

    async def cancel_subscription(
        self, provider_id: str, immediately: bool = False
    ) -> ProviderResult[ProviderSubscription]:
        try:
            if immediately:
                subscription = await self._call(
                    "cancel_subscription", stripe.Subscription.cancel, provider_id
                )
            else:
                subscription = await self._call(
                    "cancel_subscription",
                    stripe.Subscription.modify,
                    provider_id,
                    cancel_at_period_end=True,
                )
        except Exception as e:
            return self._failure("cancel_subscription", e)

        logger.info(
            "Cancelled Stripe subscription",
            extra={"subscription_id": provider_id, "immediate": immediately},
        )
        return ProviderResult.success(_to_provider_subscription(subscription))

    async def resume_subscription(self, provider_id: str) -> ProviderResult[ProviderSubscription]:
        try:
            subscription = await self._call(
                "resume_subscription",
                stripe.Subscription.modify,
                provider_id,
                cancel_at_period_end=False,
            )
        except Exception as e:
            return self._failure("resume_subscription", e)

        return ProviderResult.success(_to_provider_subscription(subscription))

    async def construct_webhook_event(
        self, payload: bytes | str, signature: str | None
    ) -> ProviderResult[WebhookEvent]:
        if not self.config.webhook_secret:
            return ProviderResult.failure(
                "Webhook secret not configured", kind=ErrorKind.CONFIGURATION
            )
        if not signature:
            return ProviderResult.failure(
                "Missing webhook signature", kind=ErrorKind.AUTHENTICATION
            )

        try:
            # Verifies the signature (constant-time) and the timestamp tolerance
            event = stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
        except ValueError:
            return ProviderResult.failure("Invalid payload", kind=ErrorKind.VALIDATION)
        except stripe.SignatureVerificationError:
            return ProviderResult.failure("Invalid signature", kind=ErrorKind.AUTHENTICATION)

        try:
            body = json.loads(payload)
            obj = (body.get("data") or {}).get("object") or {}
            normalized = self._normalize_event(body, _field(event, "type"), obj)
        except (ValueError, TypeError, AttributeError) as e:
            # Signed by Stripe but not shaped like an event
            logger.warning("Malformed Stripe webhook event", extra={"error": str(e)})
            return ProviderResult.failure("Malformed event payload", kind=ErrorKind.VALIDATION)

        return ProviderResult.success(normalized)

    def _normalize_event(self, body: dict[str, Any], raw_type: str, obj: dict[str, Any]) -> WebhookEvent:
        event_type = EVENT_TYPE_MAP.get(raw_type)
        fields: dict[str, Any] = {}

        if raw_type == "checkout.session.completed":
            if obj.get("mode") == "subscription":
                fields = {
                    "subscription_ref": _object_id(obj.get("subscription")),
                    **_checkout_metadata(obj.get("metadata")),
                }
            else:
                event_type = None
        elif event_type in (
            WebhookEventType.SUBSCRIPTION_UPDATED,
            WebhookEventType.SUBSCRIPTION_CANCELLED,
        ):
            start, end = _period_bounds(obj)
            fields = {
                "subscription_ref": obj.get("id"),
                "status": map_status(obj["status"]) if obj.get("status") else None,
                "current_period_start": start,
                "current_period_end": end,
                "cancel_at_period_end": obj.get("cancel_at_period_end"),
                "trial_end": _timestamp(obj.get("trial_end")),
                **_checkout_metadata(obj.get("metadata")),
            }
        elif event_type in (WebhookEventType.PAYMENT_SUCCEEDED, WebhookEventType.PAYMENT_FAILED):
            paid = event_type == WebhookEventType.PAYMENT_SUCCEEDED
            amount = obj.get("amount_paid") if paid else obj.get("amount_due")
            last_error = (obj.get("last_finalization_error") or {}).get("message")
            fields = {
                "subscription_ref": _invoice_subscription_id(obj),
                "amount": amount,
                "currency": obj.get("currency"),
                "payment_ref": obj.get("payment_intent") or obj.get("charge"),
                "invoice_ref": obj.get("id"),
                "invoice_url": obj.get("hosted_invoice_url"),
                "receipt_url": obj.get("invoice_pdf"),
                "failure_reason": last_error,
                **_checkout_metadata(_invoice_subscription_details(obj).get("metadata")),
            }

        created = body.get("created")
        return WebhookEvent(
            id=body.get("id"),
            provider=self.type,
            raw_type=raw_type,
            type=event_type,
            data=obj,
            created_at=_timestamp(created) or datetime.now(UTC),
            **fields,
        )

    def _describe_error(self, error: Exception) -> tuple[str, str | None]:
        if isinstance(error, stripe.StripeError):
            message = error.user_message or str(error) or "Stripe API error"
            return message, error.code
        return super()._describe_error(error)
