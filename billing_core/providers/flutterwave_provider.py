"""
Flutterwave payment provider adapter (v3 REST API).

Flutterwave has no customer objects and creates subscriptions only when a
customer pays through a payment-plan checkout. So:
- create_customer issues a local reference id
- create_subscription returns a placeholder in the incomplete state; the real
  subscription arrives through checkout and webhooks
- checkout goes through POST /payments with the payment plan id

Webhooks are signed with HMAC-SHA256 (hex) of the raw body using the webhook
secret and compared in constant time.
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from billing_core.config import FlutterwaveConfig, ProviderPolicyConfig
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

CHECKOUT_TTL = timedelta(minutes=30)
PLACEHOLDER_PERIOD = timedelta(days=30)

EVENT_TYPE_MAP: dict[str, WebhookEventType] = {
    "charge.failed": WebhookEventType.PAYMENT_FAILED,
    "subscription.updated": WebhookEventType.SUBSCRIPTION_UPDATED,
    "subscription.cancelled": WebhookEventType.SUBSCRIPTION_CANCELLED,
}


class FlutterwaveAPIError(Exception):
    """Flutterwave returned an error response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FlutterwaveClientError(FlutterwaveAPIError):
    """4xx response: the request itself was rejected."""

    pass


def map_status(status: str | None) -> SubscriptionStatus:
    """Flutterwave reports only active vs. not active."""
    return SubscriptionStatus.ACTIVE if status == "active" else SubscriptionStatus.CANCELLED


def sign_payload(payload: bytes | str, secret: str) -> str:
    """HMAC-SHA256 hex digest Flutterwave sends in the verif-hash header."""
    body = payload.encode() if isinstance(payload, str) else payload
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _event_id(body: dict[str, Any], raw_type: str, data: dict[str, Any]) -> str:
    """
    Idempotency key for a delivery.

    Flutterwave payloads usually have no event id. A charge completes once, so
    charge.completed is keyed on the charge id. Other events (a subscription is
    updated many times) are keyed on a digest of the body: a redelivery matches,
    a later change does not.
    """
    if body.get("id") is not None:
        return str(body["id"])
    if raw_type == "charge.completed" and data.get("id") is not None:
        return f"{raw_type}:{data['id']}"
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
    return f"{raw_type}:{hashlib.sha256(canonical.encode()).hexdigest()[:32]}"


class FlutterwaveProvider(PaymentProvider):
    """Flutterwave adapter."""

    type = ProviderType.FLUTTERWAVE
    name = "Flutterwave"

    def __init__(
        self,
        config: FlutterwaveConfig,
        policy_config: ProviderPolicyConfig,
        http_client: httpx.Client | None = None,
    ):
        """
        Initialize Flutterwave adapter.

        Args:
            config: Flutterwave credentials
            policy_config: Timeout/retry/breaker policy
            http_client: Preconfigured client (tests inject a MockTransport)
        """
        super().__init__(
            ProviderCallPolicy(
                self.type.value,
                policy_config,
                retry_on=(httpx.TransportError,),
                exclude=(FlutterwaveClientError,),
            )
        )
        self.config = config
        self.client = http_client or httpx.Client(
            base_url=config.base_url,
            headers={
                "Authorization": f"Bearer {config.secret_key}",
                "Content-Type": "application/json",
            },
            timeout=policy_config.timeout_seconds,
        )

        logger.info("Flutterwave provider initialized")

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Perform one API request.

        Raises:
            FlutterwaveClientError: 4xx response
            FlutterwaveAPIError: 5xx response or a body whose status is not "success"
            httpx.TransportError: Network failure
        """
        response = self.client.request(method, path, json=payload)

        try:
            body = response.json()
        except ValueError:
            body = {}

        message = body.get("message") or f"Flutterwave API error: {response.status_code}"
        if 400 <= response.status_code < 500:
            raise FlutterwaveClientError(message, response.status_code)
        if response.is_error or body.get("status") != "success":
            raise FlutterwaveAPIError(message, response.status_code)

        return body

    async def create_customer(
        self, email: str, name: str | None, organization_id: str
    ) -> ProviderResult[str]:
        customer_id = f"flw_cus_{secrets.token_hex(12)}"
        logger.info(
            "Created Flutterwave customer reference",
            extra={"organization_id": organization_id, "flutterwave_customer_id": customer_id},
        )
        return ProviderResult.success(customer_id)

    async def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        payment_method_id: str | None = None,
        trial_days: int = 0,
    ) -> ProviderResult[ProviderSubscription]:
        now = datetime.now(UTC)
        subscription = ProviderSubscription(
            provider_id=f"flw_sub_{secrets.token_hex(12)}",
            status=SubscriptionStatus.INCOMPLETE,
            current_period_start=now,
            current_period_end=now + PLACEHOLDER_PERIOD,
            cancel_at_period_end=False,
            trial_end=now + timedelta(days=trial_days) if trial_days > 0 else None,
        )
        logger.info(
            "Created Flutterwave subscription placeholder (completes via checkout)",
            extra={"flutterwave_customer_id": customer_id, "payment_plan": plan_id},
        )
        return ProviderResult.success(subscription)

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
        try:
            payment_plan = int(plan_id)
        except ValueError:
            return ProviderResult.failure(
                f"Invalid Flutterwave payment plan id: {plan_id}", kind=ErrorKind.CONFIGURATION
            )

        tx_ref = f"{self.config.tx_ref_prefix}_sub_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        payload = {
            "tx_ref": tx_ref,
            "redirect_url": success_url,
            "payment_plan": payment_plan,
            "customer": {"email": customer_email or ""},
            "meta": {**(metadata or {}), "customer_id": customer_id, "cancel_url": cancel_url},
        }

        try:
            body = await self._call("create_checkout_session", self._request, "POST", "/payments", payload)
        except Exception as e:
            return self._failure("create_checkout_session", e)

        link = (body.get("data") or {}).get("link")
        if not link:
            return ProviderResult.failure("Flutterwave returned no checkout link")

        return ProviderResult.success(
            CheckoutSession(id=tx_ref, url=link, expires_at=datetime.now(UTC) + CHECKOUT_TTL)
        )

    async def cancel_subscription(
        self, provider_id: str, immediately: bool = False
    ) -> ProviderResult[ProviderSubscription]:
        # Flutterwave cancels immediately; there is no end-of-period flag
        try:
            await self._call(
                "cancel_subscription", self._request, "PUT", f"/subscriptions/{provider_id}/cancel"
            )
        except Exception as e:
            return self._failure("cancel_subscription", e)

        logger.info("Cancelled Flutterwave subscription", extra={"subscription_id": provider_id})
        return ProviderResult.success(
            ProviderSubscription(
                provider_id=provider_id,
                status=SubscriptionStatus.CANCELLED,
                cancel_at_period_end=False,
            )
        )

    async def resume_subscription(self, provider_id: str) -> ProviderResult[ProviderSubscription]:
        try:
            await self._call(
                "resume_subscription", self._request, "PUT", f"/subscriptions/{provider_id}/activate"
            )
            body = await self._call(
                "get_subscription", self._request, "GET", f"/subscriptions/{provider_id}"
            )
        except Exception as e:
            return self._failure("resume_subscription", e)

        data = body.get("data") or {}
        return ProviderResult.success(
            ProviderSubscription(
                provider_id=provider_id,
                status=map_status(data.get("status")),
                cancel_at_period_end=False,
                current_period_start=_parse_datetime(data.get("created_at")),
                current_period_end=_parse_datetime(data.get("next_due_date")),
            )
        )

    async def construct_webhook_event(
        self, payload: bytes | str, signature: str | None
    ) -> ProviderResult[WebhookEvent]:
        if not self.config.webhook_secret:
            return ProviderResult.failure(
                "Webhook secret not configured", kind=ErrorKind.CONFIGURATION
            )

        expected = sign_payload(payload, self.config.webhook_secret)
        if not signature or not hmac.compare_digest(expected, signature):
            return ProviderResult.failure(
                "Invalid webhook signature", kind=ErrorKind.AUTHENTICATION
            )

        try:
            body = json.loads(payload)
        except ValueError:
            return ProviderResult.failure("Invalid webhook payload", kind=ErrorKind.VALIDATION)
        if not isinstance(body, dict):
            return ProviderResult.failure("Invalid webhook payload", kind=ErrorKind.VALIDATION)

        try:
            event = self._normalize_event(body)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Malformed Flutterwave webhook event", extra={"error": str(e)})
            return ProviderResult.failure("Malformed event payload", kind=ErrorKind.VALIDATION)

        return ProviderResult.success(event)

    def _normalize_event(self, body: dict[str, Any]) -> WebhookEvent:
        raw_type = body.get("event") or "charge.completed"
        data: dict[str, Any] = body.get("data") or body

        if raw_type == "charge.completed":
            # Flutterwave reports both outcomes of a charge on charge.completed
            event_type = (
                WebhookEventType.PAYMENT_SUCCEEDED
                if data.get("status") == "successful"
                else WebhookEventType.PAYMENT_FAILED
            )
        else:
            event_type = EVENT_TYPE_MAP.get(raw_type)

        fields: dict[str, Any] = {}
        meta = data.get("meta") or data.get("meta_data") or {}
        if event_type in (WebhookEventType.PAYMENT_SUCCEEDED, WebhookEventType.PAYMENT_FAILED):
            amount = data.get("amount")
            subscription_ref = data.get("subscription_id") or meta.get("subscription_id")
            fields = {
                "subscription_ref": str(subscription_ref) if subscription_ref is not None else None,
                # Flutterwave amounts are major units
                "amount": int(round(float(amount) * 100)) if amount is not None else None,
                "currency": (data.get("currency") or "").lower() or None,
                "payment_ref": str(data["id"]) if data.get("id") is not None else None,
                "invoice_ref": data.get("tx_ref"),
                "failure_reason": data.get("processor_response"),
            }
        elif event_type in (
            WebhookEventType.SUBSCRIPTION_UPDATED,
            WebhookEventType.SUBSCRIPTION_CANCELLED,
        ):
            subscription_id = data.get("id")
            fields = {
                "subscription_ref": str(subscription_id) if subscription_id is not None else None,
                "status": map_status(data["status"]) if data.get("status") else None,
                "current_period_end": _parse_datetime(data.get("next_due_date")),
            }
        if event_type is not None:
            fields["organization_id"] = meta.get("organization_id")
            fields["plan_id"] = meta.get("plan_id")

        return WebhookEvent(
            id=_event_id(body, raw_type, data),
            provider=self.type,
            raw_type=raw_type,
            type=event_type,
            data=data,
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(UTC),
            **fields,
        )

    def _describe_error(self, error: Exception) -> tuple[str, str | None]:
        if isinstance(error, FlutterwaveAPIError):
            code = str(error.status_code) if error.status_code else None
            return str(error), code
        if isinstance(error, httpx.HTTPError):
            return f"Flutterwave request failed: {error}", "network_error"
        return super()._describe_error(error)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()
