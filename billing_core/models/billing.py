"""
Billing data models.

Provider-agnostic representations of customers, plans, subscriptions and the
append-only payment ledger, plus the normalized shapes every payment provider
adapter returns.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field, field_validator

from billing_core.errors import ErrorKind


class ProviderType(str, Enum):
    """Supported payment providers, in default priority order."""

    STRIPE = "stripe"
    FLUTTERWAVE = "flutterwave"


class SubscriptionStatus(str, Enum):
    """Normalized subscription lifecycle state."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"  # Terminal
    INCOMPLETE = "incomplete"  # Created, awaiting first payment

    def can_transition(self, target: "SubscriptionStatus") -> bool:
        """Check whether moving from this state to ``target`` is allowed."""
        if self == target:
            return True
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELLED,
        }
    ),
    SubscriptionStatus.TRIALING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.CANCELLED: frozenset(),
}

# Statuses that count as "the organization's current subscription"
CURRENT_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
)


class PlanInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class Currency(str, Enum):
    """Settlement currencies accepted by at least one provider."""

    USD = "usd"
    EUR = "eur"
    GBP = "gbp"
    NGN = "ngn"
    KES = "kes"
    GHS = "ghs"
    ZAR = "zar"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    REFUNDED = "refunded"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class WebhookEventType(str, Enum):
    """Provider webhook events the dispatcher acts on."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


class WebhookOutcomeStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"  # Event type the billing core does not act on
    DUPLICATE = "duplicate"  # Event id already processed
    NOT_FOUND = "not_found"  # No local subscription for the event


class ViolationType(str, Enum):
    TEAM_MEMBERS = "team_members"
    STORAGE = "storage"
    MEETINGS = "meetings"


class ViolationAction(str, Enum):
    NOTIFY_ADMIN = "notify_admin"
    GRACE_PERIOD = "grace_period"
    READ_ONLY = "read_only"


class DunningTemplate(str, Enum):
    """Payment-failed notice, escalating with the retry count."""

    FIRST = "first"
    SECOND = "second"
    FINAL = "final"


# ============================================================================
# PERSISTED ENTITIES
# ============================================================================


def normalize_email(email: str) -> str:
    """
    Lowercased billing email.

    Raises:
        ValueError: If the address has no @ or no dot in the domain
    """
    if "@" not in email or "." not in email.split("@")[-1]:
        raise ValueError("Invalid email format")
    return email.lower()


class Customer(BaseModel):
    """
    Billing customer (one per organization).

    Holds one provider-native customer id per provider the organization has
    been set up with.
    """

    id: str
    organization_id: str
    email: str
    name: str | None = None
    default_provider: ProviderType
    provider_ids: dict[ProviderType, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str) -> str:
        """Basic email validation."""
        return normalize_email(v)

    def provider_id(self, provider: ProviderType) -> str | None:
        """Provider-native customer id, or None if not linked."""
        return self.provider_ids.get(provider)


class Plan(BaseModel):
    """
    Billing plan.

    Amount, currency, interval and trial length are fixed once the plan exists;
    description, features and limits may be edited later.
    """

    id: str
    slug: str = Field(..., min_length=1, max_length=64)
    name: str
    description: str | None = None
    amount: int = Field(..., ge=0, description="Price in minor currency units")
    currency: Currency = Currency.USD
    interval: PlanInterval = PlanInterval.MONTH
    trial_days: int = Field(default=0, ge=0)
    features: list[str] = Field(default_factory=list)
    limits: dict[str, int | None] = Field(default_factory=dict)
    is_active: bool = True
    sort_order: int = 0
    provider_price_ids: dict[ProviderType, str] = Field(default_factory=dict)

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v: str) -> str:
        if v != v.lower() or " " in v:
            raise ValueError("slug must be lowercase without spaces")
        return v

    def price_id(self, provider: ProviderType) -> str | None:
        """Provider price/plan identifier, or None if the plan is not sold there."""
        return self.provider_price_ids.get(provider)

    def limit(self, key: str) -> int | None:
        """
        Numeric limit for ``key``.

        Returns None for unlimited: missing key, null value, or a negative value.
        """
        value = self.limits.get(key)
        if value is None or value < 0:
            return None
        return value


class Subscription(BaseModel):
    """Provider-agnostic subscription record."""

    id: str
    customer_id: str
    plan_id: str
    provider: ProviderType
    provider_sub_id: str | None = None
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None

    # Dunning
    grace_period_end: datetime | None = None
    payment_failed_at: datetime | None = None
    payment_retry_count: int = Field(default=0, ge=0)

    cancelled_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Optimistic concurrency counter, bumped on every write
    version: int = 0


class Payment(BaseModel):
    """Append-only payment ledger entry."""

    id: str
    customer_id: str
    amount: int
    currency: str
    status: PaymentStatus
    description: str | None = None
    receipt_url: str | None = None
    provider_payment_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Invoice(BaseModel):
    """Append-only invoice ledger entry."""

    id: str
    customer_id: str
    amount: int
    currency: str
    status: InvoiceStatus
    provider_invoice_id: str | None = None
    invoice_url: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PlanViolation(BaseModel):
    """Usage that exceeds a plan limit, with the enforcement action to apply."""

    type: ViolationType
    current: float
    limit: int
    action: ViolationAction
    grace_period_end: datetime | None = None


class PastDueSubscription(BaseModel):
    """Row of the failed-payments listing."""

    subscription: Subscription
    organization_id: str
    organization_name: str
    customer_email: str
    plan_slug: str
    days_until_suspension: int | None = None


# ============================================================================
# PROVIDER ADAPTER RESULTS
# ============================================================================


T = TypeVar("T")


class ProviderResult(BaseModel, Generic[T]):
    """
    Outcome of a provider adapter call.

    Adapters never raise: SDK errors, HTTP errors, timeouts and open circuits all
    come back as ``ok=False`` with a message and an ErrorKind.
    """

    ok: bool
    data: T | None = None
    error: str | None = None
    kind: ErrorKind | None = None
    code: str | None = None

    @classmethod
    def success(cls, data: T) -> "ProviderResult[T]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        kind: ErrorKind = ErrorKind.UPSTREAM,
        code: str | None = None,
    ) -> "ProviderResult[T]":
        return cls(ok=False, error=error, kind=kind, code=code)


class ProviderSubscription(BaseModel):
    """Subscription state as reported by a provider."""

    provider_id: str
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None


class CheckoutSession(BaseModel):
    """Hosted checkout page the customer is redirected to."""

    id: str
    url: str
    expires_at: datetime | None = None


class WebhookEvent(BaseModel):
    """
    Verified provider webhook event.

    ``type`` is the normalized event type, or None for events the billing core
    does not act on; ``raw_type`` keeps the provider's own name for logging.
    ``data`` is the provider's event object, untouched. The remaining optional
    fields are the normalized values handlers rely on; None means the event did
    not carry that value.
    """

    id: str
    provider: ProviderType
    raw_type: str
    type: WebhookEventType | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Provider-native id of the subscription the event concerns
    subscription_ref: str | None = None

    # Subscription events
    status: SubscriptionStatus | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool | None = None
    trial_end: datetime | None = None

    # Checkout metadata, used to create the local subscription on first sight
    organization_id: str | None = None
    plan_id: str | None = None

    # Payment events
    amount: int | None = None
    currency: str | None = None
    payment_ref: str | None = None
    invoice_ref: str | None = None
    invoice_url: str | None = None
    receipt_url: str | None = None
    failure_reason: str | None = None


class WebhookOutcome(BaseModel):
    """Result of dispatching one webhook delivery."""

    status: WebhookOutcomeStatus
    provider: ProviderType
    event_id: str
    event_type: str
    subscription_id: str | None = None
    message: str | None = None
