"""
Data models for billing and organizations.
"""

from billing_core.models.billing import (
    CheckoutSession,
    Customer,
    DunningTemplate,
    Invoice,
    Payment,
    Plan,
    PlanViolation,
    ProviderResult,
    ProviderSubscription,
    ProviderType,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventType,
)
from billing_core.models.organization import Organization, OrganizationMember, UsageRecord

__all__ = [
    "CheckoutSession",
    "Customer",
    "DunningTemplate",
    "Invoice",
    "Organization",
    "OrganizationMember",
    "Payment",
    "Plan",
    "PlanViolation",
    "ProviderResult",
    "ProviderSubscription",
    "ProviderType",
    "Subscription",
    "SubscriptionStatus",
    "UsageRecord",
    "WebhookEvent",
    "WebhookEventType",
]
