"""
Billing services.

- billing_service.py: consumer-facing billing operations
- webhooks.py: provider webhook dispatch (idempotent, serialized per subscription)
- dunning.py: payment failure/success handling and dunning notices
- violations.py: plan-limit evaluation
- trials.py: trial expiry policy
"""

from billing_core.services.billing_service import BillingService, get_billing_service
from billing_core.services.dunning import DunningEngine
from billing_core.services.trials import TrialExpiryPolicy
from billing_core.services.violations import PlanViolationEvaluator
from billing_core.services.webhooks import SubscriptionLocks, WebhookDispatcher

__all__ = [
    "BillingService",
    "DunningEngine",
    "PlanViolationEvaluator",
    "SubscriptionLocks",
    "TrialExpiryPolicy",
    "WebhookDispatcher",
    "get_billing_service",
]
