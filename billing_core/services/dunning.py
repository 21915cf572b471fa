"""
Dunning and grace-period engine.

Payment failure:
- payment_retry_count += 1
- grace period starts on the first failure (now + grace_period_days) and is not
  moved by later failures until a payment succeeds
- status → past_due, payment_failed_at = now
- a payment-failed notice is sent (first / second / final by retry count)

Payment success:
- status → active (trials stay trialing for $0 invoices or until trial_end),
  grace period and failure markers cleared, retry count reset
"""

import logging
from datetime import UTC, datetime, timedelta

from billing_core.config import BillingPolicyConfig
from billing_core.models.billing import (
    Customer,
    DunningTemplate,
    Subscription,
    SubscriptionStatus,
)
from billing_core.notifications import DunningNotice, Notifier
from billing_core.observability.metrics import track_dunning_notification

logger = logging.getLogger(__name__)


class DunningEngine:
    """Applies payment outcomes to subscriptions and sends dunning notices."""

    def __init__(self, policy: BillingPolicyConfig, notifier: Notifier):
        """
        Args:
            policy: Grace period length, retry ceiling, billing URL
            notifier: Delivery channel for payment-failed notices
        """
        self.policy = policy
        self.notifier = notifier

    def apply_failure(self, subscription: Subscription, now: datetime | None = None) -> Subscription:
        """Subscription after one more failed payment."""
        now = now or datetime.now(UTC)
        grace_period_end = subscription.grace_period_end or now + timedelta(
            days=self.policy.grace_period_days
        )
        return subscription.model_copy(
            update={
                "status": SubscriptionStatus.PAST_DUE,
                "payment_failed_at": now,
                "payment_retry_count": subscription.payment_retry_count + 1,
                "grace_period_end": grace_period_end,
            }
        )

    def apply_success(
        self,
        subscription: Subscription,
        amount: int | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Subscription after a successful payment.

        A trialing subscription stays trialing for a zero-amount invoice or while
        its trial has not ended; otherwise the subscription becomes active.
        """
        now = now or datetime.now(UTC)
        status = SubscriptionStatus.ACTIVE
        if subscription.status == SubscriptionStatus.TRIALING and (
            amount == 0 or (subscription.trial_end is not None and subscription.trial_end > now)
        ):
            status = SubscriptionStatus.TRIALING
        return subscription.model_copy(
            update={
                "status": status,
                "grace_period_end": None,
                "payment_failed_at": None,
                "payment_retry_count": 0,
            }
        )

    def template_for(self, retry_count: int) -> DunningTemplate:
        """
        Notice to send after ``retry_count`` failures.

        1 → first, 2 up to max_payment_retries - 1 → second, max and beyond → final.
        """
        if retry_count >= self.policy.max_payment_retries:
            return DunningTemplate.FINAL
        if retry_count >= 2:
            return DunningTemplate.SECOND
        return DunningTemplate.FIRST

    def build_notice(
        self,
        subscription: Subscription,
        customer: Customer,
        user_name: str,
    ) -> DunningNotice:
        return DunningNotice(
            template=self.template_for(subscription.payment_retry_count),
            organization_id=customer.organization_id,
            email=customer.email,
            user_name=user_name,
            grace_ends_at=subscription.grace_period_end or datetime.now(UTC),
            update_url=f"{self.policy.web_url.rstrip('/')}/settings/billing",
            retry_count=subscription.payment_retry_count,
        )

    async def notify_failure(
        self,
        subscription: Subscription,
        customer: Customer,
        user_name: str,
    ) -> DunningTemplate | None:
        """
        Send the payment-failed notice.

        Delivery errors are logged and swallowed: the failed payment has already
        been recorded and must not be rolled back because an email bounced.

        Returns:
            DunningTemplate: Template sent, or None if delivery failed
        """
        notice = self.build_notice(subscription, customer, user_name)
        try:
            await self.notifier.send_dunning_notice(notice)
        except Exception as e:
            logger.error(
                "Failed to send dunning notice",
                extra={
                    "organization_id": customer.organization_id,
                    "subscription_id": subscription.id,
                    "template": notice.template.value,
                    "error": str(e),
                },
            )
            return None

        track_dunning_notification(notice.template.value)
        logger.info(
            "Dunning notice sent",
            extra={
                "organization_id": customer.organization_id,
                "subscription_id": subscription.id,
                "template": notice.template.value,
                "retry_count": subscription.payment_retry_count,
            },
        )
        return notice.template

    def extend_grace(
        self, subscription: Subscription, days: int, now: datetime | None = None
    ) -> Subscription:
        """Grace period pushed out by ``days`` from its current end (or from now)."""
        base = subscription.grace_period_end or now or datetime.now(UTC)
        return subscription.model_copy(update={"grace_period_end": base + timedelta(days=days)})
