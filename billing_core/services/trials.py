"""
Trial expiry policy.

webhook_only (default): trial end is driven entirely by provider events; a
trialing subscription whose trial_end has passed stays trialing until the
provider reports the first charge.

sweep: expire_trials() moves trialing subscriptions whose trial ended more than
trial_expiry_grace_hours ago to past_due and starts their grace period, the same
way a failed first charge would.
"""

import logging
from datetime import UTC, datetime, timedelta

from billing_core.config import BillingPolicyConfig
from billing_core.models.billing import Subscription, SubscriptionStatus
from billing_core.observability.metrics import track_subscription_transition
from billing_core.services.dunning import DunningEngine
from billing_core.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class TrialExpiryPolicy:
    def __init__(self, db: BillingDatabase, dunning: DunningEngine, policy: BillingPolicyConfig):
        self.db = db
        self.dunning = dunning
        self.policy = policy

    @property
    def sweeps(self) -> bool:
        return self.policy.trial_expiry_mode == "sweep"

    async def expire_trials(self, now: datetime | None = None) -> int:
        """
        Move overdue trials to past_due (sweep mode only).

        Returns:
            int: Number of subscriptions moved
        """
        if not self.sweeps:
            return 0

        now = now or datetime.now(UTC)
        cutoff = now - timedelta(hours=self.policy.trial_expiry_grace_hours)

        expired = 0
        for subscription in await self.db.list_expired_trials(cutoff):

            def expire(current: Subscription) -> Subscription | None:
                if current.status != SubscriptionStatus.TRIALING:
                    return None
                return self.dunning.apply_failure(current, now)

            before, after = await self.db.modify_subscription(subscription.id, expire)
            if before is None or after is None or after.status != SubscriptionStatus.PAST_DUE:
                continue
            if before.status == after.status:
                continue

            expired += 1
            track_subscription_transition(before.status.value, after.status.value)

        if expired:
            logger.info(
                f"Expired {expired} trials",
                extra={"cutoff": cutoff.isoformat(), "count": expired},
            )
        return expired
