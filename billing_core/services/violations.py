"""
Plan-violation evaluator.

Compares an organization's current usage against a target plan's limits:
- max_team_members: active members → notify_admin
- max_storage_gb: current-month storage → grace_period (storage_grace_days)
- max_meetings_per_month: current-month meetings → read_only

Missing, null or negative limits are unlimited. Only usage strictly above a
limit is a violation. Storing the result is the caller's job.
"""

import logging
from datetime import UTC, datetime, timedelta

from billing_core.config import BillingPolicyConfig
from billing_core.errors import NotFoundError
from billing_core.models.billing import PlanViolation, ViolationAction, ViolationType
from billing_core.observability.metrics import track_plan_violation
from billing_core.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024**3

LIMIT_TEAM_MEMBERS = "max_team_members"
LIMIT_STORAGE_GB = "max_storage_gb"
LIMIT_MEETINGS_PER_MONTH = "max_meetings_per_month"


class PlanViolationEvaluator:
    """Detects usage that would exceed a plan's limits."""

    def __init__(self, db: BillingDatabase, policy: BillingPolicyConfig):
        self.db = db
        self.policy = policy

    async def evaluate(
        self,
        organization_id: str,
        target_plan_slug: str,
        now: datetime | None = None,
    ) -> list[PlanViolation]:
        """
        Evaluate an organization's usage against a plan.

        Args:
            organization_id: Organization to check
            target_plan_slug: Plan the organization is (or would be) on
            now: Evaluation time; selects the usage month and storage grace end

        Returns:
            list[PlanViolation]: Violations in team, storage, meetings order;
            empty when compliant

        Raises:
            NotFoundError: If the plan does not exist
        """
        now = now or datetime.now(UTC)

        plan = await self.db.get_plan_by_slug(target_plan_slug)
        if plan is None:
            raise NotFoundError(f"Plan {target_plan_slug} not found")

        usage = await self.db.get_usage(organization_id, now.strftime("%Y-%m"))
        storage_bytes = usage.storage_bytes if usage else 0
        meetings = usage.meetings_count if usage else 0

        violations: list[PlanViolation] = []

        member_limit = plan.limit(LIMIT_TEAM_MEMBERS)
        if member_limit is not None:
            members = await self.db.count_active_members(organization_id)
            if members > member_limit:
                violations.append(
                    PlanViolation(
                        type=ViolationType.TEAM_MEMBERS,
                        current=members,
                        limit=member_limit,
                        action=ViolationAction.NOTIFY_ADMIN,
                    )
                )

        storage_limit = plan.limit(LIMIT_STORAGE_GB)
        storage_gb = storage_bytes / BYTES_PER_GB
        if storage_limit is not None and storage_gb > storage_limit:
            violations.append(
                PlanViolation(
                    type=ViolationType.STORAGE,
                    current=round(storage_gb, 2),
                    limit=storage_limit,
                    action=ViolationAction.GRACE_PERIOD,
                    grace_period_end=now + timedelta(days=self.policy.storage_grace_days),
                )
            )

        meeting_limit = plan.limit(LIMIT_MEETINGS_PER_MONTH)
        if meeting_limit is not None and meetings > meeting_limit:
            violations.append(
                PlanViolation(
                    type=ViolationType.MEETINGS,
                    current=meetings,
                    limit=meeting_limit,
                    action=ViolationAction.READ_ONLY,
                )
            )

        for violation in violations:
            track_plan_violation(violation.type.value)

        if violations:
            logger.info(
                "Plan violations detected",
                extra={
                    "organization_id": organization_id,
                    "plan": target_plan_slug,
                    "violations": [v.type.value for v in violations],
                },
            )

        return violations
