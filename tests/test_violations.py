"""
Tests for plan-violation evaluation.
"""

from datetime import UTC, datetime, timedelta

import pytest

from billing_core.errors import NotFoundError
from billing_core.models.billing import Plan, ViolationAction, ViolationType
from billing_core.models.organization import OrganizationMember, UsageRecord
from billing_core.services.violations import BYTES_PER_GB, PlanViolationEvaluator

NOW = datetime(2026, 5, 20, 9, 30, tzinfo=UTC)


@pytest.fixture
def evaluator(db, policy) -> PlanViolationEvaluator:
    return PlanViolationEvaluator(db, policy)


async def _usage(db, organization, storage_bytes=0, meetings=0, period="2026-05"):
    await db.upsert_usage(
        UsageRecord(
            organization_id=organization.id,
            period=period,
            storage_bytes=storage_bytes,
            meetings_count=meetings,
        )
    )


async def _members(db, organization, count):
    for i in range(count):
        await db.add_member(OrganizationMember(organization_id=organization.id, user_id=f"user_{i}"))


@pytest.mark.asyncio
async def test_no_usage_means_no_violations(evaluator, organization):
    assert await evaluator.evaluate(organization.id, "free", NOW) == []


@pytest.mark.asyncio
async def test_all_violations_in_order(evaluator, db, organization):
    await _members(db, organization, 4)
    await _usage(db, organization, storage_bytes=int(2.5 * BYTES_PER_GB), meetings=12)

    violations = await evaluator.evaluate(organization.id, "free", NOW)

    assert [v.type for v in violations] == [
        ViolationType.TEAM_MEMBERS,
        ViolationType.STORAGE,
        ViolationType.MEETINGS,
    ]

    team, storage, meetings = violations
    assert (team.current, team.limit, team.action) == (4, 1, ViolationAction.NOTIFY_ADMIN)
    assert team.grace_period_end is None

    assert storage.current == 2.5
    assert storage.limit == 1
    assert storage.action == ViolationAction.GRACE_PERIOD
    assert storage.grace_period_end == NOW + timedelta(days=30)

    assert (meetings.current, meetings.limit, meetings.action) == (12, 5, ViolationAction.READ_ONLY)


@pytest.mark.asyncio
async def test_usage_at_limit_is_not_a_violation(evaluator, db, organization):
    await _members(db, organization, 1)
    await _usage(db, organization, storage_bytes=BYTES_PER_GB, meetings=5)

    assert await evaluator.evaluate(organization.id, "free", NOW) == []


@pytest.mark.asyncio
async def test_inactive_members_not_counted(evaluator, db, organization):
    await _members(db, organization, 1)
    await db.add_member(
        OrganizationMember(organization_id=organization.id, user_id="former", is_active=False)
    )

    assert await evaluator.evaluate(organization.id, "free", NOW) == []


@pytest.mark.asyncio
async def test_only_current_month_usage_counts(evaluator, db, organization):
    await _usage(db, organization, meetings=50, period="2026-04")

    assert await evaluator.evaluate(organization.id, "free", NOW) == []


@pytest.mark.asyncio
async def test_unlimited_plan_never_violates(evaluator, db, organization):
    await _members(db, organization, 40)
    await _usage(db, organization, storage_bytes=500 * BYTES_PER_GB, meetings=999)

    assert await evaluator.evaluate(organization.id, "enterprise", NOW) == []


@pytest.mark.asyncio
async def test_missing_and_null_limits_are_unlimited(evaluator, db, organization):
    await db.create_plan(
        Plan(
            id="plan_starter",
            slug="starter",
            name="Starter",
            amount=500,
            limits={"max_team_members": None, "max_storage_gb": 5},
        )
    )
    await _members(db, organization, 8)
    await _usage(db, organization, meetings=300)

    assert await evaluator.evaluate(organization.id, "starter", NOW) == []


@pytest.mark.asyncio
async def test_storage_rounded_to_two_decimals(evaluator, db, organization):
    await _usage(db, organization, storage_bytes=BYTES_PER_GB + BYTES_PER_GB // 3)

    [storage] = await evaluator.evaluate(organization.id, "free", NOW)

    assert storage.current == 1.33


@pytest.mark.asyncio
async def test_unknown_plan(evaluator, organization):
    with pytest.raises(NotFoundError):
        await evaluator.evaluate(organization.id, "platinum", NOW)
