"""
Default plan catalogue.

Seeded on startup when the plans table is empty. A limit of -1 (or a missing
key) means unlimited. Provider price ids are placeholders to be replaced with
the real Stripe price / Flutterwave payment plan ids per environment.
"""

import logging

from billing_core.models.billing import Currency, Plan, PlanInterval, ProviderType
from billing_core.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

DEFAULT_PLANS: list[Plan] = [
    Plan(
        id="plan_free",
        slug="free",
        name="Free",
        description="For individuals getting started",
        amount=0,
        currency=Currency.USD,
        interval=PlanInterval.MONTH,
        features=["5 meetings per month", "30 minutes per meeting", "1GB storage"],
        limits={
            "max_meetings_per_month": 5,
            "max_minutes_per_meeting": 30,
            "max_storage_gb": 1,
            "max_team_members": 1,
        },
        sort_order=0,
    ),
    Plan(
        id="plan_pro",
        slug="pro",
        name="Pro",
        description="For professionals and small teams",
        amount=1500,
        currency=Currency.USD,
        interval=PlanInterval.MONTH,
        trial_days=14,
        features=["Unlimited meetings", "10GB storage", "Up to 10 team members"],
        limits={
            "max_meetings_per_month": -1,
            "max_minutes_per_meeting": 240,
            "max_storage_gb": 10,
            "max_team_members": 10,
        },
        sort_order=1,
        provider_price_ids={
            ProviderType.STRIPE: "price_pro_monthly",
            ProviderType.FLUTTERWAVE: "1001",
        },
    ),
    Plan(
        id="plan_pro_yearly",
        slug="pro-yearly",
        name="Pro (Yearly)",
        description="Pro billed annually",
        amount=15000,
        currency=Currency.USD,
        interval=PlanInterval.YEAR,
        trial_days=14,
        features=["Unlimited meetings", "10GB storage", "Up to 10 team members"],
        limits={
            "max_meetings_per_month": -1,
            "max_minutes_per_meeting": 240,
            "max_storage_gb": 10,
            "max_team_members": 10,
        },
        sort_order=2,
        provider_price_ids={
            ProviderType.STRIPE: "price_pro_yearly",
            ProviderType.FLUTTERWAVE: "1002",
        },
    ),
    Plan(
        id="plan_enterprise",
        slug="enterprise",
        name="Enterprise",
        description="Unlimited everything",
        amount=4900,
        currency=Currency.USD,
        interval=PlanInterval.MONTH,
        features=["Unlimited meetings", "Unlimited storage", "Unlimited team members"],
        limits={
            "max_meetings_per_month": -1,
            "max_minutes_per_meeting": -1,
            "max_storage_gb": -1,
            "max_team_members": -1,
        },
        sort_order=3,
        provider_price_ids={ProviderType.STRIPE: "price_enterprise_monthly"},
    ),
]


async def seed_plans(db: BillingDatabase, plans: list[Plan] | None = None) -> int:
    """
    Insert plans whose slug does not exist yet.

    Returns:
        int: Number of plans created
    """
    created = 0
    for plan in plans or DEFAULT_PLANS:
        if await db.get_plan_by_slug(plan.slug):
            continue
        if await db.create_plan(plan):
            created += 1

    if created:
        logger.info(f"Seeded {created} billing plans")
    return created
