"""
Billing storage layer.
"""

from billing_core.storage.database import BillingDatabase, get_billing_db, new_id
from billing_core.storage.seed import DEFAULT_PLANS, seed_plans

__all__ = ["BillingDatabase", "DEFAULT_PLANS", "get_billing_db", "new_id", "seed_plans"]
