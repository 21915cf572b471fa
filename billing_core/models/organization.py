"""
Organization-side records the billing core reads and writes.

Organizations own the plan slug and the stored violation snapshot; members and
usage records are read only, to evaluate plan limits.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from billing_core.models.billing import PlanViolation


class Organization(BaseModel):
    """Tenant that subscribes to a plan."""

    id: str
    name: str
    plan: str = Field(default="free", description="Current plan slug")
    plan_violations: list[PlanViolation] | None = None
    violations_detected_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class OrganizationMember(BaseModel):
    organization_id: str
    user_id: str
    is_active: bool = True


class UsageRecord(BaseModel):
    """Monthly usage counters for one organization."""

    organization_id: str
    period: str = Field(..., pattern=r"^\d{4}-\d{2}$", description="Billing month (YYYY-MM)")
    storage_bytes: int = Field(default=0, ge=0)
    meetings_count: int = Field(default=0, ge=0)
