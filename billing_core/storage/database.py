"""
Billing storage using SQLite (bootstrap) → PostgreSQL (production).

Tables:
- organizations, organization_members, usage_records (tenant side)
- plans, customers, subscriptions (billing state)
- payments, invoices (append-only ledger)
- processed_webhooks (webhook idempotency ledger)
- audit_log (every billing mutation)

Consistency:
- Subscription writes are compare-and-swap on a version column, so two
  processes applying events to the same subscription cannot silently overwrite
  each other
- A cancelled subscription is never moved to another status
- Prepared statements everywhere (SQL injection protection)
"""

import json
import logging
import secrets
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from billing_core.errors import ConflictError
from billing_core.models.billing import (
    Currency,
    Customer,
    Invoice,
    InvoiceStatus,
    PastDueSubscription,
    Payment,
    PaymentStatus,
    Plan,
    PlanInterval,
    PlanViolation,
    ProviderType,
    Subscription,
    SubscriptionStatus,
)
from billing_core.models.organization import Organization, OrganizationMember, UsageRecord

logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    """Generate an internal identifier (e.g. sub_3f9c...)."""
    return f"{prefix}_{secrets.token_hex(12)}"


def _iso(value: datetime | None) -> str | None:
    # Fixed-width UTC so stored timestamps sort lexically
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class BillingDatabase:
    """
    Billing state storage.

    Uses SQLite for bootstrapping (free, embedded).
    Migration path to PostgreSQL: the schema uses only portable types and the
    version column maps directly onto row-level optimistic locking.
    """

    def __init__(self, db_path: str = "./data/billing.db"):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS organizations (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    plan TEXT NOT NULL DEFAULT 'free',
                    plan_violations TEXT,
                    violations_detected_at TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS organization_members (
                    organization_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,

                    PRIMARY KEY (organization_id, user_id),
                    FOREIGN KEY (organization_id) REFERENCES organizations(id)
                        ON DELETE CASCADE,
                    CHECK (is_active IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_records (
                    organization_id TEXT NOT NULL,
                    period TEXT NOT NULL,
                    storage_bytes INTEGER NOT NULL DEFAULT 0,
                    meetings_count INTEGER NOT NULL DEFAULT 0,

                    PRIMARY KEY (organization_id, period),
                    FOREIGN KEY (organization_id) REFERENCES organizations(id)
                        ON DELETE CASCADE,
                    CHECK (storage_bytes >= 0),
                    CHECK (meetings_count >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS plans (
                    id TEXT PRIMARY KEY,
                    slug TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    description TEXT,
                    amount INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    interval TEXT NOT NULL,
                    trial_days INTEGER NOT NULL DEFAULT 0,
                    features TEXT NOT NULL DEFAULT '[]',
                    limits TEXT NOT NULL DEFAULT '{}',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    provider_price_ids TEXT NOT NULL DEFAULT '{}',

                    CHECK (amount >= 0),
                    CHECK (trial_days >= 0),
                    CHECK (is_active IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL,
                    name TEXT,
                    default_provider TEXT NOT NULL,
                    provider_ids TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (organization_id) REFERENCES organizations(id)
                        ON DELETE CASCADE
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    plan_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    provider_sub_id TEXT,
                    status TEXT NOT NULL,
                    current_period_start TEXT NOT NULL,
                    current_period_end TEXT NOT NULL,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    trial_end TEXT,
                    grace_period_end TEXT,
                    payment_failed_at TEXT,
                    payment_retry_count INTEGER NOT NULL DEFAULT 0,
                    cancelled_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,

                    FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE CASCADE,
                    FOREIGN KEY (plan_id) REFERENCES plans(id),
                    CHECK (cancel_at_period_end IN (0, 1)),
                    CHECK (payment_retry_count >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payments (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    description TEXT,
                    receipt_url TEXT,
                    provider_payment_id TEXT,
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE CASCADE
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS invoices (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    provider_invoice_id TEXT,
                    invoice_url TEXT,
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE CASCADE
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_webhooks (
                    provider TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    processed_at TEXT NOT NULL,

                    PRIMARY KEY (provider, event_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    organization_id TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT
                )
            """
            )

            # Performance indexes
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_provider_sub "
                "ON subscriptions(provider, provider_sub_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_customer "
                "ON subscriptions(customer_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_status ON subscriptions(status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_payments_customer ON payments(customer_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_invoices_customer ON invoices(customer_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_webhooks_processed_at "
                "ON processed_webhooks(processed_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_organization ON audit_log(organization_id)"
            )

            conn.commit()
            logger.info("Billing database initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    # ========================================================================
    # ORGANIZATIONS
    # ========================================================================

    async def create_organization(self, organization: Organization) -> Organization:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO organizations (
                id, name, plan, plan_violations, violations_detected_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                organization.id,
                organization.name,
                organization.plan,
                self._dump_violations(organization.plan_violations),
                _iso(organization.violations_detected_at),
                _iso(organization.created_at),
            ),
        )
        conn.commit()
        return organization

    async def get_organization(self, organization_id: str) -> Organization | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM organizations WHERE id = ?", (organization_id,)
        ).fetchone()

        if not row:
            return None

        violations = None
        if row["plan_violations"]:
            violations = [PlanViolation(**v) for v in json.loads(row["plan_violations"])]

        return Organization(
            id=row["id"],
            name=row["name"],
            plan=row["plan"],
            plan_violations=violations,
            violations_detected_at=_dt(row["violations_detected_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def update_organization_plan(self, organization_id: str, plan_slug: str) -> bool:
        """
        Set the organization's current plan slug.

        Returns:
            bool: True if the organization exists
        """
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE organizations SET plan = ? WHERE id = ?", (plan_slug, organization_id)
        )
        conn.commit()

        await self._log_audit(
            organization_id=organization_id,
            action="UPDATE_PLAN",
            resource_type="organization",
            resource_id=organization_id,
            details=f"plan={plan_slug}",
        )

        return cursor.rowcount > 0

    async def set_plan_violations(
        self,
        organization_id: str,
        violations: list[PlanViolation] | None,
        detected_at: datetime | None = None,
    ) -> bool:
        """
        Store (or clear, when violations is empty/None) the violation snapshot.

        Returns:
            bool: True if the organization exists
        """
        conn = self._get_connection()

        if violations:
            payload = self._dump_violations(violations)
            detected = _iso(detected_at or datetime.now(UTC))
        else:
            payload = None
            detected = None

        cursor = conn.execute(
            """
            UPDATE organizations
            SET plan_violations = ?,
                violations_detected_at = ?
            WHERE id = ?
            """,
            (payload, detected, organization_id),
        )
        conn.commit()

        await self._log_audit(
            organization_id=organization_id,
            action="SET_VIOLATIONS" if violations else "CLEAR_VIOLATIONS",
            resource_type="organization",
            resource_id=organization_id,
            details=f"count={len(violations or [])}",
        )

        return cursor.rowcount > 0

    async def add_member(self, member: OrganizationMember) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO organization_members (organization_id, user_id, is_active)
            VALUES (?, ?, ?)
            ON CONFLICT (organization_id, user_id) DO UPDATE SET is_active = excluded.is_active
            """,
            (member.organization_id, member.user_id, 1 if member.is_active else 0),
        )
        conn.commit()

    async def count_active_members(self, organization_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT COUNT(*) AS total FROM organization_members
            WHERE organization_id = ? AND is_active = 1
            """,
            (organization_id,),
        ).fetchone()
        return row["total"]

    async def upsert_usage(self, usage: UsageRecord) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO usage_records (organization_id, period, storage_bytes, meetings_count)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (organization_id, period) DO UPDATE SET
                storage_bytes = excluded.storage_bytes,
                meetings_count = excluded.meetings_count
            """,
            (usage.organization_id, usage.period, usage.storage_bytes, usage.meetings_count),
        )
        conn.commit()

    async def get_usage(self, organization_id: str, period: str) -> UsageRecord | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM usage_records WHERE organization_id = ? AND period = ?",
            (organization_id, period),
        ).fetchone()

        if not row:
            return None

        return UsageRecord(
            organization_id=row["organization_id"],
            period=row["period"],
            storage_bytes=row["storage_bytes"],
            meetings_count=row["meetings_count"],
        )

    # ========================================================================
    # PLANS
    # ========================================================================

    async def create_plan(self, plan: Plan) -> Plan | None:
        """
        Create a plan.

        Returns:
            Plan: Created plan, or None if the slug already exists
        """
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO plans (
                    id, slug, name, description, amount, currency, interval,
                    trial_days, features, limits, is_active, sort_order, provider_price_ids
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.id,
                    plan.slug,
                    plan.name,
                    plan.description,
                    plan.amount,
                    plan.currency.value,
                    plan.interval.value,
                    plan.trial_days,
                    json.dumps(plan.features),
                    json.dumps(plan.limits),
                    1 if plan.is_active else 0,
                    plan.sort_order,
                    json.dumps({k.value: v for k, v in plan.provider_price_ids.items()}),
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(f"Plan creation failed: {plan.slug} already exists")
                return None
            raise

        await self._log_audit(
            action="CREATE", resource_type="plan", resource_id=plan.id, details=f"slug={plan.slug}"
        )
        return plan

    async def get_plan(self, plan_id: str) -> Plan | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
        return self._row_to_plan(row) if row else None

    async def get_plan_by_slug(self, slug: str) -> Plan | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM plans WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_plan(row) if row else None

    async def list_active_plans(self) -> list[Plan]:
        """Active plans ordered by sort_order."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM plans WHERE is_active = 1 ORDER BY sort_order ASC, slug ASC"
        ).fetchall()
        return [self._row_to_plan(row) for row in rows]

    async def update_plan_details(
        self,
        plan_id: str,
        description: str | None = None,
        features: list[str] | None = None,
        limits: dict[str, int | None] | None = None,
        is_active: bool | None = None,
        sort_order: int | None = None,
    ) -> Plan | None:
        """
        Update the editable fields of a plan.

        Amount, currency, interval and trial length cannot be changed here:
        existing subscriptions were sold at those terms.

        Returns:
            Plan: Updated plan, or None if not found
        """
        updates: dict[str, Any] = {}
        if description is not None:
            updates["description"] = description
        if features is not None:
            updates["features"] = json.dumps(features)
        if limits is not None:
            updates["limits"] = json.dumps(limits)
        if is_active is not None:
            updates["is_active"] = 1 if is_active else 0
        if sort_order is not None:
            updates["sort_order"] = sort_order

        if not updates:
            return await self.get_plan(plan_id)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        conn = self._get_connection()
        cursor = conn.execute(
            f"UPDATE plans SET {set_clause} WHERE id = ?",
            (*updates.values(), plan_id),
        )
        conn.commit()

        if cursor.rowcount == 0:
            return None

        await self._log_audit(
            action="UPDATE",
            resource_type="plan",
            resource_id=plan_id,
            details=f"fields={','.join(updates)}",
        )
        return await self.get_plan(plan_id)

    # ========================================================================
    # CUSTOMERS
    # ========================================================================

    async def create_customer(self, customer: Customer) -> Customer | None:
        """
        Create billing customer.

        Returns:
            Customer: Created customer, or None if the organization already has one
        """
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO customers (
                    id, organization_id, email, name, default_provider, provider_ids, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    customer.id,
                    customer.organization_id,
                    customer.email,
                    customer.name,
                    customer.default_provider.value,
                    json.dumps({k.value: v for k, v in customer.provider_ids.items()}),
                    _iso(customer.created_at),
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(
                    "Customer already exists for organization",
                    extra={"organization_id": customer.organization_id},
                )
                return None
            raise

        await self._log_audit(
            organization_id=customer.organization_id,
            action="CREATE",
            resource_type="customer",
            resource_id=customer.id,
            details=f"provider={customer.default_provider.value}",
        )
        return customer

    async def get_customer(self, customer_id: str) -> Customer | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM customers WHERE id = ?", (customer_id,)).fetchone()
        return self._row_to_customer(row) if row else None

    async def get_customer_by_organization(self, organization_id: str) -> Customer | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM customers WHERE organization_id = ?", (organization_id,)
        ).fetchone()
        return self._row_to_customer(row) if row else None

    async def set_customer_provider_id(
        self, customer_id: str, provider: ProviderType, provider_customer_id: str
    ) -> Customer | None:
        """Link a provider-native customer id to an existing customer."""
        customer = await self.get_customer(customer_id)
        if not customer:
            return None

        customer.provider_ids[provider] = provider_customer_id

        conn = self._get_connection()
        conn.execute(
            "UPDATE customers SET provider_ids = ? WHERE id = ?",
            (json.dumps({k.value: v for k, v in customer.provider_ids.items()}), customer_id),
        )
        conn.commit()

        await self._log_audit(
            organization_id=customer.organization_id,
            action="LINK_PROVIDER",
            resource_type="customer",
            resource_id=customer_id,
            details=f"provider={provider.value}",
        )
        return customer

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    async def create_subscription(self, subscription: Subscription) -> Subscription | None:
        """
        Create subscription.

        Returns:
            Subscription: Created subscription, or None if a row already exists
            for the same provider subscription id
        """
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO subscriptions (
                    id, customer_id, plan_id, provider, provider_sub_id, status,
                    current_period_start, current_period_end, cancel_at_period_end,
                    trial_end, grace_period_end, payment_failed_at, payment_retry_count,
                    cancelled_at, created_at, updated_at, version
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.id,
                    subscription.customer_id,
                    subscription.plan_id,
                    subscription.provider.value,
                    subscription.provider_sub_id,
                    subscription.status.value,
                    _iso(subscription.current_period_start),
                    _iso(subscription.current_period_end),
                    1 if subscription.cancel_at_period_end else 0,
                    _iso(subscription.trial_end),
                    _iso(subscription.grace_period_end),
                    _iso(subscription.payment_failed_at),
                    subscription.payment_retry_count,
                    _iso(subscription.cancelled_at),
                    _iso(subscription.created_at),
                    _iso(subscription.updated_at),
                    subscription.version,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(
                    "Subscription already exists for provider id",
                    extra={
                        "provider": subscription.provider.value,
                        "provider_sub_id": subscription.provider_sub_id,
                    },
                )
                return None
            raise

        await self._log_audit(
            action="CREATE",
            resource_type="subscription",
            resource_id=subscription.id,
            details=f"status={subscription.status.value} provider={subscription.provider.value}",
        )
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def get_subscription_by_provider_id(
        self, provider: ProviderType, provider_sub_id: str
    ) -> Subscription | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE provider = ? AND provider_sub_id = ?",
            (provider.value, provider_sub_id),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def get_current_subscription(self, customer_id: str) -> Subscription | None:
        """Most recently created subscription that is active, trialing or past due."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE customer_id = ?
              AND status IN ('active', 'trialing', 'past_due')
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (customer_id,),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def update_subscription(self, subscription: Subscription) -> Subscription | None:
        """
        Persist mutable subscription fields (compare-and-swap on version).

        ``subscription.version`` must be the version that was read. Cancelled rows
        only accept writes that keep them cancelled.

        Returns:
            Subscription: Stored row with the bumped version, or None when the row
            changed since it was read (or the write would revive a cancelled row)
        """
        conn = self._get_connection()
        now = datetime.now(UTC)

        cursor = conn.execute(
            """
            UPDATE subscriptions
            SET status = ?,
                current_period_start = ?,
                current_period_end = ?,
                cancel_at_period_end = ?,
                trial_end = ?,
                grace_period_end = ?,
                payment_failed_at = ?,
                payment_retry_count = ?,
                cancelled_at = ?,
                updated_at = ?,
                version = version + 1
            WHERE id = ?
              AND version = ?
              AND (status != 'cancelled' OR ? = 'cancelled')
            """,
            (
                subscription.status.value,
                _iso(subscription.current_period_start),
                _iso(subscription.current_period_end),
                1 if subscription.cancel_at_period_end else 0,
                _iso(subscription.trial_end),
                _iso(subscription.grace_period_end),
                _iso(subscription.payment_failed_at),
                subscription.payment_retry_count,
                _iso(subscription.cancelled_at),
                _iso(now),
                subscription.id,
                subscription.version,
                subscription.status.value,
            ),
        )
        conn.commit()

        if cursor.rowcount == 0:
            logger.warning(
                "Subscription write rejected (stale version or terminal state)",
                extra={"subscription_id": subscription.id, "version": subscription.version},
            )
            return None

        await self._log_audit(
            action="UPDATE",
            resource_type="subscription",
            resource_id=subscription.id,
            details=f"status={subscription.status.value} retries={subscription.payment_retry_count}",
        )

        return subscription.model_copy(update={"version": subscription.version + 1, "updated_at": now})

    async def modify_subscription(
        self,
        subscription_id: str,
        mutate: Callable[[Subscription], Subscription | None],
        attempts: int = 2,
    ) -> tuple[Subscription | None, Subscription | None]:
        """
        Read-modify-write a subscription, re-reading if the row changed meanwhile.

        Args:
            subscription_id: Subscription to modify
            mutate: Returns the modified copy, or None to leave the row unchanged
            attempts: Reads before giving up on a contended row

        Returns:
            tuple: (row as read, row as stored); both None if not found, and the
            same row twice when ``mutate`` declined to change it

        Raises:
            ConflictError: If every attempt lost the race
        """
        for _ in range(attempts):
            current = await self.get_subscription(subscription_id)
            if current is None:
                return None, None

            updated = mutate(current)
            if updated is None:
                return current, current

            stored = await self.update_subscription(updated)
            if stored is not None:
                return current, stored

            latest = await self.get_subscription(subscription_id)
            if latest is not None and latest.status == SubscriptionStatus.CANCELLED:
                # Lost to a cancellation; a cancelled row is final
                return latest, latest

        raise ConflictError(f"Subscription {subscription_id} was modified concurrently")

    async def list_past_due(self, limit: int = 50, offset: int = 0) -> tuple[list[PastDueSubscription], int]:
        """
        Past-due subscriptions, most recent failure first.

        Returns:
            tuple: (rows, total_count)
        """
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT s.*, c.organization_id AS org_id, c.email AS customer_email,
                   o.name AS organization_name, p.slug AS plan_slug
            FROM subscriptions s
            JOIN customers c ON c.id = s.customer_id
            JOIN organizations o ON o.id = c.organization_id
            JOIN plans p ON p.id = s.plan_id
            WHERE s.status = 'past_due'
            ORDER BY s.payment_failed_at DESC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        ).fetchall()

        total = conn.execute(
            "SELECT COUNT(*) AS total FROM subscriptions WHERE status = 'past_due'"
        ).fetchone()["total"]

        now = datetime.now(UTC)
        results = []
        for row in rows:
            subscription = self._row_to_subscription(row)
            days_left = None
            if subscription.grace_period_end:
                days_left = max(0, (subscription.grace_period_end - now).days)
            results.append(
                PastDueSubscription(
                    subscription=subscription,
                    organization_id=row["org_id"],
                    organization_name=row["organization_name"],
                    customer_email=row["customer_email"],
                    plan_slug=row["plan_slug"],
                    days_until_suspension=days_left,
                )
            )
        return results, total

    async def list_expired_trials(self, cutoff: datetime) -> list[Subscription]:
        """Trialing subscriptions whose trial ended before ``cutoff``."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE status = 'trialing' AND trial_end IS NOT NULL AND trial_end < ?
            ORDER BY trial_end ASC
            """,
            (_iso(cutoff),),
        ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    # ========================================================================
    # LEDGER
    # ========================================================================

    async def record_payment(self, payment: Payment) -> Payment:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO payments (
                id, customer_id, amount, currency, status, description,
                receipt_url, provider_payment_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payment.id,
                payment.customer_id,
                payment.amount,
                payment.currency,
                payment.status.value,
                payment.description,
                payment.receipt_url,
                payment.provider_payment_id,
                _iso(payment.created_at),
            ),
        )
        conn.commit()
        return payment

    async def list_payments(self, customer_id: str, limit: int = 50) -> list[Payment]:
        """Payments for a customer, newest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM payments WHERE customer_id = ? ORDER BY created_at DESC LIMIT ?",
            (customer_id, limit),
        ).fetchall()
        return [
            Payment(
                id=row["id"],
                customer_id=row["customer_id"],
                amount=row["amount"],
                currency=row["currency"],
                status=PaymentStatus(row["status"]),
                description=row["description"],
                receipt_url=row["receipt_url"],
                provider_payment_id=row["provider_payment_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def record_invoice(self, invoice: Invoice) -> Invoice:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO invoices (
                id, customer_id, amount, currency, status,
                provider_invoice_id, invoice_url, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                invoice.id,
                invoice.customer_id,
                invoice.amount,
                invoice.currency,
                invoice.status.value,
                invoice.provider_invoice_id,
                invoice.invoice_url,
                _iso(invoice.created_at),
            ),
        )
        conn.commit()
        return invoice

    async def list_invoices(self, customer_id: str, limit: int = 50) -> list[Invoice]:
        """Invoices for a customer, newest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM invoices WHERE customer_id = ? ORDER BY created_at DESC LIMIT ?",
            (customer_id, limit),
        ).fetchall()
        return [
            Invoice(
                id=row["id"],
                customer_id=row["customer_id"],
                amount=row["amount"],
                currency=row["currency"],
                status=InvoiceStatus(row["status"]),
                provider_invoice_id=row["provider_invoice_id"],
                invoice_url=row["invoice_url"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # ========================================================================
    # WEBHOOK IDEMPOTENCY
    # ========================================================================

    async def mark_webhook_processed(
        self, provider: ProviderType, event_id: str, event_type: str
    ) -> bool:
        """
        Claim a webhook event for processing.

        Returns:
            bool: True if this is the first delivery, False if already claimed
        """
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO processed_webhooks (provider, event_id, event_type, processed_at)
                VALUES (?, ?, ?, ?)
                """,
                (provider.value, event_id, event_type, _iso(datetime.now(UTC))),
            )
            conn.commit()
            return True
        except sqlite3.IntegrityError:
            logger.info(
                "Duplicate webhook delivery",
                extra={"provider": provider.value, "event_id": event_id},
            )
            return False

    async def release_webhook(self, provider: ProviderType, event_id: str) -> None:
        """Drop a claim so a redelivery of a failed event is processed."""
        conn = self._get_connection()
        conn.execute(
            "DELETE FROM processed_webhooks WHERE provider = ? AND event_id = ?",
            (provider.value, event_id),
        )
        conn.commit()

    async def cleanup_processed_webhooks(self, days_old: int = 7) -> int:
        """
        Delete idempotency records older than ``days_old`` days.

        Returns:
            int: Number of records deleted
        """
        cutoff = datetime.now(UTC) - timedelta(days=days_old)
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM processed_webhooks WHERE processed_at < ?", (_iso(cutoff),)
        )
        conn.commit()

        if cursor.rowcount:
            logger.info(f"Cleaned up {cursor.rowcount} processed webhook records")
        return cursor.rowcount

    # ========================================================================
    # INTERNALS
    # ========================================================================

    async def _log_audit(
        self,
        action: str,
        resource_type: str,
        organization_id: str | None = None,
        resource_id: str | None = None,
        details: str | None = None,
    ) -> None:
        """
        Log audit event.

        Args:
            action: Action performed (CREATE, UPDATE, ...)
            resource_type: Type of resource (subscription, customer, plan, organization)
            organization_id: Organization affected
            resource_id: ID of affected resource
            details: Additional details
        """
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO audit_log (
                timestamp, organization_id, action, resource_type, resource_id, details
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (_iso(datetime.now(UTC)), organization_id, action, resource_type, resource_id, details),
        )
        conn.commit()

    @staticmethod
    def _dump_violations(violations: list[PlanViolation] | None) -> str | None:
        if not violations:
            return None
        return json.dumps([v.model_dump(mode="json") for v in violations])

    @staticmethod
    def _row_to_plan(row: sqlite3.Row) -> Plan:
        price_ids = json.loads(row["provider_price_ids"])
        return Plan(
            id=row["id"],
            slug=row["slug"],
            name=row["name"],
            description=row["description"],
            amount=row["amount"],
            currency=Currency(row["currency"]),
            interval=PlanInterval(row["interval"]),
            trial_days=row["trial_days"],
            features=json.loads(row["features"]),
            limits=json.loads(row["limits"]),
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"],
            provider_price_ids={ProviderType(k): v for k, v in price_ids.items() if v},
        )

    @staticmethod
    def _row_to_customer(row: sqlite3.Row) -> Customer:
        provider_ids = json.loads(row["provider_ids"])
        return Customer(
            id=row["id"],
            organization_id=row["organization_id"],
            email=row["email"],
            name=row["name"],
            default_provider=ProviderType(row["default_provider"]),
            provider_ids={ProviderType(k): v for k, v in provider_ids.items() if v},
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            customer_id=row["customer_id"],
            plan_id=row["plan_id"],
            provider=ProviderType(row["provider"]),
            provider_sub_id=row["provider_sub_id"],
            status=SubscriptionStatus(row["status"]),
            current_period_start=datetime.fromisoformat(row["current_period_start"]),
            current_period_end=datetime.fromisoformat(row["current_period_end"]),
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            trial_end=_dt(row["trial_end"]),
            grace_period_end=_dt(row["grace_period_end"]),
            payment_failed_at=_dt(row["payment_failed_at"]),
            payment_retry_count=row["payment_retry_count"],
            cancelled_at=_dt(row["cancelled_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            version=row["version"],
        )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


# Global instance
_db: BillingDatabase | None = None


async def get_billing_db() -> BillingDatabase:
    """
    Get global billing database instance.

    Returns:
        BillingDatabase: Initialized database
    """
    global _db
    if _db is None:
        from billing_core.config import get_settings

        _db = BillingDatabase(get_settings().database.path)
        await _db.initialize()
    return _db
