"""
Billing API endpoints.

Organization-scoped endpoints identify the caller's organization with the
X-Organization-ID header (set by the gateway after authentication).

Security:
- Admin endpoints require the admin API key (X-Admin-Key)
- Webhook endpoints are authenticated by the provider signature
- BillingError subclasses are mapped to HTTP statuses in main.py
"""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from billing_core.config import Settings, get_settings
from billing_core.errors import NotFoundError
from billing_core.models.billing import (
    Customer,
    Invoice,
    PastDueSubscription,
    Payment,
    Plan,
    PlanViolation,
    ProviderType,
    Subscription,
    WebhookOutcome,
)
from billing_core.observability.logging import set_organization_id
from billing_core.services.billing_service import BillingService, get_billing_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["Billing"])

# Signature header per provider
SIGNATURE_HEADERS: dict[ProviderType, str] = {
    ProviderType.STRIPE: "stripe-signature",
    ProviderType.FLUTTERWAVE: "verif-hash",
}


# Request models
class CreateSubscriptionRequest(BaseModel):
    plan_slug: str
    payment_method_id: str | None = None
    provider: ProviderType | None = None
    email: str | None = Field(default=None, description="Billing email for first-time setup")


class CheckoutRequest(BaseModel):
    plan_slug: str
    success_url: str
    cancel_url: str
    provider: ProviderType | None = None
    email: str | None = Field(default=None, description="Billing email for first-time setup")


class CancelRequest(BaseModel):
    immediately: bool = False


class CheckViolationsRequest(BaseModel):
    target_plan_slug: str


class ExtendGraceRequest(BaseModel):
    days: int


class UpdatePlanRequest(BaseModel):
    """Editable plan fields; omitted fields are left unchanged."""

    description: str | None = None
    features: list[str] | None = None
    limits: dict[str, int | None] | None = None
    is_active: bool | None = None
    sort_order: int | None = None


# Response models
class CheckoutResponse(BaseModel):
    url: str


class ViolationsResponse(BaseModel):
    organization_id: str
    violations: list[PlanViolation]
    has_violations: bool


class PastDueResponse(BaseModel):
    """Failed-payments listing page."""

    items: list[PastDueSubscription]
    total: int
    limit: int
    offset: int


class ExpireTrialsResponse(BaseModel):
    expired: int
    checked_at: datetime


# Dependency: organization scope
async def get_organization_id(x_organization_id: str = Header(...)) -> str:
    """Organization the request acts on."""
    organization_id = x_organization_id.strip()
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-ID header is empty",
        )
    set_organization_id(organization_id)
    return organization_id


# Dependency: admin authentication
async def verify_admin_key(
    x_admin_key: str = Header(...),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Check the admin API key against ADMIN_API_KEY."""
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API not configured",
        )
    if x_admin_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    return True


# Plans


@router.get("/plans", response_model=list[Plan])
async def list_plans(service: BillingService = Depends(get_billing_service)) -> list[Plan]:
    """Active plans, in display order."""
    return await service.get_plans()


@router.get("/plans/{slug}", response_model=Plan)
async def get_plan(slug: str, service: BillingService = Depends(get_billing_service)) -> Plan:
    plan = await service.get_plan_by_slug(slug)
    if plan is None:
        raise NotFoundError(f"Plan {slug} not found")
    return plan


# Subscription


@router.get("/subscription", response_model=Subscription | None)
async def get_subscription(
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> Subscription | None:
    """Current subscription, or null when the organization has none."""
    return await service.get_subscription(organization_id)


@router.post("/subscription", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: CreateSubscriptionRequest,
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> Subscription:
    """
    Subscribe the organization to a plan.

    Raises:
        404: Organization or plan not found
        412: Customer not set up with the provider
        502: Provider rejected the subscription
        503: Provider or plan price not configured
    """
    return await service.create_subscription(
        organization_id,
        body.plan_slug,
        payment_method_id=body.payment_method_id,
        provider=body.provider,
        email=body.email,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> CheckoutResponse:
    """Hosted checkout URL for a plan."""
    session = await service.create_checkout_session(
        organization_id,
        body.plan_slug,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        provider=body.provider,
        email=body.email,
    )
    return CheckoutResponse(url=session["url"])


@router.post("/customer/providers/{provider}", response_model=Customer)
async def link_provider(
    provider: ProviderType,
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> Customer:
    """
    Set up the organization's billing customer at another provider.

    Raises:
        404: Organization has no billing customer yet
        502: Provider rejected the customer
        503: Provider not configured
    """
    return await service.link_provider_customer(organization_id, provider)


@router.post("/subscription/cancel", response_model=Subscription)
async def cancel_subscription(
    body: CancelRequest,
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> Subscription:
    """
    Cancel the current subscription (at period end unless immediately=true).

    Raises:
        404: No current subscription
        409: Already cancelled
    """
    subscription = await _current_subscription(service, organization_id)
    return await service.cancel_subscription(subscription.id, immediately=body.immediately)


@router.post("/subscription/resume", response_model=Subscription)
async def resume_subscription(
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> Subscription:
    """
    Undo a scheduled cancellation.

    Raises:
        404: No current subscription
        412: Subscription is not scheduled for cancellation
    """
    subscription = await _current_subscription(service, organization_id)
    return await service.resume_subscription(subscription.id)


# History


@router.get("/payments", response_model=list[Payment])
async def list_payments(
    limit: int | None = Query(default=None, ge=1, le=500),
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> list[Payment]:
    return await service.get_payment_history(organization_id, limit)


@router.get("/invoices", response_model=list[Invoice])
async def list_invoices(
    limit: int | None = Query(default=None, ge=1, le=500),
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> list[Invoice]:
    return await service.get_invoices(organization_id, limit)


# Plan violations


@router.get("/violations", response_model=ViolationsResponse)
async def get_violations(
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> ViolationsResponse:
    """Stored violation snapshot (set when the organization was downgraded)."""
    violations = await service.get_active_violations(organization_id)
    return ViolationsResponse(
        organization_id=organization_id,
        violations=violations,
        has_violations=bool(violations),
    )


@router.post("/violations/check", response_model=ViolationsResponse)
async def check_violations(
    body: CheckViolationsRequest,
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> ViolationsResponse:
    """Preview the violations a plan change would cause (nothing is stored)."""
    violations = await service.check_plan_violations(organization_id, body.target_plan_slug)
    return ViolationsResponse(
        organization_id=organization_id,
        violations=violations,
        has_violations=bool(violations),
    )


@router.delete("/violations", status_code=status.HTTP_204_NO_CONTENT)
async def clear_violations(
    organization_id: str = Depends(get_organization_id),
    service: BillingService = Depends(get_billing_service),
) -> None:
    await service.clear_violations(organization_id)


# Admin endpoints


@router.get(
    "/admin/past-due",
    response_model=PastDueResponse,
    dependencies=[Depends(verify_admin_key)],
)
async def list_past_due(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    service: BillingService = Depends(get_billing_service),
) -> PastDueResponse:
    """Past-due subscriptions, most recent failure first (admin only)."""
    items, total = await service.list_past_due(limit=limit, offset=offset)
    return PastDueResponse(items=items, total=total, limit=limit, offset=offset)


@router.patch(
    "/admin/plans/{slug}",
    response_model=Plan,
    dependencies=[Depends(verify_admin_key)],
)
async def update_plan(
    slug: str,
    body: UpdatePlanRequest,
    service: BillingService = Depends(get_billing_service),
) -> Plan:
    """
    Edit a plan's description, features, limits, visibility or order (admin only).

    Price, currency, interval and trial length cannot be changed.
    """
    return await service.update_plan_details(slug, **body.model_dump(exclude_unset=True))


@router.post(
    "/admin/subscriptions/{subscription_id}/extend-grace",
    response_model=Subscription,
    dependencies=[Depends(verify_admin_key)],
)
async def extend_grace(
    subscription_id: str,
    body: ExtendGraceRequest,
    service: BillingService = Depends(get_billing_service),
) -> Subscription:
    """
    Extend a past-due subscription's grace period (admin only).

    Raises:
        400: days outside the allowed range
        404: Subscription not found
        409: Subscription is not past due
    """
    subscription = await service.extend_grace_period(subscription_id, body.days)
    logger.info(
        "Grace period extended by admin",
        extra={"subscription_id": subscription_id, "days": body.days},
    )
    return subscription


@router.post(
    "/admin/trials/expire",
    response_model=ExpireTrialsResponse,
    dependencies=[Depends(verify_admin_key)],
)
async def expire_trials(service: BillingService = Depends(get_billing_service)) -> ExpireTrialsResponse:
    """Run the trial sweep once (no-op unless BILLING_TRIAL_EXPIRY_MODE=sweep)."""
    checked_at = datetime.now(UTC)
    expired = await service.expire_trials()
    return ExpireTrialsResponse(expired=expired, checked_at=checked_at)


# Webhooks


@router.post("/webhooks/{provider}", response_model=WebhookOutcome)
async def receive_webhook(
    provider: str,
    request: Request,
    service: BillingService = Depends(get_billing_service),
) -> WebhookOutcome:
    """
    Provider webhook endpoint.

    The raw body is passed through untouched: signatures are computed over it.

    Raises:
        400: Malformed payload
        401: Missing or invalid signature
        503: Provider not configured
    """
    payload = await request.body()

    try:
        header = SIGNATURE_HEADERS[ProviderType(provider)]
    except ValueError:
        header = None
    signature = request.headers.get(header) if header else None

    return await service.handle_webhook(provider, payload, signature)


async def _current_subscription(service: BillingService, organization_id: str) -> Subscription:
    subscription = await service.get_subscription(organization_id)
    if subscription is None:
        raise NotFoundError(f"Organization {organization_id} has no current subscription")
    return subscription
