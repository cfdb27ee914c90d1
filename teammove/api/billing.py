"""
Billing API routes.

Surface:
- POST /api/billing/webhook: Handle Stripe webhooks (signature-authenticated)
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/verify: Confirm a checkout on return from the gateway
- POST /api/billing/cancel: Cancel the paid plan
- POST /api/billing/free: Switch to the free plan
- POST /api/billing/portal: Open the Stripe customer portal
- GET  /api/billing/status: Subscription and entitlement status
- GET  /api/billing/features: Feature gates for the current usage
- GET  /api/billing/plans: Plan catalog

Errors are AppError subclasses, rendered by the app-level handlers.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from teammove.core.auth import get_current_organization_id
from teammove.features.billing.service import FeatureAccess, SubscriptionInfo
from teammove.features.billing.wiring import BillingComponents
from teammove.models.plan import BillingKind
from teammove.models.subscription import SubscriptionSnapshot


router = APIRouter(prefix="/api/billing", tags=["billing"])


def get_billing(request: Request) -> BillingComponents:
    return request.app.state.billing


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan_id: str
    success_url: str
    cancel_url: str


class CheckoutResponse(BaseModel):
    session_id: str
    redirect_url: str


class VerifyRequest(BaseModel):
    session_id: str


class PortalRequest(BaseModel):
    return_url: str


class PortalResponse(BaseModel):
    url: str


class WebhookResponse(BaseModel):
    received: bool
    event_id: Optional[str] = None
    duplicate: bool = False


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    price_minor_units: int
    currency: str
    billing_kind: BillingKind
    max_events: Optional[int] = None
    max_invitations: Optional[int] = None
    validity_months: Optional[int] = None
    advanced_features: bool = False


class UnitConsumedResponse(BaseModel):
    remaining_pack_units: Optional[int] = None
    consumed_at: datetime


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    billing: BillingComponents = Depends(get_billing),
):
    """
    Handle Stripe webhook events.

    The raw body is verified against STRIPE_WEBHOOK_SECRET before anything
    else. Any verified event is acknowledged with 200, including ones that
    are ignored or were already applied.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    body = await request.body()
    ack = await run_in_threadpool(billing.reconciler.handle, body, stripe_signature)
    return WebhookResponse(received=ack.received, event_id=ack.event_id, duplicate=ack.duplicate)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    payload: CheckoutRequest,
    organization_id: str = Depends(get_current_organization_id),
    billing: BillingComponents = Depends(get_billing),
):
    """
    Create Stripe checkout session.

    Errors:
        400: Free plan requested
        404: Unknown plan_id
        409: A recurring subscription is still active
        502/503: Gateway failure (503 is retryable)
    """
    start = billing.service.start_checkout(
        organization_id,
        payload.plan_id,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return CheckoutResponse(session_id=start.session_id, redirect_url=start.redirect_url)


@router.post("/verify", response_model=SubscriptionSnapshot)
def verify_payment(
    payload: VerifyRequest,
    organization_id: str = Depends(get_current_organization_id),
    billing: BillingComponents = Depends(get_billing),
):
    """
    Verify a checkout session and activate the plan.

    Errors:
        402: Payment not confirmed yet
        403: Session belongs to another organization
        404: Unknown session
        503: Gateway unavailable; retry
    """
    return billing.service.verify_payment(payload.session_id, organization_id)


@router.post("/cancel", response_model=SubscriptionSnapshot)
def cancel_subscription(
    organization_id: str = Depends(get_current_organization_id),
    billing: BillingComponents = Depends(get_billing),
):
    return billing.service.cancel_subscription(organization_id)


@router.post("/free", response_model=SubscriptionSnapshot)
def activate_free_plan(
    organization_id: str = Depends(get_current_organization_id),
    billing: BillingComponents = Depends(get_billing),
):
    return billing.service.activate_free_plan(organization_id)


@router.post("/portal", response_model=PortalResponse)
def open_portal(
    payload: PortalRequest,
    organization_id: str = Depends(get_current_organization_id),
    billing: BillingComponents = Depends(get_billing),
):
    """
    Create a Stripe customer portal session.

    Errors:
        502/503: Gateway failure (503 is retryable)
        503: Billing disabled
    """
    url = billing.service.start_portal(organization_id, payload.return_url)
    return PortalResponse(url=url)


@router.post("/units/consume", response_model=UnitConsumedResponse)
def consume_unit(
    organization_id: str = Depends(get_current_organization_id),
    billing: BillingComponents = Depends(get_billing),
):
    """Take one event unit from the organization's pack (403 when exhausted)."""
    remaining = billing.service.consume_unit(organization_id)
    return UnitConsumedResponse(remaining_pack_units=remaining, consumed_at=billing.service.clock())


@router.get("/status", response_model=SubscriptionInfo)
def get_status(
    organization_id: str = Depends(get_current_organization_id),
    billing: BillingComponents = Depends(get_billing),
):
    return billing.service.get_subscription_info(organization_id)


@router.get("/features", response_model=FeatureAccess)
def get_features(
    events_created: int = Query(0, ge=0),
    invitations_sent: int = Query(0, ge=0),
    organization_id: str = Depends(get_current_organization_id),
    billing: BillingComponents = Depends(get_billing),
):
    """Feature gates given the organization's usage so far (counts come from the events service)."""
    return billing.service.get_feature_access(
        organization_id,
        events_created=events_created,
        invitations_sent=invitations_sent,
    )


@router.get("/plans", response_model=List[PlanResponse])
def list_plans(billing: BillingComponents = Depends(get_billing)):
    return [
        PlanResponse(**plan.model_dump(exclude={"external_price_ref"}))
        for plan in billing.catalog.all()
    ]
