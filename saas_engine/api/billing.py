"""
Billing API routes.

- POST /api/billing/webhook: Handle Stripe webhooks
- POST /api/billing/sync:    Re-derive the caller's plan from the provider
- GET  /api/billing/plan:    Stored plan truth for the caller
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from saas_engine.core.auth import get_current_user
from saas_engine.features.billing.provider import BillingWebhookError
from saas_engine.features.billing.service import (
    billing_enabled,
    process_webhook_event,
    sync_plan,
)
from saas_engine.features.users.service import get_plan_truth
from saas_engine.models.user import User


router = APIRouter(prefix="/billing", tags=["billing"])


class SyncResponse(BaseModel):
    plan: str
    subscription_status: str
    changed: bool
    unmapped_price: bool


class PlanTruthResponse(BaseModel):
    user_id: str
    plan: str
    subscription_status: str
    has_billing_customer: bool
    has_subscription: bool
    updated_at: Optional[datetime] = None


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    duplicate: bool


@router.post("/webhook", response_model=WebhookResponse)
async def billing_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: Invalid signature or payload
        404: No user matches the event (provider will retry)
    """
    if not billing_enabled():
        raise HTTPException(status_code=503, detail="Billing disabled")

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        outcome = process_webhook_event(headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return WebhookResponse(received=True, event_id=outcome.event_id, duplicate=outcome.duplicate)


@router.post("/sync", response_model=SyncResponse)
def sync_current_user_plan(user: User = Depends(get_current_user)):
    """Errors: 503 provider_unavailable (stored plan unchanged)."""
    result = sync_plan(user.id, acting_user_id=user.id)
    return SyncResponse(
        plan=result.plan.value,
        subscription_status=result.subscription_status.value,
        changed=result.changed,
        unmapped_price=result.unmapped_price,
    )


@router.get("/plan", response_model=PlanTruthResponse)
def current_user_plan(user: User = Depends(get_current_user)):
    return PlanTruthResponse(**get_plan_truth(user.id))
