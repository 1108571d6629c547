"""
Billing service orchestrator.

Coordinates:
- Provider wiring (Stripe when configured)
- Webhook ingestion: verify, dedup by provider event id, resolve the user,
  hand the fact to PlanReconciler
- Manual plan sync for the current user

All Stripe-specific code is in stripe_provider.py. Plan and subscription
status are only ever written by PlanReconciler.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from saas_engine.core.config import settings
from saas_engine.core.database import get_db_session, billing_events, users
from saas_engine.core.errors import NotFoundError
from saas_engine.core.logging import log_event
from saas_engine.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from saas_engine.features.billing.reconciler import (
    PlanReconciler,
    ReconciliationResult,
    get_plan_reconciler,
)
from saas_engine.features.billing.stripe_provider import StripeProvider
from saas_engine.models.billing import ReconciliationEvent

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "checkout.session.completed",
})


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool
    user_id: Optional[str] = None
    reconciliation: Optional[ReconciliationResult] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError as e:
        logger.warning(f"[billing] provider init failed: {e}")
        return None


def _resolve_user_id(session, result: BillingWebhookResult) -> Optional[str]:
    """Event metadata wins; otherwise look the customer ref up."""
    if result.user_id:
        row = session.execute(select(users.c.id).where(users.c.id == result.user_id)).fetchone()
        if row:
            return row.id
    if result.customer_ref:
        row = session.execute(
            select(users.c.id).where(users.c.billing_customer_ref == result.customer_ref)
        ).fetchone()
        if row:
            return row.id
    return None


def _claim_event(result: BillingWebhookResult, payload_hash: str) -> bool:
    """
    Record the event; return False when it was already processed.

    A row left with processed=False (earlier failure) is claimed again so the
    provider's retry can complete it.
    """
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(
                billing_events.c.provider_event_id == result.event_id
            )
        ).fetchone()
        if existing is not None:
            return not existing.processed

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    provider_event_id=result.event_id,
                    event_type=result.event_type,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Race condition: another worker already inserted this event
        return False
    return True


def _mark_event(event_id: str, *, user_id: Optional[str], error: Optional[str]) -> None:
    values = {"user_id": user_id, "error": error}
    if error is None:
        values.update(processed=True, processed_at=datetime.now(timezone.utc))
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.provider_event_id == event_id)
            .values(**values)
        )


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    *,
    provider: Optional[BillingProvider] = None,
    reconciler: Optional[PlanReconciler] = None,
) -> WebhookOutcome:
    """
    Process billing webhook event (idempotent).

    1. Verify signature and parse
    2. Dedup on provider event id (skip if already processed)
    3. Resolve the internal user
    4. Reconcile plan + status
    5. Mark as processed (or record the error and re-raise)

    Raises:
        BillingWebhookError: If billing disabled or signature invalid
        NotFoundError: If no user matches the event
    """
    provider = provider or get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    if not _claim_event(result, payload_hash):
        log_event("info", "billing.webhook_duplicate", event_type=result.event_type, extra={"provider_event_id": result.event_id})
        return WebhookOutcome(result.event_id, result.event_type, duplicate=True)

    if result.event_type not in HANDLED_EVENT_TYPES or not result.has_subscription_state:
        _mark_event(result.event_id, user_id=None, error=None)
        return WebhookOutcome(result.event_id, result.event_type, duplicate=False)

    user_id = None
    try:
        with get_db_session() as session:
            user_id = _resolve_user_id(session, result)
        if user_id is None:
            raise NotFoundError(f"No user for billing event {result.event_id}")

        reconciler = reconciler or get_plan_reconciler(provider)
        reconciliation = reconciler.reconcile_from_event(
            ReconciliationEvent(
                user_id=user_id,
                provider_status=result.provider_status,
                provider_price_id=result.price_id,
                subscription_ref=result.subscription_ref,
                customer_ref=result.customer_ref,
                provider_event_id=result.event_id,
            )
        )
    except Exception as e:
        _mark_event(result.event_id, user_id=user_id, error=str(e)[:1000])
        log_event(
            "warning",
            "billing.webhook_failed",
            user_id=user_id,
            event_type=result.event_type,
            error_code=getattr(e, "code", type(e).__name__),
            extra={"provider_event_id": result.event_id},
        )
        raise

    _mark_event(result.event_id, user_id=user_id, error=None)
    return WebhookOutcome(
        result.event_id,
        result.event_type,
        duplicate=False,
        user_id=user_id,
        reconciliation=reconciliation,
    )


def sync_plan(user_id: str, acting_user_id: Optional[str] = None, *, reconciler: Optional[PlanReconciler] = None) -> ReconciliationResult:
    """Manual re-sync from the provider; ProviderUnavailableError on failure."""
    reconciler = reconciler or get_plan_reconciler()
    return reconciler.reconcile_from_query(user_id, acting_user_id=acting_user_id or user_id)
