"""
saas_engine/features/billing/reconciler.py

PlanReconciler: the only code path that writes User.plan and
User.subscription_status.

Inputs are provider facts (webhook events or a live subscription lookup).
Each fact is applied as an idempotent "set to this value" instruction:

    status = map_status(provider_status)
    status != ACTIVE          -> plan FREE (fail closed)
    status == ACTIVE, mapped  -> plan from the catalog
    status == ACTIVE, unknown -> plan kept, unmapped_price flagged

Unchanged (plan, status) is a no-op with no audit entry. A change writes the
user row and exactly one audit entry in the same transaction, holding a row
lock on the user for the read-decide-write sequence.

Events are not ordered against each other. A stale event may briefly
overwrite a newer one; the next delivery or a manual sync corrects it.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
import logging

from sqlalchemy import select, update

from saas_engine.core.config import settings
from saas_engine.core.database import get_db_session, users
from saas_engine.core.errors import NotFoundError, ProviderUnavailableError
from saas_engine.core.logging import log_event
from saas_engine.features.audit.service import AuditRecorder, get_audit_recorder
from saas_engine.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    ProviderSubscription,
)
from saas_engine.features.billing.status import map_status
from saas_engine.features.plans.catalog import PlanCatalog
from saas_engine.models.audit import AuditAction, AuditEntityType
from saas_engine.models.billing import ReconciliationEvent, ReconciliationSource
from saas_engine.models.plan import PlanTier
from saas_engine.models.user import SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    plan: PlanTier
    subscription_status: SubscriptionStatus
    changed: bool
    unmapped_price: bool
    previous_plan: PlanTier
    previous_status: SubscriptionStatus


class PlanReconciler:
    def __init__(
        self,
        catalog: PlanCatalog,
        provider: Optional[BillingProvider] = None,
        audit: Optional[AuditRecorder] = None,
        session_scope: Callable = get_db_session,
        timeout_seconds: Optional[float] = None,
    ):
        self.catalog = catalog
        self.provider = provider
        self.audit = audit or get_audit_recorder()
        self.session_scope = session_scope
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.BILLING_PROVIDER_TIMEOUT_SECONDS
        )

    def apply_reconciliation(
        self,
        user_id: str,
        provider_status: Optional[str],
        provider_price_id: Optional[str],
        *,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
        detach_subscription: bool = False,
        source: ReconciliationSource = ReconciliationSource.EVENT,
        provider_event_id: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> ReconciliationResult:
        new_status = map_status(provider_status)
        unmapped_price = False

        with self.session_scope() as session:
            row = session.execute(
                select(users).where(users.c.id == user_id).with_for_update()
            ).fetchone()
            if row is None:
                raise NotFoundError(f"User {user_id} not found")

            previous_plan = PlanTier(row.plan)
            previous_status = SubscriptionStatus(row.subscription_status)

            if new_status != SubscriptionStatus.ACTIVE:
                new_plan = PlanTier.FREE
            else:
                mapped = self.catalog.price_id_to_plan(provider_price_id)
                if mapped is None:
                    new_plan = previous_plan
                    unmapped_price = True
                else:
                    new_plan = mapped

            values = self._reference_updates(
                session, row, customer_ref, subscription_ref, detach_subscription
            )

            changed = new_plan != previous_plan or new_status != previous_status
            if changed:
                values["plan"] = new_plan.value
                values["subscription_status"] = new_status.value

            if values:
                values["updated_at"] = datetime.now(timezone.utc)
                session.execute(update(users).where(users.c.id == user_id).values(**values))

            if changed:
                action = (
                    AuditAction.PLAN_CHANGED
                    if new_plan != previous_plan
                    else AuditAction.SUBSCRIPTION_STATUS_CHANGED
                )
                self.audit.record(
                    session,
                    action=action,
                    entity_type=AuditEntityType.USER,
                    entity_id=user_id,
                    performed_by=performed_by,
                    metadata={
                        "previous_plan": previous_plan,
                        "new_plan": new_plan,
                        "previous_status": previous_status,
                        "new_status": new_status,
                        "provider_status": provider_status,
                        "price_id": provider_price_id,
                        "subscription_ref": subscription_ref,
                        "source": ReconciliationSource(source),
                        "provider_event_id": provider_event_id,
                    },
                )

        if unmapped_price:
            log_event(
                "warning",
                "billing.unmapped_price",
                user_id=user_id,
                event_type=ReconciliationSource(source).value,
                extra={"price_id": provider_price_id, "plan": previous_plan.value},
            )
        if changed:
            log_event(
                "info",
                "billing.reconciled",
                user_id=user_id,
                event_type=ReconciliationSource(source).value,
                extra={
                    "transition": f"{previous_plan.value}/{previous_status.value} -> {new_plan.value}/{new_status.value}",
                    "provider_event_id": provider_event_id,
                },
            )

        return ReconciliationResult(
            plan=new_plan,
            subscription_status=new_status,
            changed=changed,
            unmapped_price=unmapped_price,
            previous_plan=previous_plan,
            previous_status=previous_status,
        )

    def _reference_updates(self, session, row, customer_ref, subscription_ref, detach_subscription) -> dict:
        """Billing reference columns to write alongside the plan, unaudited."""
        values = {}
        if customer_ref and not row.billing_customer_ref:
            owner = session.execute(
                select(users.c.id).where(users.c.billing_customer_ref == customer_ref)
            ).fetchone()
            if owner is None:
                values["billing_customer_ref"] = customer_ref
            else:
                logger.warning(
                    "[billing] customer ref already linked to another user; not relinking",
                    extra={"user_id": row.id},
                )
        if detach_subscription:
            if row.billing_subscription_ref is not None:
                values["billing_subscription_ref"] = None
        elif subscription_ref and subscription_ref != row.billing_subscription_ref:
            values["billing_subscription_ref"] = subscription_ref
        return values

    def reconcile_from_event(self, event: ReconciliationEvent) -> ReconciliationResult:
        return self.apply_reconciliation(
            event.user_id,
            event.provider_status,
            event.provider_price_id,
            subscription_ref=event.subscription_ref,
            customer_ref=event.customer_ref,
            source=ReconciliationSource.EVENT,
            provider_event_id=event.provider_event_id,
            performed_by=None,
        )

    def reconcile_from_query(self, user_id: str, acting_user_id: Optional[str] = None) -> ReconciliationResult:
        """
        Re-derive the user's plan from a live provider lookup.

        No customer reference, or no subscription at the provider, resolves to
        INACTIVE/FREE. Provider errors and timeouts raise
        ProviderUnavailableError and leave stored state untouched.
        """
        with self.session_scope() as session:
            row = session.execute(
                select(users.c.id, users.c.billing_customer_ref).where(users.c.id == user_id)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"User {user_id} not found")

        subscription = None
        if row.billing_customer_ref:
            subscription = self._lookup_subscription(user_id, row.billing_customer_ref)

        if subscription is None:
            return self.apply_reconciliation(
                user_id,
                None,
                None,
                detach_subscription=True,
                source=ReconciliationSource.SYNC,
                performed_by=acting_user_id,
            )

        return self.apply_reconciliation(
            user_id,
            subscription.status,
            subscription.price_id,
            subscription_ref=subscription.subscription_ref,
            source=ReconciliationSource.SYNC,
            performed_by=acting_user_id,
        )

    def _lookup_subscription(self, user_id: str, customer_ref: str) -> Optional[ProviderSubscription]:
        if self.provider is None:
            self._unavailable(user_id, "billing provider not configured")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="billing-lookup")
        try:
            future = executor.submit(self.provider.get_subscription, customer_ref)
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            self._unavailable(user_id, f"lookup exceeded {self.timeout_seconds}s")
        except BillingProviderError as e:
            self._unavailable(user_id, str(e))
        finally:
            # A hung call keeps its thread; the caller is not held for it
            executor.shutdown(wait=False, cancel_futures=True)

    def _unavailable(self, user_id: str, reason: str):
        log_event(
            "warning",
            "billing.provider_unavailable",
            user_id=user_id,
            error_code=ProviderUnavailableError.code,
            extra={"reason": reason},
        )
        raise ProviderUnavailableError("Billing provider unavailable; plan unchanged")


def get_plan_reconciler(provider: Optional[BillingProvider] = None) -> PlanReconciler:
    """Reconciler wired from settings. Provider defaults to the configured one."""
    if provider is None:
        from saas_engine.features.billing.service import get_provider

        provider = get_provider()
    return PlanReconciler(PlanCatalog.from_settings(), provider=provider)
