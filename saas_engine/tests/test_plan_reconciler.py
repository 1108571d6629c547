"""
PlanReconciler: plan/status derivation, idempotency, audit and fail-closed sync.
"""
import threading
import time

import pytest
from sqlalchemy import select

from saas_engine.core.database import audit_entries, get_db_session, users
from saas_engine.core.errors import NotFoundError, ProviderUnavailableError
from saas_engine.features.billing.provider import BillingProviderError
from saas_engine.features.billing.reconciler import PlanReconciler
from saas_engine.features.plans.catalog import PlanCatalog
from saas_engine.models.billing import ReconciliationEvent
from saas_engine.models.plan import PlanTier
from saas_engine.models.user import SubscriptionStatus


@pytest.fixture
def reconciler(price_map, fake_provider):
    return PlanReconciler(PlanCatalog(price_map), provider=fake_provider, timeout_seconds=2)


def _user_row(user_id):
    with get_db_session() as session:
        return session.execute(select(users).where(users.c.id == user_id)).first()


def _audits(user_id):
    with get_db_session() as session:
        return session.execute(
            select(audit_entries)
            .where(audit_entries.c.entity_id == user_id)
            .order_by(audit_entries.c.id)
        ).fetchall()


def _event(user_id, status, price="price_pro_monthly", event_id="evt_1"):
    return ReconciliationEvent(
        user_id=user_id,
        provider_status=status,
        provider_price_id=price,
        subscription_ref="sub_1",
        customer_ref="cus_1",
        provider_event_id=event_id,
    )


def test_upgrade_on_active_event(reconciler, make_user):
    user_id = make_user()

    result = reconciler.reconcile_from_event(_event(user_id, "active"))

    assert result.plan == PlanTier.PRO
    assert result.subscription_status == SubscriptionStatus.ACTIVE
    assert result.changed
    row = _user_row(user_id)
    assert row.plan == "PRO"
    assert row.subscription_status == "ACTIVE"
    assert row.billing_customer_ref == "cus_1"
    assert row.billing_subscription_ref == "sub_1"

    entries = _audits(user_id)
    assert len(entries) == 1
    assert entries[0].action == "PLAN_CHANGED"
    assert entries[0].performed_by_user_id is None
    meta = entries[0]._mapping["metadata"]
    assert meta["previous_plan"] == "FREE"
    assert meta["new_plan"] == "PRO"
    assert meta["source"] == "event"
    assert meta["provider_event_id"] == "evt_1"


def test_duplicate_event_is_noop(reconciler, make_user):
    user_id = make_user()
    reconciler.reconcile_from_event(_event(user_id, "active"))

    again = reconciler.reconcile_from_event(_event(user_id, "active"))

    assert not again.changed
    assert again.plan == PlanTier.PRO
    assert len(_audits(user_id)) == 1


def test_past_due_downgrades_to_free(reconciler, make_user):
    user_id = make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE)

    result = reconciler.reconcile_from_event(_event(user_id, "past_due"))

    assert result.plan == PlanTier.FREE
    assert result.subscription_status == SubscriptionStatus.PAST_DUE
    entries = _audits(user_id)
    assert [e.action for e in entries] == ["PLAN_CHANGED"]
    meta = entries[0]._mapping["metadata"]
    assert meta["previous_status"] == "ACTIVE"
    assert meta["new_status"] == "PAST_DUE"


@pytest.mark.parametrize("status", ["canceled", "unpaid", "incomplete", "paused", None])
def test_non_active_status_never_keeps_paid_plan(reconciler, make_user, status):
    user_id = make_user(plan=PlanTier.ENTERPRISE, status=SubscriptionStatus.ACTIVE)

    result = reconciler.apply_reconciliation(user_id, status, "price_ent_monthly")

    assert result.plan == PlanTier.FREE
    assert _user_row(user_id).plan == "FREE"


def test_status_only_change_records_status_audit(reconciler, make_user):
    user_id = make_user(status=SubscriptionStatus.PAST_DUE)

    result = reconciler.apply_reconciliation(user_id, "canceled", None)

    assert result.plan == PlanTier.FREE
    assert result.subscription_status == SubscriptionStatus.CANCELED
    assert [e.action for e in _audits(user_id)] == ["SUBSCRIPTION_STATUS_CHANGED"]


def test_unmapped_price_keeps_plan_and_flags(reconciler, make_user):
    user_id = make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE)

    result = reconciler.apply_reconciliation(user_id, "active", "price_unknown")

    assert result.unmapped_price
    assert result.plan == PlanTier.PRO
    assert not result.changed
    assert _audits(user_id) == []


def test_unmapped_price_for_free_user_does_not_upgrade(reconciler, make_user):
    user_id = make_user()

    result = reconciler.apply_reconciliation(user_id, "active", "price_unknown")

    assert result.unmapped_price
    assert result.plan == PlanTier.FREE
    assert result.subscription_status == SubscriptionStatus.ACTIVE
    assert [e.action for e in _audits(user_id)] == ["SUBSCRIPTION_STATUS_CHANGED"]


def test_out_of_order_events_apply_as_set_instructions(reconciler, make_user):
    user_id = make_user()
    reconciler.reconcile_from_event(_event(user_id, "canceled", event_id="evt_late"))
    reconciler.reconcile_from_event(_event(user_id, "active", price="price_ent_monthly", event_id="evt_new"))

    assert _user_row(user_id).plan == "ENTERPRISE"


def test_unknown_user_raises_not_found(reconciler):
    with pytest.raises(NotFoundError):
        reconciler.apply_reconciliation("missing", "active", "price_pro_monthly")


def test_existing_customer_ref_not_overwritten(reconciler, make_user):
    user_id = make_user(customer_ref="cus_original")

    reconciler.reconcile_from_event(_event(user_id, "active"))

    assert _user_row(user_id).billing_customer_ref == "cus_original"


# ---------------------------------------------------------------------------
# reconcile_from_query (manual sync)
# ---------------------------------------------------------------------------

def test_sync_reads_provider_and_attributes_actor(reconciler, fake_provider, make_user):
    user_id = make_user(customer_ref="cus_9")
    fake_provider.set_subscription("cus_9", "trialing", "price_ent_monthly", subscription_ref="sub_9")

    result = reconciler.reconcile_from_query(user_id, acting_user_id=user_id)

    assert fake_provider.lookups == ["cus_9"]
    assert result.plan == PlanTier.ENTERPRISE
    assert result.subscription_status == SubscriptionStatus.ACTIVE
    assert _user_row(user_id).billing_subscription_ref == "sub_9"
    entry = _audits(user_id)[0]
    assert entry.performed_by_user_id == user_id
    assert entry._mapping["metadata"]["source"] == "sync"


def test_sync_without_customer_ref_resolves_free(reconciler, fake_provider, make_user):
    user_id = make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE, subscription_ref="sub_old")

    result = reconciler.reconcile_from_query(user_id)

    assert fake_provider.lookups == []
    assert result.plan == PlanTier.FREE
    assert result.subscription_status == SubscriptionStatus.INACTIVE
    assert _user_row(user_id).billing_subscription_ref is None


def test_sync_with_no_provider_subscription_resolves_free(reconciler, fake_provider, make_user):
    user_id = make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE, customer_ref="cus_2")

    result = reconciler.reconcile_from_query(user_id)

    assert result.plan == PlanTier.FREE
    assert result.subscription_status == SubscriptionStatus.INACTIVE


def test_sync_provider_error_leaves_state_unchanged(reconciler, fake_provider, make_user):
    user_id = make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE, customer_ref="cus_3")
    fake_provider.fail_with = BillingProviderError("boom")

    with pytest.raises(ProviderUnavailableError):
        reconciler.reconcile_from_query(user_id)

    row = _user_row(user_id)
    assert row.plan == "PRO"
    assert row.subscription_status == "ACTIVE"
    assert _audits(user_id) == []


def test_sync_timeout_is_provider_unavailable(price_map, fake_provider, make_user):
    user_id = make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE, customer_ref="cus_4")
    fake_provider.block = threading.Event()
    reconciler = PlanReconciler(PlanCatalog(price_map), provider=fake_provider, timeout_seconds=0.05)

    try:
        with pytest.raises(ProviderUnavailableError):
            reconciler.reconcile_from_query(user_id)
    finally:
        fake_provider.block.set()

    assert _user_row(user_id).plan == "PRO"


def test_sync_without_provider_is_unavailable(price_map, make_user):
    user_id = make_user(customer_ref="cus_5")
    reconciler = PlanReconciler(PlanCatalog(price_map), provider=None)

    with pytest.raises(ProviderUnavailableError):
        reconciler.reconcile_from_query(user_id)


def test_sync_unknown_user(reconciler):
    with pytest.raises(NotFoundError):
        reconciler.reconcile_from_query("missing")


class _SlowCatalog(PlanCatalog):
    """Holds the first caller inside the read-decide-write step for a moment."""

    def __init__(self, prices):
        super().__init__(prices)
        self.entered = threading.Event()

    def price_id_to_plan(self, price_id):
        if not self.entered.is_set():
            self.entered.set()
            time.sleep(0.5)
        return super().price_id_to_plan(price_id)


def test_concurrent_reconciliations_for_one_user_are_serialized(price_map, make_user):
    user_id = make_user()
    catalog = _SlowCatalog(price_map)
    reconciler = PlanReconciler(catalog)
    results = []
    errors = []

    def apply():
        try:
            results.append(reconciler.apply_reconciliation(user_id, "active", "price_pro_monthly"))
        except Exception as e:  # surfaced by the assertions below
            errors.append(e)

    first = threading.Thread(target=apply)
    first.start()
    assert catalog.entered.wait(5)
    second = threading.Thread(target=apply)
    second.start()
    first.join(10)
    second.join(10)

    assert errors == []
    assert sorted(r.changed for r in results) == [False, True]
    assert [a.action for a in _audits(user_id)] == ["PLAN_CHANGED"]
    assert _user_row(user_id).plan == "PRO"
