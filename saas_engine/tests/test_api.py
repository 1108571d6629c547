"""
HTTP adapter: auth, error envelope, billing/modules/admin routes.
"""
import jwt
import pytest
from fastapi.testclient import TestClient

from saas_engine.core.config import settings
from saas_engine.features.billing.provider import BillingProviderError
from saas_engine.main import app
from saas_engine.models.plan import PlanTier
from saas_engine.models.user import Role, SubscriptionStatus
from saas_engine.tests.mocks import webhook_result

client = TestClient(app)


def _as(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture
def billing_on(monkeypatch, fake_provider):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PRO", "price_pro_monthly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ENTERPRISE", "price_ent_monthly")
    monkeypatch.setattr("saas_engine.features.billing.service.get_provider", lambda: fake_provider)
    return fake_provider


def test_healthz():
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readyz_with_tables():
    response = client.get("/readyz")
    assert response.status_code == 200


def test_missing_auth_is_401_with_envelope():
    response = client.get("/api/modules")
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "unauthorized"
    assert response.headers["x-request-id"] == body["error"]["request_id"]


def test_deleted_user_is_401(make_user):
    response = client.get("/api/modules", headers=_as(make_user(is_deleted=True)))
    assert response.status_code == 401


def test_x_user_id_rejected_in_production(monkeypatch, make_user):
    monkeypatch.setattr(settings, "ENV", "production")
    response = client.get("/api/modules", headers=_as(make_user()))
    assert response.status_code == 401


def test_bearer_jwt(monkeypatch, make_user):
    monkeypatch.setattr(settings, "JWT_SECRET", "test-secret")
    user_id = make_user()
    token = jwt.encode({"sub": user_id}, "test-secret", algorithm="HS256")

    response = client.get("/api/billing/plan", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["user_id"] == user_id


def test_bad_jwt_is_401(monkeypatch, make_user):
    monkeypatch.setattr(settings, "JWT_SECRET", "test-secret")
    token = jwt.encode({"sub": make_user()}, "wrong-secret", algorithm="HS256")
    response = client.get("/api/billing/plan", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_module_access_denial_is_200(make_user, make_module):
    user_id = make_user()
    make_module(key="reports", min_plan=PlanTier.PRO)

    response = client.get("/api/modules/reports/access", headers=_as(user_id))

    assert response.status_code == 200
    assert response.json() == {"allowed": False, "reason": "PLAN_INSUFFICIENT"}


def test_unknown_module_is_404(make_user):
    response = client.get("/api/modules/missing/access", headers=_as(make_user()))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_list_modules(make_user, make_module):
    make_module(key="basic")
    make_module(key="hidden", enabled=False)

    response = client.get("/api/modules", headers=_as(make_user()))

    assert [m["key"] for m in response.json()] == ["basic"]
    assert response.json()[0]["allowed"] is True


def test_sync_endpoint(billing_on, make_user):
    user_id = make_user(customer_ref="cus_1")
    billing_on.set_subscription("cus_1", "active", "price_ent_monthly")

    response = client.post("/api/billing/sync", headers=_as(user_id))

    assert response.status_code == 200
    assert response.json()["plan"] == "ENTERPRISE"
    assert response.json()["subscription_status"] == "ACTIVE"


def test_sync_provider_down_is_503(billing_on, make_user):
    user_id = make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE, customer_ref="cus_1")
    billing_on.fail_with = BillingProviderError("down")

    response = client.post("/api/billing/sync", headers=_as(user_id))

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "provider_unavailable"
    plan = client.get("/api/billing/plan", headers=_as(user_id)).json()
    assert plan["plan"] == "PRO"


def test_webhook_endpoint(billing_on, make_user):
    user_id = make_user(customer_ref="cus_1")
    billing_on.webhook = webhook_result()

    response = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})

    assert response.status_code == 200
    assert response.json() == {"received": True, "event_id": "evt_1", "duplicate": False}
    assert client.get("/api/billing/plan", headers=_as(user_id)).json()["plan"] == "PRO"


def test_webhook_bad_signature_is_400(billing_on):
    billing_on.webhook = None
    response = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "bad"})
    assert response.status_code == 400


def test_webhook_billing_disabled_is_503(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    response = client.post("/api/billing/webhook", content=b"{}")
    assert response.status_code == 503


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

def test_admin_routes_forbidden_for_users(make_user):
    response = client.get("/api/admin/modules", headers=_as(make_user()))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"


def test_admin_module_lifecycle_and_grants(make_user):
    admin_id = make_user(role=Role.ADMIN)
    user_id = make_user()
    headers = _as(admin_id)

    created = client.post(
        "/api/admin/modules",
        json={"key": "exports", "name": "Exports", "min_plan": "ENTERPRISE"},
        headers=headers,
    )
    assert created.status_code == 201
    module_id = created.json()["id"]
    assert created.json()["state"] == "DRAFT"

    assert client.post(f"/api/admin/modules/{module_id}/enable", headers=headers).json()["state"] == "ACTIVE"

    first = client.put(f"/api/admin/modules/{module_id}/grants/{user_id}", headers=headers)
    second = client.put(f"/api/admin/modules/{module_id}/grants/{user_id}", headers=headers)
    assert first.json() == {"outcome": "created"}
    assert second.json() == {"outcome": "already_existed"}

    access = client.get(f"/api/modules/{module_id}/access", headers=_as(user_id)).json()
    assert access == {"allowed": True, "reason": "EXPLICIT_GRANT"}

    grants = client.get(f"/api/admin/users/{user_id}/grants", headers=headers).json()
    assert [g["module_id"] for g in grants] == [module_id]

    assert client.delete(f"/api/admin/modules/{module_id}/grants/{user_id}", headers=headers).json() == {"outcome": "revoked"}
    assert client.delete(f"/api/admin/modules/{module_id}/grants/{user_id}", headers=headers).json() == {"outcome": "noop"}

    archived = client.post(f"/api/admin/modules/{module_id}/archive", headers=headers)
    assert archived.json()["state"] == "ARCHIVED"
    conflict = client.patch(f"/api/admin/modules/{module_id}", json={"name": "Again"}, headers=headers)
    assert conflict.status_code == 409

    audit = client.get("/api/admin/audit-entries", params={"action": "ACCESS_GRANTED"}, headers=headers).json()
    assert len(audit) == 1
    assert audit[0]["performed_by_user_id"] == admin_id


def test_admin_duplicate_module_key_conflict(make_user):
    headers = _as(make_user(role=Role.FOUNDER))
    client.post("/api/admin/modules", json={"key": "dup", "name": "Dup"}, headers=headers)
    response = client.post("/api/admin/modules", json={"key": "dup", "name": "Dup 2"}, headers=headers)
    assert response.status_code == 409


def test_admin_sync_attributes_admin(billing_on, make_user):
    admin_id = make_user(role=Role.ADMIN)
    user_id = make_user(customer_ref="cus_1")
    billing_on.set_subscription("cus_1", "active", "price_pro_monthly")

    response = client.post(f"/api/admin/users/{user_id}/sync", headers=_as(admin_id))

    assert response.json()["plan"] == "PRO"
    audit = client.get(
        "/api/admin/audit-entries",
        params={"entity_id": user_id, "action": "PLAN_CHANGED"},
        headers=_as(admin_id),
    ).json()
    assert audit[0]["performed_by_user_id"] == admin_id
    assert audit[0]["metadata"]["source"] == "sync"


def test_admin_user_listing_filters_and_pages(make_user):
    admin_id = make_user(role=Role.ADMIN)
    make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE)
    make_user(plan=PlanTier.PRO, status=SubscriptionStatus.ACTIVE)
    make_user(email="plain@example.com")
    make_user(is_deleted=True)
    headers = _as(admin_id)

    pro = client.get("/api/admin/users", params={"plan": "PRO", "limit": 1}, headers=headers).json()
    assert pro["total"] == 2
    assert len(pro["users"]) == 1
    assert pro["users"][0]["plan"] == "PRO"

    rest = client.get("/api/admin/users", params={"plan": "PRO", "limit": 1, "offset": 1}, headers=headers).json()
    assert rest["users"][0]["id"] != pro["users"][0]["id"]

    everyone = client.get("/api/admin/users", headers=headers).json()
    assert everyone["total"] == 4

    by_email = client.get("/api/admin/users", params={"email": "PLAIN@example.com"}, headers=headers).json()
    assert [u["email"] for u in by_email["users"]] == ["plain@example.com"]


def test_admin_creates_user(make_user):
    headers = _as(make_user(role=Role.ADMIN))

    created = client.post("/api/admin/users", json={"email": "New@Example.com"}, headers=headers)
    assert created.status_code == 201
    assert created.json()["email"] == "new@example.com"
    assert created.json()["role"] == "USER"

    again = client.post("/api/admin/users", json={"email": "new@example.com"}, headers=headers)
    assert again.status_code == 409


def test_role_change_is_founder_only(make_user):
    admin_id = make_user(role=Role.ADMIN)
    founder_id = make_user(role=Role.FOUNDER)
    user_id = make_user()

    denied = client.patch(f"/api/admin/users/{user_id}/role", json={"role": "ADMIN"}, headers=_as(admin_id))
    assert denied.status_code == 403

    response = client.patch(f"/api/admin/users/{user_id}/role", json={"role": "ADMIN"}, headers=_as(founder_id))
    assert response.status_code == 200
    assert response.json()["role"] == "ADMIN"

    own = client.patch(f"/api/admin/users/{founder_id}/role", json={"role": "USER"}, headers=_as(founder_id))
    assert own.status_code == 400

    audit = client.get(
        "/api/admin/audit-entries",
        params={"entity_id": user_id, "action": "ROLE_CHANGED"},
        headers=_as(founder_id),
    ).json()
    assert len(audit) == 1
    assert audit[0]["performed_by_user_id"] == founder_id
    assert audit[0]["metadata"] == {"previous_role": "USER", "new_role": "ADMIN"}


def test_admin_soft_deletes_user(make_user):
    admin_id = make_user(role=Role.ADMIN)
    user_id = make_user()

    response = client.delete(f"/api/admin/users/{user_id}", headers=_as(admin_id))

    assert response.status_code == 204
    assert client.get("/api/modules", headers=_as(user_id)).status_code == 401
    assert client.get(f"/api/admin/users/{user_id}/grants", headers=_as(admin_id)).status_code == 404
    assert client.delete(f"/api/admin/users/{admin_id}", headers=_as(admin_id)).status_code == 400


def test_audit_listing_date_range_and_offset(make_user, make_module):
    admin_id = make_user(role=Role.ADMIN)
    headers = _as(admin_id)
    module_id = make_module()
    for _ in range(3):
        user_id = make_user()
        client.put(f"/api/admin/modules/{module_id}/grants/{user_id}", headers=headers)

    params = {"action": "ACCESS_GRANTED"}
    newest_first = client.get("/api/admin/audit-entries", params=params, headers=headers).json()
    assert len(newest_first) == 3

    page = client.get("/api/admin/audit-entries", params={**params, "limit": 2, "offset": 1}, headers=headers).json()
    assert [e["id"] for e in page] == [e["id"] for e in newest_first[1:]]

    future = client.get(
        "/api/admin/audit-entries", params={**params, "start": "2999-01-01T00:00:00+00:00"}, headers=headers
    ).json()
    assert future == []

    window = client.get(
        "/api/admin/audit-entries",
        params={**params, "start": "2000-01-01T00:00:00+00:00", "end": "2999-01-01T00:00:00+00:00"},
        headers=headers,
    ).json()
    assert len(window) == 3

    inverted = client.get(
        "/api/admin/audit-entries",
        params={"start": "2999-01-01T00:00:00+00:00", "end": "2000-01-01T00:00:00+00:00"},
        headers=headers,
    )
    assert inverted.status_code == 400
