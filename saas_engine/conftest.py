# saas_engine/conftest.py
import os
import sys
from pathlib import Path
from uuid import uuid4

import pytest

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("ENV", "test")

from saas_engine.core.database import (  # noqa: E402
    create_all_tables,
    dispose_engine,
    get_db_session,
    init_engine,
    modules,
    users,
)
from saas_engine.models.plan import PlanTier  # noqa: E402
from saas_engine.models.user import Role, SubscriptionStatus  # noqa: E402
from saas_engine.tests.mocks import FakeBillingProvider  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path):
    """
    Fresh SQLite database per test.

    Every service resolves its session through get_db_session(), so pointing
    the global engine at a new file isolates tests completely.
    """
    url = f"sqlite:///{tmp_path / 'saas_engine_test.db'}"
    init_engine(url)
    create_all_tables()
    yield url
    dispose_engine()


@pytest.fixture
def make_user():
    """Insert a user row directly (bypasses services to seed arbitrary state)."""

    def _make(
        email=None,
        role=Role.USER,
        plan=PlanTier.FREE,
        status=SubscriptionStatus.INACTIVE,
        customer_ref=None,
        subscription_ref=None,
        is_deleted=False,
        deleted_at=None,
    ):
        user_id = str(uuid4())
        with get_db_session() as session:
            session.execute(
                users.insert().values(
                    id=user_id,
                    email=email or f"{user_id[:8]}@example.com",
                    role=Role(role).value,
                    plan=PlanTier(plan).value,
                    subscription_status=SubscriptionStatus(status).value,
                    billing_customer_ref=customer_ref,
                    billing_subscription_ref=subscription_ref,
                    is_deleted=is_deleted,
                    deleted_at=deleted_at,
                )
            )
        return user_id

    return _make


@pytest.fixture
def make_module():
    """Insert a module row directly; enabled by default."""

    def _make(key=None, min_plan=PlanTier.FREE, enabled=True, is_archived=False, name=None):
        module_id = str(uuid4())
        key = key or f"mod-{module_id[:8]}"
        with get_db_session() as session:
            session.execute(
                modules.insert().values(
                    id=module_id,
                    key=key,
                    name=name or key.title(),
                    min_plan=PlanTier(min_plan).value,
                    enabled=enabled,
                    is_archived=is_archived,
                )
            )
        return module_id

    return _make


@pytest.fixture
def fake_provider():
    return FakeBillingProvider()


@pytest.fixture
def price_map():
    return {"price_pro_monthly": PlanTier.PRO, "price_ent_monthly": PlanTier.ENTERPRISE}
