"""
saas_engine/models/plan.py

Plan tiers.

Plans are ordered entitlement levels: FREE < PRO < ENTERPRISE.
FREE is the absence of an active paid subscription, never a price.
"""

from enum import Enum


class PlanTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


_PLAN_RANK = {
    PlanTier.FREE: 1,
    PlanTier.PRO: 2,
    PlanTier.ENTERPRISE: 3,
}

PAID_PLANS = frozenset({PlanTier.PRO, PlanTier.ENTERPRISE})


def plan_rank(plan: PlanTier) -> int:
    return _PLAN_RANK[PlanTier(plan)]
