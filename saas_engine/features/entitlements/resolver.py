"""
saas_engine/features/entitlements/resolver.py

The single access decision for modules and role-gated surfaces.

Decision order (first match wins):
1. module archived or disabled  -> DENY  MODULE_UNAVAILABLE (even for admins)
2. role ADMIN / FOUNDER         -> ALLOW ROLE_BYPASS
3. explicit grant               -> ALLOW EXPLICIT_GRANT
4. plan rank >= module min plan -> ALLOW PLAN_SUFFICIENT
5. otherwise                    -> DENY  PLAN_INSUFFICIENT

Pure over already-loaded state: no I/O, no clock.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from saas_engine.models.plan import PlanTier, plan_rank
from saas_engine.models.user import Role


BYPASS_ROLES = frozenset({Role.ADMIN, Role.FOUNDER})


class AccessReason(str, Enum):
    MODULE_UNAVAILABLE = "MODULE_UNAVAILABLE"
    ROLE_BYPASS = "ROLE_BYPASS"
    EXPLICIT_GRANT = "EXPLICIT_GRANT"
    PLAN_SUFFICIENT = "PLAN_SUFFICIENT"
    PLAN_INSUFFICIENT = "PLAN_INSUFFICIENT"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessReason


class Subject(Protocol):
    role: Role
    plan: PlanTier


class Gate(Protocol):
    min_plan: PlanTier
    enabled: bool
    is_archived: bool


def has_role_bypass(role: Role) -> bool:
    return Role(role) in BYPASS_ROLES


def can_access(user: Subject, module: Gate, has_explicit_grant: bool) -> AccessDecision:
    if module.is_archived or not module.enabled:
        return AccessDecision(False, AccessReason.MODULE_UNAVAILABLE)
    if has_role_bypass(user.role):
        return AccessDecision(True, AccessReason.ROLE_BYPASS)
    if has_explicit_grant:
        return AccessDecision(True, AccessReason.EXPLICIT_GRANT)
    if plan_rank(user.plan) >= plan_rank(module.min_plan):
        return AccessDecision(True, AccessReason.PLAN_SUFFICIENT)
    return AccessDecision(False, AccessReason.PLAN_INSUFFICIENT)
