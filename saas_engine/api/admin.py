"""
Admin router: module registry, explicit grants, user management, user sync
and audit listing. Requires an ADMIN or FOUNDER caller for every endpoint;
role changes are FOUNDER-only.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, ConfigDict, Field

from saas_engine.core.auth import require_admin, require_founder
from saas_engine.core.errors import ValidationError
from saas_engine.features.audit.service import get_audit_recorder
from saas_engine.features.billing.service import sync_plan
from saas_engine.features.modules.registry import get_module_registry
from saas_engine.features.modules.service import get_module_access_service
from saas_engine.features.users import service as user_service
from saas_engine.features.users.service import require_user
from saas_engine.models.audit import AuditAction, AuditEntityType
from saas_engine.models.module import Module
from saas_engine.models.plan import PlanTier
from saas_engine.models.user import Role, User

logger = logging.getLogger("saas_engine.admin")

router = APIRouter(prefix="/admin", tags=["admin"])


# ============================================================================
# Pydantic Models
# ============================================================================

class ModuleCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    key: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    min_plan: PlanTier = PlanTier.FREE


class ModuleUpdateRequest(BaseModel):
    """Key is immutable and therefore not accepted here."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    min_plan: Optional[PlanTier] = None


class ModuleResponse(BaseModel):
    id: str
    key: str
    name: str
    description: Optional[str] = None
    min_plan: str
    enabled: bool
    is_archived: bool
    state: str
    archived_at: Optional[datetime] = None

    @classmethod
    def from_module(cls, module: Module) -> "ModuleResponse":
        return cls(
            id=module.id,
            key=module.key,
            name=module.name,
            description=module.description,
            min_plan=module.min_plan.value,
            enabled=module.enabled,
            is_archived=module.is_archived,
            state=module.state.value,
            archived_at=module.archived_at,
        )


class GrantChangeResponse(BaseModel):
    outcome: str


class GrantItem(BaseModel):
    user_id: str
    module_id: str
    granted_by: Optional[str] = None
    created_at: Optional[datetime] = None


class UserCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    email: str = Field(..., min_length=3, max_length=320)


class RoleUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Role


class UserItem(BaseModel):
    id: str
    email: str
    role: str
    plan: str
    subscription_status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserItem":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role.value,
            plan=user.plan.value,
            subscription_status=user.subscription_status.value,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserListResponse(BaseModel):
    users: List[UserItem]
    total: int
    limit: int
    offset: int


class UserSyncResponse(BaseModel):
    user_id: str
    plan: str
    subscription_status: str
    changed: bool
    unmapped_price: bool


class AuditEntryItem(BaseModel):
    id: int
    action: str
    entity_type: str
    entity_id: str
    performed_by_user_id: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: Optional[datetime] = None


# ============================================================================
# Module registry
# ============================================================================

@router.get("/modules", response_model=List[ModuleResponse])
def list_modules(include_archived: bool = Query(False), admin: User = Depends(require_admin)):
    return [ModuleResponse.from_module(m) for m in get_module_registry().list_modules(include_archived)]


@router.post("/modules", response_model=ModuleResponse, status_code=201)
def create_module(payload: ModuleCreateRequest, admin: User = Depends(require_admin)):
    module = get_module_registry().create_module(
        key=payload.key,
        name=payload.name,
        description=payload.description,
        min_plan=payload.min_plan,
        created_by=admin.id,
    )
    return ModuleResponse.from_module(module)


@router.patch("/modules/{module_id}", response_model=ModuleResponse)
def update_module(module_id: str, payload: ModuleUpdateRequest, admin: User = Depends(require_admin)):
    module = get_module_registry().update_module(
        module_id,
        name=payload.name,
        description=payload.description,
        min_plan=payload.min_plan,
        performed_by=admin.id,
    )
    return ModuleResponse.from_module(module)


@router.post("/modules/{module_id}/enable", response_model=ModuleResponse)
def enable_module(module_id: str, admin: User = Depends(require_admin)):
    return ModuleResponse.from_module(get_module_registry().enable_module(module_id, performed_by=admin.id))


@router.post("/modules/{module_id}/disable", response_model=ModuleResponse)
def disable_module(module_id: str, admin: User = Depends(require_admin)):
    return ModuleResponse.from_module(get_module_registry().disable_module(module_id, performed_by=admin.id))


@router.post("/modules/{module_id}/archive", response_model=ModuleResponse)
def archive_module(module_id: str, admin: User = Depends(require_admin)):
    return ModuleResponse.from_module(get_module_registry().archive_module(module_id, performed_by=admin.id))


# ============================================================================
# Explicit grants
# ============================================================================

@router.put("/modules/{module_id}/grants/{user_id}", response_model=GrantChangeResponse)
def grant_module_access(module_id: str, user_id: str, admin: User = Depends(require_admin)):
    outcome = get_module_access_service().grant(user_id, module_id, granted_by=admin.id)
    return GrantChangeResponse(outcome=outcome.value)


@router.delete("/modules/{module_id}/grants/{user_id}", response_model=GrantChangeResponse)
def revoke_module_access(module_id: str, user_id: str, admin: User = Depends(require_admin)):
    outcome = get_module_access_service().revoke(user_id, module_id, revoked_by=admin.id)
    return GrantChangeResponse(outcome=outcome.value)


@router.get("/users/{user_id}/grants", response_model=List[GrantItem])
def list_user_grants(user_id: str, admin: User = Depends(require_admin)):
    require_user(user_id)
    return [GrantItem(**grant.model_dump()) for grant in get_module_access_service().list_grants(user_id)]


# ============================================================================
# Users
# ============================================================================

@router.get("/users", response_model=UserListResponse)
def list_users(
    role: Optional[Role] = Query(None),
    plan: Optional[PlanTier] = Query(None),
    email: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
):
    if email:
        found = user_service.get_user_by_email(email)
        matches = [found] if found else []
        return UserListResponse(
            users=[UserItem.from_user(u) for u in matches], total=len(matches), limit=limit, offset=0
        )
    page, total = user_service.list_users(role=role, plan=plan, limit=limit, offset=offset)
    return UserListResponse(users=[UserItem.from_user(u) for u in page], total=total, limit=limit, offset=offset)


@router.post("/users", response_model=UserItem, status_code=201)
def create_user(payload: UserCreateRequest, admin: User = Depends(require_admin)):
    return UserItem.from_user(user_service.create_user(payload.email))


@router.patch("/users/{user_id}/role", response_model=UserItem)
def update_user_role(user_id: str, payload: RoleUpdateRequest, founder: User = Depends(require_founder)):
    if user_id == founder.id:
        raise ValidationError("Founders cannot change their own role")
    user = user_service.set_role(user_id, payload.role, performed_by=founder.id)
    logger.info("[admin] role changed", extra={"user_id": user_id})
    return UserItem.from_user(user)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(user_id: str, admin: User = Depends(require_admin)):
    if user_id == admin.id:
        raise ValidationError("Admins cannot delete themselves")
    user_service.soft_delete_user(user_id, performed_by=admin.id)
    return Response(status_code=204)


# ============================================================================
# Billing sync + audit
# ============================================================================

@router.post("/users/{user_id}/sync", response_model=UserSyncResponse)
def sync_user_plan(user_id: str, admin: User = Depends(require_admin)):
    result = sync_plan(user_id, acting_user_id=admin.id)
    logger.info("[admin] plan sync", extra={"user_id": user_id, "status": result.subscription_status.value})
    return UserSyncResponse(
        user_id=user_id,
        plan=result.plan.value,
        subscription_status=result.subscription_status.value,
        changed=result.changed,
        unmapped_price=result.unmapped_price,
    )


@router.get("/audit-entries", response_model=List[AuditEntryItem])
def list_audit_entries(
    action: Optional[AuditAction] = Query(None),
    entity_type: Optional[AuditEntityType] = Query(None),
    entity_id: Optional[str] = Query(None),
    performed_by: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
):
    entries = get_audit_recorder().list_entries(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        performed_by=performed_by,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return [
        AuditEntryItem(
            id=e.id,
            action=e.action.value,
            entity_type=e.entity_type.value,
            entity_id=e.entity_id,
            performed_by_user_id=e.performed_by_user_id,
            metadata=e.metadata,
            created_at=e.created_at,
        )
        for e in entries
    ]
