"""
Module access routes for end users.

- GET /api/modules                     visible modules with the caller's access
- GET /api/modules/{module_ref}/access access decision (denial is a 200)
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from saas_engine.core.auth import get_current_user
from saas_engine.features.modules.service import get_module_access_service
from saas_engine.models.user import User


router = APIRouter(prefix="/modules", tags=["modules"])


class AccessDecisionResponse(BaseModel):
    allowed: bool
    reason: str


class ModuleAccessItem(BaseModel):
    id: str
    key: str
    name: str
    description: Optional[str] = None
    min_plan: str
    allowed: bool
    reason: str


@router.get("", response_model=List[ModuleAccessItem])
def list_my_modules(user: User = Depends(get_current_user)):
    views = get_module_access_service().list_for_user(user.id)
    return [
        ModuleAccessItem(
            id=view.module.id,
            key=view.module.key,
            name=view.module.name,
            description=view.module.description,
            min_plan=view.module.min_plan.value,
            allowed=view.decision.allowed,
            reason=view.decision.reason.value,
        )
        for view in views
    ]


@router.get("/{module_ref}/access", response_model=AccessDecisionResponse)
def check_module_access(module_ref: str, user: User = Depends(get_current_user)):
    decision = get_module_access_service().can_access_module(user.id, module_ref)
    return AccessDecisionResponse(allowed=decision.allowed, reason=decision.reason.value)
