"""
saas_engine/models/module.py

Module registry snapshots.

Lifecycle: DRAFT (never enabled) -> ACTIVE (enabled) <-> DISABLED -> ARCHIVED.
Archival is terminal; disabled and archived modules are never accessible.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from saas_engine.models.plan import PlanTier


class ModuleState(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    ARCHIVED = "ARCHIVED"


class Module(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    key: str
    name: str
    description: Optional[str] = None
    min_plan: PlanTier = PlanTier.FREE
    enabled: bool = False
    is_archived: bool = False
    activated_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def state(self) -> ModuleState:
        if self.is_archived:
            return ModuleState.ARCHIVED
        if self.enabled:
            return ModuleState.ACTIVE
        if self.activated_at is None:
            return ModuleState.DRAFT
        return ModuleState.DISABLED

    @classmethod
    def from_row(cls, row) -> "Module":
        return cls(
            id=row.id,
            key=row.key,
            name=row.name,
            description=row.description,
            min_plan=PlanTier(row.min_plan),
            enabled=bool(row.enabled),
            is_archived=bool(row.is_archived),
            activated_at=row.activated_at,
            archived_at=row.archived_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class ModuleAccessGrant(BaseModel):
    """Explicit per-user override; never elevates User.plan."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    module_id: str
    granted_by: Optional[str] = None
    created_at: Optional[datetime] = None
