from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class AuditAction(str, Enum):
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_REVOKED = "ACCESS_REVOKED"
    PLAN_CHANGED = "PLAN_CHANGED"
    SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"
    USER_CREATED = "USER_CREATED"
    USER_DELETED = "USER_DELETED"
    ROLE_CHANGED = "ROLE_CHANGED"
    MODULE_CREATED = "MODULE_CREATED"
    MODULE_UPDATED = "MODULE_UPDATED"
    MODULE_ENABLED = "MODULE_ENABLED"
    MODULE_DISABLED = "MODULE_DISABLED"
    MODULE_ARCHIVED = "MODULE_ARCHIVED"


class AuditEntityType(str, Enum):
    USER = "USER"
    MODULE = "MODULE"
    MODULE_ACCESS = "MODULE_ACCESS"


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    performed_by_user_id: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
