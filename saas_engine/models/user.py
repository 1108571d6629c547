from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from saas_engine.models.plan import PlanTier


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    FOUNDER = "FOUNDER"


class SubscriptionStatus(str, Enum):
    """Internal view of billing-provider subscription health."""
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: Role = Role.USER
    plan: PlanTier = PlanTier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def normalize_email(email: str) -> str:
        return (email or "").strip().lower()

    @classmethod
    def from_row(cls, row) -> "User":
        return cls(
            id=row.id,
            email=row.email,
            role=Role(row.role),
            plan=PlanTier(row.plan),
            subscription_status=SubscriptionStatus(row.subscription_status),
            billing_customer_ref=row.billing_customer_ref,
            billing_subscription_ref=row.billing_subscription_ref,
            is_deleted=bool(row.is_deleted),
            deleted_at=row.deleted_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
