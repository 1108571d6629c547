"""
saas_engine/models/billing.py

Inbound billing facts.

A ReconciliationEvent is one fact observed at the billing provider. Deliveries
are at-least-once and may arrive duplicated or out of order; each event is
applied as an independent "set to this value" instruction.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReconciliationSource(str, Enum):
    EVENT = "event"
    SYNC = "sync"


class ReconciliationEvent(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    user_id: str = Field(..., min_length=1)
    provider_status: str
    provider_price_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    provider_event_id: Optional[str] = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("provider_price_id", "subscription_ref", "customer_ref", "provider_event_id")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None
