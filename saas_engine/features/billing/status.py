"""Provider subscription status -> internal SubscriptionStatus."""

from typing import Optional

from saas_engine.models.user import SubscriptionStatus

# Unknown or future provider statuses never grant entitlement
_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
}


def map_status(provider_status: Optional[str]) -> SubscriptionStatus:
    if not provider_status:
        return SubscriptionStatus.INACTIVE
    return _STATUS_MAP.get(provider_status.strip().lower(), SubscriptionStatus.INACTIVE)
