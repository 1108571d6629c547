"""
Billing provider protocol.

Defines the capability the entitlement core needs from a billing provider:
look up the current subscription for a customer, and verify + parse inbound
webhooks. This allows swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProviderSubscription:
    """Current subscription for a customer, as the provider reports it."""
    subscription_ref: str
    status: str  # raw provider status: active, trialing, past_due, ...
    price_id: Optional[str]


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    user_id: Optional[str]
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    provider_status: Optional[str]
    price_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_subscription_state(self) -> bool:
        return bool(self.subscription_ref and self.provider_status)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Subscription lookup by customer reference
    - Webhook signature verification and parsing
    """

    def get_subscription(self, customer_ref: str) -> Optional[ProviderSubscription]:
        """
        Fetch the customer's current subscription.

        Args:
            customer_ref: Provider customer ID

        Returns:
            The subscription, or None when the customer has none

        Raises:
            BillingProviderError: If the provider call fails
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Returns:
            Parsed webhook result

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
