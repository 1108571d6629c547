"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles subscription lookup, webhook signature verification and event parsing.
"""
from typing import Dict, Any, Optional
import logging

import stripe

from saas_engine.core.config import settings
from saas_engine.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    ProviderSubscription,
)

logger = logging.getLogger(__name__)

# Preferred when a customer holds several subscriptions
_LIVE_STATUSES = ("active", "trialing", "past_due")


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a StripeObject or plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _first_price_id(subscription: Any) -> Optional[str]:
    items = _get(_get(subscription, "items", {}), "data", [])
    if not items:
        return None
    price = _get(items[0], "price")
    if isinstance(price, str):
        return price
    return _get(price, "id")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES

    def get_subscription(self, customer_ref: str) -> Optional[ProviderSubscription]:
        """Return the customer's most relevant subscription, or None."""
        try:
            listing = stripe.Subscription.list(customer=customer_ref, status="all", limit=10)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")

        subscriptions = list(_get(listing, "data", []))
        if not subscriptions:
            return None

        chosen = subscriptions[0]
        for candidate in subscriptions:
            if _get(candidate, "status") in _LIVE_STATUSES:
                chosen = candidate
                break

        return ProviderSubscription(
            subscription_ref=_get(chosen, "id"),
            status=_get(chosen, "status", ""),
            price_id=_first_price_id(chosen),
        )

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Any) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = _get(event, "type", "")
        event_id = _get(event, "id")
        if not event_id:
            raise BillingWebhookError("Event has no id")
        data = _get(_get(event, "data", {}), "object", {})
        metadata = dict(_get(data, "metadata", {}) or {})

        user_id = metadata.get("user_id")
        customer_ref = None
        subscription_ref = None
        provider_status = None
        price_id = None

        if event_type.startswith("customer.subscription."):
            subscription_ref = _get(data, "id")
            customer_ref = _get(data, "customer")
            provider_status = _get(data, "status")
            price_id = _first_price_id(data)

        elif event_type == "checkout.session.completed":
            customer_ref = _get(data, "customer")
            subscription_ref = _get(data, "subscription")
            # Session carries no subscription status; fetch it
            if subscription_ref:
                try:
                    subscription = stripe.Subscription.retrieve(subscription_ref)
                except stripe.StripeError as e:
                    raise BillingWebhookError(f"Stripe subscription retrieve failed: {e}")
                provider_status = _get(subscription, "status")
                price_id = _first_price_id(subscription)
                if not user_id:
                    user_id = _get(_get(subscription, "metadata", {}), "user_id")

        else:
            logger.debug("[billing] ignoring stripe event type %s", event_type)

        return BillingWebhookResult(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            customer_ref=customer_ref,
            subscription_ref=subscription_ref,
            provider_status=provider_status,
            price_id=price_id,
            metadata=metadata,
        )
