"""
Stripe Service
Thin wrapper over the Stripe SDK: checkout, subscription management and
webhook verification. Account state is never touched here; callers feed the
results into the tier state machine and billing period tracker.
"""

import json
import logging
from functools import lru_cache
from typing import Any

import stripe

from fluxstudio.config.config import Config
from fluxstudio.utils.exceptions import ExternalOperationError
from fluxstudio.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)


def get_stripe_value(obj: Any, attr: str) -> Any:
    """
    Safely extract a field from a Stripe object (dict-like or attribute-based).
    """
    if obj is None:
        return None

    if isinstance(obj, dict):
        return obj.get(attr)

    if hasattr(obj, attr):
        return getattr(obj, attr)

    try:
        return obj[attr]
    except (KeyError, TypeError, IndexError):
        return None


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    """Convert Stripe metadata object into a plain dictionary."""
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    try:
        return dict(metadata)
    except (TypeError, ValueError):
        return {}


class StripeService:
    """Service class for Stripe subscription operations"""

    def __init__(self):
        """Initialize Stripe with API key from configuration"""
        self.api_key = Config.STRIPE_SECRET_KEY
        self.webhook_secret = Config.STRIPE_WEBHOOK_SECRET

        if not self.api_key:
            raise ValueError("STRIPE_SECRET_KEY not found in environment variables")

        if not self.webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
            )

        stripe.api_key = self.api_key
        self.frontend_url = Config.FRONTEND_URL

        logger.info("Stripe service initialized")

    # ==================== Webhooks ====================

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Verify a webhook delivery and return the event as a plain dict.

        Raises:
            ValueError: If the secret or signature is missing, or the payload is not JSON
            stripe.SignatureVerificationError: If the signature does not match
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured - rejecting webhook")
            raise ValueError("Webhook secret not configured")
        if not signature:
            logger.error("Missing webhook signature")
            raise ValueError("Missing webhook signature")

        # Constant-time signature check; raises before any parsing is trusted
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return json.loads(payload)

    # ==================== Customers & Checkout ====================

    def create_customer(self, account_id: str, email: str | None, name: str | None = None) -> str:
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name or None,
                metadata={"account_id": account_id},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating customer for account {account_id}: {e}")
            capture_payment_error(e, operation="create_customer", account_id=account_id)
            raise ExternalOperationError("stripe", "Failed to create customer") from e

        logger.info(f"Stripe customer created: {customer.id} for account {account_id}")
        return customer.id

    def create_subscription_checkout(
        self,
        account_id: str,
        customer_id: str,
        price_id: str,
        return_origin: str | None = None,
        existing_subscription_id: str | None = None,
        is_upgrade: bool = False,
    ) -> dict[str, str]:
        """
        Create a subscription-mode Checkout Session.

        The metadata is read back by the ``checkout.session.completed`` webhook
        to find the account and, for upgrades, the subscription to cancel.

        Returns:
            {"sessionId": ..., "url": ...}
        """
        origin = (return_origin or self.frontend_url).rstrip("/")
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=f"{origin}/subscription?success=true&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{origin}/subscription?canceled=true",
                metadata={
                    "accountId": account_id,
                    "priceId": price_id,
                    "isUpgrade": "true" if is_upgrade else "false",
                    "existingSubscriptionId": existing_subscription_id or "",
                },
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating subscription checkout: {e}")
            capture_payment_error(
                e,
                operation="create_checkout",
                account_id=account_id,
                details={"price_id": price_id, "is_upgrade": is_upgrade},
            )
            raise ExternalOperationError("stripe", "Failed to create checkout session") from e

        logger.info(f"Subscription checkout session created: {session.id} for account {account_id}")
        return {"sessionId": session.id, "url": session.url}

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            logger.error(f"Error retrieving checkout session {session_id}: {e}")
            raise ExternalOperationError("stripe", "Failed to retrieve checkout session") from e

        subscription = get_stripe_value(session, "subscription")
        if subscription is not None and not isinstance(subscription, str):
            subscription = get_stripe_value(subscription, "id")

        return {
            "status": get_stripe_value(session, "payment_status"),
            "subscriptionId": subscription,
        }

    # ==================== Subscriptions ====================

    def retrieve_subscription(self, subscription_id: str) -> Any:
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Error retrieving subscription {subscription_id}: {e}")
            raise ExternalOperationError("stripe", "Failed to retrieve subscription") from e

    def cancel_subscription(self, subscription_id: str) -> Any:
        """Cancel immediately (used when an upgrade replaces the subscription)."""
        try:
            subscription = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error canceling subscription {subscription_id}: {e}")
            capture_payment_error(
                e, operation="cancel_subscription", details={"subscription_id": subscription_id}
            )
            raise ExternalOperationError("stripe", "Failed to cancel subscription") from e

        logger.info(f"Canceled Stripe subscription {subscription_id}")
        return subscription

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Any:
        """Schedule (cancel=True) or withdraw (cancel=False) cancellation at period end."""
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            operation = "schedule_cancellation" if cancel else "resume_subscription"
            logger.error(f"Stripe error during {operation} for {subscription_id}: {e}")
            capture_payment_error(
                e, operation=operation, details={"subscription_id": subscription_id}
            )
            raise ExternalOperationError("stripe", f"Failed to {operation.replace('_', ' ')}") from e

        logger.info(f"Subscription {subscription_id} cancel_at_period_end={cancel}")
        return subscription

    def update_subscription_price(self, subscription: Any, price_id: str) -> Any:
        """
        Swap the subscription's single item to ``price_id``, invoicing the
        proration immediately.
        """
        subscription_id = get_stripe_value(subscription, "id")
        items = get_stripe_value(get_stripe_value(subscription, "items"), "data") or []
        if not items:
            raise ExternalOperationError("stripe", f"Subscription {subscription_id} has no items")

        try:
            updated = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": get_stripe_value(items[0], "id"), "price": price_id}],
                proration_behavior="always_invoice",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error changing price on {subscription_id}: {e}")
            capture_payment_error(
                e,
                operation="upgrade_subscription",
                details={"subscription_id": subscription_id, "price_id": price_id},
            )
            raise ExternalOperationError("stripe", "Failed to update subscription") from e

        logger.info(f"Subscription {subscription_id} moved to price {price_id}")
        return updated


@lru_cache(maxsize=1)
def get_stripe_service() -> StripeService:
    """
    Shared StripeService instance.

    Raises:
        ValueError: If Stripe is not configured
    """
    return StripeService()
