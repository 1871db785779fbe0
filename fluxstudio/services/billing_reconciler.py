"""
Billing Event Reconciler

Translates Stripe webhook events into account state changes.

Each supported event type maps to an ``EventRoute``: how to find the account
the event belongs to, and a pure handler that turns ``(Account, EventPayload)``
into an ``AccountUpdate``. ``BillingEventReconciler.apply`` then executes the
update step by step. Every step is isolated: a failure is logged and the
remaining steps still run, and nothing is raised back to the webhook route,
so Stripe never enters a redelivery loop over one bad event.

Delivery is at least once and in no particular order. Duplicate deliveries
are harmless because the billing period tracker only refreshes credits when
the period start changes.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fluxstudio.db.accounts import (
    get_account,
    get_account_by_customer_ref,
    get_account_by_subscription_ref,
    update_account,
)
from fluxstudio.db.webhook_events import is_event_processed, record_processed_event
from fluxstudio.models.subscription import (
    Account,
    SubscriptionStatus,
    SubscriptionTier,
    tier_for_price,
)
from fluxstudio.services import billing_period, credit_ledger, subscription_tiers
from fluxstudio.services.payments import get_stripe_service, get_stripe_value, metadata_to_dict
from fluxstudio.services.prometheus_metrics import record_webhook_event
from fluxstudio.utils.exceptions import InvalidBillingPeriodError, UnknownPriceError
from fluxstudio.utils.security_validators import sanitize_for_logging
from fluxstudio.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"


@dataclass
class EventPayload:
    """
    The event's ``data.object``, plus the provider subscription fetched for
    it when the route asks for one (invoices carry only a reference).
    """

    object: Mapping[str, Any]
    subscription: Any = None


@dataclass
class AccountUpdate:
    """
    Everything one event wants done to one account, in execution order:
    cancel a superseded subscription, store billing references, change the
    tier or status, record the period (given or fetched), refresh credits.
    """

    cancel_subscription_ref: str | None = None
    billing_customer_ref: str | None = None
    billing_subscription_ref: str | None = None
    tier: SubscriptionTier | None = None
    preserve_credits: bool = True
    status: SubscriptionStatus | None = None
    period: tuple[datetime, datetime] | None = None
    fetch_period_for: str | None = None
    refresh_credits: bool = False

    @property
    def is_empty(self) -> bool:
        return (
            self.cancel_subscription_ref is None
            and self.billing_customer_ref is None
            and self.billing_subscription_ref is None
            and self.tier is None
            and self.status is None
            and self.period is None
            and self.fetch_period_for is None
            and not self.refresh_credits
        )


@dataclass
class ReconcileResult:
    event_type: str
    outcome: str  # applied | partial | ignored | duplicate | unhandled | invalid
    account_id: str | None = None
    failed_steps: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EventRoute:
    resolve_account: Callable[[Mapping[str, Any]], Account | None]
    handle: Callable[[Account, EventPayload], AccountUpdate]
    # Subscription id to retrieve before calling ``handle``
    related_subscription: Callable[[Mapping[str, Any]], str | None] | None = None


# ==================== Payload helpers ====================


def _as_ref(value: Any) -> str | None:
    """Stripe expands references into objects on request; accept either shape."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    ref = get_stripe_value(value, "id")
    return ref if isinstance(ref, str) and ref else None


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value) if value > 0 else None


def _period_from(obj: Any, start_key: str, end_key: str) -> tuple[datetime, datetime] | None:
    start = _positive_int(get_stripe_value(obj, start_key))
    end = _positive_int(get_stripe_value(obj, end_key))
    if start is None or end is None:
        return None
    try:
        return billing_period.coerce_period(start, end)
    except InvalidBillingPeriodError as e:
        logger.warning(f"Discarding malformed period from Stripe payload: {e}")
        return None


def _first_subscription_item(subscription: Any) -> Any:
    items = get_stripe_value(get_stripe_value(subscription, "items"), "data") or []
    return items[0] if items else None


def subscription_period(subscription: Any) -> tuple[datetime, datetime] | None:
    """
    Period bounds of a subscription: the first item's period (newer API
    versions only set it there), else the subscription's own fields.
    """
    if subscription is None:
        return None
    item = _first_subscription_item(subscription)
    if item is not None:
        period = _period_from(item, "current_period_start", "current_period_end")
        if period:
            return period
    return _period_from(subscription, "current_period_start", "current_period_end")


def invoice_period(invoice: Mapping[str, Any], subscription: Any) -> tuple[datetime, datetime] | None:
    """Subscription item period, then subscription period, then the invoice's own."""
    return subscription_period(subscription) or _period_from(invoice, "period_start", "period_end")


def subscription_price_id(subscription: Any) -> str | None:
    item = _first_subscription_item(subscription)
    return _as_ref(get_stripe_value(item, "price")) if item is not None else None


def invoice_subscription_ref(invoice: Mapping[str, Any]) -> str | None:
    ref = _as_ref(get_stripe_value(invoice, "subscription"))
    if ref:
        return ref
    # Newer API versions nest it under parent.subscription_details
    details = get_stripe_value(get_stripe_value(invoice, "parent"), "subscription_details")
    return _as_ref(get_stripe_value(details, "subscription"))


def checkout_account_id(session: Mapping[str, Any]) -> str | None:
    metadata = metadata_to_dict(get_stripe_value(session, "metadata"))
    return metadata.get("accountId") or metadata.get("userId") or None


# ==================== Pure handlers ====================


def handle_subscription_created(account: Account, payload: EventPayload) -> AccountUpdate:
    """
    New provider subscription: activate the purchased tier with a fresh grant.

    Raises:
        UnknownPriceError: If the subscription's price is not a configured tier
    """
    subscription = payload.object
    tier = tier_for_price(subscription_price_id(subscription))
    return AccountUpdate(
        billing_customer_ref=_as_ref(get_stripe_value(subscription, "customer")),
        billing_subscription_ref=_as_ref(get_stripe_value(subscription, "id")),
        tier=tier,
        preserve_credits=False,
        status=SubscriptionStatus.ACTIVE,
        period=subscription_period(subscription),
    )


def provider_status_to_subscription_status(subscription: Mapping[str, Any]) -> SubscriptionStatus | None:
    provider_status = get_stripe_value(subscription, "status")
    if provider_status == "active":
        return SubscriptionStatus.ACTIVE
    if provider_status == "canceled":
        return SubscriptionStatus.CANCELED
    if get_stripe_value(subscription, "cancel_at_period_end"):
        return SubscriptionStatus.CANCELING
    return None


def handle_subscription_updated(account: Account, payload: EventPayload) -> AccountUpdate:
    """Status and period only; the tier is not derived from this event."""
    subscription = payload.object
    return AccountUpdate(
        status=provider_status_to_subscription_status(subscription),
        period=subscription_period(subscription),
    )


def handle_subscription_deleted(account: Account, payload: EventPayload) -> AccountUpdate:
    return AccountUpdate(
        tier=SubscriptionTier.FREE,
        preserve_credits=False,
        status=SubscriptionStatus.CANCELED,
    )


def handle_invoice_payment_succeeded(account: Account, payload: EventPayload) -> AccountUpdate:
    """
    A paid invoice means a cycle is underway. With usable bounds the period
    tracker decides whether credits refresh; without any, refresh anyway.
    """
    period = invoice_period(payload.object, payload.subscription)
    if period is None:
        return AccountUpdate(refresh_credits=True)
    return AccountUpdate(period=period)


def handle_checkout_session_completed(account: Account, payload: EventPayload) -> AccountUpdate:
    """
    Raises:
        UnknownPriceError: If the checkout's price is not a configured tier
    """
    session = payload.object
    subscription_ref = _as_ref(get_stripe_value(session, "subscription"))
    if not subscription_ref:
        # One-off payment sessions carry no subscription
        return AccountUpdate()

    metadata = metadata_to_dict(get_stripe_value(session, "metadata"))
    tier = tier_for_price(metadata.get("priceId"))

    cancel_ref = None
    existing_ref = metadata.get("existingSubscriptionId") or None
    if metadata.get("isUpgrade") == "true" and existing_ref and existing_ref != subscription_ref:
        cancel_ref = existing_ref

    return AccountUpdate(
        cancel_subscription_ref=cancel_ref,
        billing_customer_ref=_as_ref(get_stripe_value(session, "customer")),
        billing_subscription_ref=subscription_ref,
        tier=tier,
        preserve_credits=False,
        status=SubscriptionStatus.ACTIVE,
        fetch_period_for=subscription_ref,
    )


def _account_from_checkout(session: Mapping[str, Any]) -> Account | None:
    account_id = checkout_account_id(session)
    return get_account(account_id) if account_id else None


EVENT_ROUTES: dict[str, EventRoute] = {
    SUBSCRIPTION_CREATED: EventRoute(
        resolve_account=lambda obj: get_account_by_customer_ref(_as_ref(get_stripe_value(obj, "customer"))),
        handle=handle_subscription_created,
    ),
    SUBSCRIPTION_UPDATED: EventRoute(
        resolve_account=lambda obj: get_account_by_subscription_ref(_as_ref(get_stripe_value(obj, "id"))),
        handle=handle_subscription_updated,
    ),
    SUBSCRIPTION_DELETED: EventRoute(
        resolve_account=lambda obj: get_account_by_subscription_ref(_as_ref(get_stripe_value(obj, "id"))),
        handle=handle_subscription_deleted,
    ),
    INVOICE_PAYMENT_SUCCEEDED: EventRoute(
        resolve_account=lambda obj: get_account_by_subscription_ref(invoice_subscription_ref(obj)),
        handle=handle_invoice_payment_succeeded,
        related_subscription=invoice_subscription_ref,
    ),
    CHECKOUT_SESSION_COMPLETED: EventRoute(
        resolve_account=_account_from_checkout,
        handle=handle_checkout_session_completed,
    ),
}


# ==================== Execution ====================


def store_billing_refs(
    account_id: str, customer_ref: str | None, subscription_ref: str | None
) -> Account:
    """Point the account at a (possibly new) Stripe customer and subscription."""

    def _plan(account: Account) -> dict[str, Any] | None:
        changes: dict[str, Any] = {}
        if customer_ref and account.billing_customer_ref != customer_ref:
            changes["billing_customer_ref"] = customer_ref
        if subscription_ref and account.billing_subscription_ref != subscription_ref:
            changes["billing_subscription_ref"] = subscription_ref
        return changes or None

    return update_account(account_id, _plan, operation_name="store_billing_refs")


class BillingEventReconciler:
    """Routes verified Stripe events to handlers and applies their updates."""

    def __init__(self, stripe_service_factory=get_stripe_service, routes: dict[str, EventRoute] | None = None):
        self._stripe_service_factory = stripe_service_factory
        self._routes = EVENT_ROUTES if routes is None else routes

    def process_event(self, event: Mapping[str, Any]) -> ReconcileResult:
        """
        Reconcile one verified event. Never raises for event content problems.
        """
        event_id = event.get("id")
        event_type = event.get("type") or "unknown"

        if event_id and is_event_processed(event_id):
            result = ReconcileResult(event_type=event_type, outcome="duplicate")
            record_webhook_event(event_type, result.outcome)
            return result

        result = self.reconcile(event_type, (event.get("data") or {}).get("object") or {})

        if event_id and result.outcome not in ("unhandled", "duplicate"):
            record_processed_event(
                event_id=event_id,
                event_type=event_type,
                account_id=result.account_id,
                metadata={"outcome": result.outcome, "failed_steps": result.failed_steps},
            )

        record_webhook_event(event_type, result.outcome)
        return result

    def reconcile(self, event_type: str, obj: Mapping[str, Any]) -> ReconcileResult:
        route = self._routes.get(event_type)
        if route is None:
            logger.info(f"Unhandled Stripe event type: {sanitize_for_logging(event_type)}")
            return ReconcileResult(event_type=event_type, outcome="unhandled")

        try:
            account = route.resolve_account(obj)
        except Exception as e:
            logger.error(f"Failed to resolve account for {event_type}: {e}", exc_info=True)
            capture_payment_error(e, operation="webhook_resolve_account", details={"event_type": event_type})
            return ReconcileResult(event_type=event_type, outcome="ignored", failed_steps=["resolve_account"])

        if account is None:
            logger.info(
                f"No account matches {event_type} for object "
                f"{sanitize_for_logging(get_stripe_value(obj, 'id'))}; dropping event"
            )
            return ReconcileResult(event_type=event_type, outcome="ignored")

        payload = EventPayload(object=obj)
        if route.related_subscription is not None:
            subscription_ref = route.related_subscription(obj)
            if subscription_ref:
                payload.subscription = self._retrieve_subscription(subscription_ref)

        try:
            update = route.handle(account, payload)
        except UnknownPriceError as e:
            logger.warning(f"{event_type} for account {sanitize_for_logging(account.id)} skipped: {e}")
            return ReconcileResult(event_type=event_type, outcome="invalid", account_id=account.id)

        if update.is_empty:
            logger.info(f"{event_type} requires no change for account {sanitize_for_logging(account.id)}")
            return ReconcileResult(event_type=event_type, outcome="applied", account_id=account.id)

        failed_steps = self.apply(account.id, update)
        outcome = "partial" if failed_steps else "applied"
        logger.info(
            f"Reconciled {event_type} for account {sanitize_for_logging(account.id)} ({outcome})"
        )
        return ReconcileResult(
            event_type=event_type, outcome=outcome, account_id=account.id, failed_steps=failed_steps
        )

    def apply(self, account_id: str, update: AccountUpdate) -> list[str]:
        """
        Execute an update's steps in order.

        Returns:
            Names of the steps that failed
        """
        failed: list[str] = []

        def _step(name: str, action: Callable[[], Any]) -> Any:
            try:
                return action()
            except Exception as e:
                failed.append(name)
                logger.error(
                    f"Reconcile step '{name}' failed for account {sanitize_for_logging(account_id)}: {e}",
                    exc_info=True,
                )
                capture_payment_error(
                    e, operation=f"webhook_{name}", account_id=account_id
                )
                return None

        if update.cancel_subscription_ref:
            _step(
                "cancel_previous_subscription",
                lambda: self._stripe_service_factory().cancel_subscription(update.cancel_subscription_ref),
            )

        if update.billing_customer_ref or update.billing_subscription_ref:
            _step(
                "store_billing_refs",
                lambda: store_billing_refs(
                    account_id, update.billing_customer_ref, update.billing_subscription_ref
                ),
            )

        if update.tier is not None:
            _step(
                "set_tier",
                lambda: subscription_tiers.set_tier(
                    account_id,
                    update.tier,
                    preserve_credits=update.preserve_credits,
                    status=update.status or SubscriptionStatus.ACTIVE,
                ),
            )
        elif update.status is not None:
            _step("set_status", lambda: subscription_tiers.set_status(account_id, update.status))

        if update.period is not None:
            _step("update_period", lambda: billing_period.update_period(account_id, *update.period))

        if update.fetch_period_for:
            _step("fetch_period", lambda: self._forward_fetched_period(account_id, update.fetch_period_for))

        if update.refresh_credits:
            _step(
                "refresh_credits",
                lambda: credit_ledger.refresh_to_max(account_id, trigger="payment_without_period"),
            )

        return failed

    def _retrieve_subscription(self, subscription_ref: str) -> Any:
        try:
            return self._stripe_service_factory().retrieve_subscription(subscription_ref)
        except Exception as e:
            logger.warning(
                f"Could not retrieve subscription {sanitize_for_logging(subscription_ref)}: {e}"
            )
            return None

    def _forward_fetched_period(self, account_id: str, subscription_ref: str) -> Account | None:
        subscription = self._stripe_service_factory().retrieve_subscription(subscription_ref)
        period = subscription_period(subscription)
        if period is None:
            logger.info(f"Subscription {sanitize_for_logging(subscription_ref)} reports no period yet")
            return None
        return billing_period.update_period(account_id, *period)


billing_event_reconciler = BillingEventReconciler()
