"""
Subscription Routes
Checkout, plan changes, cancellation and the subscription summary shown on
the account page. Stripe is the source of truth for whether a subscription
is live; the account row is the source of truth for tier and credits.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from fluxstudio.config import Config
from fluxstudio.models.subscription import (
    Account,
    SubscriptionStatus,
    tier_for_price,
    to_epoch_seconds,
)
from fluxstudio.routes.helpers.executor import run_sync
from fluxstudio.schemas.subscriptions import (
    BillingPeriodResetResponse,
    CheckoutSessionResponse,
    CheckoutSessionStatusResponse,
    CreateSubscriptionRequest,
    SubscriptionInfoResponse,
    SubscriptionMessageResponse,
    UpgradeSubscriptionRequest,
)
from fluxstudio.security.deps import get_current_account
from fluxstudio.services import billing_period, subscription_tiers
from fluxstudio.services.billing_reconciler import store_billing_refs, subscription_period
from fluxstudio.services.payments import StripeService, get_stripe_service, get_stripe_value
from fluxstudio.utils.exceptions import (
    APIExceptions,
    BillingError,
    ExternalOperationError,
    UnknownPriceError,
)
from fluxstudio.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Subscriptions"])


def _stripe_service() -> StripeService:
    try:
        return get_stripe_service()
    except ValueError as e:
        logger.error(f"Stripe is not configured: {e}")
        raise APIExceptions.service_unavailable("Billing is not configured") from e


def _display_name(account: Account) -> str | None:
    name = " ".join(part for part in (account.first_name, account.last_name) if part)
    return name or None


def _self_heal_period(account: Account, subscription: Any) -> Account:
    """Backfill a period Stripe knows about but the account row lacks."""
    period = subscription_period(subscription)
    if period is None:
        created = get_stripe_value(subscription, "created")
        start = get_stripe_value(subscription, "current_period_start") or created
        end = get_stripe_value(subscription, "current_period_end")
        if not (start and end):
            return account
        period = (start, end)

    healed = billing_period.update_period(account.id, *period)
    return healed or account


@router.get("/subscription", response_model=SubscriptionInfoResponse)
async def get_subscription_info(account: Account = Depends(get_current_account)):
    """Tier, credits and the live Stripe subscription state."""
    has_active_subscription = False
    cancel_at_period_end = False

    if account.billing_subscription_ref:
        try:
            service = _stripe_service()
            subscription = await run_sync(
                service.retrieve_subscription, account.billing_subscription_ref
            )
            has_active_subscription = get_stripe_value(subscription, "status") == "active"
            cancel_at_period_end = bool(get_stripe_value(subscription, "cancel_at_period_end"))

            if account.current_period_end is None:
                try:
                    account = await run_sync(_self_heal_period, account, subscription)
                except BillingError as e:
                    logger.warning(
                        f"Period backfill failed for account {sanitize_for_logging(account.id)}: {e}"
                    )
        except ExternalOperationError as e:
            logger.warning(
                f"Could not load subscription for account {sanitize_for_logging(account.id)}: {e}"
            )
            has_active_subscription = False

    return SubscriptionInfoResponse(
        subscriptionTier=account.subscription_tier.value,
        credits=account.credits,
        maxCredits=account.max_credits,
        creditsResetDate=to_epoch_seconds(account.credits_reset_date),
        hasActiveSubscription=has_active_subscription,
        cancelAtPeriodEnd=cancel_at_period_end,
        currentPeriodEnd=to_epoch_seconds(account.current_period_end),
    )


@router.post("/create-subscription", response_model=CheckoutSessionResponse)
async def create_subscription(
    body: CreateSubscriptionRequest,
    request: Request,
    account: Account = Depends(get_current_account),
):
    """
    Start a Stripe Checkout for ``priceId``.

    If the account already has an active subscription, the checkout is marked
    as an upgrade so the webhook cancels the old subscription once the new
    one is paid.
    """
    if not body.priceId:
        raise APIExceptions.bad_request("Price ID is required")
    if not account.email:
        raise APIExceptions.bad_request("User email not found")
    try:
        tier_for_price(body.priceId)
    except UnknownPriceError as e:
        raise APIExceptions.bad_request("Invalid price ID") from e

    service = _stripe_service()

    is_upgrade = False
    existing_subscription_id = None
    if account.billing_subscription_ref:
        try:
            existing = await run_sync(service.retrieve_subscription, account.billing_subscription_ref)
            if get_stripe_value(existing, "status") == "active":
                is_upgrade = True
                existing_subscription_id = account.billing_subscription_ref
        except ExternalOperationError as e:
            logger.warning(f"Existing subscription lookup failed, treating checkout as new: {e}")

    customer_id = account.billing_customer_ref
    if not customer_id:
        customer_id = await run_sync(
            service.create_customer, account.id, account.email, _display_name(account)
        )
        await run_sync(store_billing_refs, account.id, customer_id, None)

    session = await run_sync(
        service.create_subscription_checkout,
        account.id,
        customer_id,
        body.priceId,
        return_origin=request.headers.get("origin"),
        existing_subscription_id=existing_subscription_id,
        is_upgrade=is_upgrade,
    )
    return CheckoutSessionResponse(**session)


@router.get("/checkout-session/{session_id}", response_model=CheckoutSessionStatusResponse)
async def get_checkout_session(session_id: str, account: Account = Depends(get_current_account)):
    service = _stripe_service()
    session = await run_sync(service.retrieve_checkout_session, session_id)
    return CheckoutSessionStatusResponse(**session)


@router.post("/cancel-subscription", response_model=SubscriptionMessageResponse)
async def cancel_subscription(account: Account = Depends(get_current_account)):
    """Schedule cancellation at period end; tier and credits stay usable until then."""
    if not account.billing_subscription_ref:
        raise APIExceptions.bad_request("No active subscription found")

    service = _stripe_service()
    subscription = await run_sync(service.retrieve_subscription, account.billing_subscription_ref)

    if get_stripe_value(subscription, "status") == "canceled":
        raise APIExceptions.bad_request("Subscription is already canceled")
    if get_stripe_value(subscription, "cancel_at_period_end"):
        raise APIExceptions.bad_request("Subscription is already scheduled for cancellation")

    await run_sync(service.set_cancel_at_period_end, account.billing_subscription_ref, True)
    await run_sync(subscription_tiers.mark_canceling, account.id)

    return SubscriptionMessageResponse(
        message="Subscription will be canceled at the end of the billing period"
    )


@router.post("/resume-subscription", response_model=SubscriptionMessageResponse)
async def resume_subscription(account: Account = Depends(get_current_account)):
    if not account.billing_subscription_ref:
        raise APIExceptions.bad_request("No active subscription found")

    service = _stripe_service()
    subscription = await run_sync(service.retrieve_subscription, account.billing_subscription_ref)

    if get_stripe_value(subscription, "status") == "canceled":
        raise APIExceptions.bad_request("Subscription is already canceled and cannot be resumed")
    if not get_stripe_value(subscription, "cancel_at_period_end"):
        raise APIExceptions.bad_request("Subscription is not scheduled for cancellation")

    await run_sync(service.set_cancel_at_period_end, account.billing_subscription_ref, False)
    await run_sync(subscription_tiers.resume, account.id)

    return SubscriptionMessageResponse(message="Subscription has been resumed successfully")


@router.post("/upgrade-subscription", response_model=SubscriptionMessageResponse)
async def upgrade_subscription(
    body: UpgradeSubscriptionRequest, account: Account = Depends(get_current_account)
):
    """
    Swap the live subscription's price in place.

    Stripe invoices the proration immediately; credits are preserved so the
    new ceiling applies from the next period.
    """
    if not body.priceId:
        raise APIExceptions.bad_request("Price ID is required")
    if not account.billing_subscription_ref:
        raise APIExceptions.bad_request("No active subscription found to upgrade")
    try:
        tier = tier_for_price(body.priceId)
    except UnknownPriceError as e:
        raise APIExceptions.bad_request("Invalid price ID") from e

    service = _stripe_service()
    subscription = await run_sync(service.retrieve_subscription, account.billing_subscription_ref)
    if get_stripe_value(subscription, "status") != "active":
        raise APIExceptions.bad_request("Subscription is not active")

    await run_sync(service.update_subscription_price, subscription, body.priceId)
    updated = await run_sync(
        subscription_tiers.set_tier,
        account.id,
        tier,
        preserve_credits=True,
        status=SubscriptionStatus.ACTIVE,
    )

    return SubscriptionMessageResponse(
        message="Subscription upgraded successfully", tier=updated.subscription_tier.value
    )


@router.post("/reset-billing-period", response_model=BillingPeriodResetResponse)
async def reset_billing_period(account: Account = Depends(get_current_account)):
    """
    Start a 30 day period now and refill credits, for when Stripe data is missing.

    Only served in development and testing; in production a refill comes
    from a paid invoice.
    """
    if not (Config.IS_DEVELOPMENT or Config.IS_TESTING):
        logger.warning(
            f"Rejected manual billing period reset for account {sanitize_for_logging(account.id)}"
        )
        raise APIExceptions.forbidden("Billing period reset is not available")

    updated = await run_sync(billing_period.manual_reset, account.id)
    return BillingPeriodResetResponse(
        message="Billing period reset successfully",
        credits=updated.credits,
        maxCredits=updated.max_credits,
        currentPeriodStart=to_epoch_seconds(updated.current_period_start),
        currentPeriodEnd=to_epoch_seconds(updated.current_period_end),
    )
