"""
Subscription Tier State Machine

Tier changes always go through here so that ``max_credits`` stays a pure
function of the tier, status changes follow the transition table, and the
24 hour gaming guard is applied before any credit refresh.

Gaming guard: a user cycling upgrade -> downgrade -> upgrade inside one
billing cycle would otherwise collect a full refresh on every change. When
the previous tier change was less than 24 hours ago, the target tier is
paid, and the account is not past its current period end, a requested
refresh is turned into a credit-preserving change. The tier change itself
always goes through.
"""

import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fluxstudio.db.accounts import update_account
from fluxstudio.models.subscription import (
    Account,
    SubscriptionStatus,
    SubscriptionTier,
    ensure_transition,
    max_credits_for,
)
from fluxstudio.services.prometheus_metrics import record_credit_refresh, record_tier_change
from fluxstudio.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

GAMING_GUARD_WINDOW = timedelta(hours=24)


def add_one_month(value: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def is_at_period_boundary(account: Account, now: datetime) -> bool:
    """
    True only when a stored period has ended.

    An account that was never billed has no period and is never at a
    boundary, so rapid churn from the free tier is guarded as well.
    """
    return account.has_period and now > account.current_period_end


def should_guard_refresh(account: Account, tier: SubscriptionTier, now: datetime) -> bool:
    if account.last_tier_change_at is None:
        return False
    if SubscriptionTier(tier) == SubscriptionTier.FREE:
        return False
    if is_at_period_boundary(account, now):
        return False
    return now - account.last_tier_change_at < GAMING_GUARD_WINDOW


def plan_tier_change(
    account: Account,
    tier: SubscriptionTier,
    preserve_credits: bool,
    status: SubscriptionStatus,
    now: datetime,
) -> tuple[dict[str, Any], bool]:
    """
    Compute the columns for a tier change.

    Returns:
        (changes, refreshed) where refreshed tells whether credits were reset

    Raises:
        InvalidStatusTransitionError: If ``status`` is not reachable from the current status
    """
    tier = SubscriptionTier(tier)
    status = SubscriptionStatus(status)
    ensure_transition(account.subscription_status, status)

    ceiling = max_credits_for(tier)
    changes: dict[str, Any] = {
        "subscription_tier": tier,
        "max_credits": ceiling,
        "subscription_status": status,
        "last_tier_change_at": now,
    }

    refresh = not preserve_credits and not should_guard_refresh(account, tier, now)
    if refresh:
        changes["credits"] = ceiling
        changes["credits_reset_date"] = add_one_month(now)

    return changes, refresh


def set_tier(
    account_id: str,
    tier: SubscriptionTier,
    preserve_credits: bool,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    now: datetime | None = None,
) -> Account:
    """
    Move an account to ``tier`` with the given status.

    Raises:
        AccountNotFoundError: If the account does not exist
        InvalidStatusTransitionError: If the status change is not allowed
    """
    now = now or datetime.now(timezone.utc)
    refreshed = False

    def _plan(account: Account) -> dict[str, Any]:
        nonlocal refreshed
        changes, refreshed = plan_tier_change(account, tier, preserve_credits, status, now)
        return changes

    account = update_account(account_id, _plan, operation_name="set_subscription_tier")

    guarded = not preserve_credits and not refreshed
    record_tier_change(account.subscription_tier.value, guarded)
    if refreshed:
        record_credit_refresh("tier_change")
    if guarded:
        logger.warning(
            f"Tier change for account {sanitize_for_logging(account_id)} within "
            f"{GAMING_GUARD_WINDOW} of the previous one; credits preserved at {account.credits}"
        )

    logger.info(
        f"Account {sanitize_for_logging(account_id)} set to tier={account.subscription_tier.value} "
        f"status={account.subscription_status.value} credits={account.credits}/{account.max_credits}"
    )
    return account


def set_status(account_id: str, status: SubscriptionStatus) -> Account:
    """
    Change only the subscription status.

    Raises:
        AccountNotFoundError: If the account does not exist
        InvalidStatusTransitionError: If the status change is not allowed
    """
    status = SubscriptionStatus(status)

    def _plan(account: Account) -> dict[str, Any] | None:
        ensure_transition(account.subscription_status, status)
        if account.subscription_status == status:
            return None
        return {"subscription_status": status}

    account = update_account(account_id, _plan, operation_name="set_subscription_status")
    logger.info(
        f"Account {sanitize_for_logging(account_id)} subscription status is now {account.subscription_status.value}"
    )
    return account


def mark_canceling(account_id: str) -> Account:
    """Cancellation requested: tier and credits stay usable until the period ends."""
    return set_status(account_id, SubscriptionStatus.CANCELING)


def resume(account_id: str) -> Account:
    """Undo a pending cancellation."""
    return set_status(account_id, SubscriptionStatus.ACTIVE)
