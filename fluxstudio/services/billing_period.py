"""
Billing Period Tracker

Stores the account's current billing cycle and decides when a new cycle
starts. The period start is the idempotency key: Stripe may deliver the
same invoice or subscription event several times, and only a period start
that differs from the stored one refreshes credits.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fluxstudio.db.accounts import update_account
from fluxstudio.models.subscription import Account, parse_timestamp
from fluxstudio.services.credit_ledger import plan_refresh
from fluxstudio.services.prometheus_metrics import record_credit_refresh
from fluxstudio.utils.exceptions import InvalidBillingPeriodError
from fluxstudio.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

MANUAL_RESET_PERIOD = timedelta(days=30)


def coerce_period(period_start: Any, period_end: Any) -> tuple[datetime, datetime]:
    """
    Validate a pair of period bounds from an untrusted source.

    Accepts datetimes, ISO strings or Unix seconds.

    Raises:
        InvalidBillingPeriodError: If either bound is missing, unparseable,
            not after the epoch, or the start is not before the end
    """
    if period_start is None or period_end is None:
        raise InvalidBillingPeriodError("Billing period start and end are both required")

    start = parse_timestamp(period_start)
    end = parse_timestamp(period_end)
    if start is None or end is None:
        raise InvalidBillingPeriodError(
            f"Billing period bounds are not valid timestamps: {period_start!r}, {period_end!r}"
        )
    if start.timestamp() <= 0 or end.timestamp() <= 0:
        raise InvalidBillingPeriodError("Billing period bounds must be positive timestamps")
    if start >= end:
        raise InvalidBillingPeriodError(
            f"Billing period start {start.isoformat()} is not before end {end.isoformat()}"
        )
    return start, end


def is_new_period(account: Account, period_start: datetime) -> bool:
    return account.current_period_start != period_start


def plan_period_update(account: Account, period_start: datetime, period_end: datetime) -> dict:
    """
    Columns to write for an incoming period.

    A start that differs from the stored one (including no stored start)
    begins a new cycle and refreshes credits, with the reset date set to the
    new period end. The same start only corrects the bounds.
    """
    changes: dict[str, Any] = {}
    if account.current_period_start != period_start or account.current_period_end != period_end:
        changes["current_period_start"] = period_start
        changes["current_period_end"] = period_end

    if is_new_period(account, period_start):
        changes.update(plan_refresh(account, reset_date=period_end))

    return changes


def update_period(account_id: str, period_start: Any, period_end: Any) -> Account | None:
    """
    Record a billing period reported by the billing provider.

    Returns:
        The updated account, or None if the period was rejected as invalid

    Raises:
        AccountNotFoundError: If the account does not exist
    """
    try:
        start, end = coerce_period(period_start, period_end)
    except InvalidBillingPeriodError as e:
        logger.warning(
            f"Ignoring billing period for account {sanitize_for_logging(account_id)}: {e}"
        )
        return None

    refreshed = False

    def _plan(account: Account) -> dict:
        nonlocal refreshed
        refreshed = is_new_period(account, start)
        return plan_period_update(account, start, end)

    account = update_account(account_id, _plan, operation_name="update_billing_period")

    if refreshed:
        record_credit_refresh("new_period")
        logger.info(
            f"New billing period for account {sanitize_for_logging(account_id)}: "
            f"{start.isoformat()} - {end.isoformat()}, credits refreshed to {account.credits}"
        )
    else:
        logger.info(
            f"Billing period for account {sanitize_for_logging(account_id)} unchanged "
            f"(start {start.isoformat()}), credits left at {account.credits}"
        )
    return account


def manual_reset(account_id: str, now: datetime | None = None) -> Account:
    """
    Force a new period of [now, now + 30 days] and refresh credits.

    Used when the provider's period data is missing or late.

    Raises:
        AccountNotFoundError: If the account does not exist
    """
    now = now or datetime.now(timezone.utc)
    period_end = now + MANUAL_RESET_PERIOD

    def _plan(account: Account) -> dict:
        changes = {"current_period_start": now, "current_period_end": period_end}
        changes.update(plan_refresh(account, reset_date=period_end))
        return changes

    account = update_account(account_id, _plan, operation_name="manual_billing_period_reset")
    record_credit_refresh("manual_reset")
    logger.info(
        f"Manual billing period reset for account {sanitize_for_logging(account_id)}: "
        f"{now.isoformat()} - {period_end.isoformat()}"
    )
    return account
