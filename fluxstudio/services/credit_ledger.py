"""
Credit Ledger

Owns an account's spendable balance. Deductions are a single conditional
UPDATE in Postgres (``deduct_account_credits``), so two concurrent charges
can never take the balance below zero; there is no in-process locking.
"""

import logging
from datetime import datetime, timedelta, timezone

from fluxstudio.db.accounts import (
    add_credits_atomic,
    deduct_credits_atomic,
    get_account,
    update_account,
)
from fluxstudio.models.subscription import Account
from fluxstudio.services.prometheus_metrics import record_credit_refresh
from fluxstudio.utils.exceptions import AccountNotFoundError
from fluxstudio.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

# Provisional next-refresh projection; the billing period tracker overwrites it
PROVISIONAL_RESET_INTERVAL = timedelta(days=30)


def deduct(account_id: str, cost: int) -> bool:
    """
    Deduct ``cost`` credits if and only if the balance covers it.

    Never retries: a refused deduction is reported to the caller, who decides
    what to show the user.

    Returns:
        True if the deduction was applied, False if the balance was too low

    Raises:
        AccountNotFoundError: If the account does not exist
        ValueError: If cost is negative
    """
    if cost < 0:
        raise ValueError("Credit cost cannot be negative")

    if cost == 0:
        if get_account(account_id) is None:
            raise AccountNotFoundError(account_id)
        return True

    updated = deduct_credits_atomic(account_id, cost)
    if updated is not None:
        logger.info(
            f"Deducted {cost} credits from account {sanitize_for_logging(account_id)}. "
            f"Balance now {updated.credits}"
        )
        return True

    current = get_account(account_id)
    if current is None:
        raise AccountNotFoundError(account_id)

    logger.info(
        f"Refused deduction of {cost} credits for account {sanitize_for_logging(account_id)}: "
        f"balance {current.credits}"
    )
    return False


def add(account_id: str, amount: int) -> Account:
    """
    Grant ``amount`` credits unconditionally (promotions, support adjustments).

    Raises:
        AccountNotFoundError: If the account does not exist
        ValueError: If amount is negative
    """
    if amount < 0:
        raise ValueError("Credit amount cannot be negative")

    updated = add_credits_atomic(account_id, amount)
    if updated is None:
        raise AccountNotFoundError(account_id)

    logger.info(
        f"Added {amount} credits to account {sanitize_for_logging(account_id)}. "
        f"Balance now {updated.credits}"
    )
    return updated


def plan_refresh(
    account: Account, reset_date: datetime | None = None, now: datetime | None = None
) -> dict:
    """Columns that reset ``account`` to its tier ceiling."""
    now = now or datetime.now(timezone.utc)
    return {
        "credits": account.max_credits,
        "max_credits": account.max_credits,
        "credits_reset_date": reset_date or now + PROVISIONAL_RESET_INTERVAL,
    }


def refresh_to_max(
    account_id: str, reset_date: datetime | None = None, trigger: str = "manual"
) -> Account:
    """
    Set credits to the tier ceiling.

    Args:
        account_id: Account to refresh
        reset_date: Next refresh date, when known; defaults to now + 30 days
        trigger: Metrics label describing why the refresh happened

    Raises:
        AccountNotFoundError: If the account does not exist
    """
    account = update_account(
        account_id,
        lambda current: plan_refresh(current, reset_date=reset_date),
        operation_name="refresh_credits",
    )
    record_credit_refresh(trigger)
    logger.info(
        f"Refreshed credits for account {sanitize_for_logging(account_id)} to {account.credits} "
        f"(trigger={trigger})"
    )
    return account
