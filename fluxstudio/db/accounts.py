"""
Account persistence.

Every write to an ``accounts`` row is a single guarded statement:

- credit deduction and grants go through the ``deduct_account_credits`` and
  ``add_account_credits`` SQL functions, each one ``UPDATE ... RETURNING``;
- every other change is computed from a freshly read row by a planner and
  written with ``.eq("version", version)`` so a concurrent writer makes the
  update match zero rows instead of being silently overwritten.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fluxstudio.config.supabase_config import execute_with_retry
from fluxstudio.models.subscription import Account, new_account_row
from fluxstudio.services.prometheus_metrics import track_database_query
from fluxstudio.utils.exceptions import AccountNotFoundError, ConcurrentUpdateError
from fluxstudio.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

ACCOUNTS_TABLE = "accounts"
MAX_UPDATE_ATTEMPTS = 3

# Planner: given the current row, return the columns to change, or None for no change
AccountPlanner = Callable[[Account], dict[str, Any] | None]


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _first_row(data: Any) -> dict[str, Any] | None:
    """RPC results come back as a list for SETOF functions, a dict otherwise."""
    if not data:
        return None
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


def _select_one(column: str, value: str, operation_name: str) -> Account | None:
    def _query(client):
        return client.table(ACCOUNTS_TABLE).select("*").eq(column, value).limit(1).execute()

    with track_database_query(table=ACCOUNTS_TABLE, operation="select"):
        result = execute_with_retry(_query, operation_name=operation_name)

    row = _first_row(result.data)
    return Account.from_row(row) if row else None


def get_account(account_id: str) -> Account | None:
    return _select_one("id", account_id, "get_account")


def get_account_by_customer_ref(customer_ref: str) -> Account | None:
    """Resolve an account from a Stripe customer id (cus_xxx)."""
    if not customer_ref:
        return None
    return _select_one("billing_customer_ref", customer_ref, "get_account_by_customer_ref")


def get_account_by_subscription_ref(subscription_ref: str) -> Account | None:
    """Resolve an account from a Stripe subscription id (sub_xxx)."""
    if not subscription_ref:
        return None
    return _select_one("billing_subscription_ref", subscription_ref, "get_account_by_subscription_ref")


def create_account(
    account_id: str,
    email: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> Account:
    """
    Insert a fresh free-tier account.

    Two first requests racing on the same identity can both reach the insert;
    the loser's primary-key violation is resolved by reading the winner's row.
    """
    row = new_account_row(account_id, email=email, first_name=first_name, last_name=last_name)

    def _insert(client):
        return client.table(ACCOUNTS_TABLE).insert(row).execute()

    try:
        with track_database_query(table=ACCOUNTS_TABLE, operation="insert"):
            result = execute_with_retry(_insert, operation_name="create_account")
    except Exception as e:
        existing = get_account(account_id)
        if existing is not None:
            logger.info(f"Account {sanitize_for_logging(account_id)} was created concurrently")
            return existing
        logger.error(f"Failed to create account {sanitize_for_logging(account_id)}: {e}")
        raise

    created = _first_row(result.data) or row
    logger.info(f"Created free-tier account {sanitize_for_logging(account_id)}")
    return Account.from_row(created)


def get_or_create_account(
    account_id: str,
    email: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> Account:
    account = get_account(account_id)
    if account is not None:
        return account
    return create_account(account_id, email=email, first_name=first_name, last_name=last_name)


def deduct_credits_atomic(account_id: str, cost: int) -> Account | None:
    """
    Conditionally subtract ``cost`` in one statement.

    Returns:
        The updated account, or None when no row matched (missing account or
        balance below ``cost``). Callers distinguish the two with get_account.
    """

    def _deduct(client):
        return client.rpc(
            "deduct_account_credits", {"p_account_id": account_id, "p_cost": cost}
        ).execute()

    with track_database_query(table=ACCOUNTS_TABLE, operation="rpc_deduct"):
        result = execute_with_retry(_deduct, operation_name="deduct_credits_atomic")

    row = _first_row(result.data)
    return Account.from_row(row) if row else None


def add_credits_atomic(account_id: str, amount: int) -> Account | None:
    """Unconditionally add ``amount``. Returns None when the account does not exist."""

    def _add(client):
        return client.rpc(
            "add_account_credits", {"p_account_id": account_id, "p_amount": amount}
        ).execute()

    with track_database_query(table=ACCOUNTS_TABLE, operation="rpc_add"):
        result = execute_with_retry(_add, operation_name="add_credits_atomic")

    row = _first_row(result.data)
    return Account.from_row(row) if row else None


def update_account(
    account_id: str,
    planner: AccountPlanner,
    operation_name: str = "update_account",
) -> Account:
    """
    Apply a planned change to an account with a version check.

    The planner runs against the latest stored row on every attempt, so a
    retry after a lost race re-decides from the state that won.

    Raises:
        AccountNotFoundError: If the account does not exist
        ConcurrentUpdateError: If every attempt lost to a concurrent writer
    """
    for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
        account = get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        changes = planner(account)
        if not changes:
            return account

        payload = {key: _serialize(value) for key, value in changes.items()}
        payload["version"] = account.version + 1
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()

        def _update(client, payload=payload, expected_version=account.version):
            return (
                client.table(ACCOUNTS_TABLE)
                .update(payload)
                .eq("id", account_id)
                .eq("version", expected_version)
                .execute()
            )

        with track_database_query(table=ACCOUNTS_TABLE, operation="update"):
            result = execute_with_retry(_update, operation_name=operation_name)

        row = _first_row(result.data)
        if row:
            return Account.from_row(row)

        logger.warning(
            f"{operation_name}: account {sanitize_for_logging(account_id)} changed since read "
            f"(version {account.version}), attempt {attempt}/{MAX_UPDATE_ATTEMPTS}"
        )

    raise ConcurrentUpdateError(account_id, MAX_UPDATE_ATTEMPTS)
