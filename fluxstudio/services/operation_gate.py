"""
Operation Cost Gate

Pre-flight check for the credit-charged image operations.

Order of evaluation:
1. tier capability (e.g. upscale factor) -> denied with requiresUpgrade
2. balance against the fixed operation cost -> denied with insufficientCredits
3. the caller's external operation runs
4. only after it succeeded, the credit ledger deducts the cost

A failed or timed-out external call therefore never touches the balance.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from fluxstudio.models.subscription import (
    PREMIUM_TIERS,
    Account,
    OperationKind,
    SubscriptionTier,
    operation_cost,
)
from fluxstudio.services import credit_ledger
from fluxstudio.services.prometheus_metrics import record_credit_deduction, record_credit_denial
from fluxstudio.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUPPORTED_UPSCALE_FACTORS = (2, 4)

INSUFFICIENT_CREDITS_MESSAGES = {
    OperationKind.EDIT: "Not enough credits. Please upgrade your subscription to continue editing.",
    OperationKind.GENERATE: "Not enough credits. Please upgrade your subscription to continue generating images.",
    OperationKind.MULTI_GENERATE: "Not enough credits. Please upgrade your subscription to continue generating images.",
    OperationKind.UPSCALE: "Not enough credits. Please upgrade your subscription to continue.",
}


class DenialReason(str, Enum):  # noqa: UP042
    INSUFFICIENT_CREDITS = "insufficientCredits"
    REQUIRES_UPGRADE = "requiresUpgrade"


@dataclass
class GateDecision:
    operation: OperationKind
    allowed: bool
    cost: int
    credits: int
    reason: DenialReason | None = None
    message: str | None = None

    @property
    def required_credits(self) -> int:
        return self.cost


@dataclass
class ChargeOutcome(Generic[T]):
    decision: GateDecision
    result: T | None = None
    charged: bool = False


def capability_denial(
    account: Account, operation: OperationKind, upscale_factor: int | None = None
) -> str | None:
    """
    Tier restrictions, checked before credits.

    Returns:
        A user-facing message when the tier lacks the capability, else None
    """
    if OperationKind(operation) != OperationKind.UPSCALE:
        return None

    if account.subscription_tier == SubscriptionTier.FREE:
        return "Upscaling is not available on the free plan. Please upgrade to access this feature."

    factor = 2 if upscale_factor is None else upscale_factor
    if account.subscription_tier not in PREMIUM_TIERS and factor != 2:
        return "4x upscaling is only available for premium users. Basic users can use 2x upscaling."

    return None


def authorize(
    account: Account, operation: OperationKind, upscale_factor: int | None = None
) -> GateDecision:
    """Decide whether ``operation`` may start. Reads only; never charges."""
    operation = OperationKind(operation)
    cost = operation_cost(operation)

    upgrade_message = capability_denial(account, operation, upscale_factor)
    if upgrade_message:
        record_credit_denial(operation.value, DenialReason.REQUIRES_UPGRADE.value)
        return GateDecision(
            operation=operation,
            allowed=False,
            cost=cost,
            credits=account.credits,
            reason=DenialReason.REQUIRES_UPGRADE,
            message=upgrade_message,
        )

    if account.credits < cost:
        record_credit_denial(operation.value, DenialReason.INSUFFICIENT_CREDITS.value)
        logger.info(
            f"Denied {operation.value} for account {sanitize_for_logging(account.id)}: "
            f"credits={account.credits} required={cost}"
        )
        return GateDecision(
            operation=operation,
            allowed=False,
            cost=cost,
            credits=account.credits,
            reason=DenialReason.INSUFFICIENT_CREDITS,
            message=INSUFFICIENT_CREDITS_MESSAGES[operation],
        )

    return GateDecision(operation=operation, allowed=True, cost=cost, credits=account.credits)


def settle(account_id: str, operation: OperationKind) -> bool:
    """
    Deduct the cost of a completed operation.

    A refused deduction here means the balance was spent by a concurrent
    request between authorize and settle; the result is kept and the
    skipped charge is logged.
    """
    operation = OperationKind(operation)
    cost = operation_cost(operation)
    if cost == 0:
        return True

    charged = credit_ledger.deduct(account_id, cost)
    if charged:
        record_credit_deduction(operation.value, cost)
    else:
        logger.warning(
            f"Skipped charge of {cost} for completed {operation.value} on account "
            f"{sanitize_for_logging(account_id)}: balance spent concurrently"
        )
    return charged


def charge(
    account: Account,
    operation: OperationKind,
    run: Callable[[], T],
    upscale_factor: int | None = None,
) -> ChargeOutcome[T]:
    """
    Authorize, run the external operation, then deduct.

    Exceptions from ``run`` propagate unchanged and nothing is deducted.
    """
    decision = authorize(account, operation, upscale_factor=upscale_factor)
    if not decision.allowed:
        return ChargeOutcome(decision=decision)

    result = run()

    charged = settle(account.id, decision.operation)
    return ChargeOutcome(decision=decision, result=result, charged=charged)
