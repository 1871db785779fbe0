"""
Subscription tiers, statuses, operation costs and the account record.

All static billing tables live here: tier credit ceilings, the subscription
status transition table, per-operation credit costs and the Stripe price to
tier mapping.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fluxstudio.config.config import Config
from fluxstudio.utils.exceptions import InvalidStatusTransitionError, UnknownPriceError


class SubscriptionTier(str, Enum):  # noqa: UP042
    """Subscription plans, in ascending order of credit ceiling."""

    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    PREMIUM_PLUS = "premium-plus"


class SubscriptionStatus(str, Enum):  # noqa: UP042
    ACTIVE = "active"
    CANCELING = "canceling"  # Keeps tier and credits until the period ends
    CANCELED = "canceled"


class OperationKind(str, Enum):  # noqa: UP042
    EDIT = "edit"
    GENERATE = "generate"
    MULTI_GENERATE = "multi-generate"
    UPSCALE = "upscale"


TIER_CREDIT_CEILINGS: dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 30,
    SubscriptionTier.BASIC: 60,
    SubscriptionTier.PREMIUM: 70,
    SubscriptionTier.PREMIUM_PLUS: 110,
}

# Tiers that get the "max" fal.ai model variants and 4x upscaling
PREMIUM_TIERS = frozenset({SubscriptionTier.PREMIUM, SubscriptionTier.PREMIUM_PLUS})

STATUS_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELING, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.CANCELING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELING, SubscriptionStatus.CANCELED}
    ),
    # A canceled subscription can only come back through a new activation
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
}

OPERATION_COSTS: dict[OperationKind, int] = {
    OperationKind.EDIT: 1,
    OperationKind.GENERATE: 1,
    OperationKind.MULTI_GENERATE: 1,
    OperationKind.UPSCALE: 0,
}


def max_credits_for(tier: SubscriptionTier | str) -> int:
    return TIER_CREDIT_CEILINGS[SubscriptionTier(tier)]


def operation_cost(operation: OperationKind | str) -> int:
    return OPERATION_COSTS[OperationKind(operation)]


def can_transition(current: SubscriptionStatus, requested: SubscriptionStatus) -> bool:
    return SubscriptionStatus(requested) in STATUS_TRANSITIONS[SubscriptionStatus(current)]


def ensure_transition(current: SubscriptionStatus, requested: SubscriptionStatus) -> None:
    """
    Raise InvalidStatusTransitionError unless ``current -> requested`` is allowed.
    """
    if not can_transition(current, requested):
        raise InvalidStatusTransitionError(
            SubscriptionStatus(current).value, SubscriptionStatus(requested).value
        )


def tier_for_price(price_id: str | None) -> SubscriptionTier:
    """
    Map a Stripe price id to the tier it purchases.

    Raises:
        UnknownPriceError: If the price id is empty or not one of the configured prices
    """
    if price_id:
        for tier_name, configured_price in Config.price_ids().items():
            if configured_price and configured_price == price_id:
                return SubscriptionTier(tier_name)
    raise UnknownPriceError(price_id)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings and Unix epoch seconds. Returns None
    for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def to_epoch_seconds(value: datetime | None) -> int | None:
    return int(value.timestamp()) if value is not None else None


@dataclass
class Account:
    """One row of the ``accounts`` table."""

    id: str
    credits: int = TIER_CREDIT_CEILINGS[SubscriptionTier.FREE]
    max_credits: int = TIER_CREDIT_CEILINGS[SubscriptionTier.FREE]
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_customer_ref: str | None = None
    billing_subscription_ref: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    credits_reset_date: datetime | None = None
    last_tier_change_at: datetime | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Account":
        tier = SubscriptionTier(row.get("subscription_tier") or SubscriptionTier.FREE.value)
        return cls(
            id=row["id"],
            credits=int(row.get("credits") or 0),
            # The ceiling is derived from the tier, never trusted from storage
            max_credits=max_credits_for(tier),
            subscription_tier=tier,
            subscription_status=SubscriptionStatus(
                row.get("subscription_status") or SubscriptionStatus.ACTIVE.value
            ),
            billing_customer_ref=row.get("billing_customer_ref"),
            billing_subscription_ref=row.get("billing_subscription_ref"),
            current_period_start=parse_timestamp(row.get("current_period_start")),
            current_period_end=parse_timestamp(row.get("current_period_end")),
            credits_reset_date=parse_timestamp(row.get("credits_reset_date")),
            last_tier_change_at=parse_timestamp(row.get("last_tier_change_at")),
            email=row.get("email"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            version=int(row.get("version") or 0),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    @property
    def has_period(self) -> bool:
        return self.current_period_start is not None and self.current_period_end is not None

    def to_dict(self) -> dict[str, Any]:
        """camelCase representation returned by ``GET /api/auth/user``."""
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "credits": self.credits,
            "maxCredits": self.max_credits,
            "subscriptionTier": self.subscription_tier.value,
            "subscriptionStatus": self.subscription_status.value,
            "currentPeriodStart": format_timestamp(self.current_period_start),
            "currentPeriodEnd": format_timestamp(self.current_period_end),
            "creditsResetDate": format_timestamp(self.credits_reset_date),
            "lastTierChangeAt": format_timestamp(self.last_tier_change_at),
        }


def new_account_row(
    account_id: str,
    email: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> dict[str, Any]:
    """Insert payload for a lazily created free-tier account."""
    now = datetime.now(timezone.utc).isoformat()
    ceiling = max_credits_for(SubscriptionTier.FREE)
    return {
        "id": account_id,
        "email": email,
        "first_name": first_name,
        "last_name": last_name,
        "credits": ceiling,
        "max_credits": ceiling,
        "subscription_tier": SubscriptionTier.FREE.value,
        "subscription_status": SubscriptionStatus.ACTIVE.value,
        "billing_customer_ref": None,
        "billing_subscription_ref": None,
        "current_period_start": None,
        "current_period_end": None,
        "credits_reset_date": None,
        "last_tier_change_at": None,
        "version": 0,
        "created_at": now,
        "updated_at": now,
    }
