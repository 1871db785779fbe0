"""
Tests for the static billing tables and the account record.
"""

from datetime import datetime, timezone

import pytest

from fluxstudio.models.subscription import (
    Account,
    OperationKind,
    SubscriptionStatus,
    SubscriptionTier,
    can_transition,
    ensure_transition,
    max_credits_for,
    new_account_row,
    operation_cost,
    parse_timestamp,
    tier_for_price,
    to_epoch_seconds,
)
from fluxstudio.utils.exceptions import InvalidStatusTransitionError, UnknownPriceError
from tests.helpers.mocks import account_row

pytestmark = pytest.mark.unit


class TestTables:
    @pytest.mark.parametrize(
        "tier,ceiling",
        [("free", 30), ("basic", 60), ("premium", 70), ("premium-plus", 110)],
    )
    def test_ceilings(self, tier, ceiling):
        assert max_credits_for(tier) == ceiling

    def test_operation_costs(self):
        assert operation_cost(OperationKind.EDIT) == 1
        assert operation_cost("generate") == 1
        assert operation_cost("multi-generate") == 1
        assert operation_cost(OperationKind.UPSCALE) == 0

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError):
            max_credits_for("enterprise")

    @pytest.mark.parametrize(
        "current,requested,allowed",
        [
            (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELING, True),
            (SubscriptionStatus.CANCELING, SubscriptionStatus.ACTIVE, True),
            (SubscriptionStatus.CANCELING, SubscriptionStatus.CANCELED, True),
            (SubscriptionStatus.CANCELED, SubscriptionStatus.ACTIVE, True),
            (SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELING, False),
        ],
    )
    def test_status_transitions(self, current, requested, allowed):
        assert can_transition(current, requested) is allowed

    def test_ensure_transition_raises(self):
        with pytest.raises(InvalidStatusTransitionError):
            ensure_transition(SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELING)


class TestPriceMapping:
    def test_configured_prices_map_to_tiers(self):
        assert tier_for_price("price_basic") == SubscriptionTier.BASIC
        assert tier_for_price("price_premium") == SubscriptionTier.PREMIUM
        assert tier_for_price("price_premium_plus") == SubscriptionTier.PREMIUM_PLUS

    @pytest.mark.parametrize("price_id", [None, "", "price_other"])
    def test_unknown_prices_raise(self, price_id):
        with pytest.raises(UnknownPriceError):
            tier_for_price(price_id)


class TestTimestamps:
    @pytest.mark.parametrize(
        "value",
        [
            1704067200,
            "2024-01-01T00:00:00Z",
            "2024-01-01T00:00:00+00:00",
            "2024-01-01T00:00:00",
            datetime(2024, 1, 1),
        ],
    )
    def test_parse_normalizes_to_utc(self, value):
        assert parse_timestamp(value) == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, [1]])
    def test_parse_rejects_garbage(self, value):
        assert parse_timestamp(value) is None

    def test_epoch_seconds(self):
        assert to_epoch_seconds(datetime(2024, 1, 1, tzinfo=timezone.utc)) == 1704067200
        assert to_epoch_seconds(None) is None


class TestAccount:
    def test_ceiling_is_derived_from_tier(self):
        account = Account.from_row(account_row("a", tier="premium", max_credits=5))
        assert account.max_credits == 70

    def test_to_dict_is_camel_case(self):
        row = account_row("a", tier="basic", credits=7, current_period_end="2024-02-01T00:00:00+00:00")

        data = Account.from_row(row).to_dict()

        assert data["credits"] == 7
        assert data["maxCredits"] == 60
        assert data["subscriptionTier"] == "basic"
        assert data["subscriptionStatus"] == "active"
        assert data["currentPeriodEnd"] == "2024-02-01T00:00:00+00:00"
        assert data["creditsResetDate"] is None

    def test_new_account_row_starts_on_free_tier(self):
        row = new_account_row("a", email="a@example.com")

        assert row["credits"] == row["max_credits"] == 30
        assert row["subscription_tier"] == "free"
        assert row["subscription_status"] == "active"
        assert row["version"] == 0
