"""
Tests for the subscription tier state machine: ceilings, status transitions
and the 24 hour gaming guard.
"""

from datetime import datetime, timedelta, timezone

import pytest

from fluxstudio.models.subscription import (
    TIER_CREDIT_CEILINGS,
    Account,
    SubscriptionStatus,
    SubscriptionTier,
)
from fluxstudio.services import subscription_tiers
from fluxstudio.utils.exceptions import AccountNotFoundError, InvalidStatusTransitionError
from tests.helpers.mocks import account_row

pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat()


class TestAddOneMonth:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (datetime(2024, 1, 15, tzinfo=timezone.utc), datetime(2024, 2, 15, tzinfo=timezone.utc)),
            (datetime(2024, 1, 31, tzinfo=timezone.utc), datetime(2024, 2, 29, tzinfo=timezone.utc)),
            (datetime(2024, 12, 10, tzinfo=timezone.utc), datetime(2025, 1, 10, tzinfo=timezone.utc)),
        ],
    )
    def test_add_one_month(self, value, expected):
        assert subscription_tiers.add_one_month(value) == expected


class TestGamingGuard:
    def test_no_previous_change_is_never_guarded(self):
        account = Account(id="a")
        assert subscription_tiers.should_guard_refresh(account, SubscriptionTier.PREMIUM, NOW) is False

    def test_recent_change_is_guarded(self):
        account = Account(id="a", last_tier_change_at=NOW - timedelta(hours=2))
        assert subscription_tiers.should_guard_refresh(account, SubscriptionTier.PREMIUM, NOW) is True

    def test_change_older_than_a_day_is_not_guarded(self):
        account = Account(id="a", last_tier_change_at=NOW - timedelta(hours=25))
        assert subscription_tiers.should_guard_refresh(account, SubscriptionTier.PREMIUM, NOW) is False

    def test_move_to_free_is_not_guarded(self):
        account = Account(id="a", last_tier_change_at=NOW - timedelta(minutes=5))
        assert subscription_tiers.should_guard_refresh(account, SubscriptionTier.FREE, NOW) is False

    def test_past_period_end_is_a_boundary(self):
        account = Account(
            id="a",
            last_tier_change_at=NOW - timedelta(hours=1),
            current_period_start=NOW - timedelta(days=31),
            current_period_end=NOW - timedelta(minutes=1),
        )
        assert subscription_tiers.is_at_period_boundary(account, NOW) is True
        assert subscription_tiers.should_guard_refresh(account, SubscriptionTier.BASIC, NOW) is False

    def test_never_billed_account_is_not_at_a_boundary(self):
        account = Account(id="a", last_tier_change_at=NOW - timedelta(hours=1))
        assert subscription_tiers.is_at_period_boundary(account, NOW) is False
        assert subscription_tiers.should_guard_refresh(account, SubscriptionTier.BASIC, NOW) is True


class TestSetTier:
    @pytest.mark.parametrize("tier", list(SubscriptionTier))
    def test_ceiling_follows_tier_regardless_of_stored_value(self, sb, tier):
        sb.add_test_data("accounts", [account_row("acc-t", tier="basic", max_credits=999)])

        account = subscription_tiers.set_tier("acc-t", tier, preserve_credits=True, now=NOW)

        assert account.max_credits == TIER_CREDIT_CEILINGS[tier]
        assert sb.get_row("accounts", id="acc-t")["max_credits"] == TIER_CREDIT_CEILINGS[tier]

    def test_upgrade_with_refresh_sets_credits_to_new_ceiling(self, sb):
        sb.add_test_data("accounts", [account_row("acc-up", tier="free", credits=3)])

        account = subscription_tiers.set_tier(
            "acc-up", SubscriptionTier.PREMIUM, preserve_credits=False, now=NOW
        )

        assert account.subscription_tier == SubscriptionTier.PREMIUM
        assert account.credits == 70
        assert account.credits_reset_date == datetime(2024, 2, 15, 12, 0, tzinfo=timezone.utc)
        assert account.last_tier_change_at == NOW

    def test_preserve_credits_keeps_balance(self, sb):
        sb.add_test_data("accounts", [account_row("acc-keep", tier="basic", credits=17)])

        account = subscription_tiers.set_tier(
            "acc-keep", SubscriptionTier.PREMIUM_PLUS, preserve_credits=True, now=NOW
        )

        assert account.credits == 17
        assert account.max_credits == 110

    def test_second_change_within_a_day_preserves_credits(self, sb):
        sb.add_test_data("accounts", [account_row("acc-churn", tier="basic", credits=50)])

        first = subscription_tiers.set_tier(
            "acc-churn", SubscriptionTier.PREMIUM, preserve_credits=False, now=NOW
        )
        assert first.credits == 70
        sb.store["accounts"][0]["credits"] = 10

        second = subscription_tiers.set_tier(
            "acc-churn",
            SubscriptionTier.PREMIUM,
            preserve_credits=False,
            now=NOW + timedelta(hours=3),
        )

        assert second.credits == 10
        assert second.subscription_tier == SubscriptionTier.PREMIUM
        assert second.last_tier_change_at == NOW + timedelta(hours=3)

    def test_guarded_tier_change_still_switches_tier(self, sb):
        sb.add_test_data(
            "accounts",
            [account_row("acc-g", tier="basic", credits=8, last_tier_change_at=_iso(NOW - timedelta(hours=1)))],
        )

        account = subscription_tiers.set_tier(
            "acc-g", SubscriptionTier.PREMIUM_PLUS, preserve_credits=False, now=NOW
        )

        assert account.subscription_tier == SubscriptionTier.PREMIUM_PLUS
        assert account.max_credits == 110
        assert account.credits == 8

    def test_rejects_status_not_reachable(self, sb):
        sb.add_test_data("accounts", [account_row("acc-c", status="canceled")])

        with pytest.raises(InvalidStatusTransitionError):
            subscription_tiers.set_tier(
                "acc-c",
                SubscriptionTier.BASIC,
                preserve_credits=True,
                status=SubscriptionStatus.CANCELING,
                now=NOW,
            )
        assert sb.get_row("accounts", id="acc-c")["subscription_tier"] == "free"

    def test_unknown_account_raises(self, sb):
        with pytest.raises(AccountNotFoundError):
            subscription_tiers.set_tier("missing", SubscriptionTier.BASIC, preserve_credits=True)


class TestStatus:
    def test_cancel_then_resume(self, sb):
        sb.add_test_data("accounts", [account_row("acc-s", tier="basic")])

        assert subscription_tiers.mark_canceling("acc-s").subscription_status == SubscriptionStatus.CANCELING
        assert subscription_tiers.resume("acc-s").subscription_status == SubscriptionStatus.ACTIVE

    def test_canceled_cannot_become_canceling(self, sb):
        sb.add_test_data("accounts", [account_row("acc-x", status="canceled")])

        with pytest.raises(InvalidStatusTransitionError):
            subscription_tiers.mark_canceling("acc-x")

    def test_unchanged_status_does_not_write(self, sb):
        sb.add_test_data("accounts", [account_row("acc-same", tier="basic")])

        subscription_tiers.set_status("acc-same", SubscriptionStatus.ACTIVE)

        assert sb.get_row("accounts", id="acc-same")["version"] == 0

    def test_termination_grants_fresh_free_ceiling(self, sb):
        sb.add_test_data(
            "accounts",
            [account_row("acc-end", tier="premium", credits=2, last_tier_change_at=_iso(NOW - timedelta(hours=1)))],
        )

        account = subscription_tiers.set_tier(
            "acc-end",
            SubscriptionTier.FREE,
            preserve_credits=False,
            status=SubscriptionStatus.CANCELED,
            now=NOW,
        )

        assert account.subscription_tier == SubscriptionTier.FREE
        assert account.subscription_status == SubscriptionStatus.CANCELED
        assert account.credits == 30
        assert account.max_credits == 30
