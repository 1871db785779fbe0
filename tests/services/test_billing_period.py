"""
Tests for the billing period tracker: rollover detection, duplicate
deliveries and rejection of malformed periods.
"""

from datetime import datetime, timedelta, timezone

import pytest

from fluxstudio.models.subscription import parse_timestamp
from fluxstudio.services import billing_period
from fluxstudio.utils.exceptions import AccountNotFoundError, InvalidBillingPeriodError
from tests.helpers.mocks import account_row

pytestmark = pytest.mark.unit

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
FEB_1 = datetime(2024, 2, 1, tzinfo=timezone.utc)
MAR_1 = datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def basic_account(sb):
    sb.add_test_data("accounts", [account_row("acc-basic", tier="basic", credits=12)])
    return "acc-basic"


class TestCoercePeriod:
    def test_accepts_epoch_seconds(self):
        start, end = billing_period.coerce_period(int(JAN_1.timestamp()), int(FEB_1.timestamp()))
        assert (start, end) == (JAN_1, FEB_1)

    def test_accepts_iso_strings(self):
        start, end = billing_period.coerce_period("2024-01-01T00:00:00Z", "2024-02-01T00:00:00+00:00")
        assert (start, end) == (JAN_1, FEB_1)

    @pytest.mark.parametrize(
        "start,end",
        [
            (None, FEB_1),
            (JAN_1, None),
            ("not-a-date", FEB_1),
            (0, 100),
            (FEB_1, JAN_1),
            (JAN_1, JAN_1),
        ],
    )
    def test_rejects_invalid_bounds(self, start, end):
        with pytest.raises(InvalidBillingPeriodError):
            billing_period.coerce_period(start, end)


class TestUpdatePeriod:
    def test_first_period_refreshes_credits(self, sb, basic_account):
        account = billing_period.update_period(basic_account, JAN_1, FEB_1)

        assert account.credits == 60
        assert account.current_period_start == JAN_1
        assert account.current_period_end == FEB_1
        assert account.credits_reset_date == FEB_1

    def test_same_period_twice_does_not_refresh_again(self, sb, basic_account):
        billing_period.update_period(basic_account, JAN_1, FEB_1)
        # Spend some credits between deliveries
        sb.store["accounts"][0]["credits"] = 20

        account = billing_period.update_period(basic_account, JAN_1, FEB_1)

        assert account.credits == 20
        assert sb.get_row("accounts", id=basic_account)["credits"] == 20

    def test_new_start_refreshes_exactly_once(self, sb, basic_account):
        billing_period.update_period(basic_account, JAN_1, FEB_1)
        sb.store["accounts"][0]["credits"] = 5

        rolled = billing_period.update_period(basic_account, FEB_1, MAR_1)
        assert rolled.credits == 60
        assert rolled.current_period_start == FEB_1
        assert rolled.credits_reset_date == MAR_1

        sb.store["accounts"][0]["credits"] = 40
        again = billing_period.update_period(basic_account, FEB_1, MAR_1)
        assert again.credits == 40

    def test_same_start_with_corrected_end_updates_bounds_only(self, sb, basic_account):
        billing_period.update_period(basic_account, JAN_1, FEB_1)
        sb.store["accounts"][0]["credits"] = 9
        corrected_end = FEB_1 + timedelta(days=1)

        account = billing_period.update_period(basic_account, JAN_1, corrected_end)

        assert account.credits == 9
        assert account.current_period_end == corrected_end

    def test_invalid_period_is_a_no_op(self, sb, basic_account):
        assert billing_period.update_period(basic_account, FEB_1, JAN_1) is None
        assert billing_period.update_period(basic_account, None, FEB_1) is None

        row = sb.get_row("accounts", id=basic_account)
        assert row["credits"] == 12
        assert row["current_period_start"] is None
        assert row["version"] == 0

    def test_unknown_account_raises(self, sb):
        with pytest.raises(AccountNotFoundError):
            billing_period.update_period("missing", JAN_1, FEB_1)

    def test_epoch_input_matches_stored_iso_value(self, sb, basic_account):
        billing_period.update_period(basic_account, int(JAN_1.timestamp()), int(FEB_1.timestamp()))
        sb.store["accounts"][0]["credits"] = 1

        account = billing_period.update_period(basic_account, JAN_1.isoformat(), FEB_1.isoformat())

        assert account.credits == 1


class TestManualReset:
    def test_manual_reset_starts_thirty_day_period(self, sb, basic_account):
        now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)

        account = billing_period.manual_reset(basic_account, now=now)

        assert account.credits == 60
        assert account.current_period_start == now
        assert account.current_period_end == now + timedelta(days=30)
        row = sb.get_row("accounts", id=basic_account)
        assert parse_timestamp(row["credits_reset_date"]) == now + timedelta(days=30)

    def test_manual_reset_missing_account(self, sb):
        with pytest.raises(AccountNotFoundError):
            billing_period.manual_reset("missing")
