"""
Tests for the billing event reconciler.

Handlers are pure and tested directly; end-to-end cases run events through
``BillingEventReconciler.process_event`` against the in-memory Supabase and a
StripeService double.
"""

from datetime import datetime, timezone

import pytest

from fluxstudio.models.subscription import Account, SubscriptionStatus, SubscriptionTier, parse_timestamp
from fluxstudio.services.billing_reconciler import (
    AccountUpdate,
    BillingEventReconciler,
    EventPayload,
    handle_checkout_session_completed,
    handle_invoice_payment_succeeded,
    handle_subscription_created,
    handle_subscription_updated,
    invoice_subscription_ref,
    subscription_period,
)
from fluxstudio.utils.exceptions import ExternalOperationError, UnknownPriceError
from tests.helpers.mocks import account_row, stripe_event, stripe_subscription

pytestmark = pytest.mark.unit

JAN_1 = int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp())
FEB_1 = int(datetime(2024, 2, 1, tzinfo=timezone.utc).timestamp())
MAR_1 = int(datetime(2024, 3, 1, tzinfo=timezone.utc).timestamp())


@pytest.fixture
def reconciler(stripe_service):
    return BillingEventReconciler(stripe_service_factory=lambda: stripe_service)


def _invoice(subscription_ref="sub_1", period_start=None, period_end=None):
    invoice = {"id": "in_1", "object": "invoice", "subscription": subscription_ref}
    if period_start is not None:
        invoice["period_start"] = period_start
        invoice["period_end"] = period_end
    return invoice


def _checkout(account_id="acc-1", subscription="sub_new", price_id="price_premium", **metadata):
    return {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": "cus_1",
        "subscription": subscription,
        "metadata": {"accountId": account_id, "priceId": price_id, **metadata},
    }


class TestPayloadHelpers:
    def test_period_prefers_first_item(self):
        subscription = stripe_subscription(period_start=JAN_1, period_end=FEB_1, item_period=True)
        subscription["current_period_start"] = FEB_1
        subscription["current_period_end"] = MAR_1

        start, end = subscription_period(subscription)

        assert int(start.timestamp()) == JAN_1
        assert int(end.timestamp()) == FEB_1

    def test_period_falls_back_to_subscription_root(self):
        subscription = stripe_subscription(period_start=JAN_1, period_end=FEB_1, item_period=False)
        assert subscription_period(subscription) is not None

    def test_malformed_period_is_discarded(self):
        subscription = stripe_subscription(period_start=FEB_1, period_end=JAN_1)
        assert subscription_period(subscription) is None

    def test_invoice_subscription_ref_from_parent_details(self):
        invoice = {
            "id": "in_2",
            "parent": {"subscription_details": {"subscription": "sub_nested"}},
        }
        assert invoice_subscription_ref(invoice) == "sub_nested"


class TestPureHandlers:
    def test_subscription_created_maps_price_to_tier(self):
        subscription = stripe_subscription(price_id="price_premium_plus", period_start=JAN_1, period_end=FEB_1)

        update = handle_subscription_created(Account(id="a"), EventPayload(object=subscription))

        assert update.tier == SubscriptionTier.PREMIUM_PLUS
        assert update.preserve_credits is False
        assert update.status == SubscriptionStatus.ACTIVE
        assert update.billing_subscription_ref == "sub_123"
        assert update.period is not None

    def test_subscription_created_with_unknown_price_raises(self):
        subscription = stripe_subscription(price_id="price_unknown")
        with pytest.raises(UnknownPriceError):
            handle_subscription_created(Account(id="a"), EventPayload(object=subscription))

    @pytest.mark.parametrize(
        "status,cancel_at_period_end,expected",
        [
            ("active", False, SubscriptionStatus.ACTIVE),
            ("active", True, SubscriptionStatus.ACTIVE),
            ("canceled", False, SubscriptionStatus.CANCELED),
            ("past_due", True, SubscriptionStatus.CANCELING),
            ("past_due", False, None),
        ],
    )
    def test_subscription_updated_status_mapping(self, status, cancel_at_period_end, expected):
        subscription = stripe_subscription(status=status, cancel_at_period_end=cancel_at_period_end)

        update = handle_subscription_updated(Account(id="a"), EventPayload(object=subscription))

        assert update.status == expected
        assert update.tier is None

    def test_invoice_without_any_period_requests_refresh(self):
        update = handle_invoice_payment_succeeded(Account(id="a"), EventPayload(object=_invoice()))
        assert update == AccountUpdate(refresh_credits=True)

    def test_invoice_uses_own_period_when_subscription_missing(self):
        payload = EventPayload(object=_invoice(period_start=JAN_1, period_end=FEB_1))
        update = handle_invoice_payment_succeeded(Account(id="a"), payload)
        assert update.period is not None
        assert update.refresh_credits is False

    def test_checkout_without_subscription_is_empty(self):
        session = _checkout(subscription=None)
        update = handle_checkout_session_completed(Account(id="a"), EventPayload(object=session))
        assert update.is_empty

    def test_checkout_upgrade_cancels_previous_subscription(self):
        session = _checkout(isUpgrade="true", existingSubscriptionId="sub_old")
        update = handle_checkout_session_completed(Account(id="a"), EventPayload(object=session))

        assert update.cancel_subscription_ref == "sub_old"
        assert update.tier == SubscriptionTier.PREMIUM
        assert update.fetch_period_for == "sub_new"

    def test_checkout_upgrade_never_cancels_the_new_subscription(self):
        session = _checkout(isUpgrade="true", existingSubscriptionId="sub_new")
        update = handle_checkout_session_completed(Account(id="a"), EventPayload(object=session))
        assert update.cancel_subscription_ref is None


class TestProcessEvent:
    def test_subscription_created_activates_tier(self, sb, reconciler):
        sb.add_test_data("accounts", [account_row("acc-1", credits=4, billing_customer_ref="cus_1")])
        subscription = stripe_subscription(
            subscription_id="sub_1", customer="cus_1", price_id="price_premium",
            period_start=JAN_1, period_end=FEB_1,
        )

        result = reconciler.process_event(stripe_event("customer.subscription.created", subscription))

        assert result.outcome == "applied"
        row = sb.get_row("accounts", id="acc-1")
        assert row["subscription_tier"] == "premium"
        assert row["credits"] == 70
        assert row["billing_subscription_ref"] == "sub_1"
        assert int(parse_timestamp(row["current_period_start"]).timestamp()) == JAN_1

    def test_unknown_price_is_skipped(self, sb, reconciler):
        sb.add_test_data("accounts", [account_row("acc-1", credits=4, billing_customer_ref="cus_1")])
        subscription = stripe_subscription(customer="cus_1", price_id="price_unknown")

        result = reconciler.process_event(stripe_event("customer.subscription.created", subscription))

        assert result.outcome == "invalid"
        row = sb.get_row("accounts", id="acc-1")
        assert row["subscription_tier"] == "free"
        assert row["credits"] == 4

    def test_unknown_customer_is_ignored(self, sb, reconciler):
        subscription = stripe_subscription(customer="cus_nobody", price_id="price_basic")

        result = reconciler.process_event(stripe_event("customer.subscription.created", subscription))

        assert result.outcome == "ignored"
        assert result.account_id is None

    def test_unhandled_event_type_is_not_recorded(self, sb, reconciler):
        result = reconciler.process_event(stripe_event("customer.created", {"id": "cus_1"}, event_id="evt_x"))

        assert result.outcome == "unhandled"
        assert sb.get_row("stripe_webhook_events", event_id="evt_x") is None

    def test_duplicate_invoice_delivery_does_not_refresh_twice(self, sb, reconciler, stripe_service):
        sb.add_test_data(
            "accounts",
            [
                account_row(
                    "acc-1",
                    tier="basic",
                    credits=12,
                    billing_subscription_ref="sub_1",
                    current_period_start=datetime.fromtimestamp(JAN_1, tz=timezone.utc).isoformat(),
                    current_period_end=datetime.fromtimestamp(FEB_1, tz=timezone.utc).isoformat(),
                )
            ],
        )
        stripe_service.retrieve_subscription.return_value = stripe_subscription(
            subscription_id="sub_1", period_start=JAN_1, period_end=FEB_1
        )
        invoice = _invoice("sub_1", JAN_1, FEB_1)

        first = reconciler.process_event(stripe_event("invoice.payment_succeeded", invoice, event_id="evt_a"))
        second = reconciler.process_event(stripe_event("invoice.payment_succeeded", invoice, event_id="evt_b"))

        assert first.outcome == "applied"
        assert second.outcome == "applied"
        assert sb.get_row("accounts", id="acc-1")["credits"] == 12

    def test_redelivered_event_id_is_a_duplicate(self, sb, reconciler, stripe_service):
        sb.add_test_data("accounts", [account_row("acc-1", tier="basic", credits=12, billing_subscription_ref="sub_1")])
        stripe_service.retrieve_subscription.return_value = stripe_subscription(
            subscription_id="sub_1", period_start=JAN_1, period_end=FEB_1
        )
        event = stripe_event("invoice.payment_succeeded", _invoice("sub_1"), event_id="evt_same")

        assert reconciler.process_event(event).outcome == "applied"
        sb.store["accounts"][0]["credits"] = 3
        assert reconciler.process_event(event).outcome == "duplicate"
        assert sb.get_row("accounts", id="acc-1")["credits"] == 3

    def test_invoice_for_new_period_refreshes_credits(self, sb, reconciler, stripe_service):
        sb.add_test_data(
            "accounts",
            [
                account_row(
                    "acc-1",
                    tier="premium",
                    credits=2,
                    billing_subscription_ref="sub_1",
                    current_period_start=datetime.fromtimestamp(JAN_1, tz=timezone.utc).isoformat(),
                    current_period_end=datetime.fromtimestamp(FEB_1, tz=timezone.utc).isoformat(),
                )
            ],
        )
        stripe_service.retrieve_subscription.return_value = stripe_subscription(
            subscription_id="sub_1", period_start=FEB_1, period_end=MAR_1
        )

        reconciler.process_event(stripe_event("invoice.payment_succeeded", _invoice("sub_1")))

        row = sb.get_row("accounts", id="acc-1")
        assert row["credits"] == 70
        assert int(parse_timestamp(row["current_period_start"]).timestamp()) == FEB_1

    def test_invoice_without_period_refreshes_when_subscription_unavailable(
        self, sb, reconciler, stripe_service
    ):
        sb.add_test_data("accounts", [account_row("acc-1", tier="basic", credits=1, billing_subscription_ref="sub_1")])
        stripe_service.retrieve_subscription.side_effect = ExternalOperationError("stripe", "boom")

        result = reconciler.process_event(stripe_event("invoice.payment_succeeded", _invoice("sub_1")))

        assert result.outcome == "applied"
        assert sb.get_row("accounts", id="acc-1")["credits"] == 60

    def test_checkout_upgrade_scenario(self, sb, reconciler, stripe_service):
        sb.add_test_data(
            "accounts",
            [account_row("acc-1", tier="basic", credits=5, billing_customer_ref="cus_1", billing_subscription_ref="sub_old")],
        )
        stripe_service.retrieve_subscription.return_value = stripe_subscription(
            subscription_id="sub_new", period_start=FEB_1, period_end=MAR_1
        )
        session = _checkout(isUpgrade="true", existingSubscriptionId="sub_old")

        result = reconciler.process_event(stripe_event("checkout.session.completed", session))

        assert result.outcome == "applied"
        stripe_service.cancel_subscription.assert_called_once_with("sub_old")
        row = sb.get_row("accounts", id="acc-1")
        assert row["subscription_tier"] == "premium"
        assert row["credits"] == 70
        assert row["max_credits"] == 70
        assert row["billing_subscription_ref"] == "sub_new"
        assert int(parse_timestamp(row["current_period_end"]).timestamp()) == MAR_1

    def test_failed_cancel_does_not_block_remaining_steps(self, sb, reconciler, stripe_service):
        sb.add_test_data(
            "accounts",
            [account_row("acc-1", tier="basic", credits=5, billing_subscription_ref="sub_old")],
        )
        stripe_service.cancel_subscription.side_effect = ExternalOperationError("stripe", "down")
        stripe_service.retrieve_subscription.return_value = stripe_subscription(
            subscription_id="sub_new", period_start=FEB_1, period_end=MAR_1
        )
        session = _checkout(isUpgrade="true", existingSubscriptionId="sub_old")

        result = reconciler.process_event(stripe_event("checkout.session.completed", session))

        assert result.outcome == "partial"
        assert result.failed_steps == ["cancel_previous_subscription"]
        row = sb.get_row("accounts", id="acc-1")
        assert row["subscription_tier"] == "premium"
        assert row["billing_subscription_ref"] == "sub_new"

    def test_checkout_for_unknown_account_is_ignored(self, sb, reconciler, stripe_service):
        result = reconciler.process_event(stripe_event("checkout.session.completed", _checkout("acc-none")))

        assert result.outcome == "ignored"
        stripe_service.cancel_subscription.assert_not_called()

    def test_subscription_deleted_reverts_to_free(self, sb, reconciler):
        sb.add_test_data(
            "accounts",
            [account_row("acc-1", tier="premium-plus", credits=90, billing_subscription_ref="sub_1")],
        )

        reconciler.process_event(stripe_event("customer.subscription.deleted", stripe_subscription("sub_1")))

        row = sb.get_row("accounts", id="acc-1")
        assert row["subscription_tier"] == "free"
        assert row["subscription_status"] == "canceled"
        assert row["credits"] == 30
        assert row["max_credits"] == 30

    def test_subscription_updated_to_canceled(self, sb, reconciler):
        sb.add_test_data("accounts", [account_row("acc-1", tier="basic", billing_subscription_ref="sub_1")])

        reconciler.process_event(
            stripe_event("customer.subscription.updated", stripe_subscription("sub_1", status="canceled"))
        )

        row = sb.get_row("accounts", id="acc-1")
        assert row["subscription_status"] == "canceled"
        assert row["subscription_tier"] == "basic"

    def test_processed_event_is_recorded(self, sb, reconciler):
        sb.add_test_data("accounts", [account_row("acc-1", tier="basic", billing_subscription_ref="sub_1")])

        reconciler.process_event(
            stripe_event("customer.subscription.updated", stripe_subscription("sub_1"), event_id="evt_rec")
        )

        recorded = sb.get_row("stripe_webhook_events", event_id="evt_rec")
        assert recorded["event_type"] == "customer.subscription.updated"
        assert recorded["account_id"] == "acc-1"
