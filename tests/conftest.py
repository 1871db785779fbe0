import os

# Configuration is read at import time; pin it before fluxstudio is imported
os.environ["APP_ENV"] = "testing"
os.environ["SUPABASE_URL"] = "https://supabase.test"
os.environ["SUPABASE_KEY"] = "test-service-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_123"
os.environ["STRIPE_PRICE_BASIC"] = "price_basic"
os.environ["STRIPE_PRICE_PREMIUM"] = "price_premium"
os.environ["STRIPE_PRICE_PREMIUM_PLUS"] = "price_premium_plus"
os.environ["FAL_API_KEY"] = "test-fal-key"
os.environ["SENTRY_ENABLED"] = "false"
os.environ.pop("DEV_ACCOUNT_ID", None)

from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

from tests.helpers.mocks import MockSupabaseClient, account_row  # noqa: E402


@pytest.fixture
def sb(monkeypatch):
    """In-memory Supabase wired into every module that fetches the client."""
    client = MockSupabaseClient()
    monkeypatch.setattr("fluxstudio.config.supabase_config.get_supabase_client", lambda: client)
    monkeypatch.setattr("fluxstudio.security.deps.get_supabase_client", lambda: client)
    return client


@pytest.fixture
def free_account(sb):
    sb.add_test_data("accounts", [account_row("acc-free", tier="free")])
    return "acc-free"


@pytest.fixture
def stripe_service():
    """A StripeService double; configure return values per test."""
    service = MagicMock(name="StripeService")
    service.cancel_subscription.return_value = {"id": "sub_old", "status": "canceled"}
    return service
