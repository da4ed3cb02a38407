"""Tests for settings, billing configuration and logging context."""

import pytest
import structlog

from flowledger.platform.billing.config import BillingConfig, LedgerConfig, set_billing_config
from flowledger.platform.billing.ledger.credit_application import (
    default_sort_key,
    expiring_first,
    oldest_first,
)
from flowledger.platform.logging import bind_webhook_context, clear_webhook_context
from flowledger.platform.main import create_application
from flowledger.platform.settings import CreditOrdering, Environment, get_settings, reset_settings

pytestmark = pytest.mark.unit


@pytest.fixture
def fresh_settings():
    reset_settings()
    yield
    reset_settings()


class TestSettings:
    def test_nested_billing_settings_from_env(self, monkeypatch, fresh_settings):
        monkeypatch.setenv("ENVIRONMENT", "PRODUCTION")
        monkeypatch.setenv("BILLING__STRIPE_API_KEY", "sk_live_env")
        monkeypatch.setenv("BILLING__CREDIT_ORDERING", "expiring_first")
        monkeypatch.setenv("BILLING__MAX_SUBSCRIPTION_CHAIN_HOPS", "4")

        settings = get_settings()
        assert settings.environment == Environment.PRODUCTION
        assert settings.is_production

        config = BillingConfig.from_env()
        assert config.stripe.api_key == "sk_live_env"
        assert config.stripe.webhook_secret is None
        assert config.ledger.credit_ordering == CreditOrdering.EXPIRING_FIRST
        assert config.ledger.max_subscription_chain_hops == 4

    def test_stripe_disabled_without_api_key(self, monkeypatch, fresh_settings):
        monkeypatch.delenv("BILLING__STRIPE_API_KEY", raising=False)
        assert BillingConfig.from_env().stripe is None


class TestCreditOrderingConfig:
    @pytest.mark.parametrize(
        ("ordering", "sort_key"),
        [(CreditOrdering.OLDEST_FIRST, oldest_first), (CreditOrdering.EXPIRING_FIRST, expiring_first)],
    )
    def test_default_sort_key_follows_config(self, ordering, sort_key):
        set_billing_config(BillingConfig(ledger=LedgerConfig(credit_ordering=ordering)))
        assert default_sort_key() is sort_key


class TestWebhookLogContext:
    def test_bind_and_clear(self):
        bind_webhook_context("evt_1", "setup_intent.succeeded", False)
        assert structlog.contextvars.get_contextvars() == {
            "webhook_event_id": "evt_1",
            "webhook_event_type": "setup_intent.succeeded",
            "livemode": False,
        }
        clear_webhook_context()
        assert structlog.contextvars.get_contextvars() == {}


class TestApplication:
    def test_webhook_route_is_registered(self):
        app = create_application()
        assert app.url_path_for("handle_stripe_webhook") == "/billing/webhooks/stripe"
