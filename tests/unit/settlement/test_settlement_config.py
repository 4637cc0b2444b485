"""
Unit Tests for Settlement Configuration

Routing table parsing and environment loading.
"""

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import PaystackConfig, SettlementConfig
from core.config.settlement_config import _currencies, _int, _routes


@pytest.mark.unit
class TestRouteParsing:
    """CURRENCY:gateway pairs"""

    def test_pairs_normalized(self):
        assert _routes("gbp:Stripe, NGN : paystack") == {"GBP": "stripe", "NGN": "paystack"}

    def test_malformed_pairs_skipped(self):
        assert _routes("GBP:stripe,broken,:paystack,USD:") == {"GBP": "stripe"}

    def test_empty(self):
        assert _routes("") == {}

    def test_currencies(self):
        assert _currencies("gbp, ngn,,USD") == ["GBP", "NGN", "USD"]

    def test_bad_int_uses_default(self):
        assert _int("soon", 86400) == 86400


@pytest.mark.unit
class TestDefaults:
    """Out-of-the-box routing"""

    def test_default_routes(self):
        config = SettlementConfig()

        assert config.supported_currencies == ["GBP", "NGN", "USD"]
        assert config.charge_routes == {"GBP": "stripe", "NGN": "paystack", "USD": "stripe"}
        assert config.payout_routes == {"GBP": "truelayer", "NGN": "paystack", "USD": "stripe"}
        assert config.max_charge_attempts == 3
        assert config.auto_withdrawal_enabled is False


@pytest.mark.unit
class TestFromEnv:
    """Environment overrides"""

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("SETTLEMENT_SWEEP_INTERVAL_SECONDS", "3600")
        monkeypatch.setenv("SETTLEMENT_AUTO_CHARGE_ENABLED", "false")
        monkeypatch.setenv("SETTLEMENT_SUPPORTED_CURRENCIES", "GBP,EUR")
        monkeypatch.setenv("SETTLEMENT_CHARGE_ROUTES", "GBP:truelayer,EUR:stripe")
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_env")
        monkeypatch.setenv("TRUELAYER_WEBHOOK_SIGNING_KEY", "tl_signing")

        config = SettlementConfig.from_env()

        assert config.sweep_interval_seconds == 3600
        assert config.auto_charge_enabled is False
        assert config.supported_currencies == ["GBP", "EUR"]
        assert config.charge_routes == {"GBP": "truelayer", "EUR": "stripe"}
        assert config.stripe.secret_key == "sk_env"
        assert config.truelayer.webhook_secret == "tl_signing"

    def test_paystack_webhook_secret_defaults_to_secret_key(self, monkeypatch):
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_live_paystack")
        monkeypatch.delenv("PAYSTACK_WEBHOOK_SECRET", raising=False)

        assert PaystackConfig.from_env().webhook_secret == "sk_live_paystack"

    def test_dedicated_paystack_webhook_secret(self, monkeypatch):
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_live_paystack")
        monkeypatch.setenv("PAYSTACK_WEBHOOK_SECRET", "whsec_paystack")

        assert PaystackConfig.from_env().webhook_secret == "whsec_paystack"
