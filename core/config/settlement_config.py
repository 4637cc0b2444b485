#!/usr/bin/env python3
"""Settlement configuration

Sweep schedule, auto-charge policy, gateway routing tables and
per-gateway credentials for settlement_service.

Routing tables are written as comma separated CURRENCY:gateway pairs,
e.g. SETTLEMENT_CHARGE_ROUTES="GBP:stripe,NGN:paystack".
"""
import os
from dataclasses import dataclass, field
from typing import Dict, List

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default

def _routes(val: str) -> Dict[str, str]:
    routes = {}
    for pair in (val or "").split(","):
        if ":" not in pair:
            continue
        currency, gateway = pair.split(":", 1)
        if currency.strip() and gateway.strip():
            routes[currency.strip().upper()] = gateway.strip().lower()
    return routes

def _currencies(val: str) -> List[str]:
    return [c.strip().upper() for c in (val or "").split(",") if c.strip()]


DEFAULT_CHARGE_ROUTES = "GBP:stripe,NGN:paystack,USD:stripe"
DEFAULT_PAYOUT_ROUTES = "GBP:truelayer,NGN:paystack,USD:stripe"
DEFAULT_CURRENCIES = "GBP,NGN,USD"


@dataclass
class GatewayConfig:
    """Settings shared by every gateway adapter"""
    enabled: bool = True
    base_url: str = ""
    webhook_secret: str = ""
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0


@dataclass
class StripeConfig(GatewayConfig):
    """Stripe card rail"""
    secret_key: str = ""
    webhook_tolerance_seconds: int = 300

    @classmethod
    def from_env(cls) -> 'StripeConfig':
        return cls(
            enabled=_bool(os.getenv("STRIPE_ENABLED", "true")),
            base_url=os.getenv("STRIPE_BASE_URL", "https://api.stripe.com"),
            secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            webhook_tolerance_seconds=_int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"), 300),
            timeout_seconds=_float(os.getenv("STRIPE_TIMEOUT_SECONDS", "30"), 30.0),
            max_retries=_int(os.getenv("STRIPE_MAX_RETRIES", "3"), 3),
            retry_delay_seconds=_float(os.getenv("STRIPE_RETRY_DELAY_SECONDS", "1"), 1.0),
        )


@dataclass
class TrueLayerConfig(GatewayConfig):
    """TrueLayer open banking"""
    client_id: str = ""
    client_secret: str = ""
    auth_url: str = "https://auth.truelayer-sandbox.com"
    hosted_payment_url: str = "https://payment.truelayer-sandbox.com/payments"
    merchant_account_id: str = ""
    redirect_uri: str = ""

    @classmethod
    def from_env(cls) -> 'TrueLayerConfig':
        return cls(
            enabled=_bool(os.getenv("TRUELAYER_ENABLED", "true")),
            base_url=os.getenv("TRUELAYER_BASE_URL", "https://api.truelayer-sandbox.com"),
            auth_url=os.getenv("TRUELAYER_AUTH_URL", "https://auth.truelayer-sandbox.com"),
            hosted_payment_url=os.getenv(
                "TRUELAYER_HOSTED_PAYMENT_URL", "https://payment.truelayer-sandbox.com/payments"
            ),
            client_id=os.getenv("TRUELAYER_CLIENT_ID", ""),
            client_secret=os.getenv("TRUELAYER_CLIENT_SECRET", ""),
            merchant_account_id=os.getenv("TRUELAYER_MERCHANT_ACCOUNT_ID", ""),
            redirect_uri=os.getenv("TRUELAYER_REDIRECT_URI", ""),
            webhook_secret=os.getenv("TRUELAYER_WEBHOOK_SIGNING_KEY", ""),
            timeout_seconds=_float(os.getenv("TRUELAYER_TIMEOUT_SECONDS", "30"), 30.0),
            max_retries=_int(os.getenv("TRUELAYER_MAX_RETRIES", "3"), 3),
            retry_delay_seconds=_float(os.getenv("TRUELAYER_RETRY_DELAY_SECONDS", "1"), 1.0),
        )


@dataclass
class PaystackConfig(GatewayConfig):
    """Paystack local bank transfers"""
    secret_key: str = ""
    callback_url: str = ""

    @classmethod
    def from_env(cls) -> 'PaystackConfig':
        secret_key = os.getenv("PAYSTACK_SECRET_KEY", "")
        return cls(
            enabled=_bool(os.getenv("PAYSTACK_ENABLED", "true")),
            base_url=os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            secret_key=secret_key,
            # Paystack signs webhooks with the secret key unless a dedicated one is set
            webhook_secret=os.getenv("PAYSTACK_WEBHOOK_SECRET", secret_key),
            callback_url=os.getenv("PAYSTACK_CALLBACK_URL", ""),
            timeout_seconds=_float(os.getenv("PAYSTACK_TIMEOUT_SECONDS", "30"), 30.0),
            max_retries=_int(os.getenv("PAYSTACK_MAX_RETRIES", "3"), 3),
            retry_delay_seconds=_float(os.getenv("PAYSTACK_RETRY_DELAY_SECONDS", "1"), 1.0),
        )


@dataclass
class SettlementConfig:
    """Settlement engine configuration"""

    # Sweep
    sweep_enabled: bool = True
    sweep_interval_seconds: int = 86400
    max_concurrent_charges: int = 4
    # Shutdown waits this long for a running tick to finish its current item
    sweep_shutdown_timeout_seconds: int = 30

    # Auto-charge
    auto_charge_enabled: bool = True
    max_charge_attempts: int = 3

    # In-flight thresholds before the sweep re-checks with the gateway
    transaction_stale_seconds: int = 900
    withdrawal_stale_seconds: int = 3600

    # Payouts
    auto_release_payouts: bool = True
    auto_withdrawal_enabled: bool = False

    # PlatformSettings read cache
    settings_cache_ttl_seconds: int = 1800

    # Routing
    supported_currencies: List[str] = field(default_factory=lambda: _currencies(DEFAULT_CURRENCIES))
    charge_routes: Dict[str, str] = field(default_factory=lambda: _routes(DEFAULT_CHARGE_ROUTES))
    payout_routes: Dict[str, str] = field(default_factory=lambda: _routes(DEFAULT_PAYOUT_ROUTES))

    # Gateways
    stripe: StripeConfig = field(default_factory=StripeConfig)
    truelayer: TrueLayerConfig = field(default_factory=TrueLayerConfig)
    paystack: PaystackConfig = field(default_factory=PaystackConfig)

    @classmethod
    def from_env(cls) -> 'SettlementConfig':
        """Load settlement config from environment variables"""
        return cls(
            sweep_enabled=_bool(os.getenv("SETTLEMENT_SWEEP_ENABLED", "true")),
            sweep_interval_seconds=_int(os.getenv("SETTLEMENT_SWEEP_INTERVAL_SECONDS", "86400"), 86400),
            max_concurrent_charges=_int(os.getenv("SETTLEMENT_MAX_CONCURRENT_CHARGES", "4"), 4),
            sweep_shutdown_timeout_seconds=_int(os.getenv("SETTLEMENT_SWEEP_SHUTDOWN_TIMEOUT_SECONDS", "30"), 30),
            auto_charge_enabled=_bool(os.getenv("SETTLEMENT_AUTO_CHARGE_ENABLED", "true")),
            max_charge_attempts=_int(os.getenv("SETTLEMENT_MAX_CHARGE_ATTEMPTS", "3"), 3),
            transaction_stale_seconds=_int(os.getenv("SETTLEMENT_TRANSACTION_STALE_SECONDS", "900"), 900),
            withdrawal_stale_seconds=_int(os.getenv("SETTLEMENT_WITHDRAWAL_STALE_SECONDS", "3600"), 3600),
            auto_release_payouts=_bool(os.getenv("SETTLEMENT_AUTO_RELEASE_PAYOUTS", "true")),
            auto_withdrawal_enabled=_bool(os.getenv("SETTLEMENT_AUTO_WITHDRAWAL_ENABLED", "false")),
            settings_cache_ttl_seconds=_int(os.getenv("SETTLEMENT_SETTINGS_CACHE_TTL_SECONDS", "1800"), 1800),
            supported_currencies=_currencies(os.getenv("SETTLEMENT_SUPPORTED_CURRENCIES", DEFAULT_CURRENCIES)),
            charge_routes=_routes(os.getenv("SETTLEMENT_CHARGE_ROUTES", DEFAULT_CHARGE_ROUTES)),
            payout_routes=_routes(os.getenv("SETTLEMENT_PAYOUT_ROUTES", DEFAULT_PAYOUT_ROUTES)),
            stripe=StripeConfig.from_env(),
            truelayer=TrueLayerConfig.from_env(),
            paystack=PaystackConfig.from_env(),
        )
