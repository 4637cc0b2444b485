"""
Unit Test Fixtures for Settlement Service

Gateway adapters wired to in-process transports, so no request leaves the
test. Retry delays are zero; every adapter still makes three attempts.
"""

import sys
import os
from typing import Callable, List

import httpx
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import PaystackConfig, StripeConfig, TrueLayerConfig


PAYSTACK_BASE_URL = "https://api.paystack.test"
TRUELAYER_BASE_URL = "https://api.truelayer.test"
TRUELAYER_AUTH_URL = "https://auth.truelayer.test"
WEBHOOK_SECRET = "whsec_unit_test"


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served"""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(record)


@pytest.fixture
def stripe_config():
    return StripeConfig(
        secret_key="sk_test_unit",
        webhook_secret=WEBHOOK_SECRET,
        max_retries=3,
        retry_delay_seconds=0,
    )


@pytest.fixture
def paystack_config():
    return PaystackConfig(
        base_url=PAYSTACK_BASE_URL,
        secret_key="sk_test_paystack",
        webhook_secret=WEBHOOK_SECRET,
        callback_url="https://app.test/paystack/callback",
        max_retries=3,
        retry_delay_seconds=0,
    )


@pytest.fixture
def truelayer_config():
    return TrueLayerConfig(
        base_url=TRUELAYER_BASE_URL,
        auth_url=TRUELAYER_AUTH_URL,
        hosted_payment_url="https://payment.truelayer.test/payments",
        client_id="client_unit",
        client_secret="secret_unit",
        merchant_account_id="ma_unit",
        redirect_uri="https://app.test/return",
        webhook_secret=WEBHOOK_SECRET,
        max_retries=3,
        retry_delay_seconds=0,
    )


@pytest.fixture
def make_transport():
    """Factory: RecordingTransport from a request handler"""
    return RecordingTransport
