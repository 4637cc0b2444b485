"""
Unit Tests for Webhook Verification and Parsing

Each provider's signature scheme, and normalization of its event bodies
into WebhookEvent.
"""

import base64
import hashlib
import hmac
import json
import time

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.settlement_service.gateways import (
    GatewayOutcome,
    PaystackGateway,
    StripeGateway,
    TrueLayerGateway,
)
from microservices.settlement_service.models import OperationKind

WEBHOOK_SECRET = "whsec_unit_test"


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode()


def _stripe_header(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


# =============================================================================
# Signatures
# =============================================================================


@pytest.mark.unit
class TestPaystackSignature:
    """Hex HMAC-SHA512 of the raw body"""

    def test_valid(self, paystack_config):
        gateway = PaystackGateway(paystack_config)
        body = _body({"event": "charge.success"})
        signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha512).hexdigest()

        assert gateway.verify_webhook_signature(body, signature)

    def test_uppercase_hex_accepted(self, paystack_config):
        gateway = PaystackGateway(paystack_config)
        body = _body({"event": "charge.success"})
        signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha512).hexdigest().upper()

        assert gateway.verify_webhook_signature(body, signature)

    def test_tampered_body(self, paystack_config):
        gateway = PaystackGateway(paystack_config)
        signature = hmac.new(WEBHOOK_SECRET.encode(), b'{"amount": 100}', hashlib.sha512).hexdigest()

        assert not gateway.verify_webhook_signature(b'{"amount": 999}', signature)

    def test_missing_header(self, paystack_config):
        assert not PaystackGateway(paystack_config).verify_webhook_signature(b"{}", None)

    def test_no_secret_configured(self, paystack_config):
        paystack_config.webhook_secret = ""
        signature = hmac.new(b"", b"{}", hashlib.sha512).hexdigest()

        assert not PaystackGateway(paystack_config).verify_webhook_signature(b"{}", signature)


@pytest.mark.unit
class TestTrueLayerSignature:
    """Base64 HMAC-SHA512 of the raw body"""

    def test_valid(self, truelayer_config):
        gateway = TrueLayerGateway(truelayer_config)
        body = _body({"type": "payment_executed"})
        digest = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha512).digest()

        assert gateway.verify_webhook_signature(body, base64.b64encode(digest).decode())

    def test_hex_encoding_rejected(self, truelayer_config):
        gateway = TrueLayerGateway(truelayer_config)
        body = _body({"type": "payment_executed"})

        assert not gateway.verify_webhook_signature(
            body, hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha512).hexdigest()
        )

    def test_wrong_secret(self, truelayer_config):
        gateway = TrueLayerGateway(truelayer_config)
        body = _body({"type": "payment_executed"})
        digest = hmac.new(b"other_secret", body, hashlib.sha512).digest()

        assert not gateway.verify_webhook_signature(body, base64.b64encode(digest).decode())


@pytest.mark.unit
class TestStripeSignature:
    """Stripe-Signature: t=<timestamp>,v1=<HMAC-SHA256 of 't.payload'>"""

    def test_valid(self, stripe_config):
        body = _body({"type": "payment_intent.succeeded"})

        assert StripeGateway(stripe_config).verify_webhook_signature(body, _stripe_header(body))

    def test_wrong_secret(self, stripe_config):
        body = _body({"type": "payment_intent.succeeded"})

        assert not StripeGateway(stripe_config).verify_webhook_signature(body, _stripe_header(body, "whsec_other"))

    def test_outside_tolerance(self, stripe_config):
        body = _body({"type": "payment_intent.succeeded"})
        header = _stripe_header(body, timestamp=int(time.time()) - 3600)

        assert not StripeGateway(stripe_config).verify_webhook_signature(body, header)

    def test_malformed_header(self, stripe_config):
        assert not StripeGateway(stripe_config).verify_webhook_signature(b"{}", "not-a-signature")

    def test_missing_header(self, stripe_config):
        assert not StripeGateway(stripe_config).verify_webhook_signature(b"{}", "")


# =============================================================================
# Parsing
# =============================================================================


@pytest.mark.unit
class TestPaystackParsing:
    """Paystack {event, data} bodies"""

    def test_charge_success_with_reusable_card(self, paystack_config):
        body = _body({
            "event": "charge.success",
            "data": {
                "id": 302961,
                "reference": "INF-20260101-ABCDEF12",
                "status": "success",
                "authorization": {
                    "authorization_code": "AUTH_8dfhjjdt",
                    "card_type": "visa",
                    "last4": "4081",
                    "exp_month": "12",
                    "exp_year": "2030",
                    "reusable": True,
                },
                "customer": {"customer_code": "CUS_xnxdt6s1zg1f4nx", "email": "brand@example.com"},
            },
        })

        event = PaystackGateway(paystack_config).parse_webhook(body)

        assert event.kind == OperationKind.CHARGE
        assert event.outcome == GatewayOutcome.SUCCEEDED
        assert event.reference == "INF-20260101-ABCDEF12"
        assert event.gateway_ref == "302961"
        assert event.authorization.authorization_code == "AUTH_8dfhjjdt"
        assert event.authorization.exp_year == 2030
        assert event.authorization.reusable

    def test_transfer_reversed(self, paystack_config):
        body = _body({
            "event": "transfer.reversed",
            "data": {"transfer_code": "TRF_1ptvuv321ahaa7q", "reference": "WDR-20260101-00C0FFEE", "reason": "Account closed"},
        })

        event = PaystackGateway(paystack_config).parse_webhook(body)

        assert event.kind == OperationKind.PAYOUT
        assert event.outcome == GatewayOutcome.FAILED
        assert event.is_reversal
        assert event.gateway_ref == "TRF_1ptvuv321ahaa7q"
        assert event.failure_code == "reversed"
        assert event.failure_reason == "Account closed"

    def test_unrelated_event(self, paystack_config):
        event = PaystackGateway(paystack_config).parse_webhook(_body({"event": "subscription.create", "data": {}}))

        assert event.kind is None

    def test_malformed_body(self, paystack_config):
        with pytest.raises(ValueError):
            PaystackGateway(paystack_config).parse_webhook(b"[1, 2, 3]")


@pytest.mark.unit
class TestTrueLayerParsing:
    """TrueLayer flat event bodies"""

    def test_payment_executed(self, truelayer_config):
        body = _body({
            "type": "payment_executed",
            "payment_id": "pay_2f4e",
            "metadata": {"transaction_reference": "INF-20260101-ABCDEF12"},
        })

        event = TrueLayerGateway(truelayer_config).parse_webhook(body)

        assert event.kind == OperationKind.CHARGE
        assert event.outcome == GatewayOutcome.SUCCEEDED
        assert event.gateway_ref == "pay_2f4e"
        assert event.reference == "INF-20260101-ABCDEF12"

    def test_payout_failed(self, truelayer_config):
        body = _body({
            "type": "payout_failed",
            "payout_id": "po_91ab",
            "failure_reason": "insufficient_funds",
            "metadata": {"withdrawal_reference": "WDR-20260101-00C0FFEE"},
        })

        event = TrueLayerGateway(truelayer_config).parse_webhook(body)

        assert event.kind == OperationKind.PAYOUT
        assert event.outcome == GatewayOutcome.FAILED
        assert event.reference == "WDR-20260101-00C0FFEE"
        assert event.failure_reason == "insufficient_funds"
        assert not event.is_reversal


@pytest.mark.unit
class TestStripeParsing:
    """Stripe event envelopes"""

    def test_payment_intent_succeeded_saves_card_on_consent(self, stripe_config):
        body = _body({
            "type": "payment_intent.succeeded",
            "data": {"object": {
                "id": "pi_3N",
                "latest_charge": "ch_3N",
                "customer": "cus_9s6",
                "payment_method": {"id": "pm_1", "card": {"brand": "visa", "last4": "4242", "exp_month": 4, "exp_year": 2031}},
                "metadata": {"transaction_reference": "INF-20260101-ABCDEF12", "save_payment_method": "true"},
            }},
        })

        event = StripeGateway(stripe_config).parse_webhook(body)

        assert event.outcome == GatewayOutcome.SUCCEEDED
        assert event.gateway_ref == "pi_3N"
        assert event.gateway_transaction_id == "ch_3N"
        assert event.reference == "INF-20260101-ABCDEF12"
        assert event.authorization.authorization_code == "pm_1"
        assert event.authorization.customer_code == "cus_9s6"
        assert event.authorization.last4 == "4242"

    def test_no_saved_card_without_consent(self, stripe_config):
        body = _body({
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_3N", "payment_method": "pm_1", "metadata": {}}},
        })

        assert StripeGateway(stripe_config).parse_webhook(body).authorization is None

    def test_unpaid_checkout_completion_stays_pending(self, stripe_config):
        body = _body({
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "payment_status": "unpaid", "client_reference_id": "INF-20260101-ABCDEF12"}},
        })

        event = StripeGateway(stripe_config).parse_webhook(body)

        assert event.outcome == GatewayOutcome.PENDING
        assert event.reference == "INF-20260101-ABCDEF12"

    def test_payment_failed_carries_reason(self, stripe_config):
        body = _body({
            "type": "payment_intent.payment_failed",
            "data": {"object": {
                "id": "pi_4",
                "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
                "metadata": {"transaction_reference": "INF-20260101-ABCDEF12"},
            }},
        })

        event = StripeGateway(stripe_config).parse_webhook(body)

        assert event.outcome == GatewayOutcome.FAILED
        assert event.failure_code == "card_declined"
        assert event.failure_reason == "Your card was declined."

    def test_transfer_reversed(self, stripe_config):
        body = _body({
            "type": "transfer.reversed",
            "data": {"object": {"id": "tr_1", "transfer_group": "WDR-20260101-00C0FFEE", "metadata": {}}},
        })

        event = StripeGateway(stripe_config).parse_webhook(body)

        assert event.kind == OperationKind.PAYOUT
        assert event.is_reversal
        assert event.reference == "WDR-20260101-00C0FFEE"

    def test_non_object_data_rejected(self, stripe_config):
        with pytest.raises(ValueError):
            StripeGateway(stripe_config).parse_webhook(_body({"type": "payment_intent.succeeded", "data": {"object": "pi_1"}}))
