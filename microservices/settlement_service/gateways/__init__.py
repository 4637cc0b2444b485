"""
Payment gateway adapters

Each adapter exposes the same capability set (see PaymentGateway) so the
settlement engine never branches on a provider name.
"""

from .base import PaymentGateway
from .models import (
    ChargeResult,
    GatewayOutcome,
    GatewayStatusResult,
    PayerInstrument,
    PayoutResult,
    SavedAuthorization,
    WebhookEvent,
)
from .paystack_gateway import PaystackGateway
from .selector import GatewaySelector
from .stripe_gateway import StripeGateway
from .truelayer_gateway import TrueLayerGateway

__all__ = [
    "PaymentGateway",
    "ChargeResult",
    "GatewayOutcome",
    "GatewayStatusResult",
    "PayerInstrument",
    "PayoutResult",
    "SavedAuthorization",
    "WebhookEvent",
    "PaystackGateway",
    "GatewaySelector",
    "StripeGateway",
    "TrueLayerGateway",
]
