"""
Stripe Gateway

Card rail for GBP/USD/EUR, built on the official stripe SDK.

Supported:
- Off-session charges against a saved PaymentMethod (PaymentIntent, confirm=True)
- Stripe Checkout for first payments (optionally saving the card)
- Connect transfers to an influencer's connected account
- Webhooks signed with the Stripe-Signature scheme

The SDK is synchronous; calls run in a worker thread so the event loop stays free.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, FrozenSet, Optional

import stripe

from core.config import StripeConfig

from ..models import GatewayName, OperationKind
from ..protocols import GatewayValidationError, TransientGatewayError
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

logger = logging.getLogger(__name__)


PAYMENT_INTENT_STATUS_MAP = {
    "succeeded": GatewayOutcome.SUCCEEDED,
    "processing": GatewayOutcome.PENDING,
    "requires_capture": GatewayOutcome.PENDING,
    "requires_confirmation": GatewayOutcome.PENDING,
    "requires_action": GatewayOutcome.REQUIRES_ACTION,
    "requires_payment_method": GatewayOutcome.FAILED,
    "canceled": GatewayOutcome.FAILED,
}

WEBHOOK_EVENTS = {
    "checkout.session.completed": (OperationKind.CHARGE, GatewayOutcome.SUCCEEDED),
    "checkout.session.async_payment_succeeded": (OperationKind.CHARGE, GatewayOutcome.SUCCEEDED),
    "checkout.session.async_payment_failed": (OperationKind.CHARGE, GatewayOutcome.FAILED),
    "checkout.session.expired": (OperationKind.CHARGE, GatewayOutcome.FAILED),
    "payment_intent.succeeded": (OperationKind.CHARGE, GatewayOutcome.SUCCEEDED),
    "payment_intent.processing": (OperationKind.CHARGE, GatewayOutcome.PENDING),
    "payment_intent.payment_failed": (OperationKind.CHARGE, GatewayOutcome.FAILED),
    "payment_intent.canceled": (OperationKind.CHARGE, GatewayOutcome.FAILED),
    "transfer.created": (OperationKind.PAYOUT, GatewayOutcome.SUCCEEDED),
    "transfer.reversed": (OperationKind.PAYOUT, GatewayOutcome.FAILED),
}


class StripeGateway(PaymentGateway):
    """
    Stripe adapter.

    The TransactionReference is sent as the Stripe idempotency key and stored in
    metadata, so a retried create never double-charges and a lost response can
    still be found by search.
    """

    CURRENCIES = frozenset({"GBP", "USD", "EUR"})

    def __init__(self, config: StripeConfig, stripe_client: Optional[Any] = None):
        super().__init__(config)
        self.config: StripeConfig = config
        self._stripe = stripe_client
        if not config.secret_key:
            logger.warning("Stripe secret key not configured")

    @property
    def name(self) -> GatewayName:
        return GatewayName.STRIPE

    @property
    def charge_currencies(self) -> FrozenSet[str]:
        return self.CURRENCIES

    @property
    def payout_currencies(self) -> FrozenSet[str]:
        return self.CURRENCIES

    @property
    def stripe_client(self):
        """Lazy StripeClient initialization"""
        if self._stripe is None:
            self._stripe = stripe.StripeClient(
                self.config.secret_key,
                base_addresses={"api": self.config.base_url},
                max_network_retries=0,
            )
        return self._stripe

    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking SDK call and classify Stripe errors"""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.CardError as e:
            raise GatewayValidationError(
                e.user_message or str(e), code=e.code or "card_declined", status_code=e.http_status
            ) from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise TransientGatewayError(f"stripe: {e}", status_code=e.http_status) from e
        except stripe.StripeError as e:
            if e.http_status is None or e.http_status >= 500:
                raise TransientGatewayError(f"stripe: {e}", status_code=e.http_status) from e
            raise GatewayValidationError(
                e.user_message or str(e), code=e.code or "invalid_request", status_code=e.http_status
            ) from e

    # ====================
    # Charges
    # ====================

    async def _do_charge(
        self,
        amount_minor_units: int,
        currency: str,
        payer_instrument: PayerInstrument,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> ChargeResult:
        metadata = {"transaction_reference": idempotency_key, **metadata}
        options = {"idempotency_key": idempotency_key}

        if payer_instrument.is_saved:
            params = {
                "amount": amount_minor_units,
                "currency": currency.lower(),
                "payment_method": payer_instrument.authorization_code,
                "off_session": True,
                "confirm": True,
                "description": f"Recurring payment - {idempotency_key}",
                "metadata": {**metadata, "recurring": "true"},
            }
            if payer_instrument.customer_code:
                params["customer"] = payer_instrument.customer_code

            intent = await self._call(self.stripe_client.payment_intents.create, params=params, options=options)
            outcome = PAYMENT_INTENT_STATUS_MAP.get(intent.status, GatewayOutcome.PENDING)
            if outcome == GatewayOutcome.REQUIRES_ACTION:
                # Off-session: nobody is present to complete authentication
                outcome = GatewayOutcome.FAILED

            logger.info(f"Stripe off-session charge {idempotency_key}: {intent.status}")
            last_error = getattr(intent, "last_payment_error", None)
            return ChargeResult(
                gateway=self.name,
                outcome=outcome,
                gateway_ref=intent.id,
                gateway_transaction_id=getattr(intent, "latest_charge", None),
                failure_code=(getattr(last_error, "code", None) or intent.status) if outcome == GatewayOutcome.FAILED else None,
                failure_message=getattr(last_error, "message", None) if outcome == GatewayOutcome.FAILED else None,
            )

        save_card = metadata.get("save_payment_method") == "true"
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": amount_minor_units,
                    "product_data": {"name": metadata.get("description") or f"Campaign Payment - {idempotency_key}"},
                },
                "quantity": 1,
            }],
            "client_reference_id": idempotency_key,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if payer_instrument.success_url:
            params["success_url"] = payer_instrument.success_url
        if payer_instrument.failure_url:
            params["cancel_url"] = payer_instrument.failure_url
        if payer_instrument.email:
            params["customer_email"] = payer_instrument.email
        if save_card:
            params["payment_intent_data"]["setup_future_usage"] = "off_session"
            params["customer_creation"] = "always"

        session = await self._call(self.stripe_client.checkout.sessions.create, params=params, options=options)
        logger.info(f"Stripe Checkout Session {session.id} created for {idempotency_key}")
        return ChargeResult(
            gateway=self.name,
            outcome=GatewayOutcome.REQUIRES_ACTION,
            gateway_ref=session.id,
            redirect_url=session.url,
        )

    async def _do_charge_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        if gateway_ref and gateway_ref.startswith("cs_"):
            session = await self._call(
                self.stripe_client.checkout.sessions.retrieve,
                gateway_ref,
                params={"expand": ["payment_intent"]},
            )
            intent = getattr(session, "payment_intent", None)
            intent_id = intent if isinstance(intent, str) else getattr(intent, "id", None)
            if session.payment_status in ("paid", "no_payment_required"):
                outcome = GatewayOutcome.SUCCEEDED
            elif session.status == "expired":
                outcome = GatewayOutcome.FAILED
            else:
                outcome = GatewayOutcome.PENDING
            return GatewayStatusResult(
                gateway=self.name,
                outcome=outcome,
                gateway_ref=gateway_ref,
                gateway_transaction_id=intent_id,
                failure_code="session_expired" if outcome == GatewayOutcome.FAILED else None,
                failure_message="Checkout session expired" if outcome == GatewayOutcome.FAILED else None,
            )

        if gateway_ref:
            intent = await self._call(self.stripe_client.payment_intents.retrieve, gateway_ref)
        else:
            found = await self._call(
                self.stripe_client.payment_intents.search,
                params={"query": f"metadata['transaction_reference']:'{idempotency_key}'", "limit": 1},
            )
            if not found.data:
                return GatewayStatusResult(gateway=self.name, outcome=GatewayOutcome.NOT_FOUND)
            intent = found.data[0]

        outcome = PAYMENT_INTENT_STATUS_MAP.get(intent.status, GatewayOutcome.PENDING)
        last_error = getattr(intent, "last_payment_error", None)
        return GatewayStatusResult(
            gateway=self.name,
            outcome=outcome,
            gateway_ref=intent.id,
            gateway_transaction_id=getattr(intent, "latest_charge", None),
            failure_code=(getattr(last_error, "code", None) or intent.status) if outcome == GatewayOutcome.FAILED else None,
            failure_message=getattr(last_error, "message", None) if outcome == GatewayOutcome.FAILED else None,
        )

    # ====================
    # Transfers
    # ====================

    async def _do_payout(
        self,
        amount_minor_units: int,
        currency: str,
        recipient_ref: str,
        idempotency_key: str,
        reason: Optional[str],
    ) -> PayoutResult:
        transfer = await self._call(
            self.stripe_client.transfers.create,
            params={
                "amount": amount_minor_units,
                "currency": currency.lower(),
                "destination": recipient_ref,
                "transfer_group": idempotency_key,
                "description": reason or "Withdrawal payout",
                "metadata": {"withdrawal_reference": idempotency_key},
            },
            options={"idempotency_key": idempotency_key},
        )
        logger.info(f"Stripe transfer {transfer.id} created for {idempotency_key}")
        # Connect transfers settle to the connected balance synchronously
        return PayoutResult(gateway=self.name, outcome=GatewayOutcome.SUCCEEDED, gateway_ref=transfer.id)

    async def _do_payout_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        if gateway_ref:
            transfer = await self._call(self.stripe_client.transfers.retrieve, gateway_ref)
        else:
            found = await self._call(
                self.stripe_client.transfers.list,
                params={"transfer_group": idempotency_key, "limit": 1},
            )
            if not found.data:
                return GatewayStatusResult(gateway=self.name, outcome=GatewayOutcome.NOT_FOUND)
            transfer = found.data[0]

        reversed_ = bool(getattr(transfer, "reversed", False))
        return GatewayStatusResult(
            gateway=self.name,
            outcome=GatewayOutcome.FAILED if reversed_ else GatewayOutcome.SUCCEEDED,
            gateway_ref=transfer.id,
            failure_code="reversed" if reversed_ else None,
            failure_message="Transfer reversed" if reversed_ else None,
        )

    # ====================
    # Webhooks
    # ====================

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        if not self.config.webhook_secret or not signature_header:
            return False
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.config.webhook_secret,
                self.config.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe webhook signature rejected: {e}")
            return False
        return True

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        payload = self._load_json(raw_body)
        event_type = str(payload.get("type", ""))
        obj = (payload.get("data") or {}).get("object") or {}
        if not isinstance(obj, dict):
            raise ValueError("Stripe event data.object is not an object")

        kind, outcome = WEBHOOK_EVENTS.get(event_type, (None, GatewayOutcome.PENDING))
        metadata = obj.get("metadata") or {}

        if event_type == "checkout.session.completed" and obj.get("payment_status") != "paid":
            # Delayed payment methods complete later via async_payment_succeeded
            outcome = GatewayOutcome.PENDING

        failure_code = None
        failure_reason = None
        if outcome == GatewayOutcome.FAILED:
            last_error = obj.get("last_payment_error") or {}
            failure_code = last_error.get("code") or event_type.rsplit(".", 1)[-1]
            failure_reason = last_error.get("message") or obj.get("cancellation_reason") or event_type

        if kind == OperationKind.PAYOUT:
            reference = metadata.get("withdrawal_reference") or obj.get("transfer_group")
        else:
            reference = metadata.get("transaction_reference") or obj.get("client_reference_id")

        gateway_transaction_id = None
        if event_type.startswith("payment_intent."):
            gateway_transaction_id = obj.get("latest_charge")
        elif event_type.startswith("checkout.session."):
            intent = obj.get("payment_intent")
            gateway_transaction_id = intent if isinstance(intent, str) else None

        return WebhookEvent(
            gateway=self.name,
            event_type=event_type,
            kind=kind,
            outcome=outcome,
            gateway_ref=obj.get("id"),
            reference=reference,
            gateway_transaction_id=gateway_transaction_id,
            failure_code=failure_code,
            failure_reason=failure_reason,
            is_reversal=event_type == "transfer.reversed",
            authorization=self._saved_authorization(event_type, obj),
            data=obj,
        )

    @staticmethod
    def _saved_authorization(event_type: str, obj: Dict[str, Any]) -> Optional[SavedAuthorization]:
        if event_type != "payment_intent.succeeded":
            return None
        if (obj.get("metadata") or {}).get("save_payment_method") != "true":
            return None

        payment_method = obj.get("payment_method")
        if isinstance(payment_method, dict):
            card = payment_method.get("card") or {}
            method_id = payment_method.get("id")
        else:
            card = {}
            method_id = payment_method
        if not method_id:
            return None

        return SavedAuthorization(
            authorization_code=method_id,
            customer_code=obj.get("customer"),
            email=obj.get("receipt_email"),
            card_brand=card.get("brand"),
            last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
            reusable=True,
        )


__all__ = ["StripeGateway"]
