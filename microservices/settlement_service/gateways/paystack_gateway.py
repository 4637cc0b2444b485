"""
Paystack Gateway

Local bank rail for NGN (and other Paystack markets).

Supported:
- Recurring charges against a saved card authorization (charge_authorization)
- Hosted checkout for first payments (transaction/initialize)
- Transfers to a registered transfer recipient
- Webhooks signed with HMAC-SHA512 (x-paystack-signature)
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, FrozenSet, Optional

import httpx

from core.config import PaystackConfig

from ..models import GatewayName, OperationKind
from ..protocols import GatewayValidationError
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


# Paystack transaction.status -> outcome
CHARGE_STATUS_MAP = {
    "success": GatewayOutcome.SUCCEEDED,
    "failed": GatewayOutcome.FAILED,
    "reversed": GatewayOutcome.FAILED,
    "abandoned": GatewayOutcome.FAILED,
}

# Paystack transfer.status -> outcome
TRANSFER_STATUS_MAP = {
    "success": GatewayOutcome.SUCCEEDED,
    "failed": GatewayOutcome.FAILED,
    "reversed": GatewayOutcome.FAILED,
    "rejected": GatewayOutcome.FAILED,
}

WEBHOOK_EVENTS = {
    "charge.success": (OperationKind.CHARGE, GatewayOutcome.SUCCEEDED),
    "charge.failed": (OperationKind.CHARGE, GatewayOutcome.FAILED),
    "transfer.success": (OperationKind.PAYOUT, GatewayOutcome.SUCCEEDED),
    "transfer.failed": (OperationKind.PAYOUT, GatewayOutcome.FAILED),
    "transfer.reversed": (OperationKind.PAYOUT, GatewayOutcome.FAILED),
}


def _is_duplicate_reference(error: GatewayValidationError) -> bool:
    """Paystack refuses a reference it has already seen (a retry after a lost response)"""
    message = str(error).lower()
    return "duplicate" in message or ("reference" in message and "already" in message)


class PaystackGateway(PaymentGateway):
    """
    Paystack adapter.

    Paystack echoes our reference on every transaction and transfer, so the
    idempotency key doubles as the lookup key for status checks.
    """

    CURRENCIES = frozenset({"NGN", "GHS", "ZAR", "KES"})

    def __init__(self, config: PaystackConfig, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, http_client)
        self.config: PaystackConfig = config
        if not config.secret_key:
            logger.warning("Paystack secret key not configured")

    @property
    def name(self) -> GatewayName:
        return GatewayName.PAYSTACK

    @property
    def charge_currencies(self) -> FrozenSet[str]:
        return self.CURRENCIES

    @property
    def payout_currencies(self) -> FrozenSet[str]:
        return self.CURRENCIES

    def _error_details(self, body: Dict[str, Any], response: httpx.Response):
        return body.get("code") or str(response.status_code), body.get("message") or response.reason_phrase

    async def _call(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """Paystack wraps results as {status, message, data}; status false is a rejection"""
        headers = {"Authorization": f"Bearer {self.config.secret_key}", **kwargs.pop("headers", {})}
        body = await self._request(method, url, headers=headers, **kwargs)
        if not body.get("status"):
            raise GatewayValidationError(body.get("message") or "Paystack request failed", code="rejected")
        return body.get("data") or {}

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
        if not payer_instrument.email:
            raise GatewayValidationError("Paystack charges require a payer email", code="missing_email")

        payload = {
            "email": payer_instrument.email,
            "amount": amount_minor_units,
            "currency": currency,
            "reference": idempotency_key,
            "metadata": {"transaction_reference": idempotency_key, **metadata},
        }

        if payer_instrument.is_saved:
            payload["authorization_code"] = payer_instrument.authorization_code
            try:
                data = await self._call("POST", "/transaction/charge_authorization", json=payload)
            except GatewayValidationError as e:
                if _is_duplicate_reference(e):
                    return await self._charge_seen_before(idempotency_key)
                raise
            outcome = CHARGE_STATUS_MAP.get(str(data.get("status", "")).lower(), GatewayOutcome.PENDING)
            logger.info(f"Paystack charge_authorization {idempotency_key}: {data.get('status')}")
            return ChargeResult(
                gateway=self.name,
                outcome=outcome,
                gateway_ref=str(data["id"]) if data.get("id") is not None else None,
                gateway_transaction_id=str(data["id"]) if data.get("id") is not None else None,
                failure_code="declined" if outcome == GatewayOutcome.FAILED else None,
                failure_message=data.get("gateway_response") if outcome == GatewayOutcome.FAILED else None,
            )

        callback_url = payer_instrument.success_url or self.config.callback_url
        if callback_url:
            payload["callback_url"] = callback_url
        try:
            data = await self._call("POST", "/transaction/initialize", json=payload)
        except GatewayValidationError as e:
            if _is_duplicate_reference(e):
                return await self._charge_seen_before(idempotency_key)
            raise
        logger.info(f"Paystack checkout initialized for {idempotency_key}")
        return ChargeResult(
            gateway=self.name,
            outcome=GatewayOutcome.REQUIRES_ACTION,
            gateway_ref=data.get("access_code"),
            redirect_url=data.get("authorization_url"),
        )

    async def _do_charge_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        try:
            data = await self._call("GET", f"/transaction/verify/{idempotency_key}")
        except GatewayValidationError as e:
            if "not found" in str(e).lower():
                return GatewayStatusResult(gateway=self.name, outcome=GatewayOutcome.NOT_FOUND, gateway_ref=gateway_ref)
            raise

        outcome = CHARGE_STATUS_MAP.get(str(data.get("status", "")).lower(), GatewayOutcome.PENDING)
        return GatewayStatusResult(
            gateway=self.name,
            outcome=outcome,
            gateway_ref=gateway_ref or (str(data["id"]) if data.get("id") is not None else None),
            gateway_transaction_id=str(data["id"]) if data.get("id") is not None else None,
            failure_message=data.get("gateway_response") if outcome == GatewayOutcome.FAILED else None,
        )

    async def _charge_seen_before(self, idempotency_key: str) -> ChargeResult:
        """A retried charge hit its own earlier attempt; report that attempt's state"""
        status = await self._do_charge_status(None, idempotency_key)
        logger.warning(f"Paystack already holds charge {idempotency_key}; verified as {status.outcome.value}")
        if status.outcome not in (GatewayOutcome.SUCCEEDED, GatewayOutcome.FAILED):
            return ChargeResult(
                gateway=self.name,
                outcome=GatewayOutcome.UNKNOWN,
                gateway_ref=status.gateway_ref,
                failure_code="duplicate_reference",
                failure_message=f"Reference {idempotency_key} already submitted; final state not yet known",
            )
        return ChargeResult(
            gateway=self.name,
            outcome=status.outcome,
            gateway_ref=status.gateway_ref,
            gateway_transaction_id=status.gateway_transaction_id,
            failure_code="declined" if status.outcome == GatewayOutcome.FAILED else None,
            failure_message=status.failure_message,
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
        payload = {
            "source": "balance",
            "amount": amount_minor_units,
            "currency": currency,
            "recipient": recipient_ref,
            "reason": reason or "Withdrawal payout",
            "reference": idempotency_key,
        }
        try:
            data = await self._call("POST", "/transfer", json=payload)
        except GatewayValidationError as e:
            if _is_duplicate_reference(e):
                return await self._transfer_seen_before(idempotency_key)
            raise

        outcome = TRANSFER_STATUS_MAP.get(str(data.get("status", "")).lower(), GatewayOutcome.PENDING)
        logger.info(f"Paystack transfer {idempotency_key}: {data.get('status')}")
        return PayoutResult(
            gateway=self.name,
            outcome=outcome,
            gateway_ref=data.get("transfer_code"),
            failure_code="transfer_failed" if outcome == GatewayOutcome.FAILED else None,
            failure_message=data.get("reason") if outcome == GatewayOutcome.FAILED else None,
        )

    async def _do_payout_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        try:
            data = await self._call("GET", f"/transfer/verify/{idempotency_key}")
        except GatewayValidationError as e:
            if "not found" in str(e).lower():
                return GatewayStatusResult(gateway=self.name, outcome=GatewayOutcome.NOT_FOUND, gateway_ref=gateway_ref)
            raise

        outcome = TRANSFER_STATUS_MAP.get(str(data.get("status", "")).lower(), GatewayOutcome.PENDING)
        return GatewayStatusResult(
            gateway=self.name,
            outcome=outcome,
            gateway_ref=data.get("transfer_code") or gateway_ref,
            failure_message=data.get("reason") if outcome == GatewayOutcome.FAILED else None,
        )

    async def _transfer_seen_before(self, idempotency_key: str) -> PayoutResult:
        """A retried transfer hit its own earlier attempt; report that attempt's state"""
        status = await self._do_payout_status(None, idempotency_key)
        logger.warning(f"Paystack already holds transfer {idempotency_key}; verified as {status.outcome.value}")
        outcome = status.outcome
        if outcome == GatewayOutcome.NOT_FOUND:
            outcome = GatewayOutcome.UNKNOWN
        return PayoutResult(
            gateway=self.name,
            outcome=outcome,
            gateway_ref=status.gateway_ref,
            failure_code="transfer_failed" if outcome == GatewayOutcome.FAILED else None,
            failure_message=status.failure_message,
        )

    # ====================
    # Webhooks
    # ====================

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        if not self.config.webhook_secret or not signature_header:
            return False
        expected = hmac.new(
            self.config.webhook_secret.encode(),
            raw_body,
            hashlib.sha512,
        ).hexdigest()
        return hmac.compare_digest(expected, signature_header.strip().lower())

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        payload = self._load_json(raw_body)
        event_type = str(payload.get("event", ""))
        data = payload.get("data") or {}
        kind, outcome = WEBHOOK_EVENTS.get(event_type, (None, GatewayOutcome.PENDING))

        if kind == OperationKind.PAYOUT:
            gateway_ref = data.get("transfer_code")
            failure_reason = data.get("reason") or data.get("failures")
        else:
            gateway_ref = str(data["id"]) if data.get("id") is not None else None
            failure_reason = data.get("gateway_response")

        authorization = None
        auth = data.get("authorization") or {}
        if event_type == "charge.success" and auth.get("authorization_code"):
            customer = data.get("customer") or {}
            authorization = SavedAuthorization(
                authorization_code=auth["authorization_code"],
                customer_code=customer.get("customer_code"),
                email=customer.get("email"),
                card_brand=auth.get("card_type") or auth.get("brand"),
                last4=auth.get("last4"),
                exp_month=int(auth["exp_month"]) if auth.get("exp_month") else None,
                exp_year=int(auth["exp_year"]) if auth.get("exp_year") else None,
                reusable=bool(auth.get("reusable", False)),
            )

        return WebhookEvent(
            gateway=self.name,
            event_type=event_type,
            kind=kind,
            outcome=outcome,
            gateway_ref=gateway_ref,
            reference=data.get("reference"),
            gateway_transaction_id=str(data["id"]) if data.get("id") is not None else None,
            failure_code=event_type.split(".")[-1] if outcome == GatewayOutcome.FAILED else None,
            failure_reason=str(failure_reason) if outcome == GatewayOutcome.FAILED and failure_reason else None,
            is_reversal=event_type == "transfer.reversed",
            authorization=authorization,
            data=data,
        )


__all__ = ["PaystackGateway"]
