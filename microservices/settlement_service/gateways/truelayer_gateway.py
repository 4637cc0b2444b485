"""
TrueLayer Gateway

Open banking rail for GBP/EUR.

Supported:
- Pay-ins through the hosted payment page (payer authorizes in their bank)
- Payouts from the merchant account to a beneficiary
- Webhooks signed with base64 HMAC-SHA512 (Tl-Signature)

Access tokens come from the client-credentials grant and are reused until
60 seconds before they expire.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, FrozenSet, Optional
from urllib.parse import quote

import httpx

from core.config import TrueLayerConfig

from ..models import GatewayName, OperationKind
from ..protocols import GatewayValidationError
from .base import PaymentGateway
from .models import (
    ChargeResult,
    GatewayOutcome,
    GatewayStatusResult,
    PayerInstrument,
    PayoutResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


PAYMENT_STATUS_MAP = {
    "executed": GatewayOutcome.SUCCEEDED,
    "settled": GatewayOutcome.SUCCEEDED,
    "failed": GatewayOutcome.FAILED,
}

PAYOUT_STATUS_MAP = {
    "executed": GatewayOutcome.SUCCEEDED,
    "failed": GatewayOutcome.FAILED,
}

WEBHOOK_EVENTS = {
    "payment_executed": (OperationKind.CHARGE, GatewayOutcome.SUCCEEDED),
    "payment_settled": (OperationKind.CHARGE, GatewayOutcome.SUCCEEDED),
    "payment_failed": (OperationKind.CHARGE, GatewayOutcome.FAILED),
    "payout_executed": (OperationKind.PAYOUT, GatewayOutcome.SUCCEEDED),
    "payout_failed": (OperationKind.PAYOUT, GatewayOutcome.FAILED),
}

TOKEN_EXPIRY_BUFFER_SECONDS = 60


class TrueLayerGateway(PaymentGateway):
    """TrueLayer adapter"""

    CURRENCIES = frozenset({"GBP", "EUR"})

    def __init__(self, config: TrueLayerConfig, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, http_client)
        self.config: TrueLayerConfig = config
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()
        if not config.client_id or not config.client_secret:
            logger.warning("TrueLayer client credentials not configured")

    @property
    def name(self) -> GatewayName:
        return GatewayName.TRUELAYER

    @property
    def charge_currencies(self) -> FrozenSet[str]:
        return self.CURRENCIES

    @property
    def payout_currencies(self) -> FrozenSet[str]:
        return self.CURRENCIES

    def _error_details(self, body: Dict[str, Any], response: httpx.Response):
        # TrueLayer errors are RFC 7807 problem documents
        code = body.get("type") or str(response.status_code)
        message = body.get("detail") or body.get("title") or response.reason_phrase
        return str(code).rsplit("/", 1)[-1], str(message)

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            body = await self._request(
                "POST",
                f"{self.config.auth_url.rstrip('/')}/connect/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "scope": "payments",
                },
            )
            token = body.get("access_token")
            if not token:
                raise GatewayValidationError("TrueLayer token response had no access_token", code="auth_failed")

            expires_in = int(body.get("expires_in") or 3600)
            self._access_token = token
            self._token_expires_at = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_BUFFER_SECONDS)
            logger.info("TrueLayer access token refreshed")
            return token

    async def _auth_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {await self._get_access_token()}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _hosted_payment_url(self, payment_id: str, resource_token: Optional[str],
                            success_url: Optional[str]) -> str:
        params = [f"payment_id={payment_id}"]
        if resource_token:
            params.append(f"resource_token={resource_token}")
        return_uri = success_url or self.config.redirect_uri
        if return_uri:
            params.append(f"return_uri={quote(return_uri, safe='')}")
        return f"{self.config.hosted_payment_url}#{'&'.join(params)}"

    # ====================
    # Pay-ins
    # ====================

    async def _do_charge(
        self,
        amount_minor_units: int,
        currency: str,
        payer_instrument: PayerInstrument,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> ChargeResult:
        if payer_instrument.is_saved:
            raise GatewayValidationError(
                "TrueLayer pay-ins need payer authorization; saved instruments are not supported",
                code="unsupported_instrument",
            )

        body = await self._request(
            "POST",
            "/v3/payments",
            headers=await self._auth_headers(idempotency_key),
            json={
                "amount_in_minor": amount_minor_units,
                "currency": currency,
                "payment_method": {
                    "type": "bank_transfer",
                    "provider_selection": {
                        "type": "user_selected",
                        "scheme_selection": {"type": "instant_preferred"},
                    },
                    "beneficiary": {
                        "type": "merchant_account",
                        "merchant_account_id": self.config.merchant_account_id,
                    },
                },
                "user": {
                    "id": payer_instrument.payer_id,
                    "name": payer_instrument.name,
                    "email": payer_instrument.email,
                },
                "metadata": {"transaction_reference": idempotency_key, **metadata},
            },
        )

        payment_id = body.get("id")
        if not payment_id:
            raise GatewayValidationError("TrueLayer payment response had no id", code="invalid_response")

        logger.info(f"TrueLayer payment {payment_id} created for {idempotency_key}")
        return ChargeResult(
            gateway=self.name,
            outcome=GatewayOutcome.REQUIRES_ACTION,
            gateway_ref=payment_id,
            redirect_url=self._hosted_payment_url(payment_id, body.get("resource_token"), payer_instrument.success_url),
        )

    async def _do_charge_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        if not gateway_ref:
            # Without a payment id the payer never got a page to authorize
            return GatewayStatusResult(gateway=self.name, outcome=GatewayOutcome.NOT_FOUND)

        body = await self._request("GET", f"/v3/payments/{gateway_ref}", headers=await self._auth_headers())
        outcome = PAYMENT_STATUS_MAP.get(str(body.get("status", "")).lower(), GatewayOutcome.PENDING)
        return GatewayStatusResult(
            gateway=self.name,
            outcome=outcome,
            gateway_ref=gateway_ref,
            failure_code=body.get("failure_stage") if outcome == GatewayOutcome.FAILED else None,
            failure_message=body.get("failure_reason") if outcome == GatewayOutcome.FAILED else None,
        )

    # ====================
    # Payouts
    # ====================

    async def _do_payout(
        self,
        amount_minor_units: int,
        currency: str,
        recipient_ref: str,
        idempotency_key: str,
        reason: Optional[str],
    ) -> PayoutResult:
        body = await self._request(
            "POST",
            "/v3/payouts",
            headers=await self._auth_headers(idempotency_key),
            json={
                "merchant_account_id": self.config.merchant_account_id,
                "amount_in_minor": amount_minor_units,
                "currency": currency,
                "beneficiary": {
                    "type": "payment_source",
                    "payment_source_id": recipient_ref,
                    "reference": (reason or idempotency_key)[:18],
                },
                "metadata": {"withdrawal_reference": idempotency_key},
            },
        )
        payout_id = body.get("id")
        if not payout_id:
            raise GatewayValidationError("TrueLayer payout response had no id", code="invalid_response")

        logger.info(f"TrueLayer payout {payout_id} created for {idempotency_key}")
        return PayoutResult(gateway=self.name, outcome=GatewayOutcome.PENDING, gateway_ref=payout_id)

    async def _do_payout_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        if not gateway_ref:
            return GatewayStatusResult(gateway=self.name, outcome=GatewayOutcome.NOT_FOUND)

        body = await self._request("GET", f"/v3/payouts/{gateway_ref}", headers=await self._auth_headers())
        outcome = PAYOUT_STATUS_MAP.get(str(body.get("status", "")).lower(), GatewayOutcome.PENDING)
        return GatewayStatusResult(
            gateway=self.name,
            outcome=outcome,
            gateway_ref=gateway_ref,
            failure_message=body.get("failure_reason") if outcome == GatewayOutcome.FAILED else None,
        )

    # ====================
    # Webhooks
    # ====================

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        if not self.config.webhook_secret or not signature_header:
            return False
        digest = hmac.new(self.config.webhook_secret.encode(), raw_body, hashlib.sha512).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, signature_header.strip())

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        payload = self._load_json(raw_body)
        event_type = str(payload.get("type", ""))
        kind, outcome = WEBHOOK_EVENTS.get(event_type, (None, GatewayOutcome.PENDING))
        metadata = payload.get("metadata") or {}

        if kind == OperationKind.PAYOUT:
            gateway_ref = payload.get("payout_id")
            reference = metadata.get("withdrawal_reference")
        else:
            gateway_ref = payload.get("payment_id")
            reference = metadata.get("transaction_reference")

        return WebhookEvent(
            gateway=self.name,
            event_type=event_type,
            kind=kind,
            outcome=outcome,
            gateway_ref=gateway_ref,
            reference=reference,
            failure_code=payload.get("failure_stage") if outcome == GatewayOutcome.FAILED else None,
            failure_reason=payload.get("failure_reason") if outcome == GatewayOutcome.FAILED else None,
            data=payload,
        )


__all__ = ["TrueLayerGateway"]
