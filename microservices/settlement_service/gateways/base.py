"""
Payment Gateway Base Class

Abstract base class that defines the capability set of every payment
provider adapter: initiate-charge, initiate-payout, verify-webhook-signature,
parse-webhook, plus idempotent status checks.

Transport errors are classified once here:
- TransientGatewayError (network, timeout, 429, 5xx) is retried with
  exponential backoff, reusing the same idempotency key
- GatewayValidationError (4xx, declines, unsupported currency) is terminal

Public operations never raise for these expected failure modes; they return
a typed result whose outcome is FAILED (terminal) or UNKNOWN (retries
exhausted, the provider may or may not have acted).
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import GatewayConfig

from ..models import GatewayName, OperationKind
from ..protocols import GatewayValidationError, TransientGatewayError
from .models import (
    ChargeResult,
    GatewayOutcome,
    GatewayStatusResult,
    PayerInstrument,
    PayoutResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PaymentGateway(ABC):
    """
    Abstract base class for payment provider adapters.

    To add a new provider:
    1. Create a new class that inherits from PaymentGateway
    2. Implement the abstract methods (the _do_* methods raise GatewayError subclasses)
    3. Register the adapter in factory.create_gateways and the routing tables
    """

    def __init__(self, config: GatewayConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = http_client

    # ====================
    # Identity
    # ====================

    @property
    @abstractmethod
    def name(self) -> GatewayName:
        """Return the provider identifier"""
        pass

    @property
    @abstractmethod
    def charge_currencies(self) -> FrozenSet[str]:
        """Currencies this provider can collect"""
        pass

    @property
    @abstractmethod
    def payout_currencies(self) -> FrozenSet[str]:
        """Currencies this provider can pay out"""
        pass

    def supports(self, currency: str, kind: OperationKind) -> bool:
        currencies = self.charge_currencies if kind == OperationKind.CHARGE else self.payout_currencies
        return currency.upper() in currencies

    # ====================
    # HTTP plumbing
    # ====================

    def _default_headers(self) -> Dict[str, str]:
        # Content-Type is set per request by httpx (json= / data=)
        return {"Accept": "application/json"}

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy HTTP client initialization"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=self._default_headers(),
                timeout=self.config.timeout_seconds,
            )
        return self._client

    async def close(self):
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Single HTTP call with error classification.

        Raises:
            TransientGatewayError: network failure, timeout, 429 or 5xx
            GatewayValidationError: any other 4xx
        """
        client = client or self.client
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientGatewayError(f"{self.name.value} {method} {url} failed: {e!r}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientGatewayError(
                f"{self.name.value} {method} {url} returned {response.status_code}",
                status_code=response.status_code,
            )

        body = self._json(response)
        if response.status_code >= 400:
            code, message = self._error_details(body, response)
            raise GatewayValidationError(message, code=code, status_code=response.status_code)
        return body

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    def _error_details(self, body: Dict[str, Any], response: httpx.Response):
        """(code, message) of a rejected request; adapters override for their error shape"""
        message = body.get("message") or body.get("error") or response.reason_phrase
        return str(response.status_code), str(message)

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run operation, retrying transient errors with exponential backoff"""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_exponential(multiplier=self.config.retry_delay_seconds, max=30),
            retry=retry_if_exception_type(TransientGatewayError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                logger.debug(
                    f"{self.name.value} {description} attempt {attempt.retry_state.attempt_number}"
                )
                return await operation()

    # ====================
    # Capability set
    # ====================

    async def initiate_charge(
        self,
        amount_minor_units: int,
        currency: str,
        payer_instrument: PayerInstrument,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        """
        Collect money from a payer.

        Args:
            amount_minor_units: Amount in pence/kobo/cents
            currency: ISO currency code
            payer_instrument: Saved authorization or redirect details
            idempotency_key: TransactionReference; a provider-side retry never double-charges
            metadata: Extra provider metadata

        Returns:
            ChargeResult (never raises for declines or transport failures)
        """
        currency = currency.upper()
        if not self.supports(currency, OperationKind.CHARGE):
            return ChargeResult(
                gateway=self.name,
                outcome=GatewayOutcome.FAILED,
                failure_code="unsupported_currency",
                failure_message=f"{self.name.value} cannot collect {currency}",
            )
        if amount_minor_units <= 0:
            return ChargeResult(
                gateway=self.name,
                outcome=GatewayOutcome.FAILED,
                failure_code="invalid_amount",
                failure_message="Charge amount must be positive",
            )

        attempts = 0

        async def charge() -> ChargeResult:
            nonlocal attempts
            attempts += 1
            return await self._do_charge(amount_minor_units, currency, payer_instrument, idempotency_key, metadata or {})

        try:
            return await self._with_retry(charge, f"charge {idempotency_key}")
        except GatewayValidationError as e:
            if attempts > 1:
                # An earlier attempt may have landed before its response was lost
                logger.warning(f"{self.name.value} rejected retried charge {idempotency_key}: {e}; outcome unknown")
                return ChargeResult(
                    gateway=self.name,
                    outcome=GatewayOutcome.UNKNOWN,
                    failure_code=e.code,
                    failure_message=str(e),
                )
            logger.warning(f"{self.name.value} rejected charge {idempotency_key}: {e}")
            return ChargeResult(
                gateway=self.name,
                outcome=GatewayOutcome.FAILED,
                failure_code=e.code,
                failure_message=str(e),
            )
        except TransientGatewayError as e:
            logger.error(f"{self.name.value} charge {idempotency_key} outcome unknown after retries: {e}")
            return ChargeResult(
                gateway=self.name,
                outcome=GatewayOutcome.UNKNOWN,
                failure_code="transient_error",
                failure_message=str(e),
            )

    async def initiate_payout(
        self,
        amount_minor_units: int,
        currency: str,
        recipient_ref: str,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> PayoutResult:
        """
        Send money to a recipient registered with the provider.

        Args:
            amount_minor_units: Amount in pence/kobo/cents
            currency: ISO currency code
            recipient_ref: Provider recipient/beneficiary reference
            idempotency_key: WithdrawalReference
            reason: Narrative shown on the transfer

        Returns:
            PayoutResult (never raises for rejections or transport failures)
        """
        currency = currency.upper()
        if not self.supports(currency, OperationKind.PAYOUT):
            return PayoutResult(
                gateway=self.name,
                outcome=GatewayOutcome.FAILED,
                failure_code="unsupported_currency",
                failure_message=f"{self.name.value} cannot pay out {currency}",
            )

        attempts = 0

        async def payout() -> PayoutResult:
            nonlocal attempts
            attempts += 1
            return await self._do_payout(amount_minor_units, currency, recipient_ref, idempotency_key, reason)

        try:
            return await self._with_retry(payout, f"payout {idempotency_key}")
        except GatewayValidationError as e:
            if attempts > 1:
                logger.warning(f"{self.name.value} rejected retried payout {idempotency_key}: {e}; outcome unknown")
                return PayoutResult(
                    gateway=self.name,
                    outcome=GatewayOutcome.UNKNOWN,
                    failure_code=e.code,
                    failure_message=str(e),
                )
            logger.warning(f"{self.name.value} rejected payout {idempotency_key}: {e}")
            return PayoutResult(
                gateway=self.name,
                outcome=GatewayOutcome.FAILED,
                failure_code=e.code,
                failure_message=str(e),
            )
        except TransientGatewayError as e:
            logger.error(f"{self.name.value} payout {idempotency_key} outcome unknown after retries: {e}")
            return PayoutResult(
                gateway=self.name,
                outcome=GatewayOutcome.UNKNOWN,
                failure_code="transient_error",
                failure_message=str(e),
            )

    async def get_charge_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        """Idempotent status check of a charge, used before any retry charge"""
        return await self._status(
            lambda: self._do_charge_status(gateway_ref, idempotency_key),
            f"charge status {idempotency_key}",
            gateway_ref,
        )

    async def get_payout_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        """Idempotent status check of a payout"""
        return await self._status(
            lambda: self._do_payout_status(gateway_ref, idempotency_key),
            f"payout status {idempotency_key}",
            gateway_ref,
        )

    async def _status(
        self,
        operation: Callable[[], Awaitable[GatewayStatusResult]],
        description: str,
        gateway_ref: Optional[str],
    ) -> GatewayStatusResult:
        try:
            return await self._with_retry(operation, description)
        except GatewayValidationError as e:
            if e.status_code == 404:
                return GatewayStatusResult(gateway=self.name, outcome=GatewayOutcome.NOT_FOUND, gateway_ref=gateway_ref)
            logger.warning(f"{self.name.value} {description} rejected: {e}")
            return GatewayStatusResult(
                gateway=self.name,
                outcome=GatewayOutcome.UNKNOWN,
                gateway_ref=gateway_ref,
                failure_code=e.code,
                failure_message=str(e),
            )
        except TransientGatewayError as e:
            logger.error(f"{self.name.value} {description} unavailable: {e}")
            return GatewayStatusResult(
                gateway=self.name,
                outcome=GatewayOutcome.UNKNOWN,
                gateway_ref=gateway_ref,
                failure_code="transient_error",
                failure_message=str(e),
            )

    @staticmethod
    def _load_json(raw_body: bytes) -> Dict[str, Any]:
        """Decode a webhook body (ValueError on malformed JSON)"""
        payload = json.loads(raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body)
        if not isinstance(payload, dict):
            raise ValueError("Webhook body is not a JSON object")
        return payload

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """
        Verify a webhook signature with the provider secret.

        Returns:
            True only for a present, valid signature
        """
        pass

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        """
        Normalize a verified webhook body.

        Raises:
            ValueError: malformed body
        """
        pass

    # ====================
    # Provider calls (raise GatewayError subclasses)
    # ====================

    @abstractmethod
    async def _do_charge(
        self,
        amount_minor_units: int,
        currency: str,
        payer_instrument: PayerInstrument,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> ChargeResult:
        pass

    @abstractmethod
    async def _do_payout(
        self,
        amount_minor_units: int,
        currency: str,
        recipient_ref: str,
        idempotency_key: str,
        reason: Optional[str],
    ) -> PayoutResult:
        pass

    @abstractmethod
    async def _do_charge_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        pass

    @abstractmethod
    async def _do_payout_status(self, gateway_ref: Optional[str], idempotency_key: str) -> GatewayStatusResult:
        pass


__all__ = ["PaymentGateway"]
