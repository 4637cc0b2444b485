"""
Webhook Reconciler

Single entry point for asynchronous gateway notifications. Each delivery is
verified against the gateway's signing secret before anything is parsed,
recorded in the WebhookEvents audit table, matched to its Transaction or
Withdrawal and applied through the same conditional transitions the
synchronous paths use, so replays and out-of-order deliveries are no-ops.

Verified deliveries are always acknowledged, including ones that match
nothing locally; only a bad signature or an unparseable body is rejected.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from .gateways.models import WebhookEvent
from .gateways.selector import GatewaySelector
from .models import (
    GatewayName,
    OperationKind,
    Transaction,
    WebhookEventRecord,
    WebhookResult,
    Withdrawal,
)
from .payment_orchestrator import PaymentOrchestrator
from .protocols import (
    SettlementRepositoryProtocol,
    UnknownGatewayError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from .withdrawal_engine import WithdrawalEngine

logger = logging.getLogger(__name__)


class WebhookReconciler:
    """Verify, audit, match and apply gateway webhooks"""

    def __init__(
        self,
        selector: GatewaySelector,
        orchestrator: PaymentOrchestrator,
        withdrawal_engine: WithdrawalEngine,
        repository: SettlementRepositoryProtocol,
    ):
        self.selector = selector
        self.orchestrator = orchestrator
        self.withdrawal_engine = withdrawal_engine
        self.repository = repository

    async def handle(self, gateway_name: str, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Process one webhook delivery.

        Args:
            gateway_name: Gateway path segment (stripe, truelayer, paystack)
            raw_body: Request body exactly as received
            signature_header: Value of the gateway's signature header

        Raises:
            UnknownGatewayError: Gateway name not registered
            WebhookSignatureError: Signature missing or does not verify
            WebhookPayloadError: Verified body is not a parseable event
        """
        try:
            name = GatewayName(gateway_name.lower())
        except ValueError:
            raise UnknownGatewayError(f"Unknown gateway: {gateway_name}")
        gateway = self.selector.get(name)

        if not gateway.verify_webhook_signature(raw_body, signature_header):
            logger.warning(f"Rejected {name.value} webhook: invalid signature")
            raise WebhookSignatureError(f"Invalid {name.value} webhook signature")

        try:
            event = gateway.parse_webhook(raw_body)
        except ValueError as e:
            logger.error(f"Invalid {name.value} webhook payload: {e}")
            raise WebhookPayloadError(f"Invalid payload: {e}")

        payload = raw_body.decode("utf-8", errors="replace")
        logger.info(
            f"Received {name.value} webhook {event.event_type} "
            f"(ref={event.reference}, gateway_ref={event.gateway_ref}, outcome={event.outcome.value})"
        )

        record = await self.repository.record_webhook_event(
            WebhookEventRecord(
                id=f"whk_{uuid.uuid4().hex[:16]}",
                gateway=name,
                event_type=event.event_type,
                gateway_reference=event.gateway_ref,
                reference=event.reference,
                payload=payload,
                received_at=datetime.now(timezone.utc),
            )
        )

        result = WebhookResult(gateway=name, event_type=event.event_type)
        if event.kind == OperationKind.CHARGE:
            transaction = await self._match_transaction(name, event)
            if transaction is None:
                logger.warning(f"Unmatched {name.value} charge webhook {event.event_type}; acknowledged")
                result.action = "unmatched"
                return result
            result.action = await self.orchestrator.apply_charge_event(transaction, event, payload)
            result.matched_entity, result.matched_id = "Transaction", transaction.id

        elif event.kind == OperationKind.PAYOUT:
            withdrawal = await self._match_withdrawal(name, event)
            if withdrawal is None:
                logger.warning(f"Unmatched {name.value} payout webhook {event.event_type}; acknowledged")
                result.action = "unmatched"
                return result
            updated = await self.withdrawal_engine.apply_payout_result(
                withdrawal, event.outcome, event.gateway_ref, event.failure_reason, is_reversal=event.is_reversal
            )
            result.action = updated.status.value.lower() if updated else "duplicate"
            result.matched_entity, result.matched_id = "Withdrawal", withdrawal.id

        else:
            logger.info(f"Ignoring {name.value} webhook {event.event_type}")
            return result

        await self.repository.mark_webhook_event_matched(record.id, result.matched_entity, result.matched_id)
        logger.info(f"{name.value} webhook {event.event_type} -> {result.matched_entity} {result.matched_id}: {result.action}")
        return result

    async def _match_transaction(self, gateway: GatewayName, event: WebhookEvent) -> Optional[Transaction]:
        if event.gateway_ref:
            transaction = await self.repository.get_transaction_by_gateway_payment_id(event.gateway_ref, gateway)
            if transaction:
                return transaction
        if event.reference:
            transaction = await self.repository.get_transaction_by_reference(event.reference)
            if transaction and transaction.gateway != gateway:
                logger.warning(
                    f"{gateway.value} webhook references {event.reference}, which was charged via "
                    f"{transaction.gateway.value}; not matched"
                )
                return None
            return transaction
        return None

    async def _match_withdrawal(self, gateway: GatewayName, event: WebhookEvent) -> Optional[Withdrawal]:
        if event.gateway_ref:
            withdrawal = await self.repository.get_withdrawal_by_transfer_code(event.gateway_ref)
            if withdrawal and withdrawal.payment_gateway == gateway:
                return withdrawal
        if event.reference:
            withdrawal = await self.repository.get_withdrawal_by_reference(event.reference)
            if withdrawal and withdrawal.payment_gateway != gateway:
                logger.warning(
                    f"{gateway.value} webhook references {event.reference}, which was paid out via "
                    f"{withdrawal.payment_gateway.value}; not matched"
                )
                return None
            return withdrawal
        return None


__all__ = ["WebhookReconciler"]
