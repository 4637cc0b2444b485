"""
Payment Orchestrator

Drives one milestone's charge end-to-end:

1. Reject milestones outside PENDING/OVERDUE; return the in-flight attempt
   instead of starting a second one (at most one PENDING/PROCESSING
   Transaction per milestone, enforced by the store).
2. Create a Transaction with a locally generated TransactionReference.
3. Charge through the selected gateway, passing the reference as the
   idempotency key.
4. Apply the typed result; confirmation (inline, webhook or status check)
   moves the Transaction to COMPLETED exactly once and hands the milestone
   to the Milestone Engine.

A transient failure that exhausted its retries leaves the Transaction
PENDING: the charge may have gone through upstream, so the sweep checks the
gateway status before anything is charged again.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.config import SettlementConfig

from .events.publishers import (
    publish_charge_orphaned,
    publish_payment_completed,
    publish_payment_failed,
)
from .gateways.models import (
    ChargeResult,
    GatewayOutcome,
    PayerInstrument,
    SavedAuthorization,
    WebhookEvent,
)
from .gateways.selector import GatewaySelector
from .milestone_engine import MilestoneEngine
from .models import (
    CHARGEABLE_MILESTONE_STATUSES,
    IN_FLIGHT_TRANSACTION_STATUSES,
    BrandOutstandingBalance,
    CampaignPaymentSummary,
    GatewayName,
    InitiatePaymentRequest,
    MilestoneStatus,
    OperationKind,
    PayFullRequest,
    PaymentInitiationResponse,
    PaymentMethod,
    PaymentVerificationResult,
    PayoutStatus,
    Transaction,
    TransactionStatus,
)
from .protocols import (
    CampaignNotFoundError,
    EventBusProtocol,
    InvalidMilestoneStateError,
    MilestoneNotFoundError,
    PaymentMethodNotFoundError,
    PaymentMethodRequiredError,
    SettlementRepositoryProtocol,
    TransactionNotFoundError,
)

logger = logging.getLogger(__name__)

# A late success may still complete an attempt we had given up on
CONFIRMABLE_TRANSACTION_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
)


def generate_transaction_reference(recurring: bool = False, now: Optional[datetime] = None) -> str:
    """INF-{yyyymmdd}-{8 hex}, or INF-REC-... for sweep-driven charges"""
    now = now or datetime.now(timezone.utc)
    prefix = "INF-REC" if recurring else "INF"
    return f"{prefix}-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class PaymentOrchestrator:
    """Charge lifecycle of milestones"""

    def __init__(
        self,
        repository: SettlementRepositoryProtocol,
        selector: GatewaySelector,
        milestone_engine: MilestoneEngine,
        config: SettlementConfig,
        event_bus: Optional[EventBusProtocol] = None,
    ):
        self.repository = repository
        self.selector = selector
        self.milestone_engine = milestone_engine
        self.config = config
        self.event_bus = event_bus

    # ====================
    # Charging
    # ====================

    async def charge_milestone(self, milestone_id: str, is_recurring: bool = True) -> PaymentInitiationResponse:
        """
        Off-session charge of a milestone with the brand's default saved method.

        Raises:
            MilestoneNotFoundError, InvalidMilestoneStateError,
            PaymentMethodRequiredError, UnsupportedCurrencyError
        """
        return await self._charge(milestone_id, is_recurring=is_recurring, off_session=True)

    async def initiate_payment(self, request: InitiatePaymentRequest) -> PaymentInitiationResponse:
        """
        Brand-initiated charge of a milestone.

        Uses the given (or default) saved payment method when there is one,
        otherwise returns the gateway's redirect URL for the payer.
        """
        return await self._charge(
            request.milestone_id,
            payer_id=request.payer_id,
            preferred_gateway=request.gateway,
            payment_method_id=request.payment_method_id,
            payer_email=request.payer_email,
            save_payment_method=request.save_payment_method,
            success_url=request.success_url,
            failure_url=request.failure_url,
            is_recurring=False,
            off_session=False,
        )

    async def pay_full(self, campaign_id: str, request: PayFullRequest) -> List[PaymentInitiationResponse]:
        """
        Charge every outstanding milestone of a campaign, in schedule order.

        Each milestone is its own Transaction, so the payer needs a saved
        method (a hosted checkout cannot be chained). Stops at the first
        charge that fails; milestones charged before it stay charged.

        Raises:
            CampaignNotFoundError, PaymentMethodRequiredError, UnsupportedCurrencyError
        """
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")

        milestones = await self.repository.get_campaign_milestones(campaign_id)
        outstanding = [m for m in milestones if m.status in CHARGEABLE_MILESTONE_STATUSES]
        logger.info(f"Paying campaign {campaign_id} in full: {len(outstanding)} outstanding milestones")

        responses = []
        for milestone in outstanding:
            response = await self._charge(
                milestone.id,
                payer_id=request.payer_id,
                preferred_gateway=request.gateway,
                payment_method_id=request.payment_method_id,
                is_recurring=False,
                off_session=True,
            )
            responses.append(response)
            if not response.success:
                logger.warning(
                    f"Full payment of campaign {campaign_id} stopped at milestone {milestone.id}: "
                    f"{response.error_message}"
                )
                break
        return responses

    async def _charge(
        self,
        milestone_id: str,
        payer_id: Optional[str] = None,
        preferred_gateway: Optional[GatewayName] = None,
        payment_method_id: Optional[str] = None,
        payer_email: Optional[str] = None,
        save_payment_method: bool = False,
        success_url: Optional[str] = None,
        failure_url: Optional[str] = None,
        is_recurring: bool = False,
        off_session: bool = False,
    ) -> PaymentInitiationResponse:
        milestone = await self.repository.get_milestone(milestone_id)
        if not milestone:
            raise MilestoneNotFoundError(f"Milestone not found: {milestone_id}")
        if milestone.status not in CHARGEABLE_MILESTONE_STATUSES:
            raise InvalidMilestoneStateError(
                f"Milestone {milestone_id} is {milestone.status.value} and cannot be charged",
                milestone_id=milestone_id,
                status=milestone.status.value,
            )

        in_flight = await self.repository.get_in_flight_transaction(milestone_id)
        if in_flight:
            logger.info(f"Milestone {milestone_id} already has in-flight transaction {in_flight.transaction_reference}")
            return self._initiation_response(in_flight, existing_attempt=True)

        campaign = await self.repository.get_campaign(milestone.campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {milestone.campaign_id}")
        payer_id = payer_id or campaign.brand_id

        payment_method = await self._resolve_payment_method(
            payer_id, milestone.currency, payment_method_id, preferred_gateway, off_session
        )
        gateway = self.selector.select(
            milestone.currency,
            OperationKind.CHARGE,
            preferred=payment_method.gateway if payment_method else preferred_gateway,
        )

        instrument = PayerInstrument(
            payer_id=payer_id,
            email=payer_email or (payment_method.email if payment_method else None),
            authorization_code=payment_method.authorization_code if payment_method else None,
            customer_code=payment_method.customer_code if payment_method else None,
            success_url=success_url,
            failure_url=failure_url,
        )

        transaction = Transaction(
            id=f"txn_{uuid.uuid4().hex[:16]}",
            transaction_reference=generate_transaction_reference(recurring=is_recurring),
            campaign_id=milestone.campaign_id,
            milestone_id=milestone.id,
            payer_id=payer_id,
            gateway=gateway.name,
            amount_in_pence=milestone.amount_in_pence,
            platform_fee_in_pence=milestone.platform_fee_in_pence,
            total_amount_in_pence=milestone.total_charge_in_pence,
            currency=milestone.currency,
            transaction_status=TransactionStatus.PENDING,
            is_recurring=is_recurring,
            save_payment_method=save_payment_method and not instrument.is_saved,
            payment_method_id=payment_method.id if payment_method else None,
        )

        created = await self.repository.create_transaction(transaction)
        if created is None:
            # Another request created the in-flight attempt first
            in_flight = await self.repository.get_in_flight_transaction(milestone_id)
            logger.info(f"Concurrent charge attempt for milestone {milestone_id}; returning the existing one")
            if in_flight:
                return self._initiation_response(in_flight, existing_attempt=True)
            return PaymentInitiationResponse(success=False, error_message="Concurrent charge attempt in progress")

        await self.milestone_engine.record_attempt(milestone_id)
        logger.info(
            f"Charging milestone {milestone_id}: {created.total_amount_in_pence} {created.currency} "
            f"via {gateway.name.value} [{created.transaction_reference}]"
        )

        result = await gateway.initiate_charge(
            created.total_amount_in_pence,
            created.currency,
            instrument,
            created.transaction_reference,
            metadata={
                "campaign_id": created.campaign_id,
                "milestone_id": milestone_id,
                "save_payment_method": "true" if created.save_payment_method else "false",
                "description": milestone.title or f"Milestone {milestone.milestone_number}",
            },
        )
        updated = await self._apply_charge_result(created, result)
        return self._initiation_response(updated)

    async def _resolve_payment_method(
        self,
        payer_id: str,
        currency: str,
        payment_method_id: Optional[str],
        preferred_gateway: Optional[GatewayName],
        off_session: bool,
    ) -> Optional[PaymentMethod]:
        if payment_method_id:
            method = await self.repository.get_payment_method(payment_method_id)
            if not method or method.user_id != payer_id or not method.is_reusable:
                raise PaymentMethodRequiredError(f"Payment method not found: {payment_method_id}")
            return method

        gateway = self.selector.select(currency, OperationKind.CHARGE, preferred=preferred_gateway)
        method = await self.repository.get_charge_payment_method(payer_id, gateway.name)
        if method is None and off_session:
            raise PaymentMethodRequiredError(
                f"Payer {payer_id} has no saved {gateway.name.value} payment method for an off-session charge"
            )
        return method

    async def _apply_charge_result(self, transaction: Transaction, result: ChargeResult) -> Transaction:
        if result.outcome == GatewayOutcome.SUCCEEDED:
            completed = await self.confirm_transaction(
                transaction, gateway_ref=result.gateway_ref, gateway_transaction_id=result.gateway_transaction_id
            )
            return completed or await self._reload(transaction)

        if result.outcome in (GatewayOutcome.PENDING, GatewayOutcome.REQUIRES_ACTION):
            fields: Dict[str, Any] = {"redirect_url": result.redirect_url}
            if result.gateway_ref:
                fields["gateway_payment_id"] = result.gateway_ref
            if result.gateway_transaction_id:
                fields["gateway_transaction_id"] = result.gateway_transaction_id
            processing = await self.repository.update_transaction_status(
                transaction.id, [TransactionStatus.PENDING], TransactionStatus.PROCESSING, fields
            )
            if processing is None:
                # A webhook settled it while we were waiting on the HTTP response
                logger.info(f"Transaction {transaction.transaction_reference} moved on before PROCESSING; no-op")
                return await self._reload(transaction)
            return processing

        if result.outcome == GatewayOutcome.FAILED:
            failed = await self.fail_transaction(
                transaction, result.failure_code, result.failure_message, from_statuses=[TransactionStatus.PENDING]
            )
            return failed or await self._reload(transaction)

        # UNKNOWN: retries exhausted; the next sweep checks the gateway before charging again
        logger.warning(
            f"Charge {transaction.transaction_reference} outcome unknown ({result.failure_message}); left PENDING"
        )
        return await self._reload(transaction)

    # ====================
    # Confirmation / failure
    # ====================

    async def confirm_transaction(
        self,
        transaction: Transaction,
        gateway_ref: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
        webhook_payload: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Move a Transaction to COMPLETED and settle its milestone.

        Returns:
            The completed Transaction, or None if it was already COMPLETED
            (duplicate confirmation)
        """
        fields: Dict[str, Any] = {"completed_at": datetime.now(timezone.utc), "failure_code": None, "failure_message": None}
        if gateway_ref and not transaction.gateway_payment_id:
            fields["gateway_payment_id"] = gateway_ref
        if gateway_transaction_id:
            fields["gateway_transaction_id"] = gateway_transaction_id
        if webhook_payload is not None:
            fields["webhook_payload"] = webhook_payload

        completed = await self.repository.update_transaction_status(
            transaction.id, CONFIRMABLE_TRANSACTION_STATUSES, TransactionStatus.COMPLETED, fields
        )
        if completed is None:
            logger.info(f"Transaction {transaction.transaction_reference} already COMPLETED; duplicate confirmation ignored")
            return None

        if transaction.transaction_status == TransactionStatus.FAILED:
            logger.warning(f"Late success for FAILED transaction {transaction.transaction_reference}")
        logger.info(f"Transaction {completed.transaction_reference} COMPLETED")

        await publish_payment_completed(self.event_bus, completed)
        await self._settle(completed)
        return completed

    async def fail_transaction(
        self,
        transaction: Transaction,
        failure_code: Optional[str],
        failure_message: Optional[str],
        from_statuses=IN_FLIGHT_TRANSACTION_STATUSES,
        webhook_payload: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Move an in-flight Transaction to FAILED and count it against the milestone.

        Returns:
            The failed Transaction, or None if it had already left from_statuses
        """
        fields: Dict[str, Any] = {
            "failure_code": failure_code or "failed",
            "failure_message": failure_message or "Charge failed",
        }
        if webhook_payload is not None:
            fields["webhook_payload"] = webhook_payload

        failed = await self.repository.update_transaction_status(
            transaction.id, from_statuses, TransactionStatus.FAILED, fields
        )
        if failed is None:
            logger.info(f"Transaction {transaction.transaction_reference} not failed (already final); no-op")
            return None

        logger.warning(f"Transaction {failed.transaction_reference} FAILED: {failed.failure_code} {failed.failure_message}")
        await publish_payment_failed(self.event_bus, failed)

        if failed.milestone_id:
            await self.milestone_engine.record_charge_failure(
                failed.milestone_id, failed.failure_message, self.config.max_charge_attempts
            )
        return failed

    async def _settle(self, transaction: Transaction):
        """Hand a COMPLETED transaction's milestone to the Milestone Engine"""
        if not transaction.milestone_id:
            return

        milestone = await self.milestone_engine.mark_paid(transaction.milestone_id, transaction.id)
        if milestone is not None:
            return

        current = await self.repository.get_milestone(transaction.milestone_id)
        if current and current.status == MilestoneStatus.PAID and current.transaction_id == transaction.id:
            # Paid by this transaction earlier; make sure the payout exists
            await self.milestone_engine.ensure_payout(current)
            return

        logger.warning(
            f"Transaction {transaction.transaction_reference} COMPLETED but milestone {transaction.milestone_id} "
            f"is {current.status.value if current else 'missing'}; charge orphaned"
        )
        await publish_charge_orphaned(self.event_bus, transaction, current)

    async def settle_completed_transaction(self, transaction: Transaction):
        """Re-drive milestone settlement of a COMPLETED transaction (crash recovery)"""
        if transaction.transaction_status != TransactionStatus.COMPLETED:
            return
        await self._settle(transaction)

    # ====================
    # Gateway events / status checks
    # ====================

    async def apply_charge_event(self, transaction: Transaction, event: WebhookEvent, raw_payload: str) -> str:
        """
        Apply a verified charge webhook to its Transaction.

        Returns:
            Action taken: completed, failed, processing, duplicate or ignored
        """
        await self.repository.update_transaction_fields(transaction.id, {"webhook_payload": raw_payload})

        if event.outcome == GatewayOutcome.SUCCEEDED:
            completed = await self.confirm_transaction(
                transaction, gateway_ref=event.gateway_ref, gateway_transaction_id=event.gateway_transaction_id
            )
            if event.authorization and transaction.save_payment_method:
                await self.save_payment_method(transaction.payer_id, transaction.gateway, event.authorization)
            return "completed" if completed else "duplicate"

        if event.outcome == GatewayOutcome.FAILED:
            failed = await self.fail_transaction(transaction, event.failure_code, event.failure_reason)
            return "failed" if failed else "duplicate"

        if event.outcome in (GatewayOutcome.PENDING, GatewayOutcome.REQUIRES_ACTION):
            fields = {}
            if event.gateway_ref and not transaction.gateway_payment_id:
                fields["gateway_payment_id"] = event.gateway_ref
            processing = await self.repository.update_transaction_status(
                transaction.id, [TransactionStatus.PENDING], TransactionStatus.PROCESSING, fields
            )
            return "processing" if processing else "duplicate"

        return "ignored"

    async def reconcile_transaction(self, transaction: Transaction) -> Optional[Transaction]:
        """
        Idempotent status check of an in-flight Transaction, applied locally.

        Returns:
            The updated Transaction, or None when nothing changed
        """
        gateway = self.selector.get(transaction.gateway)
        status = await gateway.get_charge_status(transaction.gateway_payment_id, transaction.transaction_reference)
        logger.info(f"Status check {transaction.transaction_reference}: {status.outcome.value}")

        if status.outcome == GatewayOutcome.SUCCEEDED:
            return await self.confirm_transaction(
                transaction, gateway_ref=status.gateway_ref, gateway_transaction_id=status.gateway_transaction_id
            )
        if status.outcome == GatewayOutcome.FAILED:
            return await self.fail_transaction(transaction, status.failure_code, status.failure_message)
        if status.outcome == GatewayOutcome.NOT_FOUND:
            # Nothing reached the gateway: safe to fail and let the next attempt charge
            return await self.fail_transaction(
                transaction, "gateway_not_found", "Gateway has no record of the charge"
            )
        if status.outcome in (GatewayOutcome.PENDING, GatewayOutcome.REQUIRES_ACTION) and status.gateway_ref:
            if transaction.transaction_status == TransactionStatus.PENDING:
                return await self.repository.update_transaction_status(
                    transaction.id,
                    [TransactionStatus.PENDING],
                    TransactionStatus.PROCESSING,
                    {"gateway_payment_id": transaction.gateway_payment_id or status.gateway_ref},
                )
        return None

    async def verify_and_process_payment(self, transaction_reference: str) -> PaymentVerificationResult:
        """Status check with the gateway for environments without webhooks"""
        transaction = await self.repository.get_transaction_by_reference(transaction_reference)
        if not transaction:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_reference}")

        if transaction.transaction_status in IN_FLIGHT_TRANSACTION_STATUSES:
            await self.reconcile_transaction(transaction)
            transaction = await self._reload(transaction)

        return PaymentVerificationResult(
            success=transaction.transaction_status == TransactionStatus.COMPLETED,
            transaction_reference=transaction.transaction_reference,
            status=transaction.transaction_status,
            error_message=transaction.failure_message,
        )

    async def save_payment_method(
        self, user_id: str, gateway: GatewayName, authorization: SavedAuthorization
    ) -> Optional[PaymentMethod]:
        """Store a reusable authorization; it becomes the default when the payer has none"""
        if not authorization.reusable:
            logger.info(f"Authorization for {user_id} on {gateway.value} is not reusable; not saved")
            return None

        existing = await self.repository.get_payment_method_by_authorization(user_id, authorization.authorization_code)
        if existing:
            return existing

        current_default = await self.repository.get_default_payment_method(user_id)
        method = await self.repository.create_payment_method(
            PaymentMethod(
                id=f"pm_{uuid.uuid4().hex[:16]}",
                user_id=user_id,
                gateway=gateway,
                authorization_code=authorization.authorization_code,
                customer_code=authorization.customer_code,
                email=authorization.email,
                card_brand=authorization.card_brand,
                last4=authorization.last4,
                exp_month=authorization.exp_month,
                exp_year=authorization.exp_year,
                is_default=current_default is None,
                is_reusable=True,
            )
        )
        logger.info(f"Saved {gateway.value} payment method {method.id} for {user_id} (default={method.is_default})")
        return method

    async def list_payment_methods(self, user_id: str) -> List[PaymentMethod]:
        return await self.repository.list_payment_methods(user_id)

    async def set_default_payment_method(self, user_id: str, payment_method_id: str) -> PaymentMethod:
        """Make a saved method the user's only default"""
        method = await self.repository.set_default_payment_method(user_id, payment_method_id)
        if method is None:
            raise PaymentMethodNotFoundError(f"Payment method not found: {payment_method_id}")
        logger.info(f"Payment method {payment_method_id} is now the default for {user_id}")
        return method

    async def remove_payment_method(self, user_id: str, payment_method_id: str) -> PaymentMethod:
        """
        Stop using a saved method (soft delete; past transactions keep pointing at it).

        When the default is removed, the user's newest remaining method takes over.
        """
        removed = await self.repository.deactivate_payment_method(user_id, payment_method_id)
        if removed is None:
            raise PaymentMethodNotFoundError(f"Payment method not found: {payment_method_id}")
        logger.info(f"Removed payment method {payment_method_id} of {user_id}")

        if await self.repository.get_default_payment_method(user_id) is None:
            remaining = await self.repository.list_payment_methods(user_id)
            if remaining:
                await self.repository.set_default_payment_method(user_id, remaining[0].id)
                logger.info(f"Payment method {remaining[0].id} promoted to default for {user_id}")
        return removed

    # ====================
    # Queries
    # ====================

    async def get_payment_status(self, transaction_reference: str) -> Transaction:
        transaction = await self.repository.get_transaction_by_reference(transaction_reference)
        if not transaction:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_reference}")
        return transaction

    async def get_payment_by_gateway_id(self, gateway_payment_id: str) -> Transaction:
        transaction = await self.repository.get_transaction_by_gateway_payment_id(gateway_payment_id)
        if not transaction:
            raise TransactionNotFoundError(f"Transaction not found for gateway payment {gateway_payment_id}")
        return transaction

    async def get_campaign_payment_summary(self, campaign_id: str) -> CampaignPaymentSummary:
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")

        milestones = await self.repository.get_campaign_milestones(campaign_id)
        payouts = await self.repository.get_campaign_payouts(campaign_id)
        open_milestones = sorted(
            (m for m in milestones if m.status in CHARGEABLE_MILESTONE_STATUSES),
            key=lambda m: m.due_date,
        )

        return CampaignPaymentSummary(
            campaign_id=campaign.id,
            currency=campaign.currency,
            total_amount_in_pence=campaign.total_amount_in_pence,
            paid_amount_in_pence=campaign.paid_amount_in_pence,
            outstanding_amount_in_pence=campaign.total_amount_in_pence - campaign.paid_amount_in_pence,
            released_to_influencer_in_pence=campaign.released_to_influencer_in_pence,
            pending_release_in_pence=sum(
                p.net_amount_in_pence for p in payouts if p.status == PayoutStatus.PENDING_RELEASE
            ),
            total_milestones=len(milestones),
            paid_milestones=sum(1 for m in milestones if m.status == MilestoneStatus.PAID),
            pending_milestones=len(open_milestones),
            next_due_milestone=open_milestones[0] if open_milestones else None,
        )

    async def get_brand_outstanding_balance(self, brand_id: str) -> BrandOutstandingBalance:
        now = datetime.now(timezone.utc)
        balance = BrandOutstandingBalance(brand_id=brand_id)

        for campaign in await self.repository.list_brand_campaigns(brand_id):
            milestones: List = await self.repository.get_campaign_milestones(campaign.id)
            for milestone in milestones:
                if milestone.status == MilestoneStatus.PAID:
                    balance.total_paid_in_pence += milestone.amount_in_pence
                elif milestone.status in CHARGEABLE_MILESTONE_STATUSES:
                    balance.total_remaining_in_pence += milestone.amount_in_pence
                    if milestone.status == MilestoneStatus.OVERDUE or milestone.due_date <= now:
                        balance.overdue_amount_in_pence += milestone.amount_in_pence
                        balance.overdue_milestone_count += 1

        balance.has_overdue_milestones = balance.overdue_milestone_count > 0
        return balance

    # ====================
    # Helpers
    # ====================

    async def _reload(self, transaction: Transaction) -> Transaction:
        return await self.repository.get_transaction(transaction.id) or transaction

    @staticmethod
    def _initiation_response(transaction: Transaction, existing_attempt: bool = False) -> PaymentInitiationResponse:
        return PaymentInitiationResponse(
            success=transaction.transaction_status != TransactionStatus.FAILED,
            transaction_reference=transaction.transaction_reference,
            transaction_status=transaction.transaction_status,
            redirect_url=transaction.redirect_url,
            error_message=transaction.failure_message,
            existing_attempt=existing_attempt,
        )


__all__ = ["PaymentOrchestrator", "generate_transaction_reference"]
