"""
Withdrawal Engine

Influencer balance and bank-transfer withdrawals.

Available balance per influencer and currency:

    sum(RELEASED payouts) - sum(PENDING + PROCESSING + COMPLETED withdrawals)

A withdrawal is only inserted when it fits the available balance; the check
and the insert are atomic in the repository. A FAILED or CANCELLED
withdrawal stops counting against the balance, so its amount is available
again without any compensating entry.

A transfer that the gateway later reports as successful completes the
withdrawal even from FAILED, putting it back against the balance.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from core.config import SettlementConfig

from .events.publishers import publish_withdrawal_completed, publish_withdrawal_failed
from .gateways.models import GatewayOutcome
from .gateways.selector import GatewaySelector
from .models import (
    BALANCE_HOLDING_WITHDRAWAL_STATUSES,
    OPEN_WITHDRAWAL_STATUSES,
    InfluencerBalance,
    InfluencerBankAccount,
    InfluencerPayout,
    OperationKind,
    PayoutStatus,
    RegisterBankAccountRequest,
    Withdrawal,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .protocols import (
    BankAccountNotFoundError,
    EventBusProtocol,
    InsufficientBalanceError,
    InvalidAmountError,
    PaymentGatewayProtocol,
    SettlementRepositoryProtocol,
    UnsupportedCurrencyError,
    WithdrawalNotAllowedError,
    WithdrawalNotFoundError,
)

logger = logging.getLogger(__name__)


def generate_withdrawal_reference(now: Optional[datetime] = None) -> str:
    """WDR-{yyyymmdd}-{8 hex}"""
    now = now or datetime.now(timezone.utc)
    return f"WDR-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class WithdrawalEngine:
    """Balance, bank accounts and the payout leg"""

    def __init__(
        self,
        repository: SettlementRepositoryProtocol,
        selector: GatewaySelector,
        config: SettlementConfig,
        event_bus: Optional[EventBusProtocol] = None,
    ):
        self.repository = repository
        self.selector = selector
        self.config = config
        self.event_bus = event_bus

    # ====================
    # Balance
    # ====================

    async def get_balance(self, influencer_id: str, currency: str) -> InfluencerBalance:
        currency = currency.upper()
        released = await self.repository.sum_payouts(influencer_id, currency, [PayoutStatus.RELEASED])
        pending_release = await self.repository.sum_payouts(influencer_id, currency, [PayoutStatus.PENDING_RELEASE])
        withdrawn = await self.repository.sum_withdrawals(influencer_id, currency, [WithdrawalStatus.COMPLETED])
        in_flight = await self.repository.sum_withdrawals(influencer_id, currency, OPEN_WITHDRAWAL_STATUSES)

        return InfluencerBalance(
            influencer_id=influencer_id,
            currency=currency,
            released_in_pence=released,
            pending_release_in_pence=pending_release,
            withdrawn_in_pence=withdrawn,
            in_flight_in_pence=in_flight,
            available_in_pence=released - withdrawn - in_flight,
        )

    # ====================
    # Bank accounts
    # ====================

    async def register_bank_account(self, request: RegisterBankAccountRequest) -> InfluencerBankAccount:
        """
        Register a payout destination.

        Raises:
            UnsupportedCurrencyError: No gateway can pay out the currency
        """
        currency = request.currency.upper()
        if request.payment_gateway:
            gateway = self.selector.get(request.payment_gateway)
            if not gateway.supports(currency, OperationKind.PAYOUT):
                raise UnsupportedCurrencyError(
                    f"{gateway.name.value} cannot pay out {currency}",
                    currency=currency,
                    kind=OperationKind.PAYOUT.value,
                )
        else:
            gateway = self.selector.select(currency, OperationKind.PAYOUT)

        account = await self.repository.create_bank_account(
            InfluencerBankAccount(
                id=f"bank_{uuid.uuid4().hex[:16]}",
                influencer_id=request.influencer_id,
                currency=currency,
                payment_gateway=gateway.name,
                recipient_code=request.recipient_code,
                bank_name=request.bank_name,
                bank_code=request.bank_code,
                account_name=request.account_name,
                account_last4=request.account_last4,
                is_default=request.is_default,
            )
        )
        logger.info(
            f"Bank account {account.id} (****{account.account_last4}) registered for influencer "
            f"{account.influencer_id} on {account.payment_gateway.value}"
        )
        return account

    # ====================
    # Withdrawals
    # ====================

    async def request_withdrawal(self, request: WithdrawalRequest) -> Withdrawal:
        """
        Withdraw available balance to a registered bank account.

        Raises:
            InvalidAmountError: Non-positive amount
            BankAccountNotFoundError: Account missing or not the influencer's
            InsufficientBalanceError: Amount exceeds the available balance (nothing is created)
            UnsupportedCurrencyError: No payout gateway for the account currency
        """
        if request.amount_in_pence <= 0:
            raise InvalidAmountError("Withdrawal amount must be positive")

        account = await self.repository.get_bank_account(request.bank_account_id)
        if not account or account.influencer_id != request.influencer_id:
            raise BankAccountNotFoundError(f"Bank account not found: {request.bank_account_id}")

        gateway = self.selector.select(account.currency, OperationKind.PAYOUT, preferred=account.payment_gateway)

        withdrawal = Withdrawal(
            id=f"wd_{uuid.uuid4().hex[:16]}",
            withdrawal_reference=generate_withdrawal_reference(),
            influencer_id=request.influencer_id,
            bank_account_id=account.id,
            amount_in_pence=request.amount_in_pence,
            currency=account.currency,
            payment_gateway=gateway.name,
            recipient_code=account.recipient_code,
            bank_name=account.bank_name,
            account_last4=account.account_last4,
            status=WithdrawalStatus.PENDING,
        )

        created = await self.repository.create_withdrawal_if_funded(withdrawal)
        if created is None:
            balance = await self.get_balance(request.influencer_id, account.currency)
            logger.info(
                f"Withdrawal of {request.amount_in_pence} {account.currency} rejected for influencer "
                f"{request.influencer_id}: available {balance.available_in_pence}"
            )
            raise InsufficientBalanceError(
                f"Insufficient balance: requested {request.amount_in_pence}, available {balance.available_in_pence}",
                available=balance.available_in_pence,
                requested=request.amount_in_pence,
            )

        logger.info(
            f"Withdrawal {created.withdrawal_reference} created: {created.amount_in_pence} {created.currency} "
            f"via {gateway.name.value}"
        )
        return await self._submit(created, gateway)

    async def _submit(self, withdrawal: Withdrawal, gateway: PaymentGatewayProtocol) -> Withdrawal:
        result = await gateway.initiate_payout(
            withdrawal.amount_in_pence,
            withdrawal.currency,
            withdrawal.recipient_code or "",
            withdrawal.withdrawal_reference,
            reason=f"Influencer withdrawal {withdrawal.withdrawal_reference}",
        )
        now = datetime.now(timezone.utc)

        if result.outcome == GatewayOutcome.FAILED:
            updated = await self._fail(
                withdrawal, [WithdrawalStatus.PENDING], result.failure_message or result.failure_code or "Payout rejected"
            )
        elif result.outcome == GatewayOutcome.SUCCEEDED:
            updated = await self._complete(withdrawal, [WithdrawalStatus.PENDING], result.gateway_ref)
        else:
            # Accepted, or outcome unknown after retries: the sweep re-polls PROCESSING legs
            fields = {"processed_at": now}
            if result.gateway_ref:
                fields["gateway_transfer_code"] = result.gateway_ref
            updated = await self.repository.update_withdrawal_status(
                withdrawal.id, [WithdrawalStatus.PENDING], WithdrawalStatus.PROCESSING, fields
            )
            if updated:
                logger.info(f"Withdrawal {withdrawal.withdrawal_reference} PROCESSING ({result.outcome.value})")

        return updated or await self.repository.get_withdrawal(withdrawal.id) or withdrawal

    async def cancel_withdrawal(self, withdrawal_id: str, influencer_id: str) -> Withdrawal:
        """
        Cancel a withdrawal that has not reached the gateway.

        Raises:
            WithdrawalNotFoundError: Unknown withdrawal or not the influencer's
            WithdrawalNotAllowedError: Already submitted or finished
        """
        withdrawal = await self.repository.get_withdrawal(withdrawal_id)
        if not withdrawal or withdrawal.influencer_id != influencer_id:
            raise WithdrawalNotFoundError(f"Withdrawal not found: {withdrawal_id}")

        cancelled = await self.repository.update_withdrawal_status(
            withdrawal_id, [WithdrawalStatus.PENDING], WithdrawalStatus.CANCELLED
        )
        if cancelled is None:
            current = await self.repository.get_withdrawal(withdrawal_id)
            raise WithdrawalNotAllowedError(
                f"Withdrawal {withdrawal_id} is {current.status.value if current else 'missing'} and cannot be cancelled"
            )
        logger.info(f"Withdrawal {cancelled.withdrawal_reference} cancelled by influencer {influencer_id}")
        return cancelled

    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        withdrawal = await self.repository.get_withdrawal(withdrawal_id)
        if not withdrawal:
            raise WithdrawalNotFoundError(f"Withdrawal not found: {withdrawal_id}")
        return withdrawal

    async def get_withdrawals(self, influencer_id: str, currency: Optional[str] = None) -> List[Withdrawal]:
        return await self.repository.get_influencer_withdrawals(influencer_id, currency.upper() if currency else None)

    async def get_bank_accounts(self, influencer_id: str) -> List[InfluencerBankAccount]:
        return await self.repository.get_influencer_bank_accounts(influencer_id)

    async def auto_withdraw(self, payout: InfluencerPayout) -> Optional[Withdrawal]:
        """Send a freshly released payout to the influencer's default account"""
        account = await self.repository.get_default_bank_account(payout.influencer_id, payout.currency)
        if not account:
            logger.info(f"No default {payout.currency} bank account for influencer {payout.influencer_id}; skipping auto-withdrawal")
            return None
        if payout.net_amount_in_pence <= 0:
            return None

        return await self.request_withdrawal(
            WithdrawalRequest(
                influencer_id=payout.influencer_id,
                amount_in_pence=payout.net_amount_in_pence,
                bank_account_id=account.id,
            )
        )

    # ====================
    # Gateway results (webhook / poll)
    # ====================

    async def apply_payout_result(
        self,
        withdrawal: Withdrawal,
        outcome: GatewayOutcome,
        gateway_ref: Optional[str] = None,
        failure_reason: Optional[str] = None,
        is_reversal: bool = False,
    ) -> Optional[Withdrawal]:
        """
        Apply a final or intermediate gateway state to a withdrawal.

        Returns:
            The updated withdrawal, or None when the transition was a no-op
            (duplicate delivery, already terminal)
        """
        if outcome == GatewayOutcome.SUCCEEDED:
            # The money left even if we had given up on the leg; a FAILED withdrawal
            # holds the balance again once it completes
            return await self._complete(withdrawal, OPEN_WITHDRAWAL_STATUSES + (WithdrawalStatus.FAILED,), gateway_ref)

        if outcome == GatewayOutcome.FAILED:
            # A reversal can take back a transfer we already saw complete
            from_statuses = BALANCE_HOLDING_WITHDRAWAL_STATUSES if is_reversal else OPEN_WITHDRAWAL_STATUSES
            return await self._fail(withdrawal, from_statuses, failure_reason or "Transfer failed", gateway_ref)

        if outcome in (GatewayOutcome.PENDING, GatewayOutcome.REQUIRES_ACTION):
            fields = {"processed_at": datetime.now(timezone.utc)}
            if gateway_ref:
                fields["gateway_transfer_code"] = gateway_ref
            return await self.repository.update_withdrawal_status(
                withdrawal.id, [WithdrawalStatus.PENDING], WithdrawalStatus.PROCESSING, fields
            )

        return None

    async def repoll_withdrawal(self, withdrawal: Withdrawal) -> Optional[Withdrawal]:
        """Ask the gateway for the final state of a stuck transfer leg"""
        gateway = self.selector.get(withdrawal.payment_gateway)
        status = await gateway.get_payout_status(withdrawal.gateway_transfer_code, withdrawal.withdrawal_reference)

        if status.outcome == GatewayOutcome.NOT_FOUND:
            if withdrawal.status == WithdrawalStatus.PENDING:
                # Never reached the gateway; submit it now with the same reference
                logger.info(f"Withdrawal {withdrawal.withdrawal_reference} never submitted; submitting")
                return await self._submit(withdrawal, gateway)
            return await self._fail(
                withdrawal, OPEN_WITHDRAWAL_STATUSES, "Gateway has no record of the transfer", code="gateway_not_found"
            )
        if status.outcome == GatewayOutcome.UNKNOWN:
            logger.warning(f"Withdrawal {withdrawal.withdrawal_reference} status still unknown: {status.failure_message}")
            return None

        return await self.apply_payout_result(
            withdrawal, status.outcome, status.gateway_ref, status.failure_message
        )

    async def _complete(self, withdrawal: Withdrawal, from_statuses, gateway_ref: Optional[str]) -> Optional[Withdrawal]:
        now = datetime.now(timezone.utc)
        fields = {"completed_at": now}
        if not withdrawal.processed_at:
            fields["processed_at"] = now
        if gateway_ref:
            fields["gateway_transfer_code"] = gateway_ref

        updated = await self.repository.update_withdrawal_status(
            withdrawal.id, from_statuses, WithdrawalStatus.COMPLETED, fields
        )
        if updated is None:
            logger.info(f"Withdrawal {withdrawal.withdrawal_reference} not completed (already terminal); no-op")
            return None

        if withdrawal.status == WithdrawalStatus.FAILED:
            logger.warning(
                f"Withdrawal {updated.withdrawal_reference} completed after it was marked FAILED; "
                f"{updated.amount_in_pence} {updated.currency} held against the balance again"
            )
        logger.info(f"Withdrawal {updated.withdrawal_reference} COMPLETED")
        await publish_withdrawal_completed(self.event_bus, updated)
        return updated

    async def _fail(
        self,
        withdrawal: Withdrawal,
        from_statuses,
        reason: str,
        gateway_ref: Optional[str] = None,
        code: Optional[str] = None,
    ) -> Optional[Withdrawal]:
        fields = {"failure_reason": f"{code}: {reason}" if code else reason}
        if gateway_ref:
            fields["gateway_transfer_code"] = gateway_ref

        updated = await self.repository.update_withdrawal_status(
            withdrawal.id, from_statuses, WithdrawalStatus.FAILED, fields
        )
        if updated is None:
            logger.info(f"Withdrawal {withdrawal.withdrawal_reference} not failed (already terminal); no-op")
            return None

        logger.warning(
            f"Withdrawal {updated.withdrawal_reference} FAILED: {updated.failure_reason}; "
            f"{updated.amount_in_pence} {updated.currency} back in available balance"
        )
        await publish_withdrawal_failed(self.event_bus, updated)
        return updated


__all__ = ["WithdrawalEngine", "generate_withdrawal_reference"]
