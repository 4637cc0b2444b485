"""
Settlement Sweep

Periodic recovery and auto-charge job. Each tick runs, in order:

1. PENDING milestones past their due date become OVERDUE
2. COMPLETED transactions whose milestone was never settled, and PAID
   milestones without a payout, are settled (crash recovery)
3. Stale PENDING/PROCESSING transactions get an idempotent status check
   with their gateway
4. Due milestones of recurring campaigns are charged off-session, bounded
   by max_concurrent_charges
5. Stale PENDING/PROCESSING withdrawals are re-polled

Status checks run before auto-charge so an attempt whose outcome is unknown
is resolved before anything is charged again. Every step is idempotent; a
failure on one item is logged and counted and the sweep moves on.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from core.config import SettlementConfig

from .milestone_engine import MilestoneEngine
from .models import PaymentMilestone, SweepResult
from .payment_orchestrator import PaymentOrchestrator
from .protocols import PaymentMethodRequiredError, SettlementRepositoryProtocol, SettlementServiceError
from .withdrawal_engine import WithdrawalEngine

logger = logging.getLogger(__name__)


class SettlementSweep:
    """Scheduled reconciliation of settlement state with the gateways"""

    def __init__(
        self,
        repository: SettlementRepositoryProtocol,
        orchestrator: PaymentOrchestrator,
        milestone_engine: MilestoneEngine,
        withdrawal_engine: WithdrawalEngine,
        config: SettlementConfig,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.milestone_engine = milestone_engine
        self.withdrawal_engine = withdrawal_engine
        self.config = config
        self._run_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    def stop(self):
        """Ask a running sweep to finish the current item and return"""
        self._stop.set()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    async def wait_until_idle(self, timeout: float) -> bool:
        """
        Wait for a running tick to return (call stop() first).

        Returns:
            True when no tick is running, False if one was still running after timeout
        """
        try:
            await asyncio.wait_for(self._run_lock.acquire(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Settlement sweep still running after {timeout}s")
            return False
        self._run_lock.release()
        return True

    async def run_once(self) -> SweepResult:
        """Run one sweep tick; a tick that starts while another is running is skipped"""
        result = SweepResult(started_at=datetime.now(timezone.utc))
        if self._run_lock.locked():
            logger.warning("Settlement sweep already running; skipping this tick")
            result.details.append("skipped: previous sweep still running")
            result.finished_at = datetime.now(timezone.utc)
            return result

        async with self._run_lock:
            self._stop.clear()
            logger.info("Settlement sweep started")

            for phase in (
                self._mark_overdue,
                self._settle_completed,
                self._recheck_in_flight,
                self._auto_charge,
                self._repoll_withdrawals,
            ):
                if self._stop.is_set():
                    result.stopped_early = True
                    break
                try:
                    await phase(result)
                except Exception as e:
                    result.errors += 1
                    result.details.append(f"{phase.__name__}: {e}")
                    logger.error(f"Settlement sweep phase {phase.__name__} failed: {e}", exc_info=True)

            result.finished_at = datetime.now(timezone.utc)
            logger.info(
                f"Settlement sweep finished: overdue={result.milestones_marked_overdue}, "
                f"settled={result.transactions_settled}, rechecked={result.transactions_rechecked}, "
                f"charged={result.charges_attempted}, charge_failures={result.charges_failed}, "
                f"withdrawals={result.withdrawals_repolled}, errors={result.errors}"
            )
            return result

    # ====================
    # Phases
    # ====================

    async def _mark_overdue(self, result: SweepResult):
        updated = await self.milestone_engine.mark_overdue_milestones(datetime.now(timezone.utc))
        result.milestones_marked_overdue = len(updated)

    async def _settle_completed(self, result: SweepResult):
        for transaction in await self.repository.get_unsettled_completed_transactions():
            if self._stop.is_set():
                return
            try:
                await self.orchestrator.settle_completed_transaction(transaction)
                result.transactions_settled += 1
            except Exception as e:
                result.errors += 1
                logger.error(f"Failed to settle transaction {transaction.transaction_reference}: {e}", exc_info=True)

        for milestone in await self.repository.get_paid_milestones_without_payout():
            if self._stop.is_set():
                return
            try:
                await self.milestone_engine.ensure_payout(milestone)
                result.transactions_settled += 1
            except Exception as e:
                result.errors += 1
                logger.error(f"Failed to create payout for milestone {milestone.id}: {e}", exc_info=True)

    async def _recheck_in_flight(self, result: SweepResult):
        older_than = datetime.now(timezone.utc) - timedelta(seconds=self.config.transaction_stale_seconds)
        for transaction in await self.repository.get_stale_in_flight_transactions(older_than):
            if self._stop.is_set():
                return
            try:
                await self.orchestrator.reconcile_transaction(transaction)
                result.transactions_rechecked += 1
            except Exception as e:
                result.errors += 1
                logger.error(f"Status check of {transaction.transaction_reference} failed: {e}", exc_info=True)

    async def _auto_charge(self, result: SweepResult):
        if not self.config.auto_charge_enabled:
            return

        milestones = await self.repository.get_chargeable_milestones(
            datetime.now(timezone.utc), self.config.max_charge_attempts
        )
        if not milestones:
            return

        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_charges))

        async def charge(milestone: PaymentMilestone):
            async with semaphore:
                if self._stop.is_set():
                    return
                await self._charge_one(milestone, result)

        await asyncio.gather(*(charge(m) for m in milestones))

    async def _charge_one(self, milestone: PaymentMilestone, result: SweepResult):
        try:
            response = await self.orchestrator.charge_milestone(milestone.id, is_recurring=True)
        except PaymentMethodRequiredError as e:
            result.charges_failed += 1
            logger.warning(f"Auto-charge of milestone {milestone.id} skipped: {e}")
            return
        except SettlementServiceError as e:
            result.charges_failed += 1
            logger.warning(f"Auto-charge of milestone {milestone.id} rejected: {e}")
            return
        except Exception as e:
            result.errors += 1
            logger.error(f"Auto-charge of milestone {milestone.id} failed: {e}", exc_info=True)
            return

        if response.existing_attempt:
            return
        result.charges_attempted += 1
        if not response.success:
            result.charges_failed += 1

    async def _repoll_withdrawals(self, result: SweepResult):
        older_than = datetime.now(timezone.utc) - timedelta(seconds=self.config.withdrawal_stale_seconds)
        for withdrawal in await self.repository.get_stale_open_withdrawals(older_than):
            if self._stop.is_set():
                return
            try:
                await self.withdrawal_engine.repoll_withdrawal(withdrawal)
                result.withdrawals_repolled += 1
            except Exception as e:
                result.errors += 1
                logger.error(f"Re-poll of withdrawal {withdrawal.withdrawal_reference} failed: {e}", exc_info=True)


__all__ = ["SettlementSweep"]
