"""
Settlement Sweep Component Tests

Overdue marking, crash recovery, status checks before auto-charge and
withdrawal re-polls.

Usage:
    pytest tests/component/settlement/test_settlement_sweep.py -v
"""

import asyncio
import dataclasses
from unittest.mock import AsyncMock

import pytest

from microservices.settlement_service.factory import build_settlement_components
from microservices.settlement_service.gateways.models import (
    ChargeResult,
    GatewayOutcome,
    GatewayStatusResult,
)
from microservices.settlement_service.models import (
    GatewayName,
    MilestoneStatus,
    PayoutStatus,
    TransactionStatus,
    WithdrawalStatus,
)


def _unknown_charge() -> ChargeResult:
    return ChargeResult(
        gateway=GatewayName.STRIPE,
        outcome=GatewayOutcome.UNKNOWN,
        failure_code="transient_error",
        failure_message="timed out after 3 attempts",
    )


@pytest.mark.component
@pytest.mark.asyncio
class TestSweepAutoCharge:
    """Due milestones of recurring campaigns are charged off-session"""

    async def test_overdue_milestones_charged(
        self, components, seed_campaign, save_card, data_factory, mock_repository, stripe_gateway
    ):
        campaign, milestones = await seed_campaign(start_date=data_factory.make_past_timestamp(40))
        await save_card(campaign.brand_id)

        result = await components.sweep.run_once()

        assert result.milestones_marked_overdue == 2
        assert result.charges_attempted == 2
        assert result.charges_failed == 0
        assert result.errors == 0
        assert result.finished_at is not None
        assert [mock_repository.milestones[m.id].status for m in milestones] == [
            MilestoneStatus.PAID, MilestoneStatus.PAID, MilestoneStatus.PENDING,
        ]
        assert all(c[3].startswith("INF-REC-") for c in stripe_gateway.calls_to("initiate_charge"))
        assert mock_repository.campaigns[campaign.id].paid_amount_in_pence == 80000

    async def test_non_recurring_campaign_not_charged(
        self, components, seed_campaign, save_card, mock_repository, stripe_gateway
    ):
        campaign, milestones = await seed_campaign(is_recurring_enabled=False)
        await save_card(campaign.brand_id)

        result = await components.sweep.run_once()

        assert result.milestones_marked_overdue == 1
        assert result.charges_attempted == 0
        assert stripe_gateway.calls_to("initiate_charge") == []
        assert mock_repository.milestones[milestones[0].id].status == MilestoneStatus.OVERDUE

    async def test_missing_saved_method_counted(self, components, seed_campaign, mock_repository):
        campaign, milestones = await seed_campaign()

        result = await components.sweep.run_once()

        assert result.charges_failed == 1
        assert result.charges_attempted == 0
        assert result.errors == 0
        assert mock_repository.transactions == {}

    async def test_auto_charge_disabled(
        self, mock_repository, gateways, settlement_config, mock_event_bus, seed_campaign, save_card, stripe_gateway
    ):
        config = dataclasses.replace(settlement_config, auto_charge_enabled=False)
        components = build_settlement_components(mock_repository, gateways, config, event_bus=mock_event_bus)
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)

        result = await components.sweep.run_once()

        assert result.milestones_marked_overdue == 1
        assert result.charges_attempted == 0
        assert stripe_gateway.calls_to("initiate_charge") == []

    async def test_exhausted_milestones_not_retried(
        self, components, seed_campaign, save_card, mock_repository, stripe_gateway
    ):
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)
        stripe_gateway.charge_results.extend(
            ChargeResult(gateway=GatewayName.STRIPE, outcome=GatewayOutcome.FAILED, failure_message="Card declined")
            for _ in range(3)
        )

        for _ in range(4):
            await components.sweep.run_once()

        assert len(stripe_gateway.calls_to("initiate_charge")) == 3
        assert mock_repository.milestones[milestones[0].id].status == MilestoneStatus.FAILED

    async def test_one_failing_charge_does_not_stop_the_rest(
        self, components, seed_campaign, save_card, data_factory, mock_repository, stripe_gateway
    ):
        campaign, milestones = await seed_campaign(start_date=data_factory.make_past_timestamp(40))
        await save_card(campaign.brand_id)
        stripe_gateway.charge_results.append(RuntimeError("socket closed"))

        result = await components.sweep.run_once()

        assert result.errors == 1
        assert result.charges_attempted == 1
        paid = [m for m in mock_repository.milestones.values() if m.status == MilestoneStatus.PAID]
        assert len(paid) == 1


@pytest.mark.component
@pytest.mark.asyncio
class TestSweepRecovery:
    """In-flight and half-settled work is resolved"""

    async def test_unknown_outcome_checked_before_charging_again(
        self, components, seed_campaign, save_card, stripe_gateway, mock_repository
    ):
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)
        stripe_gateway.charge_results.append(_unknown_charge())
        await components.orchestrator.charge_milestone(milestones[0].id)

        result = await components.sweep.run_once()

        assert result.transactions_rechecked == 1
        assert result.charges_attempted == 0
        assert [c[0] for c in stripe_gateway.calls] == ["initiate_charge", "get_charge_status"]
        assert len(mock_repository.transactions) == 1

    async def test_charge_unknown_to_gateway_is_retried(
        self, components, seed_campaign, save_card, stripe_gateway, mock_repository
    ):
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)
        stripe_gateway.charge_results.append(_unknown_charge())
        first = await components.orchestrator.charge_milestone(milestones[0].id)
        stripe_gateway.charge_statuses.append(
            GatewayStatusResult(gateway=GatewayName.STRIPE, outcome=GatewayOutcome.NOT_FOUND)
        )

        result = await components.sweep.run_once()

        assert [c[0] for c in stripe_gateway.calls] == ["initiate_charge", "get_charge_status", "initiate_charge"]
        lost = await mock_repository.get_transaction_by_reference(first.transaction_reference)
        assert lost.transaction_status == TransactionStatus.FAILED
        assert lost.failure_code == "gateway_not_found"
        assert result.charges_attempted == 1
        assert mock_repository.milestones[milestones[0].id].status == MilestoneStatus.PAID
        assert len(mock_repository.payouts) == 1

    async def test_completed_transaction_settled_after_crash(
        self, components, seed_campaign, data_factory, mock_repository
    ):
        campaign, milestones = await seed_campaign()
        transaction = data_factory.make_transaction(
            milestones[0], payer_id=campaign.brand_id, transaction_status=TransactionStatus.COMPLETED
        )
        mock_repository.transactions[transaction.id] = transaction

        result = await components.sweep.run_once()

        assert result.transactions_settled == 1
        milestone = mock_repository.milestones[milestones[0].id]
        assert milestone.status == MilestoneStatus.PAID
        assert milestone.transaction_id == transaction.id
        payout = await mock_repository.get_payout_by_milestone(milestones[0].id)
        assert payout.status == PayoutStatus.RELEASED

    async def test_paid_milestone_without_payout_gets_one(self, components, seed_campaign, mock_repository):
        campaign, milestones = await seed_campaign()
        mock_repository.milestones[milestones[0].id] = milestones[0].model_copy(
            update={"status": MilestoneStatus.PAID, "transaction_id": "txn_before_crash"}
        )

        result = await components.sweep.run_once()

        assert result.transactions_settled == 1
        payout = await mock_repository.get_payout_by_milestone(milestones[0].id)
        assert payout.net_amount_in_pence == 39200
        assert payout.transaction_id == "txn_before_crash"

    async def test_stuck_withdrawal_repolled(
        self, components, paid_milestone, data_factory, mock_repository, truelayer_gateway
    ):
        campaign, _ = await paid_milestone()
        account = await mock_repository.create_bank_account(data_factory.make_bank_account(campaign.influencer_id))
        withdrawal = await components.withdrawal_engine.request_withdrawal(
            data_factory.make_withdrawal_request(campaign.influencer_id, account.id, 10000)
        )
        truelayer_gateway.payout_statuses.append(
            GatewayStatusResult(gateway=GatewayName.TRUELAYER, outcome=GatewayOutcome.SUCCEEDED)
        )

        result = await components.sweep.run_once()

        assert result.withdrawals_repolled == 1
        assert mock_repository.withdrawals[withdrawal.id].status == WithdrawalStatus.COMPLETED


@pytest.mark.component
@pytest.mark.asyncio
class TestSweepControl:
    """Overlap protection, stop requests and phase failures"""

    async def test_overlapping_tick_skipped(self, components, mock_repository):
        async with components.sweep._run_lock:
            assert components.sweep.is_running
            result = await components.sweep.run_once()

        assert "skipped" in result.details[0]
        assert result.milestones_marked_overdue == 0
        assert mock_repository.method_calls == []

    async def test_stop_request_ends_tick_early(self, components, seed_campaign, save_card, stripe_gateway):
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)
        sweep = components.sweep

        async def overdue_then_stop(now=None):
            sweep.stop()
            return []

        components.milestone_engine.mark_overdue_milestones = AsyncMock(side_effect=overdue_then_stop)

        result = await sweep.run_once()

        assert result.stopped_early
        assert stripe_gateway.calls_to("initiate_charge") == []

    async def test_failing_phase_does_not_abort_sweep(self, components, seed_campaign, save_card):
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)
        components.milestone_engine.mark_overdue_milestones = AsyncMock(side_effect=RuntimeError("db down"))

        result = await components.sweep.run_once()

        assert result.errors == 1
        assert "_mark_overdue" in result.details[0]
        assert result.charges_attempted == 1

    async def test_idle_sweep_needs_no_wait(self, components):
        assert await components.sweep.wait_until_idle(timeout=0.1)

    async def test_wait_gives_up_on_tick_that_keeps_running(self, components):
        async with components.sweep._run_lock:
            assert not await components.sweep.wait_until_idle(timeout=0.01)

    async def test_stopped_tick_finishes_before_wait_returns(self, components, seed_campaign, save_card, stripe_gateway):
        campaign, milestones = await seed_campaign()
        await save_card(campaign.brand_id)
        sweep = components.sweep
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_overdue(now=None):
            entered.set()
            await release.wait()
            return []

        components.milestone_engine.mark_overdue_milestones = AsyncMock(side_effect=slow_overdue)
        tick = asyncio.create_task(sweep.run_once())
        await entered.wait()

        sweep.stop()
        release.set()
        idle = await sweep.wait_until_idle(timeout=1)

        assert idle
        assert not sweep.is_running
        result = await tick
        assert result.stopped_early
        assert stripe_gateway.calls_to("initiate_charge") == []
