"""
Settlement Repository Integration Tests

Tests SettlementRepository against a real PostgreSQL database.
These tests require a running PostgreSQL reachable through POSTGRES_HOST,
POSTGRES_PORT, POSTGRES_DB, POSTGRES_USER and POSTGRES_PASSWORD.

Test Coverage:
- Conditional milestone transitions and multi-row edits
- One in-flight transaction per milestone
- One payout per milestone and campaign release totals
- Funded withdrawals under concurrent requests
- One default payment method per user

Usage:
    pytest tests/integration/settlement -v
    SKIP_DB_TESTS=1 pytest tests   # skip everything that needs PostgreSQL
"""

import asyncio
import os
import sys
import uuid
from datetime import datetime, timezone

import asyncpg
import pytest

# Add paths for imports
_current_dir = os.path.dirname(os.path.abspath(__file__))
_project_root = os.path.join(_current_dir, "../../..")
sys.path.insert(0, _project_root)

from microservices.settlement_service.models import (
    BALANCE_HOLDING_WITHDRAWAL_STATUSES,
    CHARGEABLE_MILESTONE_STATUSES,
    GatewayName,
    InfluencerPayout,
    MilestoneStatus,
    PayoutStatus,
    TransactionStatus,
    Withdrawal,
    WithdrawalStatus,
)
from microservices.settlement_service.withdrawal_engine import generate_withdrawal_reference

pytestmark = [pytest.mark.integration, pytest.mark.asyncio, pytest.mark.requires_db]


def _payout(milestone, influencer_id: str, **overrides) -> InfluencerPayout:
    data = {
        "id": f"pay_{uuid.uuid4().hex[:16]}",
        "campaign_id": milestone.campaign_id,
        "influencer_id": influencer_id,
        "milestone_id": milestone.id,
        "gross_amount_in_pence": milestone.amount_in_pence,
        "platform_fee_in_pence": 800,
        "net_amount_in_pence": milestone.amount_in_pence - 800,
        "currency": milestone.currency,
        "status": PayoutStatus.RELEASED,
    }
    data.update(overrides)
    return InfluencerPayout(**data)


def _withdrawal(account, amount_in_pence: int) -> Withdrawal:
    return Withdrawal(
        id=f"wd_{uuid.uuid4().hex[:16]}",
        withdrawal_reference=generate_withdrawal_reference(),
        influencer_id=account.influencer_id,
        bank_account_id=account.id,
        amount_in_pence=amount_in_pence,
        currency=account.currency,
        payment_gateway=account.payment_gateway,
        recipient_code=account.recipient_code,
    )


async def _paid(repository, milestone):
    return await repository.mark_milestone_paid(milestone.id, None, datetime.now(timezone.utc))


# ============================================================================
# Milestones
# ============================================================================


class TestMilestoneTransitions:
    """Status-conditioned milestone updates"""

    async def test_transition_applies_once(self, repository, seeded_campaign):
        """INTEGRATION: a second transition from the old status finds nothing"""
        campaign, milestones = await seeded_campaign()

        first = await repository.update_milestone_status(
            milestones[0].id, CHARGEABLE_MILESTONE_STATUSES, MilestoneStatus.CANCELLED
        )
        second = await repository.update_milestone_status(
            milestones[0].id, CHARGEABLE_MILESTONE_STATUSES, MilestoneStatus.CANCELLED
        )

        assert first.status == MilestoneStatus.CANCELLED
        assert second is None

    async def test_concurrent_payments_count_once(self, repository, seeded_campaign):
        """INTEGRATION: racing PAID transitions add the amount to the campaign once"""
        campaign, milestones = await seeded_campaign()

        results = await asyncio.gather(*(_paid(repository, milestones[0]) for _ in range(4)))

        assert sum(1 for r in results if r is not None) == 1
        stored = await repository.get_campaign(campaign.id)
        assert stored.paid_amount_in_pence == 40000

    async def test_multi_milestone_edit_is_all_or_nothing(self, repository, seeded_campaign):
        """INTEGRATION: one row out of status rolls back the whole edit"""
        campaign, milestones = await seeded_campaign()
        await _paid(repository, milestones[2])

        rejected = await repository.update_milestones(
            {
                milestones[0].id: {"amount_in_pence": 50000, "title": "Bigger"},
                milestones[2].id: {"amount_in_pence": 30000},
            },
            CHARGEABLE_MILESTONE_STATUSES,
        )

        assert rejected == []
        unchanged = await repository.get_milestone(milestones[0].id)
        assert unchanged.amount_in_pence == 40000
        assert unchanged.title == "Milestone 1"

    async def test_multi_milestone_edit_writes_every_row(self, repository, seeded_campaign):
        """INTEGRATION: amounts, fees and a status change land together"""
        campaign, milestones = await seeded_campaign()
        await repository.mark_overdue_milestones(datetime.now(timezone.utc))

        updated = await repository.update_milestones(
            {
                milestones[0].id: {"amount_in_pence": 50000, "platform_fee_in_pence": 1000, "status": MilestoneStatus.PENDING},
                milestones[2].id: {"amount_in_pence": 30000, "platform_fee_in_pence": 600},
            },
            CHARGEABLE_MILESTONE_STATUSES,
        )

        assert {m.id for m in updated} == {milestones[0].id, milestones[2].id}
        schedule = await repository.get_campaign_milestones(campaign.id)
        assert [m.amount_in_pence for m in schedule] == [50000, 40000, 30000]
        assert schedule[0].status == MilestoneStatus.PENDING
        assert schedule[2].platform_fee_in_pence == 600


# ============================================================================
# Transactions
# ============================================================================


class TestTransactions:
    """The in-flight unique index on Transactions"""

    async def test_one_in_flight_transaction_per_milestone(self, repository, seeded_campaign, settlement_factory):
        """INTEGRATION: a second open attempt is refused until the first is closed"""
        campaign, milestones = await seeded_campaign()

        first = await repository.create_transaction(settlement_factory.make_transaction(milestones[0]))
        second = await repository.create_transaction(settlement_factory.make_transaction(milestones[0]))

        assert first is not None
        assert second is None
        assert (await repository.get_in_flight_transaction(milestones[0].id)).id == first.id

        failed = await repository.update_transaction_status(
            first.id, [TransactionStatus.PENDING], TransactionStatus.FAILED, {"failure_message": "Card declined"}
        )
        retry = await repository.create_transaction(settlement_factory.make_transaction(milestones[0]))

        assert failed.failure_message == "Card declined"
        assert retry is not None

    async def test_transaction_transition_from_wrong_status(self, repository, seeded_campaign, settlement_factory):
        """INTEGRATION: COMPLETED cannot be entered from FAILED by a PENDING-only update"""
        campaign, milestones = await seeded_campaign()
        transaction = await repository.create_transaction(
            settlement_factory.make_transaction(milestones[0], transaction_status=TransactionStatus.FAILED)
        )

        result = await repository.update_transaction_status(
            transaction.id, [TransactionStatus.PENDING], TransactionStatus.COMPLETED
        )

        assert result is None
        assert (await repository.get_transaction(transaction.id)).transaction_status == TransactionStatus.FAILED


# ============================================================================
# Payouts and withdrawals
# ============================================================================


class TestPayoutsAndWithdrawals:
    """Payout uniqueness and the funded-withdrawal check"""

    async def test_one_payout_per_milestone(self, repository, seeded_campaign):
        """INTEGRATION: a second payout for a milestone is refused and releases nothing"""
        campaign, milestones = await seeded_campaign()
        await _paid(repository, milestones[0])

        first = await repository.create_payout(_payout(milestones[0], campaign.influencer_id))
        second = await repository.create_payout(_payout(milestones[0], campaign.influencer_id))

        assert first.net_amount_in_pence == 39200
        assert second is None
        stored = await repository.get_campaign(campaign.id)
        assert stored.released_to_influencer_in_pence == 39200

    async def test_concurrent_withdrawals_never_overdraw(self, repository, seeded_campaign, settlement_factory):
        """INTEGRATION: racing requests insert only what the balance covers"""
        campaign, milestones = await seeded_campaign()
        await _paid(repository, milestones[0])
        await repository.create_payout(_payout(milestones[0], campaign.influencer_id))
        account = await repository.create_bank_account(settlement_factory.make_bank_account(campaign.influencer_id))

        results = await asyncio.gather(
            *(repository.create_withdrawal_if_funded(_withdrawal(account, 10000)) for _ in range(5))
        )

        assert sum(1 for r in results if r is not None) == 3
        held = await repository.sum_withdrawals(
            campaign.influencer_id, "GBP", BALANCE_HOLDING_WITHDRAWAL_STATUSES
        )
        assert held == 30000

    async def test_failed_withdrawal_frees_balance(self, repository, seeded_campaign, settlement_factory):
        """INTEGRATION: a FAILED withdrawal no longer holds balance"""
        campaign, milestones = await seeded_campaign()
        await _paid(repository, milestones[0])
        await repository.create_payout(_payout(milestones[0], campaign.influencer_id))
        account = await repository.create_bank_account(settlement_factory.make_bank_account(campaign.influencer_id))
        withdrawal = await repository.create_withdrawal_if_funded(_withdrawal(account, 39200))
        assert await repository.create_withdrawal_if_funded(_withdrawal(account, 100)) is None

        await repository.update_withdrawal_status(
            withdrawal.id, [WithdrawalStatus.PENDING], WithdrawalStatus.FAILED, {"failure_reason": "Account closed"}
        )

        assert await repository.create_withdrawal_if_funded(_withdrawal(account, 100)) is not None
        history = await repository.get_influencer_withdrawals(campaign.influencer_id, "GBP")
        assert [w.amount_in_pence for w in history] == [100, 39200]
        assert await repository.get_influencer_withdrawals(campaign.influencer_id, "NGN") == []


# ============================================================================
# Payment methods
# ============================================================================


class TestPaymentMethods:
    """One default payment method per user, whatever the gateway"""

    async def test_new_default_replaces_default_on_other_gateway(self, repository, settlement_factory):
        """INTEGRATION: saving a default clears the user's previous default"""
        brand_id = settlement_factory.make_brand_id()
        card = await repository.create_payment_method(settlement_factory.make_payment_method(brand_id))
        naira_card = await repository.create_payment_method(
            settlement_factory.make_payment_method(brand_id, gateway=GatewayName.PAYSTACK)
        )

        default = await repository.get_default_payment_method(brand_id)

        assert default.id == naira_card.id
        assert not (await repository.get_payment_method(card.id)).is_default
        charge_card = await repository.get_charge_payment_method(brand_id, GatewayName.STRIPE)
        assert charge_card.id == card.id

    async def test_index_rejects_second_default(self, repository, settlement_db, settlement_factory):
        """INTEGRATION: the database itself refuses two defaults for one user"""
        brand_id = settlement_factory.make_brand_id()
        await repository.create_payment_method(settlement_factory.make_payment_method(brand_id))
        other = await repository.create_payment_method(
            settlement_factory.make_payment_method(brand_id, gateway=GatewayName.PAYSTACK, is_default=False)
        )

        with pytest.raises(asyncpg.UniqueViolationError):
            await settlement_db.execute(
                'UPDATE settlement."PaymentMethods" SET "IsDefault" = TRUE WHERE "Id" = $1', [other.id]
            )

    async def test_set_default_and_deactivate(self, repository, settlement_factory):
        """INTEGRATION: switching the default and soft-deleting a method"""
        brand_id = settlement_factory.make_brand_id()
        first = await repository.create_payment_method(settlement_factory.make_payment_method(brand_id))
        second = await repository.create_payment_method(
            settlement_factory.make_payment_method(brand_id, is_default=False)
        )

        switched = await repository.set_default_payment_method(brand_id, second.id)
        foreign = await repository.set_default_payment_method(settlement_factory.make_brand_id(), first.id)
        removed = await repository.deactivate_payment_method(brand_id, second.id)

        assert switched.is_default
        assert foreign is None
        assert not removed.is_reusable
        assert await repository.get_default_payment_method(brand_id) is None
        assert [m.id for m in await repository.list_payment_methods(brand_id)] == [first.id]
        assert await repository.set_default_payment_method(brand_id, second.id) is None
