"""
Settlement Service Event Publishers

Publish settlement lifecycle events for the notification and invoice
collaborators. A publishing failure is logged and never fails the money
operation that triggered it.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from core.nats_client import Event, ServiceSource

from ..models import InfluencerPayout, PaymentMilestone, Transaction, Withdrawal
from .models import (
    ChargeOrphanedEventData,
    MilestoneFailedEventData,
    MilestonePaidEventData,
    PaymentCompletedEventData,
    PaymentFailedEventData,
    PayoutReleasedEventData,
    SettlementEventType,
    WithdrawalCompletedEventData,
    WithdrawalFailedEventData,
)

logger = logging.getLogger(__name__)


async def _publish(event_bus, event_type: SettlementEventType, data: BaseModel, subject: Optional[str] = None) -> bool:
    if event_bus is None:
        return False
    try:
        event = Event(
            event_type=event_type,
            source=ServiceSource.SETTLEMENT_SERVICE,
            data=data.model_dump(mode="json"),
            subject=subject,
        )
        await event_bus.publish_event(event)
        logger.info(f"Published {event_type.value} for {subject}")
        return True
    except Exception as e:
        logger.error(f"Failed to publish {event_type.value}: {e}")
        return False


# ============================================================================
# Charge Event Publishers
# ============================================================================


async def publish_payment_completed(event_bus, transaction: Transaction) -> bool:
    """Publish settlement.payment.completed"""
    return await _publish(
        event_bus,
        SettlementEventType.PAYMENT_COMPLETED,
        PaymentCompletedEventData(
            transaction_id=transaction.id,
            transaction_reference=transaction.transaction_reference,
            campaign_id=transaction.campaign_id,
            milestone_id=transaction.milestone_id,
            payer_id=transaction.payer_id,
            gateway=transaction.gateway.value,
            amount_in_pence=transaction.amount_in_pence,
            platform_fee_in_pence=transaction.platform_fee_in_pence,
            total_amount_in_pence=transaction.total_amount_in_pence,
            currency=transaction.currency,
            **({"completed_at": transaction.completed_at} if transaction.completed_at else {}),
        ),
        subject=transaction.transaction_reference,
    )


async def publish_payment_failed(event_bus, transaction: Transaction) -> bool:
    """Publish settlement.payment.failed"""
    return await _publish(
        event_bus,
        SettlementEventType.PAYMENT_FAILED,
        PaymentFailedEventData(
            transaction_id=transaction.id,
            transaction_reference=transaction.transaction_reference,
            campaign_id=transaction.campaign_id,
            milestone_id=transaction.milestone_id,
            gateway=transaction.gateway.value,
            failure_code=transaction.failure_code,
            failure_message=transaction.failure_message,
        ),
        subject=transaction.transaction_reference,
    )


async def publish_charge_orphaned(event_bus, transaction: Transaction, milestone: Optional[PaymentMilestone]) -> bool:
    """Publish settlement.charge.orphaned"""
    return await _publish(
        event_bus,
        SettlementEventType.CHARGE_ORPHANED,
        ChargeOrphanedEventData(
            transaction_id=transaction.id,
            transaction_reference=transaction.transaction_reference,
            campaign_id=transaction.campaign_id,
            milestone_id=transaction.milestone_id,
            milestone_status=milestone.status.value if milestone else None,
            total_amount_in_pence=transaction.total_amount_in_pence,
            currency=transaction.currency,
        ),
        subject=transaction.transaction_reference,
    )


# ============================================================================
# Milestone Event Publishers
# ============================================================================


async def publish_milestone_paid(event_bus, milestone: PaymentMilestone) -> bool:
    """Publish settlement.milestone.paid"""
    return await _publish(
        event_bus,
        SettlementEventType.MILESTONE_PAID,
        MilestonePaidEventData(
            milestone_id=milestone.id,
            campaign_id=milestone.campaign_id,
            milestone_number=milestone.milestone_number,
            amount_in_pence=milestone.amount_in_pence,
            currency=milestone.currency,
            transaction_id=milestone.transaction_id,
            **({"paid_at": milestone.paid_at} if milestone.paid_at else {}),
        ),
        subject=milestone.id,
    )


async def publish_milestone_failed(event_bus, milestone: PaymentMilestone) -> bool:
    """Publish settlement.milestone.failed"""
    return await _publish(
        event_bus,
        SettlementEventType.MILESTONE_FAILED,
        MilestoneFailedEventData(
            milestone_id=milestone.id,
            campaign_id=milestone.campaign_id,
            milestone_number=milestone.milestone_number,
            attempt_count=milestone.attempt_count,
            failure_message=milestone.failure_message,
        ),
        subject=milestone.id,
    )


# ============================================================================
# Payout / Withdrawal Event Publishers
# ============================================================================


async def publish_payout_released(event_bus, payout: InfluencerPayout) -> bool:
    """Publish settlement.payout.released"""
    return await _publish(
        event_bus,
        SettlementEventType.PAYOUT_RELEASED,
        PayoutReleasedEventData(
            payout_id=payout.id,
            campaign_id=payout.campaign_id,
            influencer_id=payout.influencer_id,
            milestone_id=payout.milestone_id,
            gross_amount_in_pence=payout.gross_amount_in_pence,
            platform_fee_in_pence=payout.platform_fee_in_pence,
            net_amount_in_pence=payout.net_amount_in_pence,
            currency=payout.currency,
            **({"released_at": payout.released_at} if payout.released_at else {}),
        ),
        subject=payout.id,
    )


async def publish_withdrawal_completed(event_bus, withdrawal: Withdrawal) -> bool:
    """Publish settlement.withdrawal.completed"""
    return await _publish(
        event_bus,
        SettlementEventType.WITHDRAWAL_COMPLETED,
        WithdrawalCompletedEventData(
            withdrawal_id=withdrawal.id,
            withdrawal_reference=withdrawal.withdrawal_reference,
            influencer_id=withdrawal.influencer_id,
            amount_in_pence=withdrawal.amount_in_pence,
            currency=withdrawal.currency,
            payment_gateway=withdrawal.payment_gateway.value,
            **({"completed_at": withdrawal.completed_at} if withdrawal.completed_at else {}),
        ),
        subject=withdrawal.withdrawal_reference,
    )


async def publish_withdrawal_failed(event_bus, withdrawal: Withdrawal) -> bool:
    """Publish settlement.withdrawal.failed"""
    return await _publish(
        event_bus,
        SettlementEventType.WITHDRAWAL_FAILED,
        WithdrawalFailedEventData(
            withdrawal_id=withdrawal.id,
            withdrawal_reference=withdrawal.withdrawal_reference,
            influencer_id=withdrawal.influencer_id,
            amount_in_pence=withdrawal.amount_in_pence,
            currency=withdrawal.currency,
            payment_gateway=withdrawal.payment_gateway.value,
            failure_reason=withdrawal.failure_reason,
        ),
        subject=withdrawal.withdrawal_reference,
    )


__all__ = [
    "publish_payment_completed",
    "publish_payment_failed",
    "publish_charge_orphaned",
    "publish_milestone_paid",
    "publish_milestone_failed",
    "publish_payout_released",
    "publish_withdrawal_completed",
    "publish_withdrawal_failed",
]
