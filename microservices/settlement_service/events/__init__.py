"""
Settlement Service Events Module

Exports all event-related functionality for settlement service
"""

from .models import (
    SettlementEventType,
    SettlementSubscribedEventType,
    SettlementStreamConfig,
    PaymentCompletedEventData,
    PaymentFailedEventData,
    ChargeOrphanedEventData,
    MilestonePaidEventData,
    MilestoneFailedEventData,
    PayoutReleasedEventData,
    WithdrawalCompletedEventData,
    WithdrawalFailedEventData,
)

from .publishers import (
    publish_payment_completed,
    publish_payment_failed,
    publish_charge_orphaned,
    publish_milestone_paid,
    publish_milestone_failed,
    publish_payout_released,
    publish_withdrawal_completed,
    publish_withdrawal_failed,
)

from .handlers import get_event_handlers

__all__ = [
    # Event Models
    "SettlementEventType",
    "SettlementSubscribedEventType",
    "SettlementStreamConfig",
    "PaymentCompletedEventData",
    "PaymentFailedEventData",
    "ChargeOrphanedEventData",
    "MilestonePaidEventData",
    "MilestoneFailedEventData",
    "PayoutReleasedEventData",
    "WithdrawalCompletedEventData",
    "WithdrawalFailedEventData",
    # Publishers
    "publish_payment_completed",
    "publish_payment_failed",
    "publish_charge_orphaned",
    "publish_milestone_paid",
    "publish_milestone_failed",
    "publish_payout_released",
    "publish_withdrawal_completed",
    "publish_withdrawal_failed",
    # Handlers
    "get_event_handlers",
]
