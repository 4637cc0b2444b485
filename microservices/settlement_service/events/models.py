"""
Settlement Service Event Models

Event data models for charge, milestone, payout and withdrawal lifecycle events.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

# =============================================================================
# Event Type Definitions (Service-Specific)
# =============================================================================

class SettlementEventType(str, Enum):
    """
    Events published by settlement_service.

    Stream: settlement-stream
    Subjects: settlement.>
    """
    PAYMENT_COMPLETED = "settlement.payment.completed"
    PAYMENT_FAILED = "settlement.payment.failed"
    MILESTONE_PAID = "settlement.milestone.paid"
    MILESTONE_FAILED = "settlement.milestone.failed"
    PAYOUT_RELEASED = "settlement.payout.released"
    WITHDRAWAL_COMPLETED = "settlement.withdrawal.completed"
    WITHDRAWAL_FAILED = "settlement.withdrawal.failed"
    CHARGE_ORPHANED = "settlement.charge.orphaned"


class SettlementSubscribedEventType(str, Enum):
    """Events that settlement_service subscribes to from other services."""
    CAMPAIGN_BOOKED = "campaign.booked"
    CAMPAIGN_CANCELLED = "campaign.cancelled"


class SettlementStreamConfig:
    """Stream configuration for settlement_service"""
    STREAM_NAME = "settlement-stream"
    SUBJECTS = ["settlement.>"]
    MAX_MESSAGES = 100000
    CONSUMER_PREFIX = "settlement"


# ============================================================================
# Charge Events
# ============================================================================


class PaymentCompletedEventData(BaseModel):
    """
    Event: settlement.payment.completed
    Triggered when a charge Transaction reaches COMPLETED (consumed by invoicing)
    """

    transaction_id: str
    transaction_reference: str
    campaign_id: str
    milestone_id: Optional[str] = None
    payer_id: str
    gateway: str
    amount_in_pence: int
    platform_fee_in_pence: int
    total_amount_in_pence: int
    currency: str
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PaymentFailedEventData(BaseModel):
    """
    Event: settlement.payment.failed
    Triggered when a charge attempt fails terminally
    """

    transaction_id: str
    transaction_reference: str
    campaign_id: str
    milestone_id: Optional[str] = None
    gateway: str
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChargeOrphanedEventData(BaseModel):
    """
    Event: settlement.charge.orphaned
    Money arrived for a milestone that was already FAILED or CANCELLED;
    needs a manual refund or re-allocation
    """

    transaction_id: str
    transaction_reference: str
    campaign_id: str
    milestone_id: Optional[str] = None
    milestone_status: Optional[str] = None
    total_amount_in_pence: int
    currency: str
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Milestone Events
# ============================================================================


class MilestonePaidEventData(BaseModel):
    """
    Event: settlement.milestone.paid
    """

    milestone_id: str
    campaign_id: str
    milestone_number: int
    amount_in_pence: int
    currency: str
    transaction_id: Optional[str] = None
    paid_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MilestoneFailedEventData(BaseModel):
    """
    Event: settlement.milestone.failed
    Charge attempts exhausted; the brand must intervene
    """

    milestone_id: str
    campaign_id: str
    milestone_number: int
    attempt_count: int
    failure_message: Optional[str] = None
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Payout / Withdrawal Events
# ============================================================================


class PayoutReleasedEventData(BaseModel):
    """
    Event: settlement.payout.released
    Funds added to the influencer's available balance
    """

    payout_id: str
    campaign_id: str
    influencer_id: str
    milestone_id: Optional[str] = None
    gross_amount_in_pence: int
    platform_fee_in_pence: int
    net_amount_in_pence: int
    currency: str
    released_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WithdrawalCompletedEventData(BaseModel):
    """
    Event: settlement.withdrawal.completed
    """

    withdrawal_id: str
    withdrawal_reference: str
    influencer_id: str
    amount_in_pence: int
    currency: str
    payment_gateway: str
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WithdrawalFailedEventData(BaseModel):
    """
    Event: settlement.withdrawal.failed
    The amount is back in the influencer's available balance
    """

    withdrawal_id: str
    withdrawal_reference: str
    influencer_id: str
    amount_in_pence: int
    currency: str
    payment_gateway: str
    failure_reason: Optional[str] = None
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = [
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
]
