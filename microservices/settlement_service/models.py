"""
Settlement Service Data Models

Campaign payment milestones, charge transactions, influencer payouts,
withdrawals and the configuration records that drive them.

All money is an integer amount in the currency's minor unit (pence, kobo,
cents). Persisted records are read from and written to the PascalCase
columns of the settlement schema (TotalAmountInPence, TransactionReference,
...) and serialize with their snake_case field names everywhere else.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_pascal


# ====================
# Enumerations
# ====================

class GatewayName(str, Enum):
    """Payment providers"""
    STRIPE = "stripe"
    TRUELAYER = "truelayer"
    PAYSTACK = "paystack"


class OperationKind(str, Enum):
    """Money direction handled by a gateway"""
    CHARGE = "charge"
    PAYOUT = "payout"


class PaymentType(str, Enum):
    """How a campaign is paid"""
    ONE_OFF = "one_off"
    MILESTONE = "milestone"


class MilestoneStatus(str, Enum):
    """Milestone lifecycle"""
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TransactionStatus(str, Enum):
    """Charge attempt lifecycle"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PayoutStatus(str, Enum):
    """Influencer payout lifecycle"""
    PENDING_RELEASE = "PENDING_RELEASE"
    RELEASED = "RELEASED"
    FAILED = "FAILED"


class WithdrawalStatus(str, Enum):
    """Bank transfer lifecycle"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Status groups used by conditional updates
CHARGEABLE_MILESTONE_STATUSES = (MilestoneStatus.PENDING, MilestoneStatus.OVERDUE)
IN_FLIGHT_TRANSACTION_STATUSES = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)
OPEN_WITHDRAWAL_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)
# Withdrawals that hold funds against the available balance
BALANCE_HOLDING_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.PENDING,
    WithdrawalStatus.PROCESSING,
    WithdrawalStatus.COMPLETED,
)


class PlatformSettingKey(str, Enum):
    """Known PlatformSettings keys"""
    BRAND_PLATFORM_FEE_PERCENT = "BrandPlatformFeePercent"
    INFLUENCER_PLATFORM_FEE_PERCENT = "InfluencerPlatformFeePercent"


# ====================
# Persisted Records
# ====================

class SettlementRecord(BaseModel):
    """
    Base for rows of the settlement schema.

    Rows are read by their PascalCase column names; API responses use the
    snake_case field names.
    """
    model_config = ConfigDict(alias_generator=AliasGenerator(validation_alias=to_pascal), populate_by_name=True)

    def to_row(self) -> Dict[str, Any]:
        """Column name -> value mapping for inserts (enums stored as their values)"""
        return {
            to_pascal(key): value.value if isinstance(value, Enum) else value
            for key, value in self.model_dump().items()
        }


class Campaign(SettlementRecord):
    """
    Brand-influencer engagement as seen by the settlement engine.

    Invariants: paid_amount_in_pence <= total_amount_in_pence and
    released_to_influencer_in_pence <= paid_amount_in_pence.
    """
    id: str = Field(..., min_length=1)
    brand_id: str = Field(..., min_length=1, description="Paying brand user")
    influencer_id: str = Field(..., min_length=1, description="Receiving influencer user")
    total_amount_in_pence: int = Field(..., ge=0)
    paid_amount_in_pence: int = Field(default=0, ge=0)
    released_to_influencer_in_pence: int = Field(default=0, ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    payment_type: PaymentType = PaymentType.MILESTONE
    is_recurring_enabled: bool = False
    number_of_milestones: int = Field(default=1, ge=1)
    start_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class PaymentMilestone(SettlementRecord):
    """Scheduled partial payment of a campaign"""
    id: str = Field(..., min_length=1)
    campaign_id: str = Field(..., min_length=1)
    milestone_number: int = Field(..., ge=1)
    title: Optional[str] = None
    description: Optional[str] = None
    amount_in_pence: int = Field(..., ge=0)
    platform_fee_in_pence: int = Field(default=0, ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    due_date: datetime
    status: MilestoneStatus = MilestoneStatus.PENDING
    transaction_id: Optional[str] = None
    attempt_count: int = Field(default=0, ge=0)
    last_attempt_at: Optional[datetime] = None
    failure_message: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def total_charge_in_pence(self) -> int:
        """Amount plus brand platform fee"""
        return self.amount_in_pence + self.platform_fee_in_pence


class Transaction(SettlementRecord):
    """One attempt to move money from a brand for a campaign milestone"""
    id: str = Field(..., min_length=1)
    transaction_reference: str = Field(..., min_length=1, description="Locally generated idempotency key")
    campaign_id: str = Field(..., min_length=1)
    milestone_id: Optional[str] = None
    payer_id: str = Field(..., min_length=1)
    gateway: GatewayName
    gateway_payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    amount_in_pence: int = Field(..., ge=0)
    platform_fee_in_pence: int = Field(default=0, ge=0)
    total_amount_in_pence: int = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    transaction_status: TransactionStatus = TransactionStatus.PENDING
    is_recurring: bool = False
    save_payment_method: bool = False
    payment_method_id: Optional[str] = None
    redirect_url: Optional[str] = None
    webhook_payload: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InfluencerPayout(SettlementRecord):
    """Release of one paid milestone's funds to an influencer balance"""
    id: str = Field(..., min_length=1)
    campaign_id: str = Field(..., min_length=1)
    influencer_id: str = Field(..., min_length=1)
    milestone_id: Optional[str] = None
    transaction_id: Optional[str] = None
    gross_amount_in_pence: int = Field(..., ge=0)
    platform_fee_in_pence: int = Field(default=0, ge=0)
    net_amount_in_pence: int = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    status: PayoutStatus = PayoutStatus.PENDING_RELEASE
    released_at: Optional[datetime] = None
    released_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Withdrawal(SettlementRecord):
    """Influencer-initiated transfer of balance to a bank destination"""
    id: str = Field(..., min_length=1)
    withdrawal_reference: str = Field(..., min_length=1, description="Locally generated idempotency key")
    influencer_id: str = Field(..., min_length=1)
    bank_account_id: Optional[str] = None
    amount_in_pence: int = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    payment_gateway: GatewayName
    recipient_code: Optional[str] = None
    gateway_transfer_code: Optional[str] = None
    bank_name: Optional[str] = None
    account_last4: Optional[str] = None
    payout_id: Optional[str] = None
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InfluencerBankAccount(SettlementRecord):
    """Payout destination; only the last four account digits are stored"""
    id: str = Field(..., min_length=1)
    influencer_id: str = Field(..., min_length=1)
    currency: str = Field(..., min_length=3, max_length=3)
    payment_gateway: GatewayName
    recipient_code: str = Field(..., min_length=1, description="Gateway recipient/beneficiary reference")
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    account_name: Optional[str] = None
    account_last4: str = Field(..., min_length=4, max_length=4)
    is_default: bool = False
    is_verified: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentMethod(SettlementRecord):
    """Saved charge instrument of a payer"""
    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    gateway: GatewayName
    authorization_code: str = Field(..., min_length=1, description="Card authorization / payment method token")
    customer_code: Optional[str] = None
    email: Optional[str] = None
    card_brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False
    is_reusable: bool = True
    created_at: Optional[datetime] = None


class PlatformSetting(SettlementRecord):
    """Hot-reloadable key/value configuration"""
    setting_key: str = Field(..., min_length=1)
    setting_value: str
    description: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class WebhookEventRecord(SettlementRecord):
    """Audit row for every verified webhook delivery"""
    id: str = Field(..., min_length=1)
    gateway: GatewayName
    event_type: str
    gateway_reference: Optional[str] = None
    reference: Optional[str] = None
    matched_entity: Optional[str] = None
    matched_id: Optional[str] = None
    payload: str
    received_at: Optional[datetime] = None


# ====================
# Request Models
# ====================

class CreateMilestonesRequest(BaseModel):
    """Milestone schedule creation"""
    number_of_milestones: Optional[int] = Field(None, ge=1, le=120)
    start_date: Optional[datetime] = None
    titles: Optional[List[str]] = None


class InitiatePaymentRequest(BaseModel):
    """Brand-initiated charge of one milestone"""
    milestone_id: str = Field(..., min_length=1)
    payer_id: str = Field(..., min_length=1)
    gateway: Optional[GatewayName] = None
    payment_method_id: Optional[str] = None
    payer_email: Optional[str] = None
    save_payment_method: bool = False
    success_url: Optional[str] = None
    failure_url: Optional[str] = None


class UpdateMilestoneRequest(BaseModel):
    """Edit of an unpaid milestone; unset fields are left alone"""
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    amount_in_pence: Optional[int] = Field(None, gt=0)


class PayFullRequest(BaseModel):
    """Charge all outstanding milestones of a campaign with a saved method"""
    payer_id: str = Field(..., min_length=1)
    payment_method_id: Optional[str] = None
    gateway: Optional[GatewayName] = None


class WithdrawalRequest(BaseModel):
    """Influencer withdrawal request"""
    influencer_id: str = Field(..., min_length=1)
    amount_in_pence: int = Field(..., gt=0)
    bank_account_id: str = Field(..., min_length=1)


class ReleasePayoutRequest(BaseModel):
    """Manual payout release by the campaign's brand"""
    brand_id: str = Field(..., min_length=1)


class RegisterBankAccountRequest(BaseModel):
    """Payout destination registration"""
    influencer_id: str = Field(..., min_length=1)
    currency: str = Field(..., min_length=3, max_length=3)
    payment_gateway: Optional[GatewayName] = None
    recipient_code: str = Field(..., min_length=1)
    account_last4: str = Field(..., min_length=4, max_length=4)
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    account_name: Optional[str] = None
    is_default: bool = True


class UpdateSettingRequest(BaseModel):
    """PlatformSettings write"""
    setting_value: str = Field(..., min_length=1)
    updated_by: Optional[str] = None


# ====================
# Response Models
# ====================

class PaymentInitiationResponse(BaseModel):
    """Outcome of starting (or re-using) a charge attempt"""
    success: bool
    transaction_reference: Optional[str] = None
    transaction_status: Optional[TransactionStatus] = None
    redirect_url: Optional[str] = None
    error_message: Optional[str] = None
    existing_attempt: bool = False


class PaymentMethodView(BaseModel):
    """Saved payment method as shown to its owner (no authorization token)"""
    id: str
    gateway: GatewayName
    card_brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False
    created_at: Optional[datetime] = None


class PaymentVerificationResult(BaseModel):
    """Outcome of a gateway status check"""
    success: bool
    transaction_reference: Optional[str] = None
    status: Optional[TransactionStatus] = None
    error_message: Optional[str] = None


class CampaignPaymentSummary(BaseModel):
    """Payment position of one campaign"""
    campaign_id: str
    currency: str
    total_amount_in_pence: int
    paid_amount_in_pence: int
    outstanding_amount_in_pence: int
    released_to_influencer_in_pence: int
    pending_release_in_pence: int
    total_milestones: int
    paid_milestones: int
    pending_milestones: int
    next_due_milestone: Optional[PaymentMilestone] = None


class BrandOutstandingBalance(BaseModel):
    """What a brand still owes across campaigns"""
    brand_id: str
    overdue_amount_in_pence: int = 0
    total_remaining_in_pence: int = 0
    total_paid_in_pence: int = 0
    has_overdue_milestones: bool = False
    overdue_milestone_count: int = 0


class InfluencerBalance(BaseModel):
    """Influencer ledger position in one currency"""
    influencer_id: str
    currency: str
    released_in_pence: int = 0
    pending_release_in_pence: int = 0
    withdrawn_in_pence: int = 0
    in_flight_in_pence: int = 0
    available_in_pence: int = 0


class WebhookResult(BaseModel):
    """Outcome of one webhook delivery (always acknowledged once verified)"""
    acknowledged: bool = True
    gateway: GatewayName
    event_type: str
    matched_entity: Optional[str] = None
    matched_id: Optional[str] = None
    action: str = "ignored"


class SweepResult(BaseModel):
    """Counters of one sweep tick"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    milestones_marked_overdue: int = 0
    transactions_settled: int = 0
    transactions_rechecked: int = 0
    charges_attempted: int = 0
    charges_failed: int = 0
    withdrawals_repolled: int = 0
    errors: int = 0
    stopped_early: bool = False
    details: List[str] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    timestamp: str
    dependencies: Dict[str, str] = Field(default_factory=dict)
