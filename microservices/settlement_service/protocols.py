"""
Settlement Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.

Every status transition goes through a conditional update: the caller names
the statuses it expects the row to be in and receives None when the row had
already moved on (another webhook, sweep or request won the race).
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .models import (
    Campaign,
    GatewayName,
    InfluencerBankAccount,
    InfluencerPayout,
    MilestoneStatus,
    OperationKind,
    PaymentMethod,
    PaymentMilestone,
    PayoutStatus,
    PlatformSetting,
    Transaction,
    TransactionStatus,
    WebhookEventRecord,
    Withdrawal,
    WithdrawalStatus,
)

if TYPE_CHECKING:
    from .gateways.models import (
        ChargeResult,
        GatewayStatusResult,
        PayerInstrument,
        PayoutResult,
        WebhookEvent,
    )


# ====================
# Repository Protocol
# ====================


@runtime_checkable
class SettlementRepositoryProtocol(Protocol):
    """Repository interface for settlement state"""

    # ---- Campaigns ----

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        """Insert a campaign (booking collaborators own the rest of its lifecycle)"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign by ID"""
        ...

    async def list_brand_campaigns(self, brand_id: str) -> List[Campaign]:
        """Campaigns paid by a brand"""
        ...

    # ---- Milestones ----

    async def create_milestones(self, milestones: List[PaymentMilestone]) -> List[PaymentMilestone]:
        """
        Insert a full milestone schedule in one database transaction.

        Returns:
            Created milestones, or an empty list when the campaign already has a schedule
        """
        ...

    async def mark_milestone_paid(
        self, milestone_id: str, transaction_id: Optional[str], paid_at: datetime
    ) -> Optional[PaymentMilestone]:
        """
        PENDING/OVERDUE -> PAID and add AmountInPence to the campaign's
        PaidAmountInPence, in one database transaction.

        Returns:
            Updated milestone, or None if it was not PENDING/OVERDUE
        """
        ...

    async def get_milestone(self, milestone_id: str) -> Optional[PaymentMilestone]:
        """Get milestone by ID"""
        ...

    async def get_campaign_milestones(self, campaign_id: str) -> List[PaymentMilestone]:
        """Milestones of a campaign ordered by MilestoneNumber"""
        ...

    async def update_milestone_status(
        self,
        milestone_id: str,
        from_statuses: Sequence[MilestoneStatus],
        to_status: MilestoneStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentMilestone]:
        """
        Conditional status transition.

        Args:
            milestone_id: Milestone to update
            from_statuses: Statuses the row must currently be in
            to_status: New status
            fields: Extra columns to set (snake_case model field names)

        Returns:
            Updated milestone, or None if the row was not in from_statuses
        """
        ...

    async def update_milestones(
        self,
        changes: Dict[str, Dict[str, Any]],
        from_statuses: Sequence[MilestoneStatus],
    ) -> List[PaymentMilestone]:
        """
        Edit several milestones in one database transaction.

        Args:
            changes: Milestone id -> columns to set (snake_case model field names)
            from_statuses: Statuses every row must currently be in

        Returns:
            The updated milestones, or an empty list (nothing written) when any
            row had left from_statuses
        """
        ...

    async def increment_milestone_attempts(self, milestone_id: str, attempted_at: datetime) -> Optional[PaymentMilestone]:
        """Atomically bump AttemptCount and LastAttemptAt"""
        ...

    async def mark_overdue_milestones(self, now: datetime) -> List[PaymentMilestone]:
        """PENDING milestones with DueDate <= now become OVERDUE; returns the updated rows"""
        ...

    async def cancel_campaign_milestones(self, campaign_id: str) -> List[PaymentMilestone]:
        """PENDING/OVERDUE milestones of a campaign become CANCELLED; returns the updated rows"""
        ...

    async def get_chargeable_milestones(self, now: datetime, max_attempts: int, limit: int = 500) -> List[PaymentMilestone]:
        """
        Milestones eligible for auto-charge: PENDING/OVERDUE, DueDate <= now,
        AttemptCount < max_attempts, campaign IsRecurringEnabled.
        """
        ...

    async def get_paid_milestones_without_payout(self, limit: int = 500) -> List[PaymentMilestone]:
        """PAID milestones whose payout row is missing (crash recovery)"""
        ...

    # ---- Transactions ----

    async def create_transaction(self, transaction: Transaction) -> Optional[Transaction]:
        """
        Insert a charge attempt.

        Returns:
            Created transaction, or None when the milestone already has a
            PENDING/PROCESSING transaction (at most one in-flight charge)
        """
        ...

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        ...

    async def get_transaction_by_reference(self, transaction_reference: str) -> Optional[Transaction]:
        """Get transaction by TransactionReference"""
        ...

    async def get_transaction_by_gateway_payment_id(
        self, gateway_payment_id: str, gateway: Optional[GatewayName] = None
    ) -> Optional[Transaction]:
        """Get transaction by GatewayPaymentId"""
        ...

    async def get_in_flight_transaction(self, milestone_id: str) -> Optional[Transaction]:
        """The PENDING/PROCESSING transaction of a milestone, if any"""
        ...

    async def update_transaction_status(
        self,
        transaction_id: str,
        from_statuses: Sequence[TransactionStatus],
        to_status: TransactionStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        """Conditional status transition (None if the row was not in from_statuses)"""
        ...

    async def update_transaction_fields(self, transaction_id: str, fields: Dict[str, Any]) -> Optional[Transaction]:
        """Set non-status columns (gateway ids, last webhook payload)"""
        ...

    async def get_stale_in_flight_transactions(self, older_than: datetime, limit: int = 500) -> List[Transaction]:
        """PENDING/PROCESSING transactions last updated before older_than"""
        ...

    async def get_unsettled_completed_transactions(self, limit: int = 500) -> List[Transaction]:
        """COMPLETED transactions whose milestone is still PENDING/OVERDUE"""
        ...

    # ---- Payouts ----

    async def create_payout(self, payout: InfluencerPayout) -> Optional[InfluencerPayout]:
        """
        Insert a payout; None when the milestone already has one.

        A payout inserted as RELEASED adds its net amount to the campaign's
        ReleasedToInfluencerInPence in the same database transaction.
        """
        ...

    async def get_payout(self, payout_id: str) -> Optional[InfluencerPayout]:
        """Get payout by ID"""
        ...

    async def get_payout_by_milestone(self, milestone_id: str) -> Optional[InfluencerPayout]:
        """Get the payout of a milestone"""
        ...

    async def get_campaign_payouts(self, campaign_id: str) -> List[InfluencerPayout]:
        """Payouts of a campaign"""
        ...

    async def update_payout_status(
        self,
        payout_id: str,
        from_statuses: Sequence[PayoutStatus],
        to_status: PayoutStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[InfluencerPayout]:
        """
        Conditional status transition (None if the row was not in from_statuses).

        A transition to RELEASED adds the net amount to the campaign's
        ReleasedToInfluencerInPence in the same database transaction.
        """
        ...

    async def get_influencer_payouts(
        self, influencer_id: str, statuses: Optional[Sequence[PayoutStatus]] = None
    ) -> List[InfluencerPayout]:
        """Payouts of an influencer, newest first, optionally limited to some statuses"""
        ...

    async def sum_payouts(self, influencer_id: str, currency: str, statuses: Sequence[PayoutStatus]) -> int:
        """Sum of NetAmountInPence over payouts in the given statuses"""
        ...

    # ---- Withdrawals ----

    async def create_withdrawal_if_funded(self, withdrawal: Withdrawal) -> Optional[Withdrawal]:
        """
        Insert a withdrawal only if it fits the available balance.

        The balance check (RELEASED payouts minus PENDING/PROCESSING/COMPLETED
        withdrawals, same influencer and currency) and the insert are atomic
        with respect to other withdrawal requests of the same influencer.

        Returns:
            Created withdrawal, or None when funds are insufficient
        """
        ...

    async def get_withdrawal(self, withdrawal_id: str) -> Optional[Withdrawal]:
        """Get withdrawal by ID"""
        ...

    async def get_withdrawal_by_reference(self, withdrawal_reference: str) -> Optional[Withdrawal]:
        """Get withdrawal by WithdrawalReference"""
        ...

    async def get_withdrawal_by_transfer_code(self, gateway_transfer_code: str) -> Optional[Withdrawal]:
        """Get withdrawal by gateway transfer/payout id"""
        ...

    async def update_withdrawal_status(
        self,
        withdrawal_id: str,
        from_statuses: Sequence[WithdrawalStatus],
        to_status: WithdrawalStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Withdrawal]:
        """Conditional status transition (None if the row was not in from_statuses)"""
        ...

    async def sum_withdrawals(self, influencer_id: str, currency: str, statuses: Sequence[WithdrawalStatus]) -> int:
        """Sum of AmountInPence over withdrawals in the given statuses"""
        ...

    async def get_influencer_withdrawals(
        self, influencer_id: str, currency: Optional[str] = None
    ) -> List[Withdrawal]:
        """Withdrawal history of an influencer, newest first"""
        ...

    async def get_stale_open_withdrawals(self, older_than: datetime, limit: int = 500) -> List[Withdrawal]:
        """PENDING/PROCESSING withdrawals last updated before older_than (stuck transfer legs)"""
        ...

    # ---- Bank accounts / payment methods ----

    async def create_bank_account(self, account: InfluencerBankAccount) -> InfluencerBankAccount:
        """Insert a bank account; a default account clears the other defaults of that currency"""
        ...

    async def get_bank_account(self, bank_account_id: str) -> Optional[InfluencerBankAccount]:
        """Get bank account by ID"""
        ...

    async def get_default_bank_account(self, influencer_id: str, currency: str) -> Optional[InfluencerBankAccount]:
        """Default payout destination for a currency"""
        ...

    async def get_influencer_bank_accounts(self, influencer_id: str) -> List[InfluencerBankAccount]:
        """Bank accounts of an influencer, defaults first"""
        ...

    async def create_payment_method(self, payment_method: PaymentMethod) -> PaymentMethod:
        """Insert a payment method; a default method clears the user's other default"""
        ...

    async def get_payment_method(self, payment_method_id: str) -> Optional[PaymentMethod]:
        """Get payment method by ID"""
        ...

    async def get_default_payment_method(self, user_id: str) -> Optional[PaymentMethod]:
        """The user's default saved instrument (at most one per user, any gateway)"""
        ...

    async def get_charge_payment_method(self, user_id: str, gateway: GatewayName) -> Optional[PaymentMethod]:
        """Saved instrument to charge on a gateway: the default if it is there, else the newest"""
        ...

    async def list_payment_methods(self, user_id: str) -> List[PaymentMethod]:
        """Reusable payment methods of a user, default first, then newest"""
        ...

    async def set_default_payment_method(self, user_id: str, payment_method_id: str) -> Optional[PaymentMethod]:
        """Make one reusable method the user's only default; None if it is not theirs or not reusable"""
        ...

    async def deactivate_payment_method(self, user_id: str, payment_method_id: str) -> Optional[PaymentMethod]:
        """Soft delete: the method stops being reusable and loses the default flag"""
        ...

    async def get_payment_method_by_authorization(self, user_id: str, authorization_code: str) -> Optional[PaymentMethod]:
        """Find an already saved authorization"""
        ...

    # ---- Platform settings ----

    async def get_setting(self, setting_key: str) -> Optional[PlatformSetting]:
        """Get a PlatformSettings row"""
        ...

    async def upsert_setting(self, setting: PlatformSetting) -> PlatformSetting:
        """Insert or replace a PlatformSettings row"""
        ...

    # ---- Webhook audit ----

    async def record_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        """Store a verified webhook delivery"""
        ...

    async def mark_webhook_event_matched(self, record_id: str, matched_entity: str, matched_id: str) -> None:
        """Link an audit row to the Transaction/Withdrawal it was applied to"""
        ...


# ====================
# Gateway Protocol
# ====================


@runtime_checkable
class PaymentGatewayProtocol(Protocol):
    """Uniform capability set of a payment provider adapter"""

    @property
    def name(self) -> GatewayName:
        ...

    def supports(self, currency: str, kind: OperationKind) -> bool:
        """Whether the adapter can move this currency in this direction"""
        ...

    async def initiate_charge(
        self,
        amount_minor_units: int,
        currency: str,
        payer_instrument: "PayerInstrument",
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> "ChargeResult":
        ...

    async def initiate_payout(
        self,
        amount_minor_units: int,
        currency: str,
        recipient_ref: str,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> "PayoutResult":
        ...

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        ...

    def parse_webhook(self, raw_body: bytes) -> "WebhookEvent":
        ...

    async def get_charge_status(self, gateway_ref: Optional[str], idempotency_key: str) -> "GatewayStatusResult":
        ...

    async def get_payout_status(self, gateway_ref: Optional[str], idempotency_key: str) -> "GatewayStatusResult":
        ...

    async def close(self) -> None:
        ...


# ====================
# Event Bus Protocol
# ====================


@runtime_checkable
class EventBusProtocol(Protocol):
    """Event publishing interface"""

    async def publish_event(self, event: Any) -> bool:
        """Publish an event"""
        ...


# ====================
# Custom Exceptions
# ====================


class SettlementServiceError(Exception):
    """Base exception for settlement service errors"""
    pass


class CampaignNotFoundError(SettlementServiceError):
    """Raised when campaign is not found"""
    pass


class MilestoneNotFoundError(SettlementServiceError):
    """Raised when milestone is not found"""
    pass


class TransactionNotFoundError(SettlementServiceError):
    """Raised when transaction is not found"""
    pass


class PayoutNotFoundError(SettlementServiceError):
    """Raised when payout is not found"""
    pass


class WithdrawalNotFoundError(SettlementServiceError):
    """Raised when withdrawal is not found"""
    pass


class BankAccountNotFoundError(SettlementServiceError):
    """Raised when bank account is not found or belongs to someone else"""
    pass


class PaymentMethodNotFoundError(SettlementServiceError):
    """Raised when a saved payment method is not found, not reusable or belongs to someone else"""
    pass


class InvalidMilestoneStateError(SettlementServiceError):
    """Raised when a milestone is not in a state that allows the operation"""

    def __init__(self, message: str, milestone_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        self.milestone_id = milestone_id
        self.status = status


class MilestonesAlreadyExistError(SettlementServiceError):
    """Raised when a schedule conflicts with an existing one"""
    pass


class MilestoneInvariantViolationError(SettlementServiceError):
    """Raised when milestone amounts do not sum to the campaign total"""

    def __init__(self, message: str, campaign_id: Optional[str] = None,
                 expected: Optional[int] = None, actual: Optional[int] = None):
        super().__init__(message)
        self.campaign_id = campaign_id
        self.expected = expected
        self.actual = actual


class InvalidAmountError(SettlementServiceError):
    """Raised when an amount is zero, negative or otherwise unusable"""
    pass


class InsufficientBalanceError(SettlementServiceError):
    """Raised when a withdrawal exceeds the available balance"""

    def __init__(self, message: str, available: Optional[int] = None, requested: Optional[int] = None):
        super().__init__(message)
        self.available = available
        self.requested = requested


class PaymentMethodRequiredError(SettlementServiceError):
    """Raised when an off-session charge has no saved instrument"""
    pass


class PayoutReleaseNotAllowedError(SettlementServiceError):
    """Raised when a payout cannot be released by the caller or in its state"""
    pass


class WithdrawalNotAllowedError(SettlementServiceError):
    """Raised when a withdrawal cannot be cancelled or modified"""
    pass


class UnsupportedCurrencyError(SettlementServiceError):
    """Raised when no gateway moves the currency in the requested direction"""

    def __init__(self, message: str, currency: Optional[str] = None, kind: Optional[str] = None):
        super().__init__(message)
        self.currency = currency
        self.kind = kind


class GatewayConfigurationError(SettlementServiceError):
    """Raised at startup when routing is incomplete or points at unusable adapters"""
    pass


class UnknownGatewayError(SettlementServiceError):
    """Raised when a gateway name is not registered"""
    pass


class WebhookSignatureError(SettlementServiceError):
    """Raised when a webhook signature does not verify"""
    pass


class WebhookPayloadError(SettlementServiceError):
    """Raised when a verified webhook body cannot be parsed"""
    pass


class InvalidSettingError(SettlementServiceError):
    """Raised when a platform setting value is invalid"""
    pass


# ---- Gateway adapter errors (internal to adapters, converted to typed results) ----


class GatewayError(Exception):
    """Base exception for provider calls"""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class TransientGatewayError(GatewayError):
    """Network failure, timeout, HTTP 429 or 5xx; safe to retry with the same idempotency key"""
    pass


class GatewayValidationError(GatewayError):
    """Rejected request (HTTP 4xx, declined instrument, unsupported currency); never retried"""
    pass


__all__ = [
    "SettlementRepositoryProtocol",
    "PaymentGatewayProtocol",
    "EventBusProtocol",
    "SettlementServiceError",
    "CampaignNotFoundError",
    "MilestoneNotFoundError",
    "TransactionNotFoundError",
    "PayoutNotFoundError",
    "WithdrawalNotFoundError",
    "BankAccountNotFoundError",
    "PaymentMethodNotFoundError",
    "InvalidMilestoneStateError",
    "MilestonesAlreadyExistError",
    "MilestoneInvariantViolationError",
    "InvalidAmountError",
    "InsufficientBalanceError",
    "PaymentMethodRequiredError",
    "PayoutReleaseNotAllowedError",
    "WithdrawalNotAllowedError",
    "UnsupportedCurrencyError",
    "GatewayConfigurationError",
    "UnknownGatewayError",
    "WebhookSignatureError",
    "WebhookPayloadError",
    "InvalidSettingError",
    "GatewayError",
    "TransientGatewayError",
    "GatewayValidationError",
]
