"""
Gateway Adapter Models

Typed results exchanged between the settlement engine and the payment
provider adapters. Expected failure modes (declines, validation errors,
exhausted retries) are values of GatewayOutcome, never exceptions.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..models import GatewayName, OperationKind


class GatewayOutcome(str, Enum):
    """Normalized provider outcome"""
    SUCCEEDED = "succeeded"              # money moved, confirmed inline
    PENDING = "pending"                  # accepted, final state arrives by webhook/poll
    REQUIRES_ACTION = "requires_action"  # payer must complete a redirect
    FAILED = "failed"                    # terminal: declined or rejected
    UNKNOWN = "unknown"                  # transient errors exhausted retries; state unknown
    NOT_FOUND = "not_found"              # provider has no record of the reference


class PayerInstrument(BaseModel):
    """How the payer is charged: a saved authorization or a redirect flow"""
    payer_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    authorization_code: Optional[str] = None
    customer_code: Optional[str] = None
    success_url: Optional[str] = None
    failure_url: Optional[str] = None

    @property
    def is_saved(self) -> bool:
        return bool(self.authorization_code)


class ChargeResult(BaseModel):
    """Result of InitiateCharge"""
    gateway: GatewayName
    outcome: GatewayOutcome
    gateway_ref: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    redirect_url: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class PayoutResult(BaseModel):
    """Result of InitiatePayout"""
    gateway: GatewayName
    outcome: GatewayOutcome
    gateway_ref: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class GatewayStatusResult(BaseModel):
    """Result of an idempotent status check"""
    gateway: GatewayName
    outcome: GatewayOutcome
    gateway_ref: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class SavedAuthorization(BaseModel):
    """Reusable card authorization reported by a successful charge"""
    authorization_code: str
    customer_code: Optional[str] = None
    email: Optional[str] = None
    card_brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    reusable: bool = True


class WebhookEvent(BaseModel):
    """Provider webhook normalized for reconciliation"""
    gateway: GatewayName
    event_type: str
    kind: Optional[OperationKind] = None
    outcome: GatewayOutcome = GatewayOutcome.PENDING
    gateway_ref: Optional[str] = None
    reference: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    is_reversal: bool = False
    authorization: Optional[SavedAuthorization] = None
    data: Dict[str, Any] = Field(default_factory=dict)
