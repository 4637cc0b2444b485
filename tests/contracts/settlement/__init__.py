"""
Settlement Service Contracts

This module provides the contracts for settlement_service testing.
"""

from .data_contract import (
    InitiatePaymentRequestBuilder,
    SettlementTestDataFactory,
)

__all__ = [
    "SettlementTestDataFactory",
    "InitiatePaymentRequestBuilder",
]
