"""
Ledger Service Contracts

This module provides the contracts for ledger_service testing.
"""

from .data_contract import (
    LedgerTestDataFactory,
    SubscriptionRequestBuilder,
)

__all__ = [
    "LedgerTestDataFactory",
    "SubscriptionRequestBuilder",
]
