"""
Shared Test Fixtures

In-memory test doubles used across the component and API test layers.

Structure:
    - ledger_mocks.py: Repository, transaction and event bus doubles
"""

from .ledger_mocks import (
    MockEventBus,
    MockLedgerRepository,
    MockLedgerTransaction,
)

__all__ = [
    "MockEventBus",
    "MockLedgerRepository",
    "MockLedgerTransaction",
]
