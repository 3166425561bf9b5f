"""
Ledger Service Component Test Fixtures

Wires LedgerService to the in-memory repository and mock event bus from
tests.fixtures.ledger_mocks.
"""

import pytest

from microservices.ledger_service.ledger_service import LedgerService
from tests.contracts.ledger.data_contract import LedgerTestDataFactory
from tests.fixtures.ledger_mocks import MockEventBus, MockLedgerRepository


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_repository():
    """Provide in-memory ledger repository"""
    return MockLedgerRepository()


@pytest.fixture
def mock_event_bus():
    """Provide mock event bus"""
    return MockEventBus()


@pytest.fixture
def ledger_service(mock_repository, mock_event_bus):
    """Provide LedgerService wired to mocks"""
    return LedgerService(repository=mock_repository, event_bus=mock_event_bus)


@pytest.fixture
def data_factory():
    """Provide test data factory"""
    return LedgerTestDataFactory


@pytest.fixture
async def account_user(ledger_service, data_factory):
    """User with an open account and no credits"""
    user_id = data_factory.make_user_id()
    await ledger_service.open_account(user_id)
    return user_id
