"""
Ledger Service API Test Configuration

Runs the FastAPI app in-process over httpx's ASGI transport, with the
ledger service dependency overridden to use in-memory doubles.
"""
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from microservices.ledger_service.ledger_service import LedgerService
from microservices.ledger_service.main import app, get_ledger_service
from tests.contracts.ledger.data_contract import LedgerTestDataFactory
from tests.fixtures.ledger_mocks import MockEventBus, MockLedgerRepository


LEDGER_API_PATH = "/api/v1/ledger"


@pytest.fixture
def api_repository() -> MockLedgerRepository:
    return MockLedgerRepository()


@pytest.fixture
def api_event_bus() -> MockEventBus:
    return MockEventBus()


@pytest.fixture
def api_ledger_service(api_repository, api_event_bus) -> LedgerService:
    return LedgerService(repository=api_repository, event_bus=api_event_bus)


@pytest_asyncio.fixture
async def http_client(api_ledger_service) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the app with the service dependency overridden"""
    app.dependency_overrides[get_ledger_service] = lambda: api_ledger_service
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.pop(get_ledger_service, None)


@pytest_asyncio.fixture
async def api_user(http_client) -> str:
    """User with an open account"""
    user_id = LedgerTestDataFactory.make_user_id()
    response = await http_client.post(f"{LEDGER_API_PATH}/accounts", json={"user_id": user_id})
    assert response.status_code == 200
    return user_id
