"""
Ledger Service Integration Test Fixtures

Runs LedgerRepository against a real PostgreSQL. The schema migration is
applied on setup; tests are skipped when the database is unreachable.
"""

import os
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
import pytest_asyncio

from core.config import InfraConfig
from microservices.ledger_service.ledger_repository import LedgerRepository
from microservices.ledger_service.ledger_service import LedgerService
from tests.contracts.ledger.data_contract import LedgerTestDataFactory

MIGRATIONS_DIR = Path(__file__).resolve().parents[3] / "microservices" / "ledger_service" / "migrations"


@pytest_asyncio.fixture
async def ledger_repository() -> AsyncGenerator[LedgerRepository, None]:
    """Connected repository with the ledger schema in place"""
    if os.getenv("SKIP_DB_TESTS"):
        pytest.skip("PostgreSQL tests disabled")

    repository = LedgerRepository(config=InfraConfig.from_env())
    try:
        await repository.initialize()
    except (OSError, asyncpg.PostgresError) as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    for migration in sorted(MIGRATIONS_DIR.glob("*.sql")):
        await repository.db.execute(migration.read_text())

    yield repository
    await repository.close()


@pytest.fixture
def db_ledger_service(ledger_repository) -> LedgerService:
    return LedgerService(repository=ledger_repository)


@pytest.fixture
def data_factory():
    return LedgerTestDataFactory
