#!/usr/bin/env python3
"""
Core Module for the Ledger Microservice

Shared infrastructure used by the ledger service.

COMPONENTS:
    - config/: Environment-driven configuration (LedgerConfig and friends)
    - logger.py: Service logger setup
    - postgres_client.py: asyncpg pool wrapper with transaction support
    - nats_client.py: NATS JetStream event bus for event-driven integration

USAGE:
    from core.config import settings
    from core.postgres_client import PostgresClientWrapper

    client = PostgresClientWrapper("ledger_service", config=settings.infrastructure)
"""

__version__ = "2.0.0"
