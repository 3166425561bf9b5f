"""
PostgreSQL Client Wrapper

Centralized asyncpg pool wrapper.
Provides a consistent database access pattern for services that need real
transactions and row-level locks.

Usage:
    from core.postgres_client import PostgresClientWrapper

    db = PostgresClientWrapper("ledger_service", config=settings.infrastructure)
    await db.connect()

    # Execute queries
    rows = await db.query("SELECT * FROM ledger.credit_accounts WHERE user_id = $1", [user_id])

    # Run a transaction
    async with db.transaction() as conn:
        await conn.execute("UPDATE ...", ...)
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class PostgresClientWrapper:
    """
    PostgreSQL client wrapper around an asyncpg connection pool.

    Provides:
    - Lazy pool creation from InfraConfig
    - Row-to-dict conversion for query helpers
    - Transaction context manager yielding a pooled connection
    """

    def __init__(self, service_name: str, config: Optional[InfraConfig] = None):
        """
        Initialize PostgreSQL client wrapper.

        Args:
            service_name: Name of the service using this client
            config: Infrastructure config (loaded from environment if not provided)
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self._pool: Optional[asyncpg.Pool] = None

        logger.info(
            f"PostgreSQL client initialized for {service_name}: "
            f"{self.config.postgres_host}:{self.config.postgres_port}/{self.config.postgres_db}"
        )

    @property
    def pool(self) -> asyncpg.Pool:
        """Get underlying pool (raises if not connected)"""
        if self._pool is None:
            raise RuntimeError(f"PostgreSQL pool for {self.service_name} is not connected")
        return self._pool

    async def connect(self):
        """Create the connection pool"""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            dsn=self.config.postgres_dsn,
            min_size=self.config.postgres_pool_min_size,
            max_size=self.config.postgres_pool_max_size,
            command_timeout=self.config.postgres_command_timeout,
            server_settings={"application_name": self.service_name},
        )
        logger.info(f"PostgreSQL pool connected for {self.service_name}")

    async def health_check(self) -> Dict[str, Any]:
        """Check database health"""
        try:
            value = await self.pool.fetchval("SELECT 1")
            return {"healthy": value == 1}
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"healthy": False, "error": str(e)}

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        rows = await self.pool.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        row = await self.pool.fetchrow(sql, *(params or []))
        return dict(row) if row else None

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        """Execute SQL statement"""
        return await self.pool.execute(sql, *(params or []))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and run the block inside one transaction"""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def close(self):
        """Close the pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")

