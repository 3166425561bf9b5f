"""
Ledger Service Data Repository

Data access layer - PostgreSQL via asyncpg (Async)
Implements LedgerRepositoryProtocol and LedgerTransactionProtocol from protocols.py
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import asyncpg

from core.config import InfraConfig
from core.postgres_client import PostgresClientWrapper

from .grant_pool import GrantKind

logger = logging.getLogger(__name__)


SCHEMA = "ledger"
ACCOUNTS_TABLE = "credit_accounts"
STATEMENTS_TABLE = "credit_statements"
FREE_GRANTS_TABLE = "free_credit_grants"
SUBSCRIPTION_GRANTS_TABLE = "subscription_credit_grants"
SUBSCRIPTIONS_TABLE = "subscriptions"

_GRANT_TABLES = {
    GrantKind.FREE.value: FREE_GRANTS_TABLE,
    GrantKind.SUBSCRIPTION.value: SUBSCRIPTION_GRANTS_TABLE,
}


def _row_to_dict(row: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    """Convert a record to a dict, decoding JSONB columns"""
    if row is None:
        return None
    data = dict(row)
    metadata = data.get("subscription_metadata")
    if isinstance(metadata, str):
        data["subscription_metadata"] = json.loads(metadata)
    return data


class LedgerTransaction:
    """Ledger operations bound to one connection inside an open transaction"""

    def __init__(self, conn: asyncpg.Connection, schema: str = SCHEMA):
        self.conn = conn
        self.schema = schema

    def _grant_table(self, kind: str) -> str:
        try:
            return f"{self.schema}.{_GRANT_TABLES[kind]}"
        except KeyError:
            raise ValueError(f"Unknown grant pool: {kind}")

    # ====================
    # Accounts
    # ====================

    async def get_account(self, user_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self.schema}.{ACCOUNTS_TABLE}
            WHERE user_id = $1
            {"FOR UPDATE" if for_update else ""}
        '''
        return _row_to_dict(await self.conn.fetchrow(query, user_id))

    async def create_account(self, user_id: str) -> Dict[str, Any]:
        query = f'''
            INSERT INTO {self.schema}.{ACCOUNTS_TABLE} (user_id, balance)
            VALUES ($1, 0)
            ON CONFLICT (user_id) DO NOTHING
        '''
        await self.conn.execute(query, user_id)
        return await self.get_account(user_id, for_update=True)

    async def update_account_balance(self, user_id: str, balance_delta: int) -> int:
        query = f'''
            UPDATE {self.schema}.{ACCOUNTS_TABLE}
            SET balance = balance + $2, updated_at = NOW()
            WHERE user_id = $1
            RETURNING balance
        '''
        balance = await self.conn.fetchval(query, user_id, balance_delta)
        if balance is None:
            raise LookupError(f"Credit account not found for user {user_id}")
        return balance

    # ====================
    # Statements
    # ====================

    async def insert_statement(self, statement_data: Dict[str, Any]) -> Dict[str, Any]:
        query = f'''
            INSERT INTO {self.schema}.{STATEMENTS_TABLE} (
                user_id, statement_type, amount, balance_after, order_id,
                is_free_credit, is_subscription_credit, source_issue_id, description
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
        '''
        row = await self.conn.fetchrow(
            query,
            statement_data["user_id"],
            statement_data["statement_type"],
            statement_data["amount"],
            statement_data["balance_after"],
            statement_data.get("order_id"),
            statement_data.get("is_free_credit", False),
            statement_data.get("is_subscription_credit", False),
            statement_data.get("source_issue_id"),
            statement_data.get("description"),
        )
        return _row_to_dict(row)

    async def get_order_statements(
        self, user_id: str, order_id: str, statement_type: str
    ) -> List[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self.schema}.{STATEMENTS_TABLE}
            WHERE user_id = $1 AND order_id = $2 AND statement_type = $3
            ORDER BY id ASC
        '''
        rows = await self.conn.fetch(query, user_id, order_id, statement_type)
        return [_row_to_dict(r) for r in rows]

    async def has_statement(self, user_id: str, statement_type: str) -> bool:
        query = f'''
            SELECT EXISTS (
                SELECT 1 FROM {self.schema}.{STATEMENTS_TABLE}
                WHERE user_id = $1 AND statement_type = $2
            )
        '''
        return bool(await self.conn.fetchval(query, user_id, statement_type))

    # ====================
    # Grants
    # ====================

    async def get_active_grants(
        self, kind: str, user_id: str, now: datetime, for_update: bool = True
    ) -> List[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self._grant_table(kind)}
            WHERE user_id = $1
              AND is_issued = TRUE
              AND current_balance > 0
              AND expire_date >= $2
            ORDER BY expire_date ASC, id ASC
            {"FOR UPDATE" if for_update else ""}
        '''
        rows = await self.conn.fetch(query, user_id, now)
        return [_row_to_dict(r) for r in rows]

    async def get_grant(self, kind: str, grant_id: int, for_update: bool = True) -> Optional[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self._grant_table(kind)}
            WHERE id = $1
            {"FOR UPDATE" if for_update else ""}
        '''
        return _row_to_dict(await self.conn.fetchrow(query, grant_id))

    async def update_grant(
        self, kind: str, grant_id: int, current_balance: int, is_issued: Optional[bool] = None
    ) -> None:
        query = f'''
            UPDATE {self._grant_table(kind)}
            SET current_balance = $2,
                is_issued = COALESCE($3, is_issued),
                updated_at = NOW()
            WHERE id = $1
        '''
        await self.conn.execute(query, grant_id, current_balance, is_issued)

    async def create_free_grant(self, grant_data: Dict[str, Any]) -> Dict[str, Any]:
        query = f'''
            INSERT INTO {self.schema}.{FREE_GRANTS_TABLE} (
                user_id, total_granted, current_balance, issue_date, expire_date,
                is_issued, issue_type, widget_tag, app_id, invited_user_id, description
            ) VALUES ($1, $2, $3, $4, $5, TRUE, $6, $7, $8, $9, $10)
            RETURNING *
        '''
        row = await self.conn.fetchrow(
            query,
            grant_data["user_id"],
            grant_data["total_granted"],
            grant_data["current_balance"],
            grant_data["issue_date"],
            grant_data["expire_date"],
            grant_data["issue_type"],
            grant_data.get("widget_tag"),
            grant_data.get("app_id"),
            grant_data.get("invited_user_id"),
            grant_data.get("description"),
        )
        return _row_to_dict(row)

    async def create_subscription_grant(self, grant_data: Dict[str, Any]) -> Dict[str, Any]:
        query = f'''
            INSERT INTO {self.schema}.{SUBSCRIPTION_GRANTS_TABLE} (
                user_id, subscription_id, widget_tag, total_granted, current_balance,
                issue_date, expire_date, is_issued
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, FALSE)
            RETURNING *
        '''
        row = await self.conn.fetchrow(
            query,
            grant_data["user_id"],
            grant_data["subscription_id"],
            grant_data.get("widget_tag"),
            grant_data["total_granted"],
            grant_data["current_balance"],
            grant_data["issue_date"],
            grant_data["expire_date"],
        )
        return _row_to_dict(row)

    async def delete_unissued_grants(self, subscription_id: str) -> int:
        query = f'''
            DELETE FROM {self.schema}.{SUBSCRIPTION_GRANTS_TABLE}
            WHERE subscription_id = $1 AND is_issued = FALSE
        '''
        status = await self.conn.execute(query, subscription_id)
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])

    # ====================
    # Subscriptions
    # ====================

    async def get_subscription(self, subscription_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self.schema}.{SUBSCRIPTIONS_TABLE}
            WHERE subscription_id = $1
            {"FOR UPDATE" if for_update else ""}
        '''
        return _row_to_dict(await self.conn.fetchrow(query, subscription_id))

    async def get_subscription_by_tag(self, user_id: str, widget_tag: str) -> Optional[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self.schema}.{SUBSCRIPTIONS_TABLE}
            WHERE user_id = $1 AND widget_tag = $2
            FOR UPDATE
        '''
        return _row_to_dict(await self.conn.fetchrow(query, user_id, widget_tag))

    async def save_subscription(self, subscription_data: Dict[str, Any], create: bool) -> Dict[str, Any]:
        params = [
            subscription_data["subscription_id"],
            subscription_data["user_id"],
            subscription_data["widget_tag"],
            subscription_data.get("product_name"),
            subscription_data["period_start"],
            subscription_data["period_end"],
            subscription_data.get("cancel_at_period_end", False),
            json.dumps(subscription_data.get("subscription_metadata") or {}),
        ]
        if create:
            query = f'''
                INSERT INTO {self.schema}.{SUBSCRIPTIONS_TABLE} (
                    subscription_id, user_id, widget_tag, product_name,
                    period_start, period_end, cancel_at_period_end, subscription_metadata
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
                RETURNING *
            '''
        else:
            query = f'''
                UPDATE {self.schema}.{SUBSCRIPTIONS_TABLE}
                SET user_id = $2, widget_tag = $3, product_name = $4,
                    period_start = $5, period_end = $6, cancel_at_period_end = $7,
                    subscription_metadata = $8::jsonb, updated_at = NOW()
                WHERE subscription_id = $1
                RETURNING *
            '''
        return _row_to_dict(await self.conn.fetchrow(query, *params))

    async def delete_subscription(self, subscription_id: str) -> bool:
        query = f'''
            DELETE FROM {self.schema}.{SUBSCRIPTIONS_TABLE}
            WHERE subscription_id = $1
        '''
        status = await self.conn.execute(query, subscription_id)
        return status.endswith(" 1")


class LedgerRepository:
    """Ledger service data repository - PostgreSQL (Async)"""

    def __init__(
        self,
        db: Optional[PostgresClientWrapper] = None,
        config: Optional[InfraConfig] = None,
    ):
        config = config or InfraConfig.from_env()
        self.db = db or PostgresClientWrapper("ledger_service", config=config)
        # Fixed by migrations/001_create_ledger_schema.sql
        self.schema = SCHEMA

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Ledger repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Ledger repository database connection closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerTransaction]:
        """One database transaction; rolls back if the block raises"""
        async with self.db.transaction() as conn:
            yield LedgerTransaction(conn, self.schema)

    async def check_connection(self) -> bool:
        result = await self.db.health_check()
        return bool(result.get("healthy"))

    # ====================
    # Read-only queries
    # ====================

    async def get_account(self, user_id: str) -> Optional[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self.schema}.{ACCOUNTS_TABLE}
            WHERE user_id = $1
        '''
        return await self.db.query_row(query, [user_id])

    async def get_active_grant_balance(self, kind: str, user_id: str, now: datetime) -> int:
        table = _GRANT_TABLES.get(kind)
        if table is None:
            raise ValueError(f"Unknown grant pool: {kind}")
        query = f'''
            SELECT COALESCE(SUM(current_balance), 0) AS total
            FROM {self.schema}.{table}
            WHERE user_id = $1 AND is_issued = TRUE
              AND current_balance > 0 AND expire_date >= $2
        '''
        row = await self.db.query_row(query, [user_id, now])
        return int(row["total"]) if row else 0

    async def list_statements(
        self,
        user_id: str,
        statement_type: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        conditions = ["user_id = $1"]
        params: List[Any] = [user_id]

        if statement_type:
            params.append(statement_type)
            conditions.append(f"statement_type = ${len(params)}")
        if order_id:
            params.append(order_id)
            conditions.append(f"order_id = ${len(params)}")

        where_clause = " AND ".join(conditions)

        count_query = f'''
            SELECT COUNT(*) AS total FROM {self.schema}.{STATEMENTS_TABLE}
            WHERE {where_clause}
        '''
        count_row = await self.db.query_row(count_query, params)
        total = int(count_row["total"]) if count_row else 0

        query = f'''
            SELECT * FROM {self.schema}.{STATEMENTS_TABLE}
            WHERE {where_clause}
            ORDER BY id DESC
            LIMIT {int(limit)} OFFSET {int(offset)}
        '''
        rows = await self.db.query(query, params)
        return rows, total

    async def get_statement_totals(self, user_id: str) -> Tuple[int, int]:
        query = f'''
            SELECT COALESCE(SUM(amount), 0) AS total, COUNT(*) AS count
            FROM {self.schema}.{STATEMENTS_TABLE}
            WHERE user_id = $1
        '''
        row = await self.db.query_row(query, [user_id])
        return int(row["total"]), int(row["count"])

    async def get_subscription_grants(self, subscription_id: str) -> List[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self.schema}.{SUBSCRIPTION_GRANTS_TABLE}
            WHERE subscription_id = $1
            ORDER BY issue_date ASC, id ASC
        '''
        return await self.db.query(query, [subscription_id])

    async def find_due_subscription_grants(
        self, now: datetime, subscription_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query = f'''
            SELECT * FROM {self.schema}.{SUBSCRIPTION_GRANTS_TABLE}
            WHERE is_issued = FALSE AND current_balance > 0 AND issue_date <= $1
              AND ($2::text IS NULL OR subscription_id = $2)
            ORDER BY issue_date ASC, id ASC
        '''
        return await self.db.query(query, [now, subscription_id])

    async def find_expired_grants(
        self, kind: str, now: datetime, subscription_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        if kind == GrantKind.FREE.value:
            query = f'''
                SELECT * FROM {self.schema}.{FREE_GRANTS_TABLE}
                WHERE current_balance > 0 AND expire_date < $1
                ORDER BY expire_date ASC, id ASC
            '''
            return await self.db.query(query, [now])

        if kind == GrantKind.SUBSCRIPTION.value:
            query = f'''
                SELECT * FROM {self.schema}.{SUBSCRIPTION_GRANTS_TABLE}
                WHERE is_issued = TRUE AND current_balance > 0 AND expire_date < $1
                  AND ($2::text IS NULL OR subscription_id = $2)
                ORDER BY expire_date ASC, id ASC
            '''
            return await self.db.query(query, [now, subscription_id])

        raise ValueError(f"Unknown grant pool: {kind}")


__all__ = ["LedgerRepository", "LedgerTransaction"]
