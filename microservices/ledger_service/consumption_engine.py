"""
Consumption Engine

Debits credits across sources in a fixed order:
free grants -> subscription grants -> unallocated (top-up) balance.
Within a pool the soonest-expiring grant is used first.
"""

import logging
from datetime import datetime
from typing import Optional

from .grant_pool import FREE_POOL, POOL_ORDER, SUBSCRIPTION_POOL, utc_now
from .models import ConsumptionResult, StatementTypeEnum
from .protocols import (
    InsufficientBalanceError,
    LedgerRepositoryProtocol,
    LedgerValidationError,
)
from .statements import new_statement, to_models

logger = logging.getLogger(__name__)


class ConsumptionEngine:
    """Atomic multi-source debit"""

    def __init__(self, repository: LedgerRepositoryProtocol):
        self.repository = repository

    async def consume(
        self,
        user_id: str,
        amount: int,
        order_id: str,
        allow_free_credit: bool = True,
        now: Optional[datetime] = None,
    ) -> ConsumptionResult:
        """
        Consume credits for an order.

        The account row is locked before the sufficiency check so concurrent
        consumptions for one user serialize. One consume statement is written
        per grant touched plus one for any unallocated remainder, and the
        account balance is decremented once by the full amount.

        Args:
            user_id: User identifier
            amount: Amount to consume (must be > 0)
            order_id: Order the consumption belongs to
            allow_free_credit: Whether free grants may be used
            now: Reference time (defaults to current UTC time)

        Returns:
            ConsumptionResult with per-source totals and written statements

        Raises:
            LedgerValidationError: If amount <= 0 or order_id is empty
            InsufficientBalanceError: If the usable balance is below amount
        """
        if amount <= 0:
            raise LedgerValidationError("Consumption amount must be positive")
        if not order_id:
            raise LedgerValidationError("order_id is required")

        now = now or utc_now()

        async with self.repository.transaction() as txn:
            account = await txn.get_account(user_id, for_update=True)
            balance = account["balance"] if account else 0

            pools = POOL_ORDER if allow_free_credit else tuple(p for p in POOL_ORDER if p is not FREE_POOL)
            active = {pool: await pool.load_active(txn, user_id, now) for pool in pools}

            usable = balance
            if not allow_free_credit:
                free_grants = await FREE_POOL.load_active(txn, user_id, now)
                usable -= sum(g["current_balance"] for g in free_grants)

            if account is None or usable < amount:
                raise InsufficientBalanceError(
                    "Insufficient credits",
                    available=max(usable, 0),
                    required=amount,
                )

            remaining = amount
            running = balance
            rows = []
            by_pool = {}

            for pool in pools:
                plan, remaining = pool.plan_debit(active[pool], remaining)
                for grant, portion in plan:
                    await pool.debit(txn, grant, portion)
                    running -= portion
                    rows.append(new_statement(
                        user_id, StatementTypeEnum.CONSUME, -portion, running,
                        order_id=order_id, pool=pool, source_issue_id=grant["id"],
                    ))
                    by_pool[pool] = by_pool.get(pool, 0) + portion

            if remaining > 0:
                running -= remaining
                rows.append(new_statement(
                    user_id, StatementTypeEnum.CONSUME, -remaining, running, order_id=order_id,
                ))

            balance_after = await txn.update_account_balance(user_id, -amount)
            if balance_after != running:
                raise RuntimeError(
                    f"Balance drift for user {user_id}: expected {running}, got {balance_after}"
                )

            statements = [await txn.insert_statement(row) for row in rows]

        logger.info(
            f"Consumed {amount} credits from user {user_id} for order {order_id}: "
            f"{len(statements)} statements, balance {balance} -> {balance_after}"
        )

        return ConsumptionResult(
            user_id=user_id,
            order_id=order_id,
            total_consumed=amount,
            free_consumed=by_pool.get(FREE_POOL, 0),
            subscription_consumed=by_pool.get(SUBSCRIPTION_POOL, 0),
            unallocated_consumed=max(remaining, 0),
            balance_after=balance_after,
            statements=to_models(statements),
        )


__all__ = ["ConsumptionEngine"]
