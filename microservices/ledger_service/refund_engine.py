"""
Refund Engine

Reverses a prior consumption portion by portion, restoring each portion to
the pool it came from. Portions drawn from grants that have since expired
are not restored.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from .grant_pool import pool_for_statement, utc_now
from .models import RefundResult, StatementTypeEnum
from .protocols import LedgerRepositoryProtocol, LedgerValidationError
from .statements import new_statement, source_key, to_models

logger = logging.getLogger(__name__)


class RefundEngine:
    """Atomic source-aware reversal of a consumption"""

    def __init__(self, repository: LedgerRepositoryProtocol):
        self.repository = repository

    async def refund(
        self,
        user_id: str,
        amount: int,
        order_id: str,
        now: Optional[datetime] = None,
    ) -> RefundResult:
        """
        Refund up to ``amount`` of the credits consumed for an order.

        Consume statements are walked oldest first. Each consumed portion can
        be refunded at most once in total: refunds already recorded for the
        same order and source are subtracted first, so repeating a refund
        does not credit the user twice.

        Args:
            user_id: User identifier
            amount: Maximum amount to refund (must be > 0)
            order_id: Order whose consumption is reversed
            now: Reference time for the expiry check

        Returns:
            RefundResult with the refunded amount, the amount skipped because
            the source grant expired, and the statements written

        Raises:
            LedgerValidationError: If amount <= 0 or order_id is empty
        """
        if amount <= 0:
            raise LedgerValidationError("Refund amount must be positive")
        if not order_id:
            raise LedgerValidationError("order_id is required")

        now = now or utc_now()
        result = RefundResult(user_id=user_id, order_id=order_id, requested=amount)

        async with self.repository.transaction() as txn:
            account = await txn.get_account(user_id, for_update=True)
            if account is None:
                logger.warning(f"Refund for order {order_id}: user {user_id} has no account")
                return result

            consumed = await txn.get_order_statements(user_id, order_id, StatementTypeEnum.CONSUME.value)
            if not consumed:
                logger.warning(f"Refund for order {order_id}: no consumption found for user {user_id}")
                result.balance_after = account["balance"]
                return result

            prior_refunds = await txn.get_order_statements(user_id, order_id, StatementTypeEnum.REFUND.value)
            already_refunded: Dict[tuple, int] = {}
            for stmt in prior_refunds:
                key = source_key(stmt)
                already_refunded[key] = already_refunded.get(key, 0) + stmt["amount"]

            remaining = amount
            running = account["balance"]
            rows = []

            for stmt in consumed:
                if remaining <= 0:
                    break

                key = source_key(stmt)
                portion_consumed = -stmt["amount"]
                covered = min(portion_consumed, already_refunded.get(key, 0))
                already_refunded[key] = already_refunded.get(key, 0) - covered
                refundable = min(portion_consumed - covered, remaining)
                if refundable <= 0:
                    continue

                pool = pool_for_statement(stmt)
                source_issue_id = stmt.get("source_issue_id")

                if pool is not None and source_issue_id is not None:
                    grant = await pool.lock(txn, source_issue_id)
                    if grant is None or pool.is_expired(grant, now):
                        logger.warning(
                            f"{pool} grant {source_issue_id} expired, not refunding "
                            f"{refundable} of statement {stmt['id']} (order {order_id})"
                        )
                        result.skipped_expired += refundable
                        continue

                    refundable = pool.restorable(grant, refundable)
                    if refundable <= 0:
                        continue
                    await pool.credit(txn, grant, refundable)

                remaining -= refundable
                running += refundable
                rows.append(new_statement(
                    user_id, StatementTypeEnum.REFUND, refundable, running,
                    order_id=order_id, pool=pool, source_issue_id=source_issue_id,
                ))

            refunded = amount - remaining
            balance_after = account["balance"]
            statements = []
            if refunded > 0:
                balance_after = await txn.update_account_balance(user_id, refunded)
                statements = [await txn.insert_statement(row) for row in rows]

        if refunded > 0:
            logger.info(
                f"Refunded {refunded}/{amount} credits to user {user_id} for order {order_id}"
                f" (skipped {result.skipped_expired} expired)"
            )
        else:
            logger.info(f"Nothing refundable for user {user_id}, order {order_id}")

        result.refunded = refunded
        result.balance_after = balance_after
        result.statements = to_models(statements)
        return result


__all__ = ["RefundEngine"]
