"""
Lifecycle Sweeper

Activates subscription grants whose issue_date has arrived and retires
grants whose expire_date has passed. Both passes are idempotent and process
each grant in its own transaction, so one failing grant never blocks the rest.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from .grant_pool import FREE_POOL, SUBSCRIPTION_POOL, GrantPool, as_utc, utc_now
from .models import (
    CreditStatement,
    LifecycleCycleResult,
    StatementTypeEnum,
    SweepPassEnum,
    SweepResult,
)
from .protocols import LedgerRepositoryProtocol
from .statements import new_statement

logger = logging.getLogger(__name__)


class LifecycleSweeper:
    """Issuance and expiration passes over the grant pools"""

    def __init__(self, repository: LedgerRepositoryProtocol):
        self.repository = repository

    # ====================
    # Issuance
    # ====================

    async def run_issuance(
        self, subscription_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> SweepResult:
        """
        Issue subscription grants that are due.

        Args:
            subscription_id: Restrict the pass to one subscription
            now: Reference time (defaults to current UTC time)

        Returns:
            SweepResult counting issued and failed grants
        """
        now = now or utc_now()
        result = SweepResult(pass_name=SweepPassEnum.ISSUANCE, subscription_id=subscription_id, processed_at=now)
        candidates = await self.repository.find_due_subscription_grants(now, subscription_id)
        for candidate in candidates:
            try:
                statement = await self._issue_grant(candidate["id"], now)
            except Exception as e:
                result.failed_count += 1
                logger.error(f"Failed to issue subscription grant {candidate['id']}: {e}", exc_info=True)
                continue

            if statement is not None:
                result.processed_count += 1
                result.total_amount += statement.amount
                result.statements.append(statement)

        if candidates:
            logger.info(
                f"Issuance pass: issued {result.processed_count} grants "
                f"({result.total_amount} credits), {result.failed_count} failed"
            )
        return result

    async def _issue_grant(self, grant_id: int, now: datetime) -> Optional[CreditStatement]:
        async with self.repository.transaction() as txn:
            grant = await SUBSCRIPTION_POOL.read(txn, grant_id)
            if grant is None:
                return None
            user_id = grant["user_id"]

            # Account before grant, the order consume and refund lock in
            account = await txn.get_account(user_id, for_update=True)
            grant = await SUBSCRIPTION_POOL.lock(txn, grant_id)
            # Re-check under lock; another sweeper may have issued it
            if (
                grant is None
                or grant["is_issued"]
                or grant["current_balance"] <= 0
                or as_utc(grant["issue_date"]) > now
            ):
                return None

            amount = grant["current_balance"]
            if account is None:
                account = await txn.create_account(user_id)

            balance_after = await txn.update_account_balance(user_id, amount)
            await SUBSCRIPTION_POOL.mark_issued(txn, grant)
            row = await txn.insert_statement(new_statement(
                user_id, StatementTypeEnum.ISSUE, amount, balance_after,
                order_id=grant["subscription_id"], pool=SUBSCRIPTION_POOL, source_issue_id=grant["id"],
                description=f"Subscription credit for {grant.get('widget_tag') or grant['subscription_id']}",
            ))

        logger.info(f"Issued subscription grant {grant_id}: {amount} credits to user {user_id}")
        return CreditStatement(**row)

    # ====================
    # Expiration
    # ====================

    async def run_expiration(
        self, subscription_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> SweepResult:
        """
        Retire expired grants that still carry balance.

        Without a subscription filter both free grants and issued
        subscription grants are swept; with one, only that subscription's
        grants are.

        Args:
            subscription_id: Restrict the pass to one subscription
            now: Reference time (defaults to current UTC time)

        Returns:
            SweepResult counting expired and failed grants
        """
        now = now or utc_now()
        result = SweepResult(pass_name=SweepPassEnum.EXPIRATION, subscription_id=subscription_id, processed_at=now)
        pools: Tuple[GrantPool, ...] = (SUBSCRIPTION_POOL,) if subscription_id else (FREE_POOL, SUBSCRIPTION_POOL)

        for pool in pools:
            candidates = await self.repository.find_expired_grants(pool.kind.value, now, subscription_id)
            for candidate in candidates:
                try:
                    statement = await self._expire_grant(pool, candidate["id"], now)
                except Exception as e:
                    result.failed_count += 1
                    logger.error(f"Failed to expire {pool} grant {candidate['id']}: {e}", exc_info=True)
                    continue

                if statement is not None:
                    result.processed_count += 1
                    result.total_amount += -statement.amount
                    result.statements.append(statement)

        if result.processed_count or result.failed_count:
            logger.info(
                f"Expiration pass: expired {result.processed_count} grants "
                f"({result.total_amount} credits), {result.failed_count} failed"
            )
        return result

    async def _expire_grant(self, pool: GrantPool, grant_id: int, now: datetime) -> Optional[CreditStatement]:
        async with self.repository.transaction() as txn:
            grant = await pool.read(txn, grant_id)
            if grant is None:
                return None
            user_id = grant["user_id"]

            account = await txn.get_account(user_id, for_update=True)
            grant = await pool.lock(txn, grant_id)
            if (
                grant is None
                or not pool.is_issued(grant)
                or grant["current_balance"] <= 0
                or not pool.is_expired(grant, now)
            ):
                return None

            balance = account["balance"] if account else 0

            removed = await pool.retire(txn, grant)
            # Never expire more than the account holds; any excess was
            # already spent as unallocated funds
            amount = min(removed, balance)
            if amount <= 0:
                logger.warning(f"{pool} grant {grant_id} expired with nothing left on account {user_id}")
                return None

            balance_after = await txn.update_account_balance(user_id, -amount)
            row = await txn.insert_statement(new_statement(
                user_id, StatementTypeEnum.EXPIRE, -amount, balance_after,
                order_id=grant.get("subscription_id"), pool=pool, source_issue_id=grant["id"],
            ))

        logger.info(f"Expired {pool} grant {grant_id}: {amount} credits from user {user_id}")
        return CreditStatement(**row)

    # ====================
    # Full cycle
    # ====================

    async def run_cycle(
        self, subscription_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> LifecycleCycleResult:
        """Expiration pass followed by issuance pass"""
        now = now or utc_now()
        expiration = await self.run_expiration(subscription_id, now)
        issuance = await self.run_issuance(subscription_id, now)
        return LifecycleCycleResult(expiration=expiration, issuance=issuance)


__all__ = ["LifecycleSweeper"]
