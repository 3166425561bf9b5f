"""
Ledger Service - Business Logic Layer

Facade over the credit ledger:
- Accounts, balances and reconciliation
- Top-ups (paid, unallocated credit) and free credit grants
- Consumption across free -> subscription -> unallocated sources
- Source-aware refunds
- Subscription credit scheduling and the lifecycle sweeper
- Event publishing after each committed mutation
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .consumption_engine import ConsumptionEngine
from .events.publishers import (
    publish_credits_consumed,
    publish_credits_expired,
    publish_credits_issued,
    publish_credits_refunded,
    publish_credits_topped_up,
    publish_subscription_cancelled,
    publish_subscription_updated,
)
from .grant_pool import FREE_POOL, SUBSCRIPTION_POOL, utc_now
from .lifecycle_sweeper import LifecycleSweeper
from .models import (
    BalanceSummary,
    CancelSubscriptionResponse,
    ConsumptionResult,
    CreditAccount,
    CreditStatement,
    FreeCreditGrant,
    FreeCreditIssueTypeEnum,
    LifecycleCycleResult,
    ReconciliationReport,
    RefundResult,
    StatementListResponse,
    StatementTypeEnum,
    SubscriptionCreditSchedule,
    SubscriptionDetail,
    SubscriptionResponse,
    SweepResult,
)
from .protocols import (
    AccountNotFoundError,
    EventBusProtocol,
    LedgerRepositoryProtocol,
    LedgerValidationError,
)
from .refund_engine import RefundEngine
from .statements import new_statement
from .subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Ledger Service - Core business logic

    Every mutation runs in one repository transaction. Events are published
    only after that transaction has committed.
    """

    DEFAULT_FREE_CREDIT_EXPIRE_DAYS = 180
    DEFAULT_INVITE_REWARD_AMOUNT = 500
    MAX_PAGE_SIZE = 100

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        event_bus: Optional[EventBusProtocol] = None,
        free_credit_expire_days: int = DEFAULT_FREE_CREDIT_EXPIRE_DAYS,
        invite_reward_amount: int = DEFAULT_INVITE_REWARD_AMOUNT,
    ):
        """
        Initialize ledger service with dependencies.

        Args:
            repository: Ledger repository for data access
            event_bus: Event bus for publishing events (optional)
            free_credit_expire_days: Default lifetime of free credit grants
            invite_reward_amount: Free credit for the inviter on a user's first top-up (0 disables)
        """
        self.repository = repository
        self.event_bus = event_bus
        self.free_credit_expire_days = free_credit_expire_days
        self.invite_reward_amount = invite_reward_amount

        self.consumption_engine = ConsumptionEngine(repository)
        self.refund_engine = RefundEngine(repository)
        self.sweeper = LifecycleSweeper(repository)
        self.subscription_manager = SubscriptionManager(repository)

    # ====================
    # Accounts & Balances
    # ====================

    async def open_account(self, user_id: str) -> CreditAccount:
        """
        Open a credit account with zero balance. Idempotent.

        Args:
            user_id: User identifier

        Returns:
            The new or existing account

        Raises:
            LedgerValidationError: If user_id is empty
        """
        if not user_id or not user_id.strip():
            raise LedgerValidationError("user_id is required")

        async with self.repository.transaction() as txn:
            account = await txn.get_account(user_id)
            created = account is None
            if created:
                account = await txn.create_account(user_id)

        if created:
            logger.info(f"Opened credit account for user {user_id}")
        return CreditAccount(**account)

    async def get_balance(self, user_id: str) -> int:
        """Cached account balance (0 if the user has no account)"""
        account = await self.repository.get_account(user_id)
        return account["balance"] if account else 0

    async def get_balance_summary(self, user_id: str, now: Optional[datetime] = None) -> BalanceSummary:
        """
        Balance broken down by source.

        Unallocated balance is what remains after the active free and
        subscription grant balances are taken out of the total.
        """
        now = now or utc_now()
        total = await self.get_balance(user_id)
        free = await self.repository.get_active_grant_balance(FREE_POOL.kind.value, user_id, now)
        subscription = await self.repository.get_active_grant_balance(
            SUBSCRIPTION_POOL.kind.value, user_id, now
        )
        return BalanceSummary(
            user_id=user_id,
            total_balance=total,
            free_balance=free,
            subscription_balance=subscription,
            unallocated_balance=max(total - free - subscription, 0),
        )

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        """
        Compare the cached balance with the sum of the statement log.

        Raises:
            AccountNotFoundError: If the user has no account
        """
        account = await self.repository.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(f"Credit account not found for user {user_id}")

        statement_sum, statement_count = await self.repository.get_statement_totals(user_id)
        consistent = statement_sum == account["balance"]
        if not consistent:
            logger.error(
                f"Ledger mismatch for user {user_id}: balance {account['balance']}, "
                f"statements sum {statement_sum}"
            )
        return ReconciliationReport(
            user_id=user_id,
            account_balance=account["balance"],
            statement_sum=statement_sum,
            statement_count=statement_count,
            consistent=consistent,
        )

    async def get_statements(
        self,
        user_id: str,
        statement_type: Optional[StatementTypeEnum] = None,
        order_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> StatementListResponse:
        """
        Statement history, newest first.

        Args:
            user_id: User identifier
            statement_type: Optional type filter
            order_id: Optional order filter
            page: 1-based page number
            page_size: Statements per page (max 100)
        """
        if page < 1:
            raise LedgerValidationError("page must be >= 1")
        if page_size < 1 or page_size > self.MAX_PAGE_SIZE:
            raise LedgerValidationError(f"page_size must be between 1 and {self.MAX_PAGE_SIZE}")

        rows, total = await self.repository.list_statements(
            user_id,
            statement_type=statement_type.value if statement_type else None,
            order_id=order_id,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return StatementListResponse(
            user_id=user_id,
            statements=[CreditStatement(**row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    # ====================
    # Crediting
    # ====================

    async def top_up(
        self,
        user_id: str,
        amount: int,
        order_id: str,
        description: Optional[str] = None,
        invited_by: Optional[str] = None,
    ) -> CreditStatement:
        """
        Credit paid funds to the unallocated balance.

        Idempotent per order_id: a second call for an order that already has
        a top_up statement returns that statement and changes nothing.

        On the user's first top-up, the inviter named by ``invited_by`` is
        rewarded with an ``invite_rewards`` free grant.

        Raises:
            LedgerValidationError: If amount <= 0 or order_id is empty
            AccountNotFoundError: If the user has no account
        """
        if amount <= 0:
            raise LedgerValidationError("Top-up amount must be positive")
        if not order_id:
            raise LedgerValidationError("order_id is required")

        async with self.repository.transaction() as txn:
            account = await txn.get_account(user_id, for_update=True)
            if account is None:
                raise AccountNotFoundError(f"Credit account not found for user {user_id}")

            existing = await txn.get_order_statements(user_id, order_id, StatementTypeEnum.TOP_UP.value)
            if existing:
                logger.warning(f"Top-up order {order_id} already credited to user {user_id}")
                return CreditStatement(**existing[0])

            first_top_up = not await txn.has_statement(user_id, StatementTypeEnum.TOP_UP.value)
            balance_after = await txn.update_account_balance(user_id, amount)
            row = await txn.insert_statement(new_statement(
                user_id, StatementTypeEnum.TOP_UP, amount, balance_after,
                order_id=order_id, description=description,
            ))

        statement = CreditStatement(**row)
        logger.info(f"Topped up {amount} credits for user {user_id}, order {order_id}")

        if self.event_bus:
            await publish_credits_topped_up(self.event_bus, statement)

        if invited_by and first_top_up:
            await self._reward_inviter(invited_by, user_id)
        return statement

    async def _reward_inviter(self, inviter_id: str, invitee_id: str) -> Optional[FreeCreditGrant]:
        if self.invite_reward_amount <= 0 or inviter_id == invitee_id:
            return None
        try:
            grant = await self.issue_free_credit(
                inviter_id,
                self.invite_reward_amount,
                FreeCreditIssueTypeEnum.INVITE_REWARDS,
                invited_user_id=invitee_id,
            )
        except AccountNotFoundError:
            logger.warning(f"Inviter {inviter_id} of user {invitee_id} has no credit account, invite reward skipped")
            return None

        logger.info(f"Rewarded inviter {inviter_id} with {grant.total_granted} credits for user {invitee_id}")
        return grant

    async def issue_free_credit(
        self,
        user_id: str,
        amount: int,
        issue_type: FreeCreditIssueTypeEnum = FreeCreditIssueTypeEnum.WIDGET_DIRECT_ISSUE,
        expire_days: Optional[int] = None,
        widget_tag: Optional[str] = None,
        app_id: Optional[str] = None,
        invited_user_id: Optional[str] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FreeCreditGrant:
        """
        Issue an immediately spendable free credit grant.

        Args:
            user_id: User identifier
            amount: Credits granted
            issue_type: Why the credit is granted
            expire_days: Lifetime in days (defaults to the configured policy)
            widget_tag: Issuing widget (optional)
            app_id: Issuing app (optional)
            invited_user_id: Invitee, for invite rewards (optional)
            description: Free text (optional)

        Returns:
            The created grant

        Raises:
            LedgerValidationError: If amount or expire_days is not positive
            AccountNotFoundError: If the user has no account
        """
        if amount <= 0:
            raise LedgerValidationError("Free credit amount must be positive")
        days = expire_days if expire_days is not None else self.free_credit_expire_days
        if days <= 0:
            raise LedgerValidationError("expire_days must be positive")

        now = now or utc_now()
        issue_type = FreeCreditIssueTypeEnum(issue_type)
        order_id = str(uuid.uuid4())

        async with self.repository.transaction() as txn:
            account = await txn.get_account(user_id, for_update=True)
            if account is None:
                raise AccountNotFoundError(f"Credit account not found for user {user_id}")

            grant = await txn.create_free_grant({
                "user_id": user_id,
                "total_granted": amount,
                "current_balance": amount,
                "issue_date": now,
                "expire_date": now + timedelta(days=days),
                "is_issued": True,
                "issue_type": issue_type.value,
                "widget_tag": widget_tag,
                "app_id": app_id,
                "invited_user_id": invited_user_id,
                "description": description,
            })
            balance_after = await txn.update_account_balance(user_id, amount)
            row = await txn.insert_statement(new_statement(
                user_id, StatementTypeEnum.ISSUE, amount, balance_after,
                order_id=order_id, pool=FREE_POOL, source_issue_id=grant["id"],
                description=description or f"Free credit: {issue_type.value}",
            ))

        free_grant = FreeCreditGrant(**grant)
        logger.info(
            f"Issued {amount} free credits ({issue_type.value}) to user {user_id}, "
            f"expires {free_grant.expire_date.isoformat()}"
        )

        if self.event_bus:
            await publish_credits_issued(self.event_bus, CreditStatement(**row), free_grant.expire_date)
        return free_grant

    # ====================
    # Consumption & Refund
    # ====================

    async def consume(
        self,
        user_id: str,
        amount: int,
        order_id: str,
        allow_free_credit: bool = True,
    ) -> ConsumptionResult:
        """
        Consume credits for an order (free -> subscription -> unallocated).

        Raises:
            LedgerValidationError: If amount <= 0
            InsufficientBalanceError: If the usable balance is below amount
        """
        result = await self.consumption_engine.consume(
            user_id, amount, order_id, allow_free_credit=allow_free_credit
        )
        if self.event_bus:
            await publish_credits_consumed(self.event_bus, result)
        return result

    async def refund(self, user_id: str, amount: int, order_id: str) -> RefundResult:
        """
        Refund up to amount of an order's consumption to its sources.

        Raises:
            LedgerValidationError: If amount <= 0
        """
        result = await self.refund_engine.refund(user_id, amount, order_id)
        if self.event_bus and result.refunded > 0:
            await publish_credits_refunded(self.event_bus, result)
        return result

    # ====================
    # Subscriptions
    # ====================

    async def upsert_subscription(
        self,
        user_id: str,
        widget_tag: str,
        subscription_detail: SubscriptionDetail,
        credit_schedule: Optional[List[SubscriptionCreditSchedule]] = None,
    ) -> SubscriptionResponse:
        """
        Create or update a subscription and schedule its credits, then run
        the issuance pass for that subscription so past-due grants are
        activated right away.

        Raises:
            LedgerValidationError: If the schedule is malformed
            AccountNotFoundError: If the user has no account
        """
        subscription, created, grants = await self.subscription_manager.upsert_subscription(
            user_id, widget_tag, subscription_detail, credit_schedule
        )

        issuance = await self.run_issuance_pass(subscription.subscription_id)

        response = SubscriptionResponse(
            subscription=subscription,
            created=created,
            scheduled_grants=grants,
            issuance=issuance,
        )
        if self.event_bus:
            await publish_subscription_updated(self.event_bus, response)
        return response

    async def cancel_subscription(self, user_id: str, subscription_id: str) -> CancelSubscriptionResponse:
        """
        Cancel a subscription, dropping its unissued grants.

        Raises:
            SubscriptionNotFoundError: If the user has no such subscription
        """
        removed = await self.subscription_manager.cancel_subscription(user_id, subscription_id)
        response = CancelSubscriptionResponse(
            subscription_id=subscription_id,
            user_id=user_id,
            removed_grant_count=removed,
        )
        if self.event_bus:
            await publish_subscription_cancelled(self.event_bus, response)
        return response

    # ====================
    # Lifecycle Sweeps
    # ====================

    async def run_issuance_pass(self, subscription_id: Optional[str] = None) -> SweepResult:
        """Activate subscription grants whose issue_date has arrived"""
        result = await self.sweeper.run_issuance(subscription_id)
        if self.event_bus:
            for statement in result.statements:
                await publish_credits_issued(self.event_bus, statement)
        return result

    async def run_expiration_pass(self, subscription_id: Optional[str] = None) -> SweepResult:
        """Retire grants whose expire_date has passed"""
        result = await self.sweeper.run_expiration(subscription_id)
        if self.event_bus and result.statements:
            await publish_credits_expired(self.event_bus, result.statements)
        return result

    async def process_lifecycle(self, subscription_id: Optional[str] = None) -> LifecycleCycleResult:
        """
        Expiration pass followed by issuance pass.

        This is the scheduled job; it can also be run by hand for one
        subscription.
        """
        expiration = await self.run_expiration_pass(subscription_id)
        issuance = await self.run_issuance_pass(subscription_id)
        logger.info(
            f"Lifecycle cycle complete: expired {expiration.processed_count}, "
            f"issued {issuance.processed_count}, "
            f"failed {expiration.failed_count + issuance.failed_count}"
        )
        return LifecycleCycleResult(expiration=expiration, issuance=issuance)

    async def check_health(self) -> Dict[str, Any]:
        """Dependency health for the health endpoint"""
        try:
            database = await self.repository.check_connection()
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            database = False
        return {"database": database}


__all__ = ["LedgerService"]
