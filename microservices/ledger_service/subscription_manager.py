"""
Subscription Manager

Creates, updates and cancels subscriptions and schedules their credit
grants. It never changes an account balance: scheduled grants become
spendable only through the sweeper's issuance pass.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .grant_pool import as_utc
from .models import (
    Subscription,
    SubscriptionCreditGrant,
    SubscriptionCreditSchedule,
    SubscriptionDetail,
)
from .protocols import (
    AccountNotFoundError,
    LedgerRepositoryProtocol,
    LedgerValidationError,
    SubscriptionNotFoundError,
)

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Subscription lifecycle and credit scheduling"""

    def __init__(self, repository: LedgerRepositoryProtocol):
        self.repository = repository

    @staticmethod
    def validate_schedule(credit_schedule: List[SubscriptionCreditSchedule]) -> None:
        """
        Reject a schedule before anything is written.

        Raises:
            LedgerValidationError: If an entry has a non-positive amount or is
                issued after it expires
        """
        for index, entry in enumerate(credit_schedule):
            if entry.amount <= 0:
                raise LedgerValidationError(f"Subscription credit #{index} amount must be positive")
            if as_utc(entry.issue_date) > as_utc(entry.expire_date):
                raise LedgerValidationError(
                    f"Subscription credit #{index} issue_date cannot be after expire_date"
                )

    async def upsert_subscription(
        self,
        user_id: str,
        widget_tag: str,
        subscription_detail: SubscriptionDetail,
        credit_schedule: Optional[List[SubscriptionCreditSchedule]] = None,
    ) -> Tuple[Subscription, bool, List[SubscriptionCreditGrant]]:
        """
        Create or update the user's subscription for a widget and schedule
        its credit grants.

        One subscription exists per (user_id, widget_tag); an existing one is
        updated in place and keeps its id. Every schedule entry becomes a
        grant with is_issued = false, even if its issue_date has passed.

        Args:
            user_id: User identifier
            widget_tag: Widget the subscription is for
            subscription_detail: Product and period attributes
            credit_schedule: Grants to schedule

        Returns:
            (subscription, created flag, scheduled grants)

        Raises:
            LedgerValidationError: If the schedule or period is malformed
            AccountNotFoundError: If the user has no account
        """
        credit_schedule = credit_schedule or []
        if not widget_tag:
            raise LedgerValidationError("widget_tag is required")
        if as_utc(subscription_detail.period_start) > as_utc(subscription_detail.period_end):
            raise LedgerValidationError("period_start cannot be after period_end")
        self.validate_schedule(credit_schedule)

        async with self.repository.transaction() as txn:
            account = await txn.get_account(user_id)
            if account is None:
                raise AccountNotFoundError(f"Credit account not found for user {user_id}")

            existing = await txn.get_subscription_by_tag(user_id, widget_tag)
            created = existing is None
            subscription_id = existing["subscription_id"] if existing else str(uuid.uuid4())

            subscription_data: Dict[str, Any] = {
                "subscription_id": subscription_id,
                "user_id": user_id,
                "widget_tag": widget_tag,
                "product_name": subscription_detail.product_name,
                "period_start": as_utc(subscription_detail.period_start),
                "period_end": as_utc(subscription_detail.period_end),
                "cancel_at_period_end": subscription_detail.cancel_at_period_end,
                "subscription_metadata": subscription_detail.subscription_metadata,
            }
            stored = await txn.save_subscription(subscription_data, create=created)

            grants = []
            for entry in credit_schedule:
                grant = await txn.create_subscription_grant({
                    "user_id": user_id,
                    "subscription_id": subscription_id,
                    "widget_tag": widget_tag,
                    "total_granted": entry.amount,
                    "current_balance": entry.amount,
                    "issue_date": as_utc(entry.issue_date),
                    "expire_date": as_utc(entry.expire_date),
                    "is_issued": False,
                })
                grants.append(grant)

        logger.info(
            f"{'Created' if created else 'Updated'} subscription {subscription_id} "
            f"for user {user_id} ({widget_tag}), scheduled {len(grants)} credit grants"
        )

        return (
            Subscription(**stored),
            created,
            [SubscriptionCreditGrant(**g) for g in grants],
        )

    async def cancel_subscription(self, user_id: str, subscription_id: str) -> int:
        """
        Cancel a subscription.

        Grants that were never issued are deleted with the subscription;
        issued grants stay spendable until they expire.

        Args:
            user_id: User identifier
            subscription_id: Subscription to cancel

        Returns:
            Number of unissued grants removed

        Raises:
            SubscriptionNotFoundError: If the user has no such subscription
        """
        async with self.repository.transaction() as txn:
            subscription = await txn.get_subscription(subscription_id, for_update=True)
            if subscription is None or subscription["user_id"] != user_id:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found for user {user_id}"
                )

            removed = await txn.delete_unissued_grants(subscription_id)
            await txn.delete_subscription(subscription_id)

        logger.info(
            f"Cancelled subscription {subscription_id} for user {user_id}, "
            f"removed {removed} unissued grants"
        )
        return removed


__all__ = ["SubscriptionManager"]
