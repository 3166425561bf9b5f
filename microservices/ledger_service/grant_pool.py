"""
Grant Pool

Free and subscription credit grants share one behavior: a bounded balance
that is spendable between issuance and expiry. GrantPool captures that
behavior once and is instantiated for each pool.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .protocols import LedgerTransactionProtocol

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GrantKind(str, Enum):
    FREE = "free"
    SUBSCRIPTION = "subscription"


class GrantPool:
    """
    One pool of expirable grants (free or subscription).

    Ordering: grants are consumed soonest-expiring first, ties broken by id.
    A grant is active when it has been issued, still has balance, and its
    expire_date has not passed.
    """

    def __init__(self, kind: GrantKind):
        self.kind = kind

    def __repr__(self) -> str:
        return f"GrantPool({self.kind.value})"

    @property
    def source_flags(self) -> Dict[str, bool]:
        """Statement flags marking this pool as the source"""
        return {
            "is_free_credit": self.kind == GrantKind.FREE,
            "is_subscription_credit": self.kind == GrantKind.SUBSCRIPTION,
        }

    # ====================
    # Pure rules
    # ====================

    def is_issued(self, grant: Dict[str, Any]) -> bool:
        # Free grants are spendable from creation
        return self.kind == GrantKind.FREE or bool(grant.get("is_issued"))

    def is_expired(self, grant: Dict[str, Any], now: datetime) -> bool:
        return as_utc(grant["expire_date"]) < now

    def is_active(self, grant: Dict[str, Any], now: datetime) -> bool:
        return (
            self.is_issued(grant)
            and grant["current_balance"] > 0
            and not self.is_expired(grant, now)
        )

    @staticmethod
    def sort_key(grant: Dict[str, Any]) -> Tuple[datetime, int]:
        return (as_utc(grant["expire_date"]), grant["id"])

    def order(self, grants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(grants, key=self.sort_key)

    @staticmethod
    def plan_debit(
        grants: List[Dict[str, Any]], amount: int
    ) -> Tuple[List[Tuple[Dict[str, Any], int]], int]:
        """
        Greedily allocate an amount across ordered grants.

        Args:
            grants: Active grants in consumption order
            amount: Amount still to be covered

        Returns:
            ([(grant, portion), ...], amount left uncovered)
        """
        plan = []
        remaining = amount
        for grant in grants:
            if remaining <= 0:
                break
            portion = min(grant["current_balance"], remaining)
            if portion <= 0:
                continue
            plan.append((grant, portion))
            remaining -= portion
        return plan, remaining

    @staticmethod
    def restorable(grant: Dict[str, Any], amount: int) -> int:
        """Portion of amount that fits back under total_granted"""
        headroom = grant["total_granted"] - grant["current_balance"]
        return max(0, min(amount, headroom))

    # ====================
    # Transactional helpers
    # ====================

    async def load_active(
        self, txn: LedgerTransactionProtocol, user_id: str, now: datetime
    ) -> List[Dict[str, Any]]:
        """Lock and return the user's active grants in consumption order"""
        grants = await txn.get_active_grants(self.kind.value, user_id, now, for_update=True)
        return self.order([g for g in grants if self.is_active(g, now)])

    async def read(self, txn: LedgerTransactionProtocol, grant_id: int) -> Optional[Dict[str, Any]]:
        return await txn.get_grant(self.kind.value, grant_id, for_update=False)

    async def lock(self, txn: LedgerTransactionProtocol, grant_id: int) -> Optional[Dict[str, Any]]:
        return await txn.get_grant(self.kind.value, grant_id, for_update=True)

    async def debit(self, txn: LedgerTransactionProtocol, grant: Dict[str, Any], portion: int) -> int:
        new_balance = grant["current_balance"] - portion
        if new_balance < 0:
            raise ValueError(f"{self} grant {grant['id']} would go negative")
        await txn.update_grant(self.kind.value, grant["id"], new_balance)
        grant["current_balance"] = new_balance
        return new_balance

    async def credit(self, txn: LedgerTransactionProtocol, grant: Dict[str, Any], portion: int) -> int:
        new_balance = grant["current_balance"] + portion
        if new_balance > grant["total_granted"]:
            raise ValueError(f"{self} grant {grant['id']} would exceed total_granted")
        await txn.update_grant(self.kind.value, grant["id"], new_balance)
        grant["current_balance"] = new_balance
        return new_balance

    async def mark_issued(self, txn: LedgerTransactionProtocol, grant: Dict[str, Any]) -> None:
        await txn.update_grant(self.kind.value, grant["id"], grant["current_balance"], is_issued=True)
        grant["is_issued"] = True

    async def retire(self, txn: LedgerTransactionProtocol, grant: Dict[str, Any]) -> int:
        """Zero the grant; returns the balance that was removed"""
        removed = grant["current_balance"]
        await txn.update_grant(self.kind.value, grant["id"], 0)
        grant["current_balance"] = 0
        return removed


FREE_POOL = GrantPool(GrantKind.FREE)
SUBSCRIPTION_POOL = GrantPool(GrantKind.SUBSCRIPTION)

# Consumption order across pools
POOL_ORDER = (FREE_POOL, SUBSCRIPTION_POOL)


def pool_for(kind: str) -> GrantPool:
    if kind == GrantKind.FREE.value:
        return FREE_POOL
    if kind == GrantKind.SUBSCRIPTION.value:
        return SUBSCRIPTION_POOL
    raise ValueError(f"Unknown grant pool: {kind}")


def pool_for_statement(statement: Dict[str, Any]) -> Optional[GrantPool]:
    """Pool a statement debited or credited, None for unallocated funds"""
    if statement.get("is_free_credit"):
        return FREE_POOL
    if statement.get("is_subscription_credit"):
        return SUBSCRIPTION_POOL
    return None


__all__ = [
    "GrantKind",
    "GrantPool",
    "FREE_POOL",
    "SUBSCRIPTION_POOL",
    "POOL_ORDER",
    "pool_for",
    "pool_for_statement",
    "utc_now",
    "as_utc",
]
