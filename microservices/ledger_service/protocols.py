"""
Ledger Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import datetime
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, Tuple, runtime_checkable


# ====================
# Transaction Protocol
# ====================


@runtime_checkable
class LedgerTransactionProtocol(Protocol):
    """
    Unit of work bound to one database transaction.

    Every method runs on the transaction's connection. Nothing is visible to
    other transactions until the surrounding ``transaction()`` block exits
    cleanly; an exception rolls everything back.
    """

    async def get_account(self, user_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        """
        Get a credit account.

        Args:
            user_id: User identifier
            for_update: Lock the account row until the transaction ends

        Returns:
            Account record or None if not found
        """
        ...

    async def create_account(self, user_id: str) -> Dict[str, Any]:
        """
        Create a zero-balance account, or return the existing one.

        Args:
            user_id: User identifier

        Returns:
            Account record
        """
        ...

    async def update_account_balance(self, user_id: str, balance_delta: int) -> int:
        """
        Apply a signed delta to the account balance.

        Args:
            user_id: User identifier
            balance_delta: Amount to add (positive) or subtract (negative)

        Returns:
            Balance after the update
        """
        ...

    async def insert_statement(self, statement_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append a statement row.

        Args:
            statement_data: user_id, statement_type, amount, balance_after,
                order_id, source flags, source_issue_id, description

        Returns:
            Created statement record (with id and created_at)
        """
        ...

    async def get_order_statements(
        self, user_id: str, order_id: str, statement_type: str
    ) -> List[Dict[str, Any]]:
        """
        Get a user's statements of one type for an order, oldest first (by id).
        """
        ...

    async def has_statement(self, user_id: str, statement_type: str) -> bool:
        """Whether the user has any statement of this type"""
        ...

    async def get_active_grants(
        self, kind: str, user_id: str, now: datetime, for_update: bool = True
    ) -> List[Dict[str, Any]]:
        """
        Get spendable grants of one pool.

        Args:
            kind: Grant pool ("free" or "subscription")
            user_id: User identifier
            now: Reference time for the expiry check
            for_update: Lock the returned grant rows

        Returns:
            Issued grants with current_balance > 0 and expire_date >= now,
            ordered by expire_date then id
        """
        ...

    async def get_grant(self, kind: str, grant_id: int, for_update: bool = True) -> Optional[Dict[str, Any]]:
        """Get one grant of a pool, optionally locked"""
        ...

    async def update_grant(
        self, kind: str, grant_id: int, current_balance: int, is_issued: Optional[bool] = None
    ) -> None:
        """
        Set a grant's remaining balance (and optionally its issued flag).
        """
        ...

    async def create_free_grant(self, grant_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create an issued free credit grant"""
        ...

    async def create_subscription_grant(self, grant_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a not-yet-issued subscription credit grant"""
        ...

    async def get_subscription(self, subscription_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        """Get subscription by ID"""
        ...

    async def get_subscription_by_tag(self, user_id: str, widget_tag: str) -> Optional[Dict[str, Any]]:
        """Get the user's subscription for a widget tag"""
        ...

    async def save_subscription(self, subscription_data: Dict[str, Any], create: bool) -> Dict[str, Any]:
        """
        Insert or update a subscription row.

        Args:
            subscription_data: Subscription fields keyed by column name
            create: Insert a new row when True, otherwise update by subscription_id

        Returns:
            Stored subscription record
        """
        ...

    async def delete_unissued_grants(self, subscription_id: str) -> int:
        """
        Delete a subscription's grants that were never issued.

        Returns:
            Number of grants deleted
        """
        ...

    async def delete_subscription(self, subscription_id: str) -> bool:
        """Delete a subscription row"""
        ...


# ====================
# Repository Protocol
# ====================


@runtime_checkable
class LedgerRepositoryProtocol(Protocol):
    """Repository interface for ledger persistence"""

    def transaction(self) -> AsyncContextManager[LedgerTransactionProtocol]:
        """
        Open a transaction.

        Usage:
            async with repository.transaction() as txn:
                account = await txn.get_account(user_id, for_update=True)
        """
        ...

    async def get_account(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Get account without locking.

        Args:
            user_id: User identifier

        Returns:
            Account record or None if not found
        """
        ...

    async def get_active_grant_balance(self, kind: str, user_id: str, now: datetime) -> int:
        """
        Sum of current_balance over a user's active grants of one pool.
        """
        ...

    async def list_statements(
        self,
        user_id: str,
        statement_type: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Get statements newest first.

        Returns:
            (page of statement records, total matching count)
        """
        ...

    async def get_statement_totals(self, user_id: str) -> Tuple[int, int]:
        """
        Returns:
            (sum of statement amounts, statement count) for the user
        """
        ...

    async def get_subscription_grants(self, subscription_id: str) -> List[Dict[str, Any]]:
        """Get all grants of a subscription ordered by issue_date"""
        ...

    async def find_due_subscription_grants(
        self, now: datetime, subscription_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Get subscription grants ready for issuance.

        Returns:
            Grants with is_issued = false, current_balance > 0, issue_date <= now
        """
        ...

    async def find_expired_grants(
        self, kind: str, now: datetime, subscription_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Get grants of one pool that still carry balance past their expiry.

        Returns:
            Issued grants with current_balance > 0 and expire_date < now
        """
        ...

    async def check_connection(self) -> bool:
        """Check database connectivity"""
        ...


# ====================
# Event Bus Protocol
# ====================


@runtime_checkable
class EventBusProtocol(Protocol):
    """Event bus interface for publishing events"""

    async def publish_event(self, event: Any) -> bool:
        """
        Publish event to NATS.

        Args:
            event: core.nats_client.Event envelope

        Returns:
            True if the event was accepted by the bus
        """
        ...


# ====================
# Custom Exceptions (no I/O operations)
# ====================


class LedgerServiceError(Exception):
    """Base exception for ledger service errors"""
    pass


class LedgerValidationError(LedgerServiceError, ValueError):
    """Raised when input is rejected before any write"""
    pass


class InsufficientBalanceError(LedgerServiceError):
    """Raised when user has insufficient credits"""

    def __init__(
        self,
        message: str,
        available: Optional[int] = None,
        required: Optional[int] = None,
    ):
        super().__init__(message)
        self.available = available
        self.required = required


class NotFoundError(LedgerServiceError):
    """Raised when a ledger entity does not exist"""
    pass


class AccountNotFoundError(NotFoundError):
    """Raised when credit account is not found"""
    pass


class SubscriptionNotFoundError(NotFoundError):
    """Raised when subscription is not found"""
    pass


__all__ = [
    "LedgerTransactionProtocol",
    "LedgerRepositoryProtocol",
    "EventBusProtocol",
    "LedgerServiceError",
    "LedgerValidationError",
    "InsufficientBalanceError",
    "NotFoundError",
    "AccountNotFoundError",
    "SubscriptionNotFoundError",
]
