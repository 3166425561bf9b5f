"""
Ledger Service Event Models

Event data models for credit ledger events.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Event Type Definitions (Service-Specific)
# =============================================================================

class LedgerEventType(str, Enum):
    """
    Events published by ledger_service.

    Stream: ledger-stream
    Subjects: ledger.>
    """
    CREDITS_TOPPED_UP = "ledger.credits.topped_up"
    CREDITS_ISSUED = "ledger.credits.issued"
    CREDITS_CONSUMED = "ledger.credits.consumed"
    CREDITS_REFUNDED = "ledger.credits.refunded"
    CREDITS_EXPIRED = "ledger.credits.expired"
    SUBSCRIPTION_UPDATED = "ledger.subscription.updated"
    SUBSCRIPTION_CANCELLED = "ledger.subscription.cancelled"


class LedgerSubscribedEventType(str, Enum):
    """Events that ledger_service subscribes to from other services."""
    PAYMENT_COMPLETED = "payment.completed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"


class LedgerStreamConfig:
    """Stream configuration for ledger_service"""
    STREAM_NAME = "ledger-stream"
    SUBJECTS = ["ledger.>"]
    CONSUMER_PREFIX = "ledger"


# ============================================================================
# Credit Event Models
# ============================================================================


class CreditsToppedUpEventData(BaseModel):
    """
    Event: ledger.credits.topped_up
    Triggered when paid credits are added to a user's unallocated balance
    """

    user_id: str = Field(..., description="User receiving credits")
    amount: int = Field(..., description="Credits added")
    order_id: str = Field(..., description="Paid order ID")
    statement_id: int = Field(..., description="Top-up statement ID")
    balance_after: int = Field(..., description="Account balance after top-up")
    timestamp: datetime = Field(default_factory=_utc_now)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "usr_xyz789",
            "amount": 1000,
            "order_id": "ord_abc123",
            "statement_id": 42,
            "balance_after": 2500,
            "timestamp": "2026-01-18T10:00:00Z",
        }
    })


class CreditsIssuedEventData(BaseModel):
    """
    Event: ledger.credits.issued
    Triggered when a free grant is issued or a subscription grant is activated
    """

    user_id: str = Field(..., description="User receiving credits")
    amount: int = Field(..., description="Credits issued")
    source: str = Field(..., description="free or subscription")
    grant_id: int = Field(..., description="Issued grant ID")
    order_id: Optional[str] = Field(None, description="Issue order ID or subscription ID")
    expire_date: Optional[datetime] = Field(None, description="Grant expiry")
    balance_after: int = Field(..., description="Account balance after issue")
    timestamp: datetime = Field(default_factory=_utc_now)


class CreditsConsumedEventData(BaseModel):
    """
    Event: ledger.credits.consumed
    Triggered when credits are consumed for an order
    """

    user_id: str = Field(..., description="User consuming credits")
    order_id: str = Field(..., description="Order the consumption belongs to")
    amount: int = Field(..., description="Total consumed")
    free_consumed: int = Field(0, description="Drawn from free grants")
    subscription_consumed: int = Field(0, description="Drawn from subscription grants")
    unallocated_consumed: int = Field(0, description="Drawn from unallocated funds")
    statement_ids: List[int] = Field(default_factory=list, description="Consume statements written")
    balance_after: int = Field(..., description="Account balance after consumption")
    timestamp: datetime = Field(default_factory=_utc_now)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "usr_xyz789",
            "order_id": "ord_abc123",
            "amount": 300,
            "free_consumed": 100,
            "subscription_consumed": 200,
            "unallocated_consumed": 0,
            "statement_ids": [51, 52],
            "balance_after": 300,
            "timestamp": "2026-01-18T11:00:00Z",
        }
    })


class CreditsRefundedEventData(BaseModel):
    """
    Event: ledger.credits.refunded
    Triggered when a consumption is (partially) reversed
    """

    user_id: str = Field(..., description="User refunded")
    order_id: str = Field(..., description="Refunded order")
    requested: int = Field(..., description="Amount requested")
    refunded: int = Field(..., description="Amount restored")
    skipped_expired: int = Field(0, description="Amount not restored because its grant expired")
    statement_ids: List[int] = Field(default_factory=list)
    balance_after: Optional[int] = Field(None, description="Account balance after refund")
    timestamp: datetime = Field(default_factory=_utc_now)


class CreditsExpiredEventData(BaseModel):
    """
    Event: ledger.credits.expired
    Triggered when an expired grant's remaining balance is removed
    """

    user_id: str = Field(..., description="User whose credits expired")
    amount: int = Field(..., description="Credits expired")
    source: str = Field(..., description="free or subscription")
    grant_id: int = Field(..., description="Expired grant ID")
    balance_after: int = Field(..., description="Account balance after expiration")
    timestamp: datetime = Field(default_factory=_utc_now)


# ============================================================================
# Subscription Event Models
# ============================================================================


class SubscriptionUpdatedEventData(BaseModel):
    """
    Event: ledger.subscription.updated
    Triggered when a subscription is created or updated with a credit schedule
    """

    user_id: str
    subscription_id: str
    widget_tag: str
    created: bool = Field(..., description="True when the subscription is new")
    scheduled_grants: int = Field(0, description="Grants added to the schedule")
    scheduled_amount: int = Field(0, description="Credits added to the schedule")
    timestamp: datetime = Field(default_factory=_utc_now)


class SubscriptionCancelledEventData(BaseModel):
    """
    Event: ledger.subscription.cancelled
    Triggered when a subscription and its unissued grants are removed
    """

    user_id: str
    subscription_id: str
    removed_grants: int = Field(0, description="Unissued grants deleted")
    timestamp: datetime = Field(default_factory=_utc_now)


__all__ = [
    "LedgerEventType",
    "LedgerSubscribedEventType",
    "LedgerStreamConfig",
    "CreditsToppedUpEventData",
    "CreditsIssuedEventData",
    "CreditsConsumedEventData",
    "CreditsRefundedEventData",
    "CreditsExpiredEventData",
    "SubscriptionUpdatedEventData",
    "SubscriptionCancelledEventData",
]
