"""
Ledger Service Event Package

Event-driven architecture for the ledger service:
- Publishing: Credit and subscription lifecycle events
- Subscription: Payment and subscription events that drive top-ups and cancellations
"""

from .models import (
    LedgerEventType,
    LedgerSubscribedEventType,
    LedgerStreamConfig,
    CreditsToppedUpEventData,
    CreditsIssuedEventData,
    CreditsConsumedEventData,
    CreditsRefundedEventData,
    CreditsExpiredEventData,
    SubscriptionUpdatedEventData,
    SubscriptionCancelledEventData,
)

from .publishers import (
    publish_credits_topped_up,
    publish_credits_issued,
    publish_credits_consumed,
    publish_credits_refunded,
    publish_credits_expired,
    publish_subscription_updated,
    publish_subscription_cancelled,
)

from .handlers import get_event_handlers

__all__ = [
    # Event models
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
    # Publishers
    "publish_credits_topped_up",
    "publish_credits_issued",
    "publish_credits_consumed",
    "publish_credits_refunded",
    "publish_credits_expired",
    "publish_subscription_updated",
    "publish_subscription_cancelled",
    # Handlers
    "get_event_handlers",
]
