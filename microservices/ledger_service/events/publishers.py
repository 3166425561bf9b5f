"""
Ledger Service Event Publishers

Publish events after a ledger transaction commits. Publishing is best
effort: a failure is logged and never undoes the committed operation.
"""

import logging
from typing import List

from core.nats_client import Event, EventType, ServiceSource

from ..models import (
    CancelSubscriptionResponse,
    ConsumptionResult,
    CreditStatement,
    RefundResult,
    SubscriptionResponse,
)
from .models import (
    CreditsConsumedEventData,
    CreditsExpiredEventData,
    CreditsIssuedEventData,
    CreditsRefundedEventData,
    CreditsToppedUpEventData,
    SubscriptionCancelledEventData,
    SubscriptionUpdatedEventData,
)

logger = logging.getLogger(__name__)


async def _publish(event_bus, event_type: EventType, data) -> None:
    event = Event(
        event_type=event_type,
        source=ServiceSource.LEDGER_SERVICE,
        data=data.model_dump(mode="json"),
    )
    await event_bus.publish_event(event)


# ============================================================================
# Credit Event Publishers
# ============================================================================


async def publish_credits_topped_up(event_bus, statement: CreditStatement):
    """
    Publish ledger.credits.topped_up event

    Args:
        event_bus: NATS event bus instance
        statement: The top_up statement written
    """
    try:
        await _publish(event_bus, EventType.LEDGER_CREDITS_TOPPED_UP, CreditsToppedUpEventData(
            user_id=statement.user_id,
            amount=statement.amount,
            order_id=statement.order_id,
            statement_id=statement.id,
            balance_after=statement.balance_after,
        ))
        logger.info(f"Published ledger.credits.topped_up for user {statement.user_id}: {statement.amount}")
    except Exception as e:
        logger.error(f"Failed to publish ledger.credits.topped_up: {e}")


async def publish_credits_issued(event_bus, statement: CreditStatement, expire_date=None):
    """
    Publish ledger.credits.issued event

    Args:
        event_bus: NATS event bus instance
        statement: The issue statement written
        expire_date: Expiry of the issued grant (optional)
    """
    try:
        await _publish(event_bus, EventType.LEDGER_CREDITS_ISSUED, CreditsIssuedEventData(
            user_id=statement.user_id,
            amount=statement.amount,
            source=statement.source.value,
            grant_id=statement.source_issue_id,
            order_id=statement.order_id,
            expire_date=expire_date,
            balance_after=statement.balance_after,
        ))
        logger.info(
            f"Published ledger.credits.issued for user {statement.user_id}: "
            f"{statement.amount} {statement.source.value} credits"
        )
    except Exception as e:
        logger.error(f"Failed to publish ledger.credits.issued: {e}")


async def publish_credits_consumed(event_bus, result: ConsumptionResult):
    """
    Publish ledger.credits.consumed event

    Args:
        event_bus: NATS event bus instance
        result: Consumption outcome
    """
    try:
        await _publish(event_bus, EventType.LEDGER_CREDITS_CONSUMED, CreditsConsumedEventData(
            user_id=result.user_id,
            order_id=result.order_id,
            amount=result.total_consumed,
            free_consumed=result.free_consumed,
            subscription_consumed=result.subscription_consumed,
            unallocated_consumed=result.unallocated_consumed,
            statement_ids=[s.id for s in result.statements],
            balance_after=result.balance_after,
        ))
        logger.info(
            f"Published ledger.credits.consumed for user {result.user_id}: "
            f"{result.total_consumed} credits, order {result.order_id}"
        )
    except Exception as e:
        logger.error(f"Failed to publish ledger.credits.consumed: {e}")


async def publish_credits_refunded(event_bus, result: RefundResult):
    """
    Publish ledger.credits.refunded event

    Args:
        event_bus: NATS event bus instance
        result: Refund outcome
    """
    try:
        await _publish(event_bus, EventType.LEDGER_CREDITS_REFUNDED, CreditsRefundedEventData(
            user_id=result.user_id,
            order_id=result.order_id,
            requested=result.requested,
            refunded=result.refunded,
            skipped_expired=result.skipped_expired,
            statement_ids=[s.id for s in result.statements],
            balance_after=result.balance_after,
        ))
        logger.info(
            f"Published ledger.credits.refunded for user {result.user_id}: "
            f"{result.refunded}/{result.requested} credits, order {result.order_id}"
        )
    except Exception as e:
        logger.error(f"Failed to publish ledger.credits.refunded: {e}")


async def publish_credits_expired(event_bus, statements: List[CreditStatement]):
    """
    Publish one ledger.credits.expired event per expire statement

    Args:
        event_bus: NATS event bus instance
        statements: Expire statements written by the sweeper
    """
    for statement in statements:
        try:
            await _publish(event_bus, EventType.LEDGER_CREDITS_EXPIRED, CreditsExpiredEventData(
                user_id=statement.user_id,
                amount=-statement.amount,
                source=statement.source.value,
                grant_id=statement.source_issue_id,
                balance_after=statement.balance_after,
            ))
        except Exception as e:
            logger.error(f"Failed to publish ledger.credits.expired for statement {statement.id}: {e}")


# ============================================================================
# Subscription Event Publishers
# ============================================================================


async def publish_subscription_updated(event_bus, response: SubscriptionResponse):
    """
    Publish ledger.subscription.updated event

    Args:
        event_bus: NATS event bus instance
        response: Upserted subscription and its newly scheduled grants
    """
    try:
        subscription = response.subscription
        await _publish(event_bus, EventType.LEDGER_SUBSCRIPTION_UPDATED, SubscriptionUpdatedEventData(
            user_id=subscription.user_id,
            subscription_id=subscription.subscription_id,
            widget_tag=subscription.widget_tag,
            created=response.created,
            scheduled_grants=len(response.scheduled_grants),
            scheduled_amount=sum(g.total_granted for g in response.scheduled_grants),
        ))
        logger.info(f"Published ledger.subscription.updated for {subscription.subscription_id}")
    except Exception as e:
        logger.error(f"Failed to publish ledger.subscription.updated: {e}")


async def publish_subscription_cancelled(event_bus, response: CancelSubscriptionResponse):
    """
    Publish ledger.subscription.cancelled event

    Args:
        event_bus: NATS event bus instance
        response: Cancellation outcome
    """
    try:
        await _publish(event_bus, EventType.LEDGER_SUBSCRIPTION_CANCELLED, SubscriptionCancelledEventData(
            user_id=response.user_id,
            subscription_id=response.subscription_id,
            removed_grants=response.removed_grant_count,
        ))
        logger.info(f"Published ledger.subscription.cancelled for {response.subscription_id}")
    except Exception as e:
        logger.error(f"Failed to publish ledger.subscription.cancelled: {e}")


__all__ = [
    "publish_credits_topped_up",
    "publish_credits_issued",
    "publish_credits_consumed",
    "publish_credits_refunded",
    "publish_credits_expired",
    "publish_subscription_updated",
    "publish_subscription_cancelled",
]
