"""
Ledger Service Event Handlers

Handle events from other services that trigger ledger operations.
"""

import logging
from typing import Any, Dict, Union

from ..protocols import LedgerServiceError
from .models import LedgerSubscribedEventType

logger = logging.getLogger(__name__)


def extract_event_data(event_or_data: Union[Dict[str, Any], Any]) -> Dict[str, Any]:
    """
    Extract data from either an Event object or a raw dict.

    Handles both:
    - Event objects with .data attribute (from NATS)
    - Raw dict (for testing or direct calls)
    """
    if hasattr(event_or_data, 'data'):
        return event_or_data.data
    return event_or_data


# ============================================================================
# Event Handlers
# ============================================================================


async def handle_payment_completed(event_or_data: Union[Dict[str, Any], Any], ledger_service=None):
    """
    Handle payment.completed event from payment_service

    Credit a paid top-up order to the buyer's unallocated balance. Orders
    that are not credit top-ups are ignored. Re-delivery is harmless because
    top-up is idempotent per order_id.

    Event data:
        - user_id: Buyer
        - order_id: Paid order ID
        - amount: Credits bought
        - is_credit_top_up: Whether the order buys credits
        - invited_by: Inviter of the buyer, rewarded on the first top-up (optional)
    """
    try:
        event_data = extract_event_data(event_or_data)

        if not event_data.get("is_credit_top_up"):
            logger.debug(f"payment.completed for order {event_data.get('order_id')} is not a credit top-up")
            return

        user_id = event_data.get("user_id")
        order_id = event_data.get("order_id")
        amount = event_data.get("amount")

        if not user_id or not order_id or not amount:
            logger.warning(f"payment.completed top-up event missing fields: {event_data}")
            return

        logger.info(f"Processing payment.completed top-up for user {user_id}, order {order_id}")

        if ledger_service:
            try:
                await ledger_service.open_account(user_id)
                await ledger_service.top_up(
                    user_id=user_id,
                    amount=int(amount),
                    order_id=order_id,
                    description=event_data.get("description"),
                    invited_by=event_data.get("invited_by"),
                )
            except LedgerServiceError as e:
                logger.error(f"Failed to top up order {order_id}: {e}")

    except Exception as e:
        logger.error(f"Error handling payment.completed event: {e}")


async def handle_subscription_canceled(event_or_data: Union[Dict[str, Any], Any], ledger_service=None):
    """
    Handle subscription.canceled event from subscription_service

    Remove the subscription and its unissued grants. Issued grants remain
    spendable until they expire.

    Event data:
        - user_id: Subscriber
        - subscription_id: Subscription ID
    """
    try:
        event_data = extract_event_data(event_or_data)
        user_id = event_data.get("user_id")
        subscription_id = event_data.get("subscription_id")

        if not user_id or not subscription_id:
            logger.warning("subscription.canceled event missing user_id or subscription_id")
            return

        logger.info(f"Processing subscription.canceled for {subscription_id} (user {user_id})")

        if ledger_service:
            try:
                await ledger_service.cancel_subscription(user_id, subscription_id)
            except LedgerServiceError as e:
                logger.warning(f"Failed to cancel subscription {subscription_id}: {e}")

    except Exception as e:
        logger.error(f"Error handling subscription.canceled event: {e}")


# ============================================================================
# Event Handler Registry
# ============================================================================


def get_event_handlers(ledger_service=None) -> Dict[str, callable]:
    """
    Return a mapping of event types to handler functions

    This will be used in main.py to register event subscriptions

    Args:
        ledger_service: LedgerService instance for ledger operations

    Events subscribed:
        - payment.completed: Credit paid top-up orders
        - subscription.canceled: Cancel subscription and unissued grants
    """
    return {
        LedgerSubscribedEventType.PAYMENT_COMPLETED.value: lambda event: handle_payment_completed(event, ledger_service),
        LedgerSubscribedEventType.SUBSCRIPTION_CANCELED.value: lambda event: handle_subscription_canceled(event, ledger_service),
    }
