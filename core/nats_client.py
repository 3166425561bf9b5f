"""
NATS JetStream Client for Python Microservices
Provides event-driven communication between platform services.

This module wraps nats-py: events are wrapped in a common Event envelope,
published to JetStream and delivered to durable consumers.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import nats
from nats.aio.client import Client as NATS
from nats.js import JetStreamContext

from core.config import InfraConfig


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types exchanged on the bus"""

    # Payment Events (consumed)
    PAYMENT_COMPLETED = "payment.completed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"

    # Ledger Events (published)
    LEDGER_CREDITS_TOPPED_UP = "ledger.credits.topped_up"
    LEDGER_CREDITS_ISSUED = "ledger.credits.issued"
    LEDGER_CREDITS_CONSUMED = "ledger.credits.consumed"
    LEDGER_CREDITS_REFUNDED = "ledger.credits.refunded"
    LEDGER_CREDITS_EXPIRED = "ledger.credits.expired"
    LEDGER_SUBSCRIPTION_UPDATED = "ledger.subscription.updated"
    LEDGER_SUBSCRIPTION_CANCELLED = "ledger.subscription.cancelled"


class ServiceSource(Enum):
    """Services that publish events"""
    LEDGER_SERVICE = "ledger_service"
    PAYMENT_SERVICE = "payment_service"
    SUBSCRIPTION_SERVICE = "subscription_service"


# Subject prefix -> JetStream stream name
STREAM_SUBJECTS = {
    "ledger-stream": ["ledger.>"],
}


class Event:
    """Event model"""

    def __init__(
        self,
        event_type: EventType,
        source: ServiceSource,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value
        self.source = source.value
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id")
        event.type = data.get("type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event


EventHandler = Callable[[Event], Awaitable[None]]


class NATSEventBus:
    """
    NATS JetStream event bus.

    Publishes Event envelopes as JSON and runs durable push consumers
    that hand decoded events to async handlers.
    """

    def __init__(self, service_name: str, config: Optional[InfraConfig] = None):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used for connection name)
            config: Optional infrastructure config
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.servers = self.config.nats_servers

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._subscriptions: List[Any] = []

        logger.info(f"NATS EventBus initialized: {self.servers}")

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    async def connect(self):
        """Connect to NATS and make sure the service streams exist"""
        try:
            self._nc = await nats.connect(servers=self.servers, name=self.service_name)
            self._js = self._nc.jetstream()

            for stream_name, subjects in STREAM_SUBJECTS.items():
                try:
                    await self._js.add_stream(name=stream_name, subjects=subjects)
                except Exception as e:
                    # Stream already exists with a compatible config
                    logger.debug(f"Stream {stream_name} not created: {e}")

            logger.info(f"Connected to NATS as {self.service_name}")

        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to NATS JetStream.

        The subject defaults to the event type (e.g. ledger.credits.consumed).
        """
        if not self._js:
            logger.warning(f"NATS not connected, dropping event {event.type}")
            return False

        subject = event.subject or event.type
        payload = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()

        try:
            ack = await self._js.publish(subject, payload)
            logger.debug(f"Published {event.type} to {subject} (stream={ack.stream}, seq={ack.seq})")
            return True
        except Exception as e:
            logger.error(f"Failed to publish event {event.type}: {e}")
            return False

    async def subscribe_to_events(self, pattern: str, handler: EventHandler, durable: str):
        """
        Subscribe a handler to a subject pattern with a durable consumer.

        Messages are acked after the handler returns; handler errors are
        logged and the message is acked so a poison message cannot stall
        the consumer.
        """
        if not self._js:
            raise RuntimeError("NATS not connected")

        async def _on_message(msg):
            try:
                event = Event.from_dict(json.loads(msg.data.decode()))
                await handler(event)
            except Exception as e:
                logger.error(f"Error handling message on {msg.subject}: {e}", exc_info=True)
            finally:
                await msg.ack()

        sub = await self._js.subscribe(pattern, durable=durable, cb=_on_message, manual_ack=True)
        self._subscriptions.append(sub)
        logger.info(f"Subscribed to {pattern} (durable={durable})")

    async def close(self):
        """Drain subscriptions and close the connection"""
        for sub in self._subscriptions:
            try:
                await sub.unsubscribe()
            except Exception as e:
                logger.debug(f"Error unsubscribing: {e}")
        self._subscriptions.clear()

        if self._nc is not None:
            await self._nc.drain()
            self._nc = None
            self._js = None
            logger.info(f"NATS connection closed for {self.service_name}")


# Singleton instance
_event_bus: Optional[NATSEventBus] = None


async def get_event_bus(
    service_name: str,
    config: Optional[InfraConfig] = None,
) -> NATSEventBus:
    """
    Get or create event bus instance.

    Args:
        service_name: Name of the service using the event bus
        config: Optional infrastructure config

    Returns:
        Connected NATSEventBus instance
    """
    global _event_bus

    if _event_bus is None:
        _event_bus = NATSEventBus(service_name=service_name, config=config)
        await _event_bus.connect()

    return _event_bus
