"""
NATS JetStream Client for Python Microservices

Event-driven communication between microservices over NATS JetStream
(nats-py).

Subjects are the event types themselves (e.g. "settlement.milestone.paid");
each top level prefix gets its own stream ("settlement" -> "settlement-stream").
"""

import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union, TYPE_CHECKING

import nats
from nats.aio.client import Client as NATS
from nats.js import JetStreamContext
from nats.js.errors import BadRequestError

if TYPE_CHECKING:
    from core.config_manager import ConfigManager

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class ServiceSource(Enum):
    """Services publishing on the bus"""
    SETTLEMENT_SERVICE = "settlement_service"
    CAMPAIGN_SERVICE = "campaign_service"


class Event:
    """Event model"""

    def __init__(
        self,
        event_type: Union[Enum, str],
        source: Union[Enum, str],
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value if isinstance(event_type, Enum) else event_type
        self.source = source.value if isinstance(source, Enum) else source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.utcnow().isoformat()
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
    """NATS JetStream event bus"""

    STREAM_MAX_MESSAGES = 100000

    def __init__(
        self,
        service_name: str,
        config: Optional["ConfigManager"] = None,
        url: Optional[str] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used as the connection name)
            config: Optional ConfigManager instance for endpoint resolution
            url: Explicit NATS URL (overrides config)
        """
        from core.config_manager import ConfigManager

        self.service_name = service_name

        if config is None:
            config = ConfigManager(service_name)

        self.url = url or config.infra.get_nats_url()

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._streams: Set[str] = set()
        self._subscriptions: Dict[str, Any] = {}  # pattern -> JetStream subscription

        logger.info(f"NATS EventBus initialized: {self.url}")

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._nc = await nats.connect(self.url, name=self.service_name)
            self._js = self._nc.jetstream()
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS at {self.url}: {e}")
            raise

    def _get_stream_name_for_event(self, event_type: str) -> str:
        """settlement.payment.completed -> settlement-stream"""
        return f"{event_type.split('.')[0]}-stream"

    async def _ensure_stream(self, event_type: str) -> str:
        stream_name = self._get_stream_name_for_event(event_type)
        if stream_name in self._streams:
            return stream_name

        prefix = event_type.split('.')[0]
        try:
            await self._js.add_stream(
                name=stream_name,
                subjects=[f"{prefix}.>"],
                max_msgs=self.STREAM_MAX_MESSAGES,
            )
        except BadRequestError as e:
            # Stream already exists with a different config
            logger.debug(f"Stream creation note for {stream_name}: {e}")
        self._streams.add(stream_name)
        return stream_name

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to NATS JetStream.

        Returns:
            True when JetStream acknowledged the message
        """
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return False

        try:
            stream_name = await self._ensure_stream(event.type)
            data = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()
            ack = await self._js.publish(
                event.type,
                data,
                headers={"event_id": event.id, "source": event.source},
            )
            logger.info(f"Published event {event.type} [{event.id}] to stream {stream_name}, seq={ack.seq}")
            return True

        except Exception as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def subscribe_to_events(
        self,
        pattern: str,
        handler: EventHandler,
        durable: Optional[str] = None,
    ) -> bool:
        """
        Subscribe a handler to a subject pattern with a durable consumer.

        The message is acked after the handler returns and nak'ed when it raises,
        so JetStream redelivers it.
        """
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return False

        async def _callback(msg):
            try:
                event = Event.from_dict(json.loads(msg.data.decode()))
                await handler(event)
                await msg.ack()
            except Exception as e:
                logger.error(f"Error handling {msg.subject}: {e}", exc_info=True)
                await msg.nak()

        await self._ensure_stream(pattern)
        subscription = await self._js.subscribe(
            pattern, cb=_callback, durable=durable, manual_ack=True
        )
        self._subscriptions[pattern] = subscription
        logger.info(f"Subscribed to {pattern} (durable={durable})")
        return True

    async def close(self):
        """Drain subscriptions and close the connection"""
        for pattern, subscription in list(self._subscriptions.items()):
            try:
                await subscription.unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to unsubscribe {pattern}: {e}")
        self._subscriptions.clear()

        if self._nc is not None and not self._nc.is_closed:
            await self._nc.drain()
        self._nc = None
        self._js = None
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._nc is not None and self._nc.is_connected and self._js is not None


# Singleton instance
_event_bus: Optional[NATSEventBus] = None


async def get_event_bus(
    service_name: str,
    config: Optional["ConfigManager"] = None,
) -> NATSEventBus:
    """
    Get or create event bus instance.

    Args:
        service_name: Name of the service using the event bus
        config: Optional ConfigManager instance

    Returns:
        Connected NATSEventBus instance
    """
    global _event_bus

    if _event_bus is None:
        bus = NATSEventBus(service_name=service_name, config=config)
        await bus.connect()
        _event_bus = bus

    return _event_bus


__all__ = [
    "Event",
    "EventHandler",
    "NATSEventBus",
    "ServiceSource",
    "get_event_bus",
]
