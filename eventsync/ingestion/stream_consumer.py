"""
Kafka Sale Notification Consumer

Live ingestion of upstream sale notifications with:
- Consumer group management
- Event deserialization and validation
- Pluggable event processors per notification type
- Dead-letter queue for events that cannot be recorded
- At-least-once delivery with manual commits; duplicates are absorbed by
  the dedup ledger
- Metrics and observability
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, ConfigDict, Field

from eventsync.config import get_settings
from eventsync.exceptions import EventSyncError
from eventsync.sales.orders import OrderIngestor
from eventsync.sales.schemas import OrderResult, PosOrder, StorefrontOrder, TicketingOrder

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

EVENTS_CONSUMED = Counter(
    "eventsync_events_consumed_total",
    "Total number of sale notifications consumed",
    ["topic", "status"],
)

EVENT_PROCESSING_TIME = Histogram(
    "eventsync_event_processing_seconds",
    "Time spent processing sale notifications",
    ["topic", "event_type"],
)


# =============================================================================
# EVENT MODELS
# =============================================================================

class EventType(str, Enum):
    """Supported notification types"""
    STOREFRONT_ORDER_PAID = "storefront.order_paid"
    TICKETING_ORDER_PLACED = "ticketing.order_placed"
    POS_ORDER_COMPLETED = "pos.order_completed"


class BaseEvent(BaseModel):
    """Envelope shared by all notifications"""

    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    event_timestamp: Optional[datetime] = None
    source: str = "upstream"
    version: str = "1.0"


class StorefrontOrderEvent(BaseEvent):
    """A storefront order reached paid status"""
    order: StorefrontOrder


class TicketingOrderEvent(BaseEvent):
    """A ticketing platform order was placed"""
    order: TicketingOrder


class PosOrderEvent(BaseEvent):
    """A point-of-sale order was completed"""
    order: PosOrder


EVENT_MODELS = {
    EventType.STOREFRONT_ORDER_PAID: StorefrontOrderEvent,
    EventType.TICKETING_ORDER_PLACED: TicketingOrderEvent,
    EventType.POS_ORDER_COMPLETED: PosOrderEvent,
}


# =============================================================================
# EVENT PROCESSORS
# =============================================================================

class EventProcessor(ABC):
    """Abstract base class for event processors"""

    def __init__(self, ingestor: OrderIngestor):
        self.ingestor = ingestor

    @abstractmethod
    async def handle(self, event: BaseEvent) -> OrderResult:
        """Record the order carried by the event"""
        pass

    @abstractmethod
    def get_event_types(self) -> List[EventType]:
        """Return list of event types this processor handles"""
        pass

    async def process(self, event: BaseEvent) -> bool:
        """
        Process a single event.

        Returns:
            True when the order is fully recorded (or was already), False
            when part of it failed and the event should be dead-lettered
        """
        try:
            result = await self.handle(event)
        except EventSyncError as e:
            logger.error("Failed to process sale event", event_type=event.event_type, error=e.message)
            EVENTS_CONSUMED.labels(topic=event.event_type, status="error").inc()
            return False

        status = "duplicate" if result.duplicate_order else ("success" if result.complete else "partial")
        EVENTS_CONSUMED.labels(topic=event.event_type, status=status).inc()
        for warning in result.warnings:
            logger.warning("Order recorded with warning", order_id=result.order_id, warning=warning)
        return result.complete


class StorefrontOrderProcessor(EventProcessor):
    """Processor for paid storefront orders"""

    def get_event_types(self) -> List[EventType]:
        return [EventType.STOREFRONT_ORDER_PAID]

    async def handle(self, event: StorefrontOrderEvent) -> OrderResult:
        logger.info("Processing storefront order", order_id=event.order.order_id)
        return await self.ingestor.record_order(event.order)


class TicketingOrderProcessor(EventProcessor):
    """Processor for ticketing platform orders"""

    def get_event_types(self) -> List[EventType]:
        return [EventType.TICKETING_ORDER_PLACED]

    async def handle(self, event: TicketingOrderEvent) -> OrderResult:
        logger.info("Processing ticketing order", order_id=event.order.order_id)
        return await self.ingestor.record_ticketing_order(event.order)


class PosOrderProcessor(EventProcessor):
    """Processor for completed point-of-sale orders"""

    def get_event_types(self) -> List[EventType]:
        return [EventType.POS_ORDER_COMPLETED]

    async def handle(self, event: PosOrderEvent) -> OrderResult:
        logger.info("Processing POS order", order_id=event.order.order_id)
        return await self.ingestor.record_pos_order(event.order)


# =============================================================================
# STREAM CONSUMER
# =============================================================================

@dataclass
class ConsumerConfig:
    """Kafka consumer configuration"""
    topics: List[str]
    group_id: str = "eventsync"
    bootstrap_servers: str = "localhost:9092"
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = False  # commit after recording
    max_poll_records: int = 100
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000


class StreamConsumer:
    """
    Kafka consumer feeding sale notifications to the recorder.

    Example:
        consumer = StreamConsumer(config)
        consumer.register_processor(StorefrontOrderProcessor(ingestor))
        await consumer.start()
    """

    def __init__(self, config: Optional[ConsumerConfig] = None):
        settings = get_settings()
        self.config = config or ConsumerConfig(
            topics=settings.kafka.topics,
            group_id=settings.kafka.consumer_group,
            bootstrap_servers=settings.kafka.bootstrap_servers,
            auto_offset_reset=settings.kafka.auto_offset_reset,
            max_poll_records=settings.kafka.max_poll_records,
            session_timeout_ms=settings.kafka.session_timeout_ms,
            heartbeat_interval_ms=settings.kafka.heartbeat_interval_ms,
        )

        self._consumer: Optional[AIOKafkaConsumer] = None
        self._producer: Optional[AIOKafkaProducer] = None  # dead-letter queue
        self._processors: Dict[str, EventProcessor] = {}
        self._running = False

    def register_processor(self, processor: EventProcessor) -> None:
        """Register an event processor for specific event types"""
        for event_type in processor.get_event_types():
            self._processors[event_type.value] = processor
            logger.info("Registered processor", event_type=event_type.value)

    async def _create_consumer(self) -> AIOKafkaConsumer:
        return AIOKafkaConsumer(
            *self.config.topics,
            bootstrap_servers=self.config.bootstrap_servers,
            group_id=self.config.group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=self.config.enable_auto_commit,
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            heartbeat_interval_ms=self.config.heartbeat_interval_ms,
            value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

    async def _create_producer(self) -> AIOKafkaProducer:
        return AIOKafkaProducer(
            bootstrap_servers=self.config.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
        )

    def parse_event(self, data: Any) -> Optional[BaseEvent]:
        """Parse raw message data into a typed event, None if invalid"""
        if not isinstance(data, dict):
            logger.warning("Event is not an object", data=data)
            return None
        try:
            event_type = EventType(data.get("event_type", ""))
            return EVENT_MODELS[event_type].model_validate(data)
        except ValueError as e:
            # ValidationError is a ValueError too
            logger.warning("Event validation failed", error=str(e), event_type=data.get("event_type"))
            return None

    async def _send_to_dlq(self, topic: str, data: Any, error: str) -> None:
        """Send a failed event to the dead-letter topic"""
        if not self._producer:
            return

        dlq_topic = f"{topic}.dlq"
        dlq_message = {
            "original_topic": topic,
            "original_data": data,
            "error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            await self._producer.send_and_wait(dlq_topic, value=dlq_message)
            logger.info("Sent event to DLQ", topic=dlq_topic)
        except Exception as e:
            logger.error("Failed to send to DLQ", topic=dlq_topic, error=str(e))

    async def process_message(self, topic: str, data: Any) -> bool:
        """Process one message value; False means it was dead-lettered"""
        event = self.parse_event(data)
        if not event:
            EVENTS_CONSUMED.labels(topic=topic, status="invalid").inc()
            await self._send_to_dlq(topic, data, "Event parsing failed")
            return False

        processor = self._processors.get(event.event_type)
        if not processor:
            logger.warning("No processor for event type", event_type=event.event_type)
            return True

        start_time = asyncio.get_running_loop().time()
        success = await processor.process(event)
        EVENT_PROCESSING_TIME.labels(
            topic=topic,
            event_type=event.event_type,
        ).observe(asyncio.get_running_loop().time() - start_time)

        if not success:
            await self._send_to_dlq(topic, data, "Processing failed")
        return success

    async def start(self) -> None:
        """Start consuming events"""
        logger.info(
            "Starting stream consumer",
            topics=self.config.topics,
            group_id=self.config.group_id,
        )

        self._consumer = await self._create_consumer()
        self._producer = await self._create_producer()

        await self._consumer.start()
        await self._producer.start()

        self._running = True

        try:
            async for message in self._consumer:
                if not self._running:
                    break

                await self.process_message(message.topic, message.value)

                # Failures went to the DLQ, so the offset moves on either way
                await self._consumer.commit()

        except KafkaConnectionError as e:
            logger.error("Kafka connection error", error=str(e))

        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the consumer gracefully"""
        if not self._running and self._consumer is None:
            return
        logger.info("Stopping stream consumer")
        self._running = False

        consumer, producer = self._consumer, self._producer
        self._consumer, self._producer = None, None
        if consumer:
            await consumer.stop()
        if producer:
            await producer.stop()

        logger.info("Stream consumer stopped")


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_stream_consumer(ingestor: OrderIngestor, config: Optional[ConsumerConfig] = None) -> StreamConsumer:
    """Create a configured stream consumer with all processors"""
    consumer = StreamConsumer(config)

    consumer.register_processor(StorefrontOrderProcessor(ingestor))
    consumer.register_processor(TicketingOrderProcessor(ingestor))
    consumer.register_processor(PosOrderProcessor(ingestor))

    return consumer
