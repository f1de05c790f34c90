"""
Stream Ingestion Module
"""
from .stream_consumer import (
    EventProcessor,
    EventType,
    StreamConsumer,
    create_stream_consumer,
)

__all__ = [
    "EventProcessor",
    "EventType",
    "StreamConsumer",
    "create_stream_consumer",
]
