"""
Consumer Entry Point

Boots the live ingestion worker: logging, database, optional Redis locks,
the Prometheus endpoint and the Kafka consumer.
"""

import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from eventsync.config import get_settings
from eventsync.config.logging import configure_logging
from eventsync.coordination.locks import close_redis, init_redis
from eventsync.database.connection import close_database, get_session_factory, init_database
from eventsync.ingestion.stream_consumer import StreamConsumer, create_stream_consumer
from eventsync.sales.catalog import StaticCatalog
from eventsync.service import SyncService, create_sync_service

logger = structlog.get_logger(__name__)


async def startup() -> SyncService:
    """Initialize shared resources and wire the service"""
    settings = get_settings()
    configure_logging()

    logger.info("Starting eventsync", environment=settings.app_env, version=settings.version)

    await init_database(create_schema=not settings.is_production)
    logger.info("Database initialized")

    if settings.redis.enabled:
        await init_redis()
        logger.info("Redis initialized")

    if settings.sales.catalog_path:
        catalog = StaticCatalog.from_file(settings.sales.catalog_path)
    else:
        logger.warning("No catalog export configured, every sale will miss the catalog")
        catalog = StaticCatalog()

    return create_sync_service(get_session_factory(), catalog)


async def shutdown() -> None:
    logger.info("Shutting down...")
    await close_database()
    if get_settings().redis.enabled:
        await close_redis()


async def serve() -> None:
    """Run the consumer until interrupted"""
    settings = get_settings()
    service = await startup()

    start_http_server(settings.monitoring.prometheus_port)
    logger.info("Metrics endpoint started", port=settings.monitoring.prometheus_port)

    consumer: StreamConsumer = create_stream_consumer(service.ingestor)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(consumer.stop()))

    try:
        await consumer.start()
    finally:
        await shutdown()


def run() -> None:
    """Console script entry point"""
    asyncio.run(serve())


if __name__ == "__main__":
    run()
