"""
Keyed Locks

Serializes check-and-insert on dedup keys and read-modify-write on aggregate
keys. Two backends:
- LocalKeyedLock: asyncio locks for a single process
- RedisKeyedLock: redis locks shared across workers

Redis connection management lives here too; the engine only needs redis for
coordination.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog
from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import LockError

from eventsync.config import get_settings
from eventsync.exceptions import StorageError

logger = structlog.get_logger(__name__)

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
    )
    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        raise

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("Redis connection closed")


def get_redis() -> Redis:
    """Get Redis client instance"""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


# =============================================================================
# LOCK BACKENDS
# =============================================================================

class KeyedLock(ABC):
    """Mutual exclusion per string key"""

    @abstractmethod
    def hold(self, key: str) -> "AsyncIterator[None]":
        """Async context manager holding the lock for ``key``"""
        pass


class LocalKeyedLock(KeyedLock):
    """
    In-process keyed lock.

    Locks are created on demand and dropped once nobody holds or waits on
    them, so the table does not grow with the number of distinct keys.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisKeyedLock(KeyedLock):
    """
    Redis-backed keyed lock for multi-worker deployments.

    Keys are hashed so arbitrary dedup keys map to bounded redis key names.
    """

    def __init__(
        self,
        client: Redis,
        namespace: str = "eventsync:lock",
        timeout: float = 30.0,
        blocking_timeout: float = 10.0,
    ):
        self._client = client
        self.namespace = namespace
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    def _lock_name(self, key: str) -> str:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return f"{self.namespace}:{digest}"

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._client.lock(
            self._lock_name(key),
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise StorageError(
                "Timed out waiting for key lock",
                details={"key": key, "wait_seconds": self.blocking_timeout},
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Expired under us; the next holder already owns it
                logger.warning("Key lock expired before release", key=key, error=str(e))


def create_keyed_lock() -> KeyedLock:
    """Pick the lock backend from settings"""
    settings = get_settings()
    if settings.redis.enabled:
        return RedisKeyedLock(
            get_redis(),
            timeout=settings.redis.lock_timeout_seconds,
            blocking_timeout=settings.redis.lock_wait_seconds,
        )
    return LocalKeyedLock()
