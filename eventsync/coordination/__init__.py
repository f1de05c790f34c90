"""
Coordination Module
"""
from .locks import (
    KeyedLock,
    LocalKeyedLock,
    RedisKeyedLock,
    create_keyed_lock,
    init_redis,
    close_redis,
)

__all__ = [
    "KeyedLock",
    "LocalKeyedLock",
    "RedisKeyedLock",
    "create_keyed_lock",
    "init_redis",
    "close_redis",
]
