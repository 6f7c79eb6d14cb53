"""
Per-user serialization for attempt bookkeeping.
Local asyncio locks for a single worker; Redis locks when several workers share one store.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis

from .exceptions import StorageError

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand.
    Entries are dropped once no coroutine holds or waits on them, so
    memory tracks the number of users currently verifying.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def active_keys(self) -> int:
        return len(self._locks)


class RedisKeyedLock:
    """Distributed per-user lock backed by Redis."""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        prefix: str = "pin_lock",
        timeout: float = 10.0,
        blocking_timeout: float = 5.0,
    ):
        self.redis_client = redis_client or redis.from_url(
            os.getenv("REDIS_URL", "redis://localhost:6379"),
            decode_responses=True
        )
        self.prefix = prefix
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.redis_client.lock(
            f"{self.prefix}:{key}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except Exception as e:
            logger.error(f"Redis lock acquisition failed for user {key}: {e}")
            raise StorageError("Lock backend unavailable", user_id=key) from e
        if not acquired:
            raise StorageError("Timed out waiting for user lock", user_id=key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except Exception as e:
                # Lock expired under us; the timeout bounds the damage
                logger.warning(f"Redis lock release failed for user {key}: {e}")


def build_keyed_lock():
    """Pick the lock backend: Redis when REDIS_URL is set, local otherwise."""
    if os.getenv("REDIS_URL"):
        logger.info("Using Redis-backed per-user PIN locks")
        return RedisKeyedLock()
    return KeyedLock()
