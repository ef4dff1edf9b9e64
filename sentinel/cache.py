"""
Expiring key/value stores.

The rate limiter depends on two atomic primitives, ``set_if_absent`` and
``increment``. RedisCache maps them onto ``SET NX EX`` and a MULTI block;
MemoryCache performs each primitive without awaiting, so no other coroutine
can interleave with it.
"""
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple
import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from .error_handling import CacheStoreError

logger = structlog.get_logger()


class CacheStore(ABC):
    """Expiring key/value store interface"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set key only if it does not exist. Returns True when the key was set."""

    @abstractmethod
    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, creating it with the given expiry if absent"""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        pass


class RedisCache(CacheStore):
    """Redis-backed cache store"""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        client = aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as e:
            raise CacheStoreError(f"GET {key} failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, value, ex=ttl_seconds)
        except RedisError as e:
            raise CacheStoreError(f"SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as e:
            raise CacheStoreError(f"DEL {key} failed: {e}") from e

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            return bool(await self.client.set(key, value, ex=ttl_seconds, nx=True))
        except RedisError as e:
            raise CacheStoreError(f"SET NX {key} failed: {e}") from e

    async def increment(self, key: str, ttl_seconds: int) -> int:
        try:
            # SET NX EX seeds the counter with its expiry; INCR keeps the TTL
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, ex=ttl_seconds, nx=True)
                pipe.incr(key)
                results = await pipe.execute()
            return int(results[-1])
        except RedisError as e:
            raise CacheStoreError(f"INCR {key} failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            raise CacheStoreError(f"PING failed: {e}") from e

    async def close(self) -> None:
        await self.client.close()
        logger.info("Disconnected from Redis")


class MemoryCache(CacheStore):
    """
    In-process cache store used when Redis is disabled and in tests.

    Expired entries are dropped when read, and swept from the whole store at
    most once per ``sweep_interval`` seconds on write.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()

    def size(self) -> int:
        """Number of stored entries, including expired ones not yet swept"""
        return len(self._data)

    def _sweep(self):
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        expired = [key for key, (_, expires_at) in self._data.items() if now >= expires_at]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug("Swept expired cache entries", count=len(expired), remaining=len(self._data))

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sweep()
        self._data[key] = (str(value), self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._sweep()
        if self._live(key) is not None:
            return False
        self._data[key] = (str(value), self._clock() + ttl_seconds)
        return True

    async def increment(self, key: str, ttl_seconds: int) -> int:
        self._sweep()
        current = self._live(key)
        if current is None:
            self._data[key] = ("1", self._clock() + ttl_seconds)
            return 1
        _, expires_at = self._data[key]
        count = int(current) + 1
        self._data[key] = (str(count), expires_at)
        return count

    async def ping(self) -> bool:
        return True
