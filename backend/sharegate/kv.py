"""Key-value backends for the access cache, preview records and the event queue.

``RedisKeyValueStore`` is the production backend. ``MemoryKeyValueStore`` keeps
everything in the current process and is meant for single-worker development
and the test-suite.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from sharegate.errors import TransientStoreError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    @abstractmethod
    async def add(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Set only if the key is absent. Returns False when it already existed."""

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def compare_and_set(self, key: str, expected: str, value: str | None, ttl: int | None = None) -> bool:
        """Atomically replace ``expected`` with ``value`` (``None`` deletes the key)."""

    @abstractmethod
    async def append(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None


class RedisKeyValueStore(KeyValueStore):
    def __init__(self, client: redis.Redis) -> None:
        self._r = client

    @classmethod
    def from_url(cls, url: str, max_connections: int = 100) -> RedisKeyValueStore:
        return cls(redis.from_url(url, decode_responses=True, max_connections=max_connections))

    async def get(self, key: str) -> str | None:
        try:
            val = await self._r.get(key)
        except RedisError as err:
            raise TransientStoreError("cache") from err
        if val is None:
            return None
        if isinstance(val, (bytes, bytearray)):
            return val.decode("utf-8", errors="ignore")
        return str(val)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        try:
            await self._r.set(key, value, ex=ttl)
        except RedisError as err:
            raise TransientStoreError("cache") from err

    async def add(self, key: str, value: str, ttl: int | None = None) -> bool:
        try:
            return bool(await self._r.set(key, value, ex=ttl, nx=True))
        except RedisError as err:
            raise TransientStoreError("cache") from err

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._r.delete(key))
        except RedisError as err:
            raise TransientStoreError("cache") from err

    async def compare_and_set(self, key: str, expected: str, value: str | None, ttl: int | None = None) -> bool:
        try:
            async with self._r.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if value is None:
                    pipe.delete(key)
                else:
                    pipe.set(key, value, ex=ttl)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as err:
            raise TransientStoreError("cache") from err

    async def append(self, key: str, value: str) -> None:
        try:
            await self._r.rpush(key, value)
        except RedisError as err:
            raise TransientStoreError("cache") from err

    async def ping(self) -> bool:
        try:
            return bool(await self._r.ping())
        except RedisError:
            logger.debug("redis ping failed", exc_info=True)
            return False

    async def close(self) -> None:
        await self._r.aclose()


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, tuple[str, float | None]] = {}
        self._lists: dict[str, list[str]] = {}

    def _live(self, key: str) -> str | None:
        item = self._values.get(key)
        if item is None:
            return None
        value, deadline = item
        if deadline is not None and self._clock() >= deadline:
            del self._values[key]
            return None
        return value

    def _deadline(self, ttl: int | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self._values[key] = (value, self._deadline(ttl))

    async def add(self, key: str, value: str, ttl: int | None = None) -> bool:
        if self._live(key) is not None:
            return False
        self._values[key] = (value, self._deadline(ttl))
        return True

    async def delete(self, key: str) -> bool:
        existed = self._live(key) is not None
        self._values.pop(key, None)
        self._lists.pop(key, None)
        return existed

    async def compare_and_set(self, key: str, expected: str, value: str | None, ttl: int | None = None) -> bool:
        # no await between the read and the write, so this is atomic for the event loop
        if self._live(key) != expected:
            return False
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = (value, self._deadline(ttl))
        return True

    async def append(self, key: str, value: str) -> None:
        self._lists.setdefault(key, []).append(value)

    def items(self, key: str) -> list[str]:
        return list(self._lists.get(key, []))

    async def ping(self) -> bool:
        return True
