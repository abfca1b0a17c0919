from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.config import RedisConfig

LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "tickets:"


class CacheBackend(Protocol):
    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _Entry:
    payload: str
    deadline: float | None

    def expired(self, now: float) -> bool:
        return self.deadline is not None and now >= self.deadline


class MemoryCache(CacheBackend):
    """Process-local cache holding JSON text so both backends behave alike."""

    def __init__(self, prefix: str = KEY_PREFIX) -> None:
        self.prefix = prefix
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any:
        full_key = self.prefix + key
        async with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return None
            if entry.expired(time.monotonic()):
                del self._entries[full_key]
                return None
            return json.loads(entry.payload)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        deadline = time.monotonic() + ttl if ttl else None
        async with self._lock:
            self._entries[self.prefix + key] = _Entry(payload=json.dumps(value), deadline=deadline)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(self.prefix + key, None)

    async def close(self) -> None:
        self._entries.clear()


class RedisCache(CacheBackend):
    def __init__(self, url: str, prefix: str = KEY_PREFIX, default_ttl: int | None = None) -> None:
        self.prefix = prefix
        self.default_ttl = default_ttl
        self._client = redis.from_url(url, decode_responses=True)

    async def ping(self) -> None:
        await self._client.ping()

    async def get(self, key: str) -> Any:
        raw = await self._client.get(self.prefix + key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        await self._client.set(self.prefix + key, json.dumps(value), ex=ttl or self.default_ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(self.prefix + key)

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig) -> CacheBackend:
    if not config.enabled:
        return MemoryCache()
    cache = RedisCache(config.url, default_ttl=config.default_ttl)
    try:
        await cache.ping()
    except RedisError:
        LOGGER.warning("Redis at %s is unreachable; using the in-process cache", config.url, exc_info=True)
        await cache.close()
        return MemoryCache()
    LOGGER.info("Using Redis cache at %s", config.url)
    return cache
