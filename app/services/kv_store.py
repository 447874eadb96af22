"""Shared key-value store used by the event queue, dedup ledger and sessions.

Production runs on Redis; tests and local runs without Redis use the
in-memory store, whose expiry follows an injectable clock.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections import deque
from typing import Callable, Optional, Protocol

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from app.logging_config import get_logger
from app.services.errors import TransientIOError

logger = get_logger("kv_store")

Clock = Callable[[], float]

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def scan(self, prefix: str) -> list[str]:
        ...

    async def lpush(self, key: str, value: str) -> int:
        ...

    async def rpush(self, key: str, value: str) -> int:
        ...

    async def brpop(self, key: str, timeout: float) -> Optional[str]:
        ...

    async def llen(self, key: str) -> int:
        ...

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        ...


class RedisStore:
    """KeyValueStore over redis.asyncio. Backend errors surface as TransientIOError."""

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout_seconds: float = 5.0) -> "RedisStore":
        client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client)

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Redis operation failed",
                extra={"context": {"operation": operation, "error": str(exc)}},
            )
            raise TransientIOError(f"redis {operation} failed: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        if ttl_seconds is not None and ttl_seconds > 0:
            await self._call("set", self.client.set(key, value, px=max(1, int(ttl_seconds * 1000))))
        else:
            await self._call("set", self.client.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self.client.delete(*keys)))

    async def scan(self, prefix: str) -> list[str]:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"

        async def _collect() -> list[str]:
            return [key async for key in self.client.scan_iter(match=pattern, count=500)]

        return await self._call("scan", _collect())

    async def lpush(self, key: str, value: str) -> int:
        return int(await self._call("lpush", self.client.lpush(key, value)))

    async def rpush(self, key: str, value: str) -> int:
        return int(await self._call("rpush", self.client.rpush(key, value)))

    async def brpop(self, key: str, timeout: float) -> Optional[str]:
        if timeout <= 0:
            return await self._call("rpop", self.client.rpop(key))
        popped = await self._call("brpop", self.client.brpop([key], timeout=timeout))
        if not popped:
            return None
        return popped[1]

    async def llen(self, key: str) -> int:
        return int(await self._call("llen", self.client.llen(key)))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return list(await self._call("lrange", self.client.lrange(key, start, end)))

    async def close(self) -> None:
        await self.client.aclose()


class InMemoryStore:
    """Single-process KeyValueStore with clock-driven TTL expiry."""

    def __init__(self, clock: Clock = time.time, poll_interval_seconds: float = 0.01):
        self.clock = clock
        self.poll_interval_seconds = poll_interval_seconds
        self._values: dict[str, tuple[str, Optional[float]]] = {}
        self._lists: dict[str, deque[str]] = {}

    def _purge_expired(self) -> None:
        now = self.clock()
        expired = [key for key, (_, expires_at) in self._values.items() if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._values[key]

    async def get(self, key: str) -> Optional[str]:
        self._purge_expired()
        entry = self._values.get(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self.clock() + ttl_seconds if ttl_seconds is not None and ttl_seconds > 0 else None
        self._values[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._values.pop(key, None) is not None:
                removed += 1
            if self._lists.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan(self, prefix: str) -> list[str]:
        self._purge_expired()
        return [key for key in self._values if key.startswith(prefix)]

    async def lpush(self, key: str, value: str) -> int:
        items = self._lists.setdefault(key, deque())
        items.appendleft(value)
        return len(items)

    async def rpush(self, key: str, value: str) -> int:
        items = self._lists.setdefault(key, deque())
        items.append(value)
        return len(items)

    async def brpop(self, key: str, timeout: float) -> Optional[str]:
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            items = self._lists.get(key)
            if items:
                value = items.pop()
                if not items:
                    del self._lists[key]
                return value
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, ()))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = list(self._lists.get(key, ()))
        stop = None if end == -1 else end + 1
        return items[start:stop]

    async def close(self) -> None:
        return None
