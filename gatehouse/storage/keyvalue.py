from __future__ import annotations

import asyncio
import fnmatch
import math
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from gatehouse.logging import get_logger

logger = get_logger(__name__)

_WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"


class Pipeline(Protocol):
    def delete(self, *keys: str) -> Any: ...

    def lpush(self, key: str, *values: str) -> Any: ...

    def expire(self, key: str, seconds: int) -> Any: ...

    async def execute(self) -> List[Any]: ...


class KeyValueStore(Protocol):
    """Async key-value operations used by the cache, sessions and rate limiter.

    Values are plain strings; JSON encoding happens one layer up in
    :class:`gatehouse.storage.cache.CacheService`.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def delete(self, *keys: str) -> int: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def keys(self, pattern: str) -> List[str]: ...

    async def lpush(self, key: str, *values: str) -> int: ...

    async def lrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def ltrim(self, key: str, start: int, stop: int) -> bool: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def sismember(self, key: str, member: str) -> bool: ...

    async def hset(self, key: str, field: str, value: str) -> int: ...

    async def hget(self, key: str, field: str) -> Optional[str]: ...

    async def hgetall(self, key: str) -> Dict[str, str]: ...

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int: ...

    async def zrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def zrem(self, key: str, *members: str) -> int: ...

    async def type(self, key: str) -> str: ...

    async def ping(self) -> bool: ...

    async def info(self) -> Dict[str, Any]: ...

    def pipeline(self) -> Pipeline: ...

    async def close(self) -> None: ...


async def health_status(store: KeyValueStore) -> Dict[str, Any]:
    """Report store connectivity without raising."""
    try:
        pong = await store.ping()
        info = await store.info()
        return {"connected": bool(pong), "info": info}
    except Exception as exc:
        logger.warning("kv_health_check_failed", error=str(exc))
        return {"connected": False, "error": str(exc)}


class RedisKeyValueStore:
    """Thin ``redis.asyncio`` wrapper shared by every request."""

    _GETDEL_FALLBACK = """
    local value = redis.call('GET', KEYS[1])
    if value then
        redis.call('DEL', KEYS[1])
    end
    return value
    """

    def __init__(
        self,
        redis_url: str,
        *,
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            password=password,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return bool(await self.client.set(key, value, ex=ex))

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.client.expire(key, seconds))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key``.

        Uses GETDEL (Redis 6.2+) and falls back to a Lua script on servers
        that do not know the command.
        """
        try:
            return await self.client.getdel(key)
        except ResponseError as exc:
            if "unknown command" not in str(exc).lower():
                raise
            return await self.client.eval(self._GETDEL_FALLBACK, 1, key)

    async def keys(self, pattern: str) -> List[str]:
        return [key async for key in self.client.scan_iter(match=pattern)]

    async def lpush(self, key: str, *values: str) -> int:
        return int(await self.client.lpush(key, *values))

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return list(await self.client.lrange(key, start, stop))

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        return bool(await self.client.ltrim(key, start, stop))

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self.client.sadd(key, *members))

    async def smembers(self, key: str) -> set[str]:
        return set(await self.client.smembers(key))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self.client.sismember(key, member))

    async def hset(self, key: str, field: str, value: str) -> int:
        return int(await self.client.hset(key, field, value))

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self.client.hget(key, field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(await self.client.hgetall(key))

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        return int(await self.client.zadd(key, mapping))

    async def zrange(self, key: str, start: int, stop: int) -> List[str]:
        return list(await self.client.zrange(key, start, stop))

    async def zrem(self, key: str, *members: str) -> int:
        return int(await self.client.zrem(key, *members))

    async def type(self, key: str) -> str:
        return await self.client.type(key)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def info(self) -> Dict[str, Any]:
        return dict(await self.client.info())

    def pipeline(self) -> Pipeline:
        return self.client.pipeline(transaction=True)

    async def close(self) -> None:
        """Close the connection pool. Call on shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


async def connect_with_retry(
    redis_url: str,
    *,
    password: Optional[str] = None,
    max_retries: int = 5,
    delay: float = 5.0,
) -> RedisKeyValueStore:
    """Create a Redis store and wait until it answers PING."""
    last_error: Exception | None = None
    for attempt in range(1, max_retries + 1):
        logger.info("redis_connect_attempt", attempt=attempt, max_retries=max_retries)
        store = RedisKeyValueStore(redis_url, password=password)
        try:
            await store.ping()
        except (RedisError, OSError) as exc:
            last_error = exc
            logger.error("redis_connect_failed", attempt=attempt, error=str(exc))
            await store.close()
            if attempt < max_retries:
                logger.info("redis_connect_retrying", delay_seconds=delay)
                await asyncio.sleep(delay)
            continue
        logger.info("redis_connected")
        return store
    raise ConnectionError("Redis connection failed after multiple attempts") from last_error


class _MemoryPipeline:
    def __init__(self, store: "MemoryKeyValueStore") -> None:
        self._store = store
        self._ops: list[tuple[str, tuple]] = []

    def delete(self, *keys: str) -> "_MemoryPipeline":
        self._ops.append(("delete", keys))
        return self

    def lpush(self, key: str, *values: str) -> "_MemoryPipeline":
        self._ops.append(("lpush", (key, *values)))
        return self

    def expire(self, key: str, seconds: int) -> "_MemoryPipeline":
        self._ops.append(("expire", (key, seconds)))
        return self

    def set(self, key: str, value: str, ex: Optional[int] = None) -> "_MemoryPipeline":
        self._ops.append(("set", (key, value, ex)))
        return self

    async def execute(self) -> List[Any]:
        ops, self._ops = self._ops, []
        results = []
        for name, args in ops:
            results.append(await getattr(self._store, name)(*args))
        return results


class MemoryKeyValueStore:
    """In-process store with Redis TTL semantics.

    Used by the test suite and by ``USE_MEMORY_STORE`` local runs. ``clock``
    can be replaced to simulate the passage of time.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        self._lock = threading.RLock()

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._expires.pop(key, None)
        return key in self._values

    def _typed(self, key: str, kind: type, default: Callable[[], Any] | None = None) -> Any:
        if not self._alive(key):
            if default is None:
                return None
            self._values[key] = default()
        value = self._values[key]
        if type(value) is not kind:
            raise ResponseError(_WRONGTYPE)
        return value

    @staticmethod
    def _slice(items: Sequence[Any], start: int, stop: int) -> List[Any]:
        length = len(items)
        if start < 0:
            start = max(length + start, 0)
        if stop < 0:
            stop = length + stop
        if start > stop or start >= length:
            return []
        return list(items[start : stop + 1])

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._typed(key, str)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            self._values[key] = str(value)
            if ex is not None:
                self._expires[key] = self._clock() + ex
            else:
                self._expires.pop(key, None)
            return True

    async def incr(self, key: str) -> int:
        with self._lock:
            current = self._typed(key, str)
            try:
                value = int(current) + 1 if current is not None else 1
            except ValueError:
                raise ResponseError("value is not an integer or out of range") from None
            self._values[key] = str(value)
            return value

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            if not self._alive(key):
                return False
            self._expires[key] = self._clock() + seconds
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if not self._alive(key):
                return -2
            deadline = self._expires.get(key)
            if deadline is None:
                return -1
            return max(0, math.ceil(deadline - self._clock()))

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._alive(key):
                    removed += 1
                self._values.pop(key, None)
                self._expires.pop(key, None)
            return removed

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._typed(key, str)
            if value is not None:
                self._values.pop(key, None)
                self._expires.pop(key, None)
            return value

    async def keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [
                key
                for key in list(self._values)
                if self._alive(key) and fnmatch.fnmatchcase(key, pattern)
            ]

    async def lpush(self, key: str, *values: str) -> int:
        with self._lock:
            items = self._typed(key, list, list)
            for value in values:
                items.insert(0, str(value))
            return len(items)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            items = self._typed(key, list)
            return self._slice(items or [], start, stop)

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        with self._lock:
            items = self._typed(key, list)
            if items is None:
                return True
            kept = self._slice(items, start, stop)
            if kept:
                self._values[key] = kept
            else:
                self._values.pop(key, None)
                self._expires.pop(key, None)
            return True

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            items = self._typed(key, set, set)
            before = len(items)
            items.update(str(m) for m in members)
            return len(items) - before

    async def smembers(self, key: str) -> set[str]:
        with self._lock:
            return set(self._typed(key, set) or set())

    async def sismember(self, key: str, member: str) -> bool:
        with self._lock:
            return str(member) in (self._typed(key, set) or set())

    async def hset(self, key: str, field: str, value: str) -> int:
        with self._lock:
            mapping = self._typed(key, dict, dict)
            added = 0 if field in mapping else 1
            mapping[field] = str(value)
            return added

    async def hget(self, key: str, field: str) -> Optional[str]:
        with self._lock:
            return (self._typed(key, dict) or {}).get(field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._typed(key, dict) or {})

    # Sorted sets are stored as _ZSet so hashes and zsets don't collide on type checks
    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        with self._lock:
            zset = self._typed(key, _ZSet, _ZSet)
            added = sum(1 for member in mapping if member not in zset)
            zset.update({str(m): float(s) for m, s in mapping.items()})
            return added

    async def zrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            zset = self._typed(key, _ZSet) or _ZSet()
            ordered = sorted(zset.items(), key=lambda item: (item[1], item[0]))
            return [member for member, _ in self._slice(ordered, start, stop)]

    async def zrem(self, key: str, *members: str) -> int:
        with self._lock:
            zset = self._typed(key, _ZSet)
            if zset is None:
                return 0
            return sum(1 for m in members if zset.pop(str(m), None) is not None)

    async def type(self, key: str) -> str:
        with self._lock:
            if not self._alive(key):
                return "none"
            value = self._values[key]
            if isinstance(value, _ZSet):
                return "zset"
            return {str: "string", list: "list", set: "set", dict: "hash"}[type(value)]

    async def ping(self) -> bool:
        return True

    async def info(self) -> Dict[str, Any]:
        with self._lock:
            return {"redis_version": "memory", "db0": {"keys": len(self._values)}}

    def pipeline(self) -> _MemoryPipeline:
        return _MemoryPipeline(self)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._expires.clear()


class _ZSet(dict):
    pass
