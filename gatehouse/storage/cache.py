from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.keyvalue import KeyValueStore

logger = get_logger(__name__)


def _encode(value: Any) -> str:
    return json.dumps(value, default=str)


def _decode(raw: Optional[str]) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


class CachePipeline:
    """Batched delete/lpush/expire executed in one round trip."""

    def __init__(self, pipeline) -> None:
        self._pipeline = pipeline

    def delete(self, key: str) -> "CachePipeline":
        self._pipeline.delete(key)
        return self

    def lpush(self, key: str, *values: Any) -> "CachePipeline":
        self._pipeline.lpush(key, *[_encode(v) for v in values])
        return self

    def expire(self, key: str, seconds: int) -> "CachePipeline":
        self._pipeline.expire(key, seconds)
        return self

    async def execute(self) -> None:
        await self._pipeline.execute()


class CacheService:
    """JSON cache facade over a :class:`KeyValueStore`.

    Read operations degrade to an empty result when the store fails or holds
    a value that does not parse. Mutations log and re-raise. No operation
    retries.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def get(self, key: str) -> Any:
        try:
            return _decode(await self.store.get(key))
        except Exception as exc:
            logger.error("cache_get_failed", key=key, error=str(exc))
            return None

    async def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        # tags are not indexed; invalidate_by_tag matches key substrings
        try:
            await self.store.set(key, _encode(value), ex=ttl or None)
        except Exception as exc:
            logger.error("cache_set_failed", key=key, error=str(exc))
            raise

    async def pop(self, key: str) -> Any:
        """Atomically read and delete ``key``; ``None`` when absent."""
        try:
            return _decode(await self.store.getdel(key))
        except Exception as exc:
            logger.error("cache_pop_failed", key=key, error=str(exc))
            return None

    async def invalidate(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except Exception as exc:
            logger.error("cache_invalidate_failed", key=key, error=str(exc))
            raise

    async def invalidate_by_pattern(self, pattern: str) -> None:
        try:
            keys = await self.store.keys(pattern)
            if keys:
                await self.store.delete(*keys)
        except Exception as exc:
            logger.error("cache_invalidate_pattern_failed", pattern=pattern, error=str(exc))
            raise

    async def invalidate_by_tag(self, tag: str | List[str]) -> None:
        """Delete every key whose name contains ``tag``.

        This scans the keyspace; it is not an index of the tags passed to
        :meth:`set`.
        """
        tags = [tag] if isinstance(tag, str) else list(tag)
        try:
            for t in tags:
                keys = await self.store.keys(f"*{t}*")
                if keys:
                    await self.store.delete(*keys)
        except Exception as exc:
            logger.error("cache_invalidate_tag_failed", tags=tags, error=str(exc))
            raise

    # Lists

    async def lpush(self, key: str, *values: Any) -> None:
        try:
            await self.store.lpush(key, *[_encode(v) for v in values])
        except Exception as exc:
            logger.error("cache_lpush_failed", key=key, error=str(exc))
            raise

    async def lrange(self, key: str, start: int, stop: int) -> List[Any]:
        try:
            return [_decode(item) for item in await self.store.lrange(key, start, stop)]
        except Exception as exc:
            logger.error("cache_lrange_failed", key=key, error=str(exc))
            return []

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        try:
            await self.store.ltrim(key, start, stop)
        except Exception as exc:
            logger.error("cache_ltrim_failed", key=key, error=str(exc))
            raise

    def pipeline(self) -> CachePipeline:
        return CachePipeline(self.store.pipeline())

    # Sorted sets

    async def zadd(self, key: str, score: float, member: Any) -> None:
        try:
            await self.store.zadd(key, {_encode(member): score})
        except Exception as exc:
            logger.error("cache_zadd_failed", key=key, error=str(exc))
            raise

    async def zrange(self, key: str, start: int, stop: int) -> List[Any]:
        try:
            return [_decode(item) for item in await self.store.zrange(key, start, stop)]
        except Exception as exc:
            logger.error("cache_zrange_failed", key=key, error=str(exc))
            return []

    async def zrem(self, key: str, member: Any) -> None:
        try:
            await self.store.zrem(key, _encode(member))
        except Exception as exc:
            logger.error("cache_zrem_failed", key=key, error=str(exc))
            raise

    # Hashes

    async def hset(self, key: str, field: str, value: Any) -> None:
        try:
            await self.store.hset(key, field, _encode(value))
        except Exception as exc:
            logger.error("cache_hset_failed", key=key, field=field, error=str(exc))
            raise

    async def hget(self, key: str, field: str) -> Any:
        try:
            return _decode(await self.store.hget(key, field))
        except Exception as exc:
            logger.error("cache_hget_failed", key=key, field=field, error=str(exc))
            return None

    async def hgetall(self, key: str) -> Dict[str, Any]:
        try:
            values = await self.store.hgetall(key)
            return {field: _decode(raw) for field, raw in values.items()}
        except Exception as exc:
            logger.error("cache_hgetall_failed", key=key, error=str(exc))
            return {}

    # Sets

    async def sadd(self, key: str, *members: Any) -> None:
        try:
            await self.store.sadd(key, *[_encode(m) for m in members])
        except Exception as exc:
            logger.error("cache_sadd_failed", key=key, error=str(exc))
            raise

    async def smembers(self, key: str) -> List[Any]:
        try:
            return [_decode(m) for m in await self.store.smembers(key)]
        except Exception as exc:
            logger.error("cache_smembers_failed", key=key, error=str(exc))
            return []

    async def sismember(self, key: str, member: Any) -> bool:
        try:
            return await self.store.sismember(key, _encode(member))
        except Exception as exc:
            logger.error("cache_sismember_failed", key=key, error=str(exc))
            return False

    # Utilities

    async def scan(self, pattern: str) -> List[str]:
        try:
            return await self.store.keys(pattern)
        except Exception as exc:
            logger.error("cache_scan_failed", pattern=pattern, error=str(exc))
            return []

    async def ttl(self, key: str) -> int:
        try:
            return await self.store.ttl(key)
        except Exception as exc:
            logger.error("cache_ttl_failed", key=key, error=str(exc))
            return 0

    async def type(self, key: str) -> str:
        try:
            return await self.store.type(key)
        except Exception as exc:
            logger.error("cache_type_failed", key=key, error=str(exc))
            return ""

    async def expire(self, key: str, seconds: int) -> None:
        try:
            await self.store.expire(key, seconds)
        except Exception as exc:
            logger.error("cache_expire_failed", key=key, error=str(exc))
            raise

    async def delete(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except Exception as exc:
            logger.error("cache_delete_failed", key=key, error=str(exc))
            raise
