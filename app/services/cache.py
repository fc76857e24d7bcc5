"""Read-through cache for loan application reads.

Entries are a convenience: every failure degrades to a miss and every write
path invalidates after commit, so a stale or unreachable cache never changes
what a request observes beyond the TTL window.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.settings import settings
from app.utils.redis_client import get_redis_client, redis_key

logger = logging.getLogger(__name__)

APPLICATION_PREFIX = "loan_application"


def application_key(application_id: UUID | str, view: str = "detail") -> str:
    return redis_key(APPLICATION_PREFIX, application_id, view)


def application_pattern(application_id: UUID | str) -> str:
    return redis_key(APPLICATION_PREFIX, application_id, "*")


class ApplicationCache(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any]) -> None: ...

    async def invalidate_application(self, application_id: UUID | str) -> None: ...


class NullApplicationCache:
    async def get(self, key: str) -> dict[str, Any] | None:
        return None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        return None

    async def invalidate_application(self, application_id: UUID | str) -> None:
        return None


class RedisApplicationCache:
    def __init__(self, redis: Redis | None = None, ttl_seconds: int | None = None) -> None:
        self._redis = redis
        self.ttl_seconds = ttl_seconds or settings.application_cache_ttl_seconds

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            cached = await self.redis.get(key)
        except RedisError:
            logger.warning("Application cache read failed key=%s", key, exc_info=True)
            return None
        if not cached:
            return None
        try:
            return json.loads(cached)
        except ValueError:
            logger.warning("Discarding undecodable cache entry key=%s", key)
            return None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        try:
            await self.redis.setex(key, self.ttl_seconds, json.dumps(value, default=str))
        except RedisError:
            logger.warning("Application cache write failed key=%s", key, exc_info=True)

    async def invalidate_application(self, application_id: UUID | str) -> None:
        try:
            keys = [key async for key in self.redis.scan_iter(match=application_pattern(application_id))]
            if keys:
                await self.redis.delete(*keys)
        except RedisError:
            logger.warning(
                "Application cache invalidation failed application=%s", application_id, exc_info=True
            )


def build_application_cache() -> ApplicationCache:
    if not settings.application_cache_enabled:
        return NullApplicationCache()
    return RedisApplicationCache()
