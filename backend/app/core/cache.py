"""Best-effort read-through cache.

The cache is advisory: every failure is logged and reported as a miss or a
no-op, never raised to the caller. The database stays the source of truth.
"""

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.metrics import CACHE_OPERATIONS_TOTAL
from app.core.retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class Cache(Protocol):
    """Key-value cache with TTL and pattern invalidation."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: int) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> None: ...


class NullCache:
    """Cache that never stores anything. Used when caching is disabled."""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        return False

    async def delete(self, key: str) -> None:
        return None

    async def delete_pattern(self, pattern: str) -> None:
        return None


class RedisCache:
    """JSON cache backed by Redis.

    Every call is bounded by ``timeout`` and retried with exponential backoff
    on transient errors before giving up.
    """

    def __init__(
        self,
        client: Redis,
        timeout: float = settings.CACHE_TIMEOUT_SECONDS,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.client = client
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(
            max_attempts=settings.CACHE_RETRY_ATTEMPTS,
            initial_delay=settings.CACHE_RETRY_INITIAL_DELAY,
            max_delay=settings.CACHE_RETRY_MAX_DELAY,
        )

    async def _call(self, operation: str, key: str, fn):
        try:
            result = await retry_async(
                fn,
                self.retry_config,
                retry_on=_TRANSIENT_ERRORS,
                timeout=self.timeout,
            )
        except _TRANSIENT_ERRORS as e:
            CACHE_OPERATIONS_TOTAL.labels(operation=operation, result="error").inc()
            logger.warning(
                "Cache operation failed",
                extra={"operation": operation, "key": key, "error": str(e)},
            )
            return None
        return result

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._call("get", key, lambda: self.client.get(key))
        if raw is None:
            CACHE_OPERATIONS_TOTAL.labels(operation="get", result="miss").inc()
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry", extra={"key": key})
            await self.delete(key)
            return None
        CACHE_OPERATIONS_TOTAL.labels(operation="get", result="hit").inc()
        logger.debug("Cache hit", extra={"key": key})
        return value

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        payload = json.dumps(value, default=str)
        result = await self._call(
            "set", key, lambda: self.client.set(key, payload, ex=ttl)
        )
        return bool(result)

    async def delete(self, key: str) -> None:
        await self._call("delete", key, lambda: self.client.delete(key))

    async def delete_pattern(self, pattern: str) -> None:
        async def _scan_and_delete() -> int:
            deleted = 0
            batch: list[str] = []
            async for key in self.client.scan_iter(match=pattern, count=200):
                batch.append(key)
                if len(batch) >= 200:
                    deleted += await self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.client.delete(*batch)
            return deleted

        await self._call("delete_pattern", pattern, _scan_and_delete)


_cache: Optional[Cache] = None


def get_cache() -> Cache:
    """Get the process-wide cache instance (FastAPI dependency)."""
    global _cache
    if _cache is None:
        if settings.CACHE_ENABLED:
            from app.core.redis import redis_client

            _cache = RedisCache(redis_client)
        else:
            _cache = NullCache()
    return _cache


class CacheKeys:
    """Cache key builders shared by the billing components."""

    PLAN_PREFIX = "plan:"
    PLANS_PREFIX = "plans:"
    ALL_ACTIVE_PLANS = "plans:all:active"

    @staticmethod
    def plan(plan_id) -> str:
        return f"plan:{plan_id}"

    @staticmethod
    def plan_code(code: str) -> str:
        return f"plan:code:{code}"

    @staticmethod
    def promo(code: str) -> str:
        return f"promo:{code.upper()}"

    @staticmethod
    def subscription(subscription_id) -> str:
        return f"subscription:{subscription_id}"

    @staticmethod
    def active_subscription(user_id) -> str:
        return f"subscription:user:{user_id}:active"

    @staticmethod
    def user_subscriptions_pattern(user_id) -> str:
        return f"subscription:user:{user_id}:*"

    @staticmethod
    def usage(user_id, month_year: str) -> str:
        return f"usage:{user_id}:{month_year}"

    @staticmethod
    def user_transactions(user_id, limit: int, offset: int) -> str:
        return f"transactions:user:{user_id}:{limit}:{offset}"

    @staticmethod
    def user_transactions_pattern(user_id) -> str:
        return f"transactions:user:{user_id}:*"
