"""
Cache invalidation over Redis.

invalidate() never raises: a cache that is down must not fail a catalog
sync or an order cancellation. Callers still go through invalidate_quietly()
because any object with an invalidate(pattern) method can be injected.
"""
import logging
from typing import Iterable, Protocol

import redis

from app.core.config import settings
from app.utils.metrics import cache_invalidation_failures_total

logger = logging.getLogger(__name__)

DELETE_CHUNK = 500

CATALOG_PATTERNS = ("game:*", "home:*", "catalog:*")


class CacheInvalidator(Protocol):
    def invalidate(self, pattern: str) -> int | None: ...


def order_patterns(order_id: str, user_id: str) -> tuple[str, str]:
    return f"order:{order_id}", f"user:{user_id}:orders"


def game_pattern(game_id: str) -> str:
    return f"game:*{game_id}*"


class CacheService:
    def __init__(self, client: redis.Redis | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    def invalidate(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns number of deleted keys (0 on error)."""
        deleted = 0
        try:
            batch: list[str] = []
            for key in self.client.scan_iter(match=pattern, count=DELETE_CHUNK):
                batch.append(key)
                if len(batch) >= DELETE_CHUNK:
                    deleted += self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += self.client.delete(*batch)
        except redis.RedisError as e:
            cache_invalidation_failures_total.inc()
            logger.warning("cache_invalidate_error", extra={"pattern": pattern, "error": str(e)})
            return 0
        logger.info("cache_invalidated", extra={"pattern": pattern, "deleted": deleted})
        return deleted


class NullCache:
    """No-op invalidator (scripts, tests)."""

    def invalidate(self, pattern: str) -> int:
        return 0


def invalidate_quietly(cache: CacheInvalidator | None, patterns: Iterable[str]) -> None:
    """Best-effort invalidation of several patterns; failures are logged, never raised."""
    if cache is None:
        return
    for pattern in patterns:
        try:
            cache.invalidate(pattern)
        except Exception as e:
            cache_invalidation_failures_total.inc()
            logger.warning("cache_invalidate_failed", extra={"pattern": pattern, "error": str(e)})
