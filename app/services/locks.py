"""
Redis job lock: SET NX EX with an owner token, released only by its owner.
Keeps a scheduled job from running on several replicas at once.
"""
import logging
import secrets
from contextlib import contextmanager
from typing import Iterator

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Delete only if the key still holds our token (the lock may have expired and been re-taken)
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisLock:
    def __init__(self, name: str, ttl_seconds: int, client: redis.Redis | None = None) -> None:
        self.key = f"lock:{name}"
        self.ttl_seconds = ttl_seconds
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self._token: str | None = None

    def acquire(self) -> bool:
        token = secrets.token_hex(16)
        created = self.client.set(self.key, token, nx=True, ex=self.ttl_seconds)
        if created:
            self._token = token
            return True
        return False

    def release(self) -> None:
        if self._token is None:
            return
        try:
            self.client.eval(_RELEASE_SCRIPT, 1, self.key, self._token)
        except redis.RedisError as e:
            # Expires by TTL anyway
            logger.warning("lock_release_error", extra={"lock": self.key, "error": str(e)})
        finally:
            self._token = None

    @property
    def held(self) -> bool:
        return self._token is not None


@contextmanager
def job_lock(name: str, ttl_seconds: int, client: redis.Redis | None = None) -> Iterator[bool]:
    """
    with job_lock("catalog_sync", 3600) as acquired:
        if not acquired: return
    A Redis error counts as "not acquired": the run is skipped until the next cadence.
    """
    lock = RedisLock(name, ttl_seconds, client=client)
    try:
        acquired = lock.acquire()
    except redis.RedisError as e:
        logger.warning("lock_acquire_error", extra={"lock": lock.key, "error": str(e)})
        acquired = False
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()
