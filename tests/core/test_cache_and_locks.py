"""Tests for cache invalidation, job locks and Redis-backed breaker storage."""
from unittest.mock import MagicMock

import pybreaker
import pytest
import redis

from app.services.cache.service import CacheService, NullCache, invalidate_quietly, order_patterns
from app.services.circuit_breaker import RedisCircuitBreakerStorage
from app.services.locks import RedisLock, job_lock


class TestCacheService:
    def test_invalidate_pattern(self, fake_redis):
        fake_redis.store.update({"game:1": "x", "game:2": "x", "order:1": "x"})
        assert CacheService(fake_redis).invalidate("game:*") == 2
        assert set(fake_redis.store) == {"order:1"}

    def test_redis_error_swallowed(self):
        client = MagicMock()
        client.scan_iter.side_effect = redis.ConnectionError("down")
        assert CacheService(client).invalidate("game:*") == 0

    def test_null_cache(self):
        assert NullCache().invalidate("game:*") == 0

    def test_invalidate_quietly_continues_after_failure(self):
        cache = MagicMock()
        cache.invalidate.side_effect = [RuntimeError("boom"), 1]
        invalidate_quietly(cache, order_patterns("o1", "u1"))
        assert [c.args[0] for c in cache.invalidate.call_args_list] == ["order:o1", "user:u1:orders"]

    def test_invalidate_quietly_without_cache(self):
        invalidate_quietly(None, ["game:*"])


class TestJobLock:
    def test_second_holder_skipped(self, fake_redis):
        with job_lock("catalog", 60, client=fake_redis) as first:
            with job_lock("catalog", 60, client=fake_redis) as second:
                assert first is True
                assert second is False
        assert fake_redis.store == {}

    def test_release_only_own_token(self, fake_redis):
        lock = RedisLock("catalog", 60, client=fake_redis)
        assert lock.acquire()
        fake_redis.store["lock:catalog"] = "someone-else"
        lock.release()
        assert fake_redis.store["lock:catalog"] == "someone-else"
        assert not lock.held

    def test_redis_error_means_not_acquired(self):
        client = MagicMock()
        client.set.side_effect = redis.ConnectionError("down")
        with job_lock("catalog", 60, client=client) as acquired:
            assert acquired is False


class TestBreakerStorage:
    def test_unreachable_redis_reads_as_closed(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        client.incr.side_effect = redis.ConnectionError("down")
        storage = RedisCircuitBreakerStorage("marketplace", client=client)
        assert storage.state == pybreaker.STATE_CLOSED
        assert storage.counter == 0
        storage.increment_counter()

    def test_state_roundtrip(self):
        values = {}
        client = MagicMock()
        client.get.side_effect = values.get
        client.set.side_effect = lambda key, value, ex=None: values.__setitem__(key, value)
        storage = RedisCircuitBreakerStorage("payment_gateway", client=client)
        storage.state = pybreaker.STATE_OPEN
        assert storage.state == pybreaker.STATE_OPEN

    def test_half_open_breaker_closes_after_success(self, fake_redis):
        breaker = pybreaker.CircuitBreaker(
            fail_max=1,
            reset_timeout=0,
            state_storage=RedisCircuitBreakerStorage("marketplace", client=fake_redis),
        )

        def boom():
            raise ValueError("upstream down")

        with pytest.raises(pybreaker.CircuitBreakerError):
            breaker.call(boom)
        assert fake_redis.get("cb:marketplace:state") == pybreaker.STATE_OPEN

        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.current_state == pybreaker.STATE_CLOSED

    def test_success_counter_persisted(self, fake_redis):
        storage = RedisCircuitBreakerStorage("payment_gateway", client=fake_redis)
        storage.increment_success_counter()
        storage.increment_success_counter()
        assert storage.success_counter == 2
        assert RedisCircuitBreakerStorage("payment_gateway", client=fake_redis).success_counter == 2
        storage.reset_success_counter()
        assert storage.success_counter == 0
