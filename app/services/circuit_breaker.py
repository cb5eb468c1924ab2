"""
Circuit breakers for upstream calls (marketplace, payment gateways), using pybreaker.
State is kept in Redis so every worker replica sees the same breaker.
If Redis is unreachable the breaker behaves as closed.
"""
import logging
from datetime import datetime

import redis
import pybreaker
from typing import Callable, Any

from app.core.config import settings
from app.utils.metrics import circuit_breaker_state


logger = logging.getLogger("circuit_breaker")


class RedisCircuitBreakerStorage(pybreaker.CircuitBreakerStorage):
    """Redis-backed storage for circuit breaker state (distributed-friendly)."""

    def __init__(self, name: str, client: redis.Redis | None = None) -> None:
        super().__init__(name)
        self._name = name
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self._state_key = f"cb:{name}:state"
        self._counter_key = f"cb:{name}:counter"
        self._success_key = f"cb:{name}:success"
        self._opened_at_key = f"cb:{name}:opened_at"

    def _get(self, key: str) -> str | None:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            logger.warning("circuit_breaker_storage_error", extra={"breaker_name": self._name, "error": str(e)})
            return None

    def _run(self, fn: Callable, *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except redis.RedisError as e:
            logger.warning("circuit_breaker_storage_error", extra={"breaker_name": self._name, "error": str(e)})

    @property
    def state(self) -> str:
        return self._get(self._state_key) or pybreaker.STATE_CLOSED

    @state.setter
    def state(self, value: str) -> None:
        self._run(self.client.set, self._state_key, value, ex=settings.cb_open_seconds * 2)
        circuit_breaker_state.labels(name=self._name).set(
            1 if value == pybreaker.STATE_OPEN else 0
        )

    @property
    def counter(self) -> int:
        count = self._get(self._counter_key)
        return int(count) if count else 0

    @property
    def success_counter(self) -> int:
        count = self._get(self._success_key)
        return int(count) if count else 0

    @property
    def opened_at(self) -> datetime | None:
        raw = self._get(self._opened_at_key)
        return datetime.fromisoformat(raw) if raw else None

    @opened_at.setter
    def opened_at(self, value: datetime) -> None:
        self._run(self.client.set, self._opened_at_key, value.isoformat(), ex=settings.cb_open_seconds * 2)

    def increment_counter(self) -> None:
        self._run(self.client.incr, self._counter_key)
        self._run(self.client.expire, self._counter_key, settings.cb_open_seconds)

    def reset_counter(self) -> None:
        self._run(self.client.delete, self._counter_key)

    def increment_success_counter(self) -> None:
        self._run(self.client.incr, self._success_key)
        self._run(self.client.expire, self._success_key, settings.cb_open_seconds)

    def reset_success_counter(self) -> None:
        self._run(self.client.delete, self._success_key)


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Listener for circuit breaker events (logging/metrics)."""

    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        logger.warning(
            "circuit_breaker_state_change",
            extra={
                "breaker_name": self.name,
                "old_state": getattr(old_state, "name", str(old_state)),
                "new_state": getattr(new_state, "name", str(new_state)),
            },
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: Exception) -> None:
        logger.warning(
            "circuit_breaker_failure",
            extra={
                "breaker_name": self.name,
                "error": type(exc).__name__,
            },
        )


_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def get_circuit_breaker(name: str, exclude: list | None = None) -> pybreaker.CircuitBreaker:
    """Get or create a circuit breaker by name."""
    if name not in _breakers:
        _breakers[name] = pybreaker.CircuitBreaker(
            fail_max=settings.cb_failure_threshold,
            reset_timeout=settings.cb_open_seconds,
            state_storage=RedisCircuitBreakerStorage(name),
            listeners=[CircuitBreakerListener(name)],
            exclude=exclude or [],
        )
    return _breakers[name]

