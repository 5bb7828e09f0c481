"""
Shared Redis connection used by the cache, lock and limiter subsystems.
"""

from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.circuit_breaker import CircuitBreaker
from shared.logging import get_logger


class RedisStore:
    """Process-wide Redis client with a connected signal.

    Connection lifecycle (pooling, reconnects, auth) stays with redis-py; this
    wrapper only tracks whether the backend should currently be used. A new
    store is usable straight away; store errors open the circuit breaker and
    the store reads as disconnected until the breaker lets calls through again.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        key_prefix: str = "requestor",
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("requestor.store")
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=RedisError,
            name="redis"
        )
        self._redis: Optional[redis.Redis] = client
        self._closed = False

    @property
    def client(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
        return self._redis

    @property
    def connected(self) -> bool:
        """True when callers should use the store rather than bypass it."""
        return not self._closed and self.circuit_breaker.allows_calls()

    def key(self, *parts: str) -> str:
        """Namespaced key."""
        return ":".join((self.key_prefix,) + tuple(parts))

    async def connect(self) -> bool:
        """Ping the backend and update the connected signal."""
        try:
            await self.client.ping()
        except RedisError as e:
            self.circuit_breaker.record_failure()
            self.logger.error("Failed to connect to redis", redis_url=self.redis_url, error=str(e))
            return False

        self._closed = False
        self.circuit_breaker.record_success()
        self.logger.info("Redis store connected", redis_url=self.redis_url)
        return True

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run a store operation through the circuit breaker."""
        return await self.circuit_breaker.call(func, *args, **kwargs)

    def pubsub(self):
        """Dedicated subscription-only connection."""
        return self.client.pubsub(ignore_subscribe_messages=True)

    async def close(self):
        """Close the Redis client."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        self._closed = True
        self.logger.info("Redis store closed")
