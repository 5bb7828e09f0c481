"""
Token bucket rate limiter per destination host.
"""

import asyncio
import time
from dataclasses import replace
from typing import Dict, Optional

from redis.exceptions import RedisError, WatchError

from ..adapters.redis_client import RedisStore
from ..models import Bucket
from shared.errors import BackendUnavailableError, RateLimitError
from shared.logging import get_logger


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _maybe_await(result):
    if asyncio.iscoroutine(result):
        return await result
    return result


class TokenBucketRateLimiter:
    """Distributed token bucket for one host, with an in-process fallback."""

    def __init__(
        self,
        host: str,
        store: Optional[RedisStore] = None,
        limit: int = 2500,
        duration_ms: int = 60000,
        max_retries: int = 10,
    ):
        self.host = host
        self.store = store
        self.limit = limit
        self.duration_ms = duration_ms
        self.max_retries = max_retries
        self.logger = get_logger("requestor.rate_limiter")
        self._local: Optional[Bucket] = None

        self.keys: Dict[str, str] = {}
        if store is not None:
            self.keys = {
                "remaining": store.key("limiter", host, "remaining"),
                "limit": store.key("limiter", host, "limit"),
                "reset": store.key("limiter", host, "reset"),
            }

    def __repr__(self) -> str:
        return f"TokenBucketRateLimiter(host={self.host!r}, limit={self.limit}, duration_ms={self.duration_ms})"

    async def get_bucket(self) -> Bucket:
        """Consume one call and return the bucket state."""
        if self.store is None or not self.store.connected:
            return self._local_bucket()

        try:
            return await self.store.execute(self._shared_bucket)
        except (RedisError, BackendUnavailableError) as e:
            self.logger.warning("Rate limit store error, using local bucket", host=self.host, error=str(e))
            return self._local_bucket()

    async def throttle(self) -> Bucket:
        """Consume one call or raise RateLimitError when the window is exhausted."""
        bucket = await self.get_bucket()
        if bucket.exhausted:
            self.logger.warning(
                "Rate limit exceeded",
                host=self.host,
                limit=bucket.limit,
                reset_at=bucket.reset_at
            )
            raise RateLimitError(bucket.limit, self.host, bucket.reset_at)
        return bucket

    async def _shared_bucket(self) -> Bucket:
        """Watch/multi loop: re-read whenever a concurrent caller wins the race."""
        client = self.store.client
        async with client.pipeline(transaction=True) as pipe:
            for _ in range(self.max_retries):
                try:
                    await pipe.watch(self.keys["remaining"])
                    remaining, limit, reset_at = await _maybe_await(
                        pipe.mget(self.keys["remaining"], self.keys["limit"], self.keys["reset"])
                    )

                    if remaining is None:
                        bucket = await self._create_bucket(pipe)
                    else:
                        bucket = await self._decrease_remaining(
                            pipe,
                            int(remaining),
                            int(limit) if limit is not None else self.limit,
                            int(reset_at) if reset_at is not None else 0,
                        )
                    if bucket is not None:
                        return bucket
                except WatchError:
                    self.logger.debug("Bucket changed concurrently, re-reading", host=self.host)
                finally:
                    await _maybe_await(pipe.reset())

        raise BackendUnavailableError(
            "redis",
            "bucket contention did not settle",
            details={"host": self.host, "attempts": self.max_retries}
        )

    async def _create_bucket(self, pipe) -> Optional[Bucket]:
        reset_at = _now_ms() + self.duration_ms
        pipe.multi()
        pipe.set(self.keys["remaining"], self.limit - 1, px=self.duration_ms, nx=True)
        pipe.set(self.keys["limit"], self.limit, px=self.duration_ms, nx=True)
        pipe.set(self.keys["reset"], reset_at, px=self.duration_ms, nx=True)
        results = await pipe.execute()

        # A failed NX means another caller created the window first
        if not results or not all(results):
            self.logger.debug("Bucket already created elsewhere, re-reading", host=self.host)
            return None

        self.logger.debug("Created new bucket", host=self.host, limit=self.limit, reset_at=reset_at)
        return Bucket(remaining=self.limit - 1, limit=self.limit, reset_at=reset_at)

    async def _decrease_remaining(self, pipe, remaining: int, limit: int, reset_at: int) -> Optional[Bucket]:
        if remaining <= 0:
            self.logger.debug("Bucket limit reached", host=self.host, limit=limit, reset_at=reset_at)
            return Bucket(remaining=Bucket.EXHAUSTED, limit=limit, reset_at=reset_at)

        expire_in = reset_at - _now_ms()
        pipe.multi()
        if expire_in <= 0:
            # Window is over but the keys have not expired yet
            pipe.delete(self.keys["remaining"], self.keys["limit"], self.keys["reset"])
            await pipe.execute()
            return None

        pipe.set(self.keys["remaining"], remaining - 1, px=expire_in, xx=True)
        results = await pipe.execute()
        if not results or not results[0]:
            return None
        return Bucket(remaining=remaining - 1, limit=limit, reset_at=reset_at)

    def _local_bucket(self) -> Bucket:
        """In-process approximation used while the shared store is unavailable."""
        now = _now_ms()
        if self._local is None or self._local.reset_at <= now:
            self._local = Bucket(remaining=self.limit - 1, limit=self.limit, reset_at=now + self.duration_ms)
            return replace(self._local)

        if self._local.remaining <= 0:
            return Bucket(remaining=Bucket.EXHAUSTED, limit=self._local.limit, reset_at=self._local.reset_at)

        self._local.remaining -= 1
        return replace(self._local)
