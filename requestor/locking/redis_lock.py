"""
Redis lock manager: SET NX PX for acquire, Lua compare-and-delete plus publish
for release, and a pub/sub channel per fingerprint for waiters.
"""

import asyncio
from typing import Optional

from redis.exceptions import RedisError

from ..adapters.redis_client import RedisStore
from ..models import LockAttempt, LockMessage
from .lock_manager import LockManager
from shared.errors import BackendUnavailableError
from shared.logging import get_logger


# KEYS[1] lock key, KEYS[2] channel, ARGV[1] owner token, ARGV[2] message
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    redis.call('del', KEYS[1])
    redis.call('publish', KEYS[2], ARGV[2])
    return 1
end
return 0
"""


class RedisLockManager(LockManager):
    """Lock manager shared by every process using the same Redis."""

    def __init__(self, store: RedisStore):
        self.store = store
        self.logger = get_logger("requestor.lock.redis")

    @property
    def connected(self) -> bool:
        return self.store.connected

    def _lock_key(self, fingerprint: str) -> str:
        return self.store.key("lock", fingerprint)

    def _channel(self, fingerprint: str) -> str:
        return self.store.key("lock", fingerprint, "events")

    async def acquire(self, fingerprint: str, lease_ms: int) -> LockAttempt:
        """Atomic set-if-absent with a lease."""
        if not self.store.connected:
            return LockAttempt(granted=False, unavailable=True)

        token = self.new_token()
        try:
            acquired = await self.store.execute(
                self.store.client.set, self._lock_key(fingerprint), token, nx=True, px=lease_ms
            )
        except (RedisError, BackendUnavailableError) as e:
            self.logger.warning("Lock acquire failed, bypassing lock", fingerprint=fingerprint, error=str(e))
            return LockAttempt(granted=False, unavailable=True)

        if acquired:
            self.logger.debug("Lock acquired", fingerprint=fingerprint, lease_ms=lease_ms)
            return LockAttempt(granted=True, token=token)
        return LockAttempt(granted=False)

    async def release(self, fingerprint: str, token: str, message: LockMessage) -> bool:
        try:
            released = await self.store.execute(
                self.store.client.eval,
                RELEASE_SCRIPT,
                2,
                self._lock_key(fingerprint),
                self._channel(fingerprint),
                token,
                message.value,
            )
        except (RedisError, BackendUnavailableError) as e:
            # The lease still bounds how long waiters are held up
            self.logger.warning("Lock release failed", fingerprint=fingerprint, error=str(e))
            return False

        if not released:
            self.logger.info("Lock no longer owned at release", fingerprint=fingerprint, message=message.value)
        return bool(released)

    async def wait(self, fingerprint: str, timeout_ms: int) -> Optional[LockMessage]:
        """Block on the fingerprint's channel for at most timeout_ms."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        channel = self._channel(fingerprint)
        pubsub = self.store.pubsub()

        try:
            await pubsub.subscribe(channel)

            # The holder may have released between our acquire and subscribe
            if not await self.store.client.exists(self._lock_key(fingerprint)):
                return LockMessage.RELEASED

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self.logger.info("Lock wait timed out", fingerprint=fingerprint, timeout_ms=timeout_ms)
                    return None

                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=remaining)
                if message is None or message.get("type") != "message":
                    continue
                try:
                    return LockMessage(message["data"])
                except ValueError:
                    self.logger.warning("Unknown lock message", fingerprint=fingerprint, data=message["data"])
        except RedisError as e:
            self.logger.warning("Lock wait failed", fingerprint=fingerprint, error=str(e))
            return None
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except RedisError as e:
                self.logger.debug("Failed to close lock subscription", error=str(e))
