"""
In-process lock manager for single-process deployments and tests.
"""

import asyncio
import time
from typing import Dict, List, Optional, Tuple

from ..models import LockAttempt, LockMessage
from .lock_manager import LockManager
from shared.logging import get_logger


class MemoryLockManager(LockManager):
    """Lock manager backed by the event loop; safe without extra locking."""

    def __init__(self):
        self.logger = get_logger("requestor.lock.memory")
        self._locks: Dict[str, Tuple[str, float]] = {}  # fingerprint -> (token, lease deadline)
        self._waiters: Dict[str, List[asyncio.Future]] = {}

    def _held(self, fingerprint: str) -> bool:
        held = self._locks.get(fingerprint)
        if held is None:
            return False
        if held[1] <= time.monotonic():
            del self._locks[fingerprint]
            return False
        return True

    async def acquire(self, fingerprint: str, lease_ms: int) -> LockAttempt:
        if self._held(fingerprint):
            return LockAttempt(granted=False)
        token = self.new_token()
        self._locks[fingerprint] = (token, time.monotonic() + lease_ms / 1000)
        return LockAttempt(granted=True, token=token)

    async def release(self, fingerprint: str, token: str, message: LockMessage) -> bool:
        held = self._locks.get(fingerprint)
        if held is None or held[0] != token:
            self.logger.info("Lock no longer owned at release", fingerprint=fingerprint, message=message.value)
            return False

        del self._locks[fingerprint]
        for waiter in self._waiters.pop(fingerprint, []):
            if not waiter.done():
                waiter.set_result(message)
        return True

    async def wait(self, fingerprint: str, timeout_ms: int) -> Optional[LockMessage]:
        if not self._held(fingerprint):
            return LockMessage.RELEASED

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(fingerprint, []).append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout_ms / 1000)
        except asyncio.TimeoutError:
            return None
        finally:
            waiters = self._waiters.get(fingerprint)
            if waiters and waiter in waiters:
                waiters.remove(waiter)
