"""
Lock manager interface.

A lock is keyed by request fingerprint and guards one upstream execution.
Waiters that do not obtain it are notified with a LockMessage when the holder
finishes, or give up when the lease runs out.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Optional

from ..models import LockAttempt, LockMessage


class LockManager(ABC):
    """Distributed mutual exclusion per fingerprint."""

    @staticmethod
    def new_token() -> str:
        return uuid.uuid4().hex

    @abstractmethod
    async def acquire(self, fingerprint: str, lease_ms: int) -> LockAttempt:
        """Try to take the lock; never blocks waiting for it."""

    @abstractmethod
    async def release(self, fingerprint: str, token: str, message: LockMessage) -> bool:
        """Clear the lock if token owns it and notify waiters; returns True when released."""

    @abstractmethod
    async def wait(self, fingerprint: str, timeout_ms: int) -> Optional[LockMessage]:
        """Wait for a notification; None means the wait timed out."""

    @property
    def connected(self) -> bool:
        return True
