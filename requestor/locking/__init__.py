"""
Locking package for the requestor.

Holds the lock manager interface and its backends, which keep identical
requests from executing concurrently (stampede avoidance).
"""

from .lock_manager import LockManager
from .memory_lock import MemoryLockManager
from .redis_lock import RedisLockManager

__all__ = ["LockManager", "MemoryLockManager", "RedisLockManager"]
