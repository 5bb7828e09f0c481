"""
Caching package for the requestor.

Holds the per-request cache policy evaluator, request fingerprinting and the
cache store backends (Redis for fleets, in-memory for single processes).
"""

from .evaluator import Evaluator, WriteOnceFlag
from .fingerprint import compute_fingerprint
from .memory_store import MemoryCacheStore
from .redis_store import RedisCacheStore
from .store import CacheStore, resolve_expiry

__all__ = [
    "CacheStore",
    "Evaluator",
    "MemoryCacheStore",
    "RedisCacheStore",
    "WriteOnceFlag",
    "compute_fingerprint",
    "resolve_expiry",
]
