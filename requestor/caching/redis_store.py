"""
Redis-backed cache store.
"""

import json
import time
from typing import Dict, Iterable, Optional

from ..adapters.redis_client import RedisStore
from ..models import CacheEntry, ResponseDescriptor
from .store import CacheStore
from shared.logging import get_logger


class RedisCacheStore(CacheStore):
    """Cache store sharing entries across processes through Redis."""

    def __init__(self, store: RedisStore, volatile_headers: Optional[Iterable[str]] = None):
        super().__init__(volatile_headers)
        self.store = store
        self.logger = get_logger("requestor.cache.redis")

    @property
    def connected(self) -> bool:
        return self.store.connected

    def _keys(self, fingerprint: str) -> Dict[str, str]:
        """Generate cache keys for every representation."""
        return {
            "response": self.store.key("cache", fingerprint, "response"),
            "raw": self.store.key("cache", fingerprint, "raw"),
            "processed": self.store.key("cache", fingerprint, "processed"),
        }

    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        """Read all representations in one round trip."""
        keys = self._keys(fingerprint)

        async def _read():
            async with self.store.client.pipeline(transaction=False) as pipe:
                pipe.mget(keys["response"], keys["raw"], keys["processed"])
                pipe.ttl(keys["raw"])
                return await pipe.execute()

        (response, raw, processed), ttl = await self.store.execute(_read)

        if response is None or raw is None:
            self.logger.debug("Cache miss", fingerprint=fingerprint)
            return None

        try:
            descriptor = ResponseDescriptor.from_dict(json.loads(response))
        except (TypeError, KeyError, ValueError) as e:
            self.logger.warning("Failed to deserialize cached response", fingerprint=fingerprint, error=str(e))
            return None

        return CacheEntry(
            fingerprint=fingerprint,
            response=descriptor,
            raw=raw,
            processed=processed,
            expires_at=int(time.time()) + ttl if ttl and ttl > 0 else None,
        )

    async def put(self, entry: CacheEntry) -> None:
        """Write response+raw atomically, or the processed slot alone."""
        keys = self._keys(entry.fingerprint)
        expiry = {"exat": entry.expires_at} if entry.expires_at else {}

        async def _write():
            async with self.store.client.pipeline(transaction=True) as pipe:
                if entry.response is not None and entry.raw is not None:
                    pipe.set(keys["response"], json.dumps(entry.response.to_dict()), **expiry)
                    pipe.set(keys["raw"], entry.raw, **expiry)
                    # A fresh raw body invalidates any earlier processed form
                    if entry.processed is None:
                        pipe.delete(keys["processed"])
                if entry.processed is not None:
                    pipe.set(keys["processed"], entry.processed, **expiry)
                return await pipe.execute()

        await self.store.execute(_write)
        self.logger.debug(
            "Cached entry",
            fingerprint=entry.fingerprint,
            expires_at=entry.expires_at,
            processed_only=entry.response is None
        )

    async def purge(self, fingerprint: str) -> None:
        keys = self._keys(fingerprint)
        await self.store.execute(self.store.client.delete, *keys.values())
        self.logger.info("Purged cache entry", fingerprint=fingerprint)
