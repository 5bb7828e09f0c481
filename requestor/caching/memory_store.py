"""
In-process cache store.
"""

import time
from dataclasses import replace
from typing import Dict, Iterable, Optional, Tuple

from ..models import CacheEntry, ResponseDescriptor
from .store import CacheStore
from shared.logging import get_logger


def _copy(response: ResponseDescriptor) -> ResponseDescriptor:
    return replace(response, headers=dict(response.headers), set_cookie=list(response.set_cookie))


class MemoryCacheStore(CacheStore):
    """Process-local cache store; entries are not shared across processes."""

    def __init__(self, volatile_headers: Optional[Iterable[str]] = None):
        super().__init__(volatile_headers)
        self.logger = get_logger("requestor.cache.memory")
        # fingerprint -> slot -> (value, expires_at)
        self._slots: Dict[str, Dict[str, Tuple[object, Optional[int]]]] = {}

    def _read(self, fingerprint: str, slot: str, now: float) -> Optional[object]:
        stored = self._slots.get(fingerprint, {}).get(slot)
        if stored is None:
            return None
        value, expires_at = stored
        if expires_at is not None and expires_at <= now:
            del self._slots[fingerprint][slot]
            return None
        return value

    async def get(self, fingerprint: str) -> Optional[CacheEntry]:
        now = time.time()
        response = self._read(fingerprint, "response", now)
        raw = self._read(fingerprint, "raw", now)
        if response is None or raw is None:
            return None
        return CacheEntry(
            fingerprint=fingerprint,
            response=_copy(response),
            raw=raw,
            processed=self._read(fingerprint, "processed", now),
            expires_at=self._slots[fingerprint]["raw"][1],
        )

    async def put(self, entry: CacheEntry) -> None:
        slots = self._slots.setdefault(entry.fingerprint, {})
        if entry.response is not None and entry.raw is not None:
            slots["response"] = (_copy(entry.response), entry.expires_at)
            slots["raw"] = (entry.raw, entry.expires_at)
            if entry.processed is None:
                slots.pop("processed", None)
        if entry.processed is not None:
            slots["processed"] = (entry.processed, entry.expires_at)

    async def purge(self, fingerprint: str) -> None:
        self._slots.pop(fingerprint, None)
        self.logger.info("Purged cache entry", fingerprint=fingerprint)
