"""
Cache store interface and expiry resolution.
"""

import re
import time
from abc import ABC, abstractmethod
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Iterable, Optional, TYPE_CHECKING

from .fingerprint import compute_fingerprint

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..models import CacheEntry, RequestDescriptor, ResponseDescriptor


S_MAXAGE = re.compile(r"s-maxage=([0-9]+)")
MAXAGE = re.compile(r"(?<![\w-])max-?age=([0-9]+)")


class CacheStore(ABC):
    """Multi-representation cache keyed by request fingerprint."""

    def __init__(self, volatile_headers: Optional[Iterable[str]] = None):
        self.volatile_headers = volatile_headers

    def fingerprint(self, request: "RequestDescriptor") -> str:
        """Deterministic cache key for a request."""
        return compute_fingerprint(request, self.volatile_headers)

    @abstractmethod
    async def get(self, fingerprint: str) -> Optional["CacheEntry"]:
        """Return the entry when response and raw are both present, else None."""

    @abstractmethod
    async def put(self, entry: "CacheEntry") -> None:
        """Upsert response+raw together, or extend the processed slot alone."""

    @abstractmethod
    async def purge(self, fingerprint: str) -> None:
        """Remove every representation of a fingerprint."""

    @property
    def connected(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def resolve_expiry(
    request: "RequestDescriptor",
    response: "ResponseDescriptor",
    now: Optional[float] = None,
) -> Optional[int]:
    """Absolute expiry (epoch seconds) for a response, or None for no expiry.

    Order: request ttl, s-maxage, max-age, expires header.
    """
    now = int(time.time() if now is None else now)

    if isinstance(request.ttl, int) and not isinstance(request.ttl, bool):
        return now + request.ttl

    cache_control = response.headers.get("cache-control", "")
    if cache_control:
        match = S_MAXAGE.search(cache_control) or MAXAGE.search(cache_control)
        if match:
            return now + int(match.group(1))

    expires = response.headers.get("expires", "")
    if expires:
        try:
            parsed = parsedate_to_datetime(expires)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())

    return None
