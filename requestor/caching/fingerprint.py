"""
Request fingerprinting.

A fingerprint identifies a request as a cache and lock resource. It must be a
pure function of the canonicalized request so that every process in the fleet
derives the same value.
"""

import hashlib
import json
from typing import Any, Dict, FrozenSet, Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..models import RequestDescriptor


FINGERPRINT_SALT = "cafebabe"

DEFAULT_VOLATILE_HEADERS: FrozenSet[str] = frozenset({
    "cookie",
    "date",
    "x-request-id",
    "x-correlation-id",
    "traceparent",
    "tracestate",
    "x-timestamp",
})


def canonical_form(
    request: "RequestDescriptor",
    volatile_headers: Iterable[str] = DEFAULT_VOLATILE_HEADERS,
) -> Dict[str, Any]:
    """Subset of the request that participates in the fingerprint."""
    excluded = {name.lower() for name in volatile_headers}
    return {
        "uri": request.url,
        # Keys are sorted; values of a repeated key keep their order
        "qs": sorted(
            ((key, str(value)) for key, value in request.query_pairs()),
            key=lambda pair: pair[0]
        ),
        "method": request.method,
        "authenticated_user": request.authenticated_user,
        "headers": {
            name: value
            for name, value in sorted(request.headers.items())
            if name not in excluded
        },
    }


def compute_fingerprint(
    request: "RequestDescriptor",
    volatile_headers: Optional[Iterable[str]] = None,
) -> str:
    """Return the sha256 hex fingerprint of a request."""
    form = canonical_form(request, volatile_headers if volatile_headers is not None else DEFAULT_VOLATILE_HEADERS)
    payload = json.dumps(form, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(f"{FINGERPRINT_SALT}:{payload}".encode("utf-8")).hexdigest()
