"""
Built-in cache validators.

Each validator receives the subject (request or response descriptor) and the
evaluator, may flag it, and returns True when it has made a decision and the
chain should stop.
"""

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .evaluator import Evaluator
    from ..models import RequestDescriptor, ResponseDescriptor


MAX_AGE_ZERO = re.compile(r"max-age=(0|-[0-9]+)")
MAX_AGE_POSITIVE = re.compile(r"max-age=[0-9]+")
NO_STORE = re.compile(r"no-store(?!=)")

CACHEABLE_STATUS_CODES = {
    200: "OK",
    203: "Non-Authoritative Information",
    300: "Multiple Choices",
    301: "Moved Permanently",
}
UNAUTHORIZED = 401


def _cache_control(headers) -> str:
    return headers.get("cache-control", "") or ""


# -- Request validators --

def disable_cache(request: "RequestDescriptor", evaluator: "Evaluator") -> bool:
    """Explicit opt-out, either via disable_cache or ttl=False."""
    if request.disable_cache is True or request.ttl is False:
        evaluator.flag_storable(False)
        evaluator.flag_retrievable(False)
        return True
    return False


def request_max_age_zero(request: "RequestDescriptor", evaluator: "Evaluator") -> bool:
    """max-age=0 asks for revalidation: never serve from cache (RFC 2616 13.1.6)."""
    if MAX_AGE_ZERO.search(_cache_control(request.headers)):
        evaluator.flag_retrievable(False)
        return True
    return False


def request_no_cache(request: "RequestDescriptor", evaluator: "Evaluator") -> bool:
    """cache-control or pragma no-cache (RFC 2616 14.9)."""
    if "no-cache" in _cache_control(request.headers) or request.headers.get("pragma", "") == "no-cache":
        evaluator.flag_storable(False)
        evaluator.flag_retrievable(False)
        return True
    return False


def request_no_store(request: "RequestDescriptor", evaluator: "Evaluator") -> bool:
    """cache-control no-store (RFC 2616 14.9)."""
    if "no-store" in _cache_control(request.headers):
        evaluator.flag_storable(False)
        evaluator.flag_retrievable(False)
        return True
    return False


def method_get_or_head(request: "RequestDescriptor", evaluator: "Evaluator") -> bool:
    """Only GET and HEAD are retrievable (RFC 2616 13.9). Always terminal."""
    evaluator.flag_retrievable(request.method in ("GET", "HEAD"))
    return True


# -- Response validators --

def only_private(response: "ResponseDescriptor", evaluator: "Evaluator") -> bool:
    if "private" in _cache_control(response.headers) and not evaluator.store_private:
        evaluator.flag_storable(False)
        return True
    return False


def response_no_store(response: "ResponseDescriptor", evaluator: "Evaluator") -> bool:
    if NO_STORE.search(_cache_control(response.headers)) and not evaluator.store_no_store:
        evaluator.flag_storable(False)
        return True
    return False


def response_max_age_zero(response: "ResponseDescriptor", evaluator: "Evaluator") -> bool:
    if MAX_AGE_ZERO.search(_cache_control(response.headers)):
        evaluator.flag_storable(False)
        return True
    return False


def max_age_future(response: "ResponseDescriptor", evaluator: "Evaluator") -> bool:
    if MAX_AGE_POSITIVE.search(_cache_control(response.headers)):
        evaluator.flag_storable(True)
        return True
    return False


def last_modified(response: "ResponseDescriptor", evaluator: "Evaluator") -> bool:
    """Weak validator present (RFC 2616 13.3.1)."""
    if "last-modified" in response.headers and not evaluator.ignore_no_last_mod:
        evaluator.flag_storable(True)
        return True
    return False


def etag(response: "ResponseDescriptor", evaluator: "Evaluator") -> bool:
    """Strong validator present (RFC 2616 13.3.2)."""
    if "etag" in response.headers:
        evaluator.flag_storable(True)
        return True
    return False


def status_codes(response: "ResponseDescriptor", evaluator: "Evaluator") -> bool:
    """Refuse status codes outside the cacheable set; never flags True."""
    code = response.status_code
    if code in CACHEABLE_STATUS_CODES or (code == UNAUTHORIZED and evaluator.cache_unauthorized):
        return False
    evaluator.flag_storable(False)
    return True


REQUEST_VALIDATORS = [
    disable_cache,
    request_max_age_zero,
    request_no_cache,
    request_no_store,
    method_get_or_head,
]

RESPONSE_VALIDATORS = [
    only_private,
    response_no_store,
    response_max_age_zero,
    max_age_future,
    last_modified,
    etag,
    status_codes,
]
