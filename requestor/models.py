"""
Data models for the requestor pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit, parse_qsl

from pydantic import BaseModel, Field

from shared.errors import InvocationError


# Options accepted by RequestDescriptor.from_options, plus their aliases
_OPTION_ALIASES = {
    "uri": "url",
    "qs": "params",
    "forceFresh": "force_fresh",
    "disableCache": "disable_cache",
    "authenticatedUser": "authenticated_user",
    "requestValidators": "request_validators",
    "responseValidators": "response_validators",
    "baseUrl": "base_url",
}

VERBS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE")


class LockMessage(str, Enum):
    """Messages published to lock waiters."""
    RELEASED = "released"
    NOT_STORABLE = "not-storable"


@dataclass
class RequestDescriptor:
    """Outbound request as seen by the pipeline."""
    url: str
    method: str = "GET"
    params: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Union[str, bytes]] = None
    json: Any = None
    ttl: Optional[Union[int, bool]] = None
    force_fresh: bool = False
    disable_cache: bool = False
    authenticated_user: Optional[str] = None
    request_validators: List[Callable] = field(default_factory=list)
    response_validators: List[Callable] = field(default_factory=list)
    jar: Any = None
    timeout: Optional[float] = None
    follow_redirects: Optional[bool] = None

    def __post_init__(self):
        self.method = (self.method or "GET").upper()
        self.headers = {str(k).lower(): str(v) for k, v in (self.headers or {}).items()}
        self.params = dict(self.params or {})

        parts = urlsplit(self.url)
        if not parts.scheme or not parts.netloc:
            raise InvocationError("options.uri must be an absolute URL", details={"uri": self.url})

        # Query strings embedded in the URL are folded into params
        if parts.query:
            embedded = query_params(parts.query)
            embedded.update(self.params)
            self.params = embedded
            self.url = urlunsplit((parts.scheme, parts.netloc, parts.path, "", parts.fragment))

    def query_pairs(self) -> List[Tuple[str, Any]]:
        """Flatten params into (key, value) pairs; list values repeat the key."""
        pairs = []
        for key, value in self.params.items():
            values = value if isinstance(value, (list, tuple)) else [value]
            pairs.extend((str(key), item) for item in values)
        return pairs

    @property
    def host(self) -> str:
        """Destination host including an explicit port."""
        parts = urlsplit(self.url)
        host = parts.hostname or ""
        return f"{host}:{parts.port}" if parts.port else host

    @property
    def has_body(self) -> bool:
        """True when the request carries a payload."""
        return bool(self.body) or (self.json is not None and not isinstance(self.json, bool))

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "RequestDescriptor":
        """Build a descriptor from a loose options mapping."""
        normalized: Dict[str, Any] = {}
        for key, value in options.items():
            normalized[_OPTION_ALIASES.get(key, key)] = value

        base_url = normalized.pop("base_url", None)
        url = normalized.pop("url", None)
        if base_url is not None:
            url = join_base_url(base_url, url)
        if not url:
            raise InvocationError("options.uri is a required argument")
        if not isinstance(url, str):
            raise InvocationError("options.uri must be a string", details={"uri": repr(url)})

        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(normalized) - known)
        if unknown:
            raise InvocationError("Unknown request options", details={"options": unknown})

        return cls(url=url, **normalized)


def query_params(query: str) -> Dict[str, Any]:
    """Parse a query string; keys given more than once map to a list of their values."""
    params: Dict[str, Any] = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key not in params:
            params[key] = value
        elif isinstance(params[key], list):
            params[key].append(value)
        else:
            params[key] = [params[key], value]
    return params


def join_base_url(base_url: Any, uri: Any) -> str:
    """Append a relative uri to base_url with exactly one slash between them."""
    if not isinstance(base_url, str):
        raise InvocationError("options.baseUrl must be a string")
    if uri is None:
        uri = ""
    if not isinstance(uri, str):
        raise InvocationError("options.uri must be a string when using options.baseUrl")
    if uri.startswith("//") or "://" in uri:
        raise InvocationError("options.uri must be a path when using options.baseUrl")

    if uri == "":
        return base_url
    if base_url.endswith("/") and uri.startswith("/"):
        return base_url + uri[1:]
    if base_url.endswith("/") or uri.startswith("/"):
        return base_url + uri
    return f"{base_url}/{uri}"


@dataclass
class ResponseDescriptor:
    """Response metadata as stored in and served from the cache."""
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    http_version: str = "HTTP/1.1"
    method: str = "GET"
    url: str = ""
    set_cookie: List[str] = field(default_factory=list)
    from_cache: bool = False
    processed: bool = False

    def __post_init__(self):
        self.headers = {str(k).lower(): str(v) for k, v in (self.headers or {}).items()}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view; cache flags are never persisted."""
        return {
            "status_code": self.status_code,
            "headers": self.headers,
            "http_version": self.http_version,
            "method": self.method,
            "url": self.url,
            "set_cookie": self.set_cookie,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResponseDescriptor":
        return cls(
            status_code=int(data["status_code"]),
            headers=dict(data.get("headers") or {}),
            http_version=data.get("http_version", "HTTP/1.1"),
            method=data.get("method", "GET"),
            url=data.get("url", ""),
            set_cookie=list(data.get("set_cookie") or []),
        )


@dataclass
class CacheEntry:
    """Cached representations of one fingerprint."""
    fingerprint: str
    response: Optional[ResponseDescriptor] = None
    raw: Optional[str] = None
    processed: Optional[str] = None
    expires_at: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        """A hit needs both the response metadata and the raw body."""
        return self.response is not None and self.raw is not None

    @property
    def body(self) -> Optional[str]:
        """Body to serve: processed wins over raw."""
        if self.processed is not None:
            return self.processed
        return self.raw


@dataclass
class Bucket:
    """Token bucket state for one destination host."""
    remaining: int
    limit: int
    reset_at: int  # epoch milliseconds

    EXHAUSTED = -1

    @property
    def exhausted(self) -> bool:
        return self.remaining < 0


@dataclass
class LockAttempt:
    """Outcome of a lock acquire."""
    granted: bool
    token: Optional[str] = None
    unavailable: bool = False


class ThrottleConfig(BaseModel):
    """Per-host token bucket settings."""
    limit: int = Field(default=2500, gt=0, description="Calls permitted per window")
    duration_ms: int = Field(default=60000, gt=0, description="Window length in milliseconds")


class CachePolicy(BaseModel):
    """Per-host cache evaluation policy."""
    store_private: bool = Field(default=False, description="Store responses marked private")
    store_no_store: bool = Field(default=False, description="Store responses marked no-store")
    ignore_no_last_mod: bool = Field(default=False, description="Ignore last-modified as a storability signal")
    cache_unauthorized: bool = Field(default=False, description="Treat 401 responses as cacheable")
    request_validators: List[Callable] = Field(default_factory=list)
    response_validators: List[Callable] = Field(default_factory=list)


@dataclass
class RequestResult:
    """Final outcome handed to the caller."""
    error: Optional[BaseException]
    response: Optional[ResponseDescriptor]
    body: Optional[str]
    pass_back_to_cache: Callable

    @property
    def from_cache(self) -> bool:
        return bool(self.response is not None and self.response.from_cache)
