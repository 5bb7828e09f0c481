"""
Caller-facing requestor.

Usage::

    requestor = Requestor().set_store(RedisStore("redis://localhost:6379/0"))
    requestor.enable_cache().set_limits({"api.example.com": {"limit": 100, "duration_ms": 60000}})

    result = await requestor.get("https://api.example.com/items", {"ttl": 60})

    async def on_done(error, response, body, pass_back_to_cache):
        await pass_back_to_cache(None, transform(body))

    await requestor.get("https://api.example.com/items", on_done)
"""

from collections.abc import Mapping
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from .adapters.redis_client import RedisStore
from .adapters.transport import HttpxTransport
from .caching.redis_store import RedisCacheStore
from .caching.store import CacheStore
from .locking.lock_manager import LockManager
from .locking.redis_lock import RedisLockManager
from .models import CachePolicy, RequestDescriptor, RequestResult, ThrottleConfig
from .orchestrator import RequestOrchestrator
from .policy_loader import HostPolicyLoader
from .ratelimit.token_bucket import TokenBucketRateLimiter
from shared.config import RequestorConfig, get_config
from shared.errors import ConfigurationError, InvocationError
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector


class Requestor:
    """Outbound HTTP client with shared caching, request collapsing and per-host limits."""

    def __init__(
        self,
        transport: Optional[HttpxTransport] = None,
        *,
        max_lock_time_ms: int = 10000,
        max_lock_attempts: int = 3,
        disable_cache: bool = False,
        cache_unauthorized: bool = False,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.transport = transport or HttpxTransport()
        self.max_lock_time_ms = max_lock_time_ms
        self.max_lock_attempts = max_lock_attempts
        self.disable_cache = disable_cache
        self.cache_unauthorized = cache_unauthorized
        self.metrics = metrics or MetricsCollector()
        self.logger = get_logger("requestor")

        self.store: Optional[RedisStore] = None
        self.cache: Optional[CacheStore] = None
        self.lock_manager: Optional[LockManager] = None
        self.limiters: Dict[str, TokenBucketRateLimiter] = {}
        self.cache_policies: Dict[str, CachePolicy] = {}
        self._orchestrator: Optional[RequestOrchestrator] = None

    @classmethod
    async def from_config(cls, config: Optional[RequestorConfig] = None) -> "Requestor":
        """Wire store, cache and host policies from configuration."""
        config = config or get_config()
        configure_logging("requestor", config.log_level)

        requestor = cls(
            HttpxTransport(timeout=config.http_timeout, follow_redirects=config.follow_redirects),
            max_lock_time_ms=config.max_lock_time_ms,
            max_lock_attempts=config.max_lock_attempts,
            disable_cache=config.disable_cache,
            cache_unauthorized=config.cache_unauthorized,
        )
        if config.metrics_port:
            requestor.metrics.start_metrics_server(config.metrics_port)

        store = RedisStore(
            config.redis_url,
            key_prefix=config.key_prefix,
            failure_threshold=config.store_failure_threshold,
            recovery_timeout=config.store_recovery_timeout,
        )
        await store.connect()
        requestor.set_store(store)

        loader = HostPolicyLoader(config.policy_file)
        requestor.set_limits(loader.throttle_configs())
        if not config.disable_cache:
            requestor.enable_cache()
            requestor.add_cache_options(loader.cache_policies())

        requestor.logger.info(
            "Requestor configured",
            redis_url=config.redis_url,
            cache_enabled=requestor.cache is not None,
            limited_hosts=sorted(requestor.limiters)
        )
        return requestor

    # Setup

    def set_store(self, store: Union[RedisStore, str]) -> "Requestor":
        """Attach the shared store; it can only be set once."""
        if self.store is not None:
            raise ConfigurationError("a shared store exists already")
        self.store = RedisStore(store) if isinstance(store, str) else store
        self._orchestrator = None
        return self

    def enable_cache(self, volatile_headers: Optional[Iterable[str]] = None) -> "Requestor":
        """Enable shared caching and request collapsing. Enabling twice keeps the first cache."""
        if self.store is None:
            raise ConfigurationError("a shared store must exist prior to enabling cache")
        if self.cache is not None:
            return self

        self.cache = RedisCacheStore(self.store, volatile_headers)
        self.lock_manager = RedisLockManager(self.store)
        self._orchestrator = None
        return self

    def use_backends(
        self,
        cache: Optional[CacheStore] = None,
        lock_manager: Optional[LockManager] = None,
    ) -> "Requestor":
        """Use explicit cache and lock backends, e.g. the in-process ones."""
        if cache is not None:
            self.cache = cache
        if lock_manager is not None:
            self.lock_manager = lock_manager
        self._orchestrator = None
        return self

    def add_cache_options(self, options: Mapping) -> "Requestor":
        """Register per-host cache policies, keyed by host."""
        if self.cache is None:
            raise ConfigurationError("cache must be enabled before setting options")
        for host, policy in options.items():
            self.cache_policies[host] = policy if isinstance(policy, CachePolicy) else CachePolicy(**policy)
        return self

    def set_limits(self, options: Mapping) -> "Requestor":
        """Register per-host token buckets; hosts that already have a bucket are left alone."""
        if self.store is None:
            raise ConfigurationError("a shared store must exist prior to defining limits")
        for host, conf in options.items():
            if host in self.limiters:
                continue
            conf = conf if isinstance(conf, ThrottleConfig) else ThrottleConfig(**conf)
            self.limiters[host] = TokenBucketRateLimiter(
                host,
                self.store,
                limit=conf.limit,
                duration_ms=conf.duration_ms
            )
        return self

    @property
    def orchestrator(self) -> RequestOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = RequestOrchestrator(
                self.transport,
                cache=self.cache,
                lock_manager=self.lock_manager,
                limiters=self.limiters,
                cache_policies=self.cache_policies,
                max_lock_time_ms=self.max_lock_time_ms,
                max_lock_attempts=self.max_lock_attempts,
                disable_cache=self.disable_cache,
                cache_unauthorized=self.cache_unauthorized,
                metrics=self.metrics,
            )
        return self._orchestrator

    # Verbs

    async def request(self, *args, **options) -> RequestResult:
        """Issue a request; the method comes from the options (default GET)."""
        descriptor, callback = parse_args(args, options)
        return await self._dispatch(descriptor, callback)

    async def get(self, *args, **options) -> RequestResult:
        return await self._verb("GET", args, options)

    async def head(self, *args, **options) -> RequestResult:
        return await self._verb("HEAD", args, options)

    async def post(self, *args, **options) -> RequestResult:
        return await self._verb("POST", args, options)

    async def put(self, *args, **options) -> RequestResult:
        return await self._verb("PUT", args, options)

    async def patch(self, *args, **options) -> RequestResult:
        return await self._verb("PATCH", args, options)

    async def delete(self, *args, **options) -> RequestResult:
        return await self._verb("DELETE", args, options)

    async def _verb(self, method: str, args: Tuple, options: Dict[str, Any]) -> RequestResult:
        descriptor, callback = parse_args(args, options)
        return await self._dispatch(replace(descriptor, method=method), callback)

    async def _dispatch(self, descriptor: RequestDescriptor, callback: Optional[Callable]) -> RequestResult:
        if descriptor.method == "HEAD" and descriptor.has_body:
            raise InvocationError("HTTP HEAD requests MUST NOT include a request body")

        result = await self.orchestrator.run(descriptor, callback)
        # Without a callback the caller gets errors raised instead of passed along
        if callback is None and result.error is not None:
            raise result.error
        return result

    def get_stats(self) -> Dict[str, int]:
        return self.orchestrator.get_stats()

    async def close(self):
        """Close the transport and the shared store."""
        await self.transport.close()
        if self.store is not None:
            await self.store.close()


def parse_args(args: Tuple, options: Optional[Dict[str, Any]] = None) -> Tuple[RequestDescriptor, Optional[Callable]]:
    """
    Normalize (uri | options | descriptor, [options], [callback]) into a descriptor.

    Keyword options are merged over positional options.
    """
    if not args and not options:
        raise InvocationError("None is not a valid uri or options object")
    if len(args) > 3:
        raise InvocationError("Too many positional arguments", details={"count": len(args)})

    args = list(args)
    callback = None
    if args and callable(args[-1]) and not isinstance(args[-1], RequestDescriptor):
        callback = args.pop()

    merged: Dict[str, Any] = {}
    descriptor: Optional[RequestDescriptor] = None
    positional_url: Optional[str] = None

    if args:
        first = args[0]
        if isinstance(first, RequestDescriptor):
            descriptor = first
        elif isinstance(first, str):
            positional_url = first
        elif isinstance(first, Mapping):
            merged.update(first)
        else:
            raise InvocationError(
                "Don't understand argument type at position 0",
                details={"type": type(first).__name__}
            )

    if len(args) > 1:
        second = args[1]
        if not isinstance(second, Mapping):
            raise InvocationError(
                "Don't understand argument type at position 1",
                details={"type": type(second).__name__}
            )
        merged.update(second)

    merged.update(options or {})
    if "callback" in merged:
        extra = merged.pop("callback")
        if callback is None:
            callback = extra

    if descriptor is not None:
        if merged:
            return _merge_descriptor(descriptor, merged), callback
        return descriptor, callback

    if positional_url is not None:
        # A positional uri wins over one in the options
        merged.pop("uri", None)
        merged["url"] = positional_url
    return RequestDescriptor.from_options(merged), callback


def _merge_descriptor(descriptor: RequestDescriptor, options: Dict[str, Any]) -> RequestDescriptor:
    fields = {name: getattr(descriptor, name) for name in descriptor.__dataclass_fields__}
    return RequestDescriptor.from_options({**fields, **options})
