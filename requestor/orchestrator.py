"""
Request orchestration pipeline.

Every outbound request runs through an explicit state machine:

    EVALUATE -> CACHE_LOOKUP -> LOCK -> (WAIT) -> THROTTLE -> EXECUTE -> STORE -> CALLBACK

Each step handler returns the next step. Cache hits jump straight to CALLBACK;
requests that are neither retrievable nor storable go straight to THROTTLE.
"""

import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .adapters.cookie_jar import apply_cookie_jar, needs_async_jar, store_response_cookies
from .caching.evaluator import Evaluator
from .caching.store import CacheStore, resolve_expiry
from .locking.lock_manager import LockManager
from .models import CacheEntry, CachePolicy, LockMessage, RequestDescriptor, RequestResult, ResponseDescriptor
from .ratelimit.token_bucket import TokenBucketRateLimiter
from shared.errors import RateLimitError
from shared.logging import clear_context, get_logger, set_fingerprint, set_request_id
from shared.metrics import MetricsCollector


class Step(Enum):
    """Pipeline states."""
    EVALUATE = "evaluate"
    CACHE_LOOKUP = "cache_lookup"
    LOCK = "lock"
    WAIT = "wait"
    THROTTLE = "throttle"
    EXECUTE = "execute"
    STORE = "store"
    CALLBACK = "callback"
    DONE = "done"


@dataclass
class PipelineContext:
    """Mutable per-request state owned by the pipeline."""
    request: RequestDescriptor
    callback: Optional[Callable] = None
    evaluator: Optional[Evaluator] = None
    fingerprint: Optional[str] = None
    lock_token: Optional[str] = None
    lock_attempts: int = 0
    bypass_attempt: bool = False
    caching_disabled: bool = False
    error: Optional[BaseException] = None
    response: Optional[ResponseDescriptor] = None
    body: Optional[str] = None
    stored: bool = False
    expires_at: Optional[int] = None
    result: Optional[RequestResult] = None
    transitions: List[Step] = field(default_factory=list)


async def _noop_pass_back(error: Optional[BaseException] = None, result: Any = None) -> None:
    return None


class RequestOrchestrator:
    """Composes evaluator, cache, lock, limiter and transport for each request."""

    def __init__(
        self,
        transport,
        cache: Optional[CacheStore] = None,
        lock_manager: Optional[LockManager] = None,
        limiters: Optional[Dict[str, TokenBucketRateLimiter]] = None,
        cache_policies: Optional[Dict[str, CachePolicy]] = None,
        *,
        max_lock_time_ms: int = 10000,
        max_lock_attempts: int = 3,
        disable_cache: bool = False,
        cache_unauthorized: bool = False,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.transport = transport
        self.cache = cache
        self.lock_manager = lock_manager
        self.limiters: Dict[str, TokenBucketRateLimiter] = limiters if limiters is not None else {}
        self.cache_policies: Dict[str, CachePolicy] = cache_policies if cache_policies is not None else {}
        self.max_lock_time_ms = max_lock_time_ms
        self.max_lock_attempts = max_lock_attempts
        self.disable_cache = disable_cache
        self.cache_unauthorized = cache_unauthorized
        self.metrics = metrics or MetricsCollector()
        self.logger = get_logger("requestor.orchestrator")

        self.received_requests = 0
        self.cache_miss = 0
        self.served_from_cache = 0

        self._handlers: Dict[Step, Callable[[PipelineContext], Awaitable[Step]]] = {
            Step.EVALUATE: self._evaluate,
            Step.CACHE_LOOKUP: self._cache_lookup,
            Step.LOCK: self._lock,
            Step.WAIT: self._wait,
            Step.THROTTLE: self._throttle,
            Step.EXECUTE: self._execute,
            Step.STORE: self._store,
            Step.CALLBACK: self._callback,
        }

    def get_stats(self) -> Dict[str, int]:
        """Pipeline counters since this orchestrator was created."""
        return {
            "received_requests": self.received_requests,
            "served_from_cache": self.served_from_cache,
            "cache_miss": self.cache_miss,
        }

    async def run(self, request: RequestDescriptor, callback: Optional[Callable] = None) -> RequestResult:
        """Drive one request through the pipeline and return its result."""
        self.received_requests += 1
        self.metrics.increment_counter("requests_total", method=request.method)
        set_request_id()

        ctx = PipelineContext(request=request, callback=callback)
        step = Step.EVALUATE
        with self.metrics.time_operation("request_duration_seconds", method=request.method):
            try:
                while step is not Step.DONE:
                    ctx.transitions.append(step)
                    step = await self._handlers[step](ctx)
            finally:
                # Never leave waiters hanging on a lock this request still holds
                if ctx.lock_token is not None:
                    await self._release(ctx, LockMessage.NOT_STORABLE)
                clear_context()

        return ctx.result

    def _caching_active(self, ctx: PipelineContext) -> bool:
        return (
            self.cache is not None
            and not self.disable_cache
            and not ctx.caching_disabled
            and not ctx.bypass_attempt
            and self.cache.connected
        )

    def _should_lookup(self, ctx: PipelineContext) -> bool:
        return bool(ctx.evaluator.retrievable) and not ctx.request.force_fresh

    async def _evaluate(self, ctx: PipelineContext) -> Step:
        request = ctx.request
        if ctx.evaluator is None:
            ctx.evaluator = Evaluator.for_request(
                request,
                self.cache_policies.get(request.host),
                cache_unauthorized=self.cache_unauthorized,
            )

        if not self._caching_active(ctx):
            return Step.THROTTLE

        retrievable = ctx.evaluator.is_retrievable(request)
        storable = ctx.evaluator.storable is not False
        if not retrievable and not storable:
            return Step.THROTTLE

        ctx.fingerprint = self.cache.fingerprint(request)
        set_fingerprint(ctx.fingerprint)

        if self._should_lookup(ctx):
            return Step.CACHE_LOOKUP
        return Step.LOCK if storable else Step.THROTTLE

    async def _cache_lookup(self, ctx: PipelineContext) -> Step:
        try:
            entry = await self.cache.get(ctx.fingerprint)
        except Exception as e:
            self.logger.error("Cache lookup failed, executing request", error=str(e))
            entry = None

        if entry is not None and entry.is_complete:
            response = entry.response
            response.from_cache = True
            response.processed = entry.processed is not None
            ctx.response = response
            ctx.body = entry.body
            ctx.expires_at = entry.expires_at
            ctx.stored = True
            self.served_from_cache += 1
            self.metrics.increment_counter("cache_hits_total")
            self.logger.debug("Served from cache", url=ctx.request.url, processed=response.processed)
            return Step.CALLBACK

        self.cache_miss += 1
        self.metrics.increment_counter("cache_misses_total")
        self.logger.debug("Cache miss", url=ctx.request.url)
        return Step.LOCK if ctx.evaluator.storable is not False else Step.THROTTLE

    async def _lock(self, ctx: PipelineContext) -> Step:
        if self.lock_manager is None or not self.lock_manager.connected:
            return Step.THROTTLE

        try:
            attempt = await self.lock_manager.acquire(ctx.fingerprint, self.max_lock_time_ms)
        except Exception as e:
            self.logger.error("Lock acquire failed, executing without lock", error=str(e))
            return Step.THROTTLE

        if attempt.granted:
            ctx.lock_token = attempt.token
            return Step.THROTTLE
        if attempt.unavailable:
            return Step.THROTTLE
        return Step.WAIT

    async def _wait(self, ctx: PipelineContext) -> Step:
        message = await self.lock_manager.wait(ctx.fingerprint, self.max_lock_time_ms)
        outcome = message.value if message is not None else "timeout"
        self.metrics.increment_counter("lock_waits_total", outcome=outcome)

        if message is LockMessage.NOT_STORABLE:
            # The holder's response was not cached; run this attempt uncached
            ctx.bypass_attempt = True
            return Step.THROTTLE

        ctx.lock_attempts += 1
        if ctx.lock_attempts > self.max_lock_attempts:
            self.logger.warning(
                "Lock attempts exhausted, caching disabled for request",
                attempts=ctx.lock_attempts,
                max_attempts=self.max_lock_attempts
            )
            ctx.caching_disabled = True
            return Step.THROTTLE

        if message is LockMessage.RELEASED:
            return Step.CACHE_LOOKUP if self._should_lookup(ctx) else Step.LOCK

        self.logger.info("Lock wait timed out, executing uncached", attempts=ctx.lock_attempts)
        ctx.bypass_attempt = True
        return Step.THROTTLE

    async def _throttle(self, ctx: PipelineContext) -> Step:
        limiter = self.limiters.get(ctx.request.host)
        if limiter is None:
            return Step.EXECUTE

        try:
            await limiter.throttle()
        except RateLimitError as e:
            self.metrics.increment_counter("rate_limited_total", host=ctx.request.host)
            ctx.error = e
            await self._release(ctx, LockMessage.NOT_STORABLE)
            return Step.CALLBACK
        return Step.EXECUTE

    async def _execute(self, ctx: PipelineContext) -> Step:
        request = ctx.request
        jar = None
        if needs_async_jar(request):
            jar = request.jar
            try:
                request = await apply_cookie_jar(request)
            except Exception as e:
                self.logger.error("Failed to read cookie jar", url=request.url, error=str(e))
                ctx.error = e
                return Step.STORE

        try:
            ctx.response, ctx.body = await self.transport.send(request)
        except Exception as e:
            self.logger.error("Executing request failed", method=request.method, url=request.url, error=str(e))
            self.metrics.increment_counter("upstream_errors_total")
            ctx.error = e
            return Step.STORE

        if jar is not None:
            await store_response_cookies(jar, ctx.response, request.url)
        return Step.STORE

    async def _store(self, ctx: PipelineContext) -> Step:
        caching = self._caching_active(ctx) and ctx.fingerprint is not None

        if ctx.error is not None:
            if caching:
                await self._purge(ctx.fingerprint)
            await self._release(ctx, LockMessage.NOT_STORABLE)
            return Step.CALLBACK

        if not caching or not ctx.evaluator.is_storable(ctx.response):
            await self._release(ctx, LockMessage.NOT_STORABLE)
            return Step.CALLBACK

        now = int(time.time())
        expires_at = resolve_expiry(ctx.request, ctx.response, now)
        if expires_at is not None and expires_at <= now:
            self.logger.debug("Response already expired, not caching", expires_at=expires_at)
            await self._release(ctx, LockMessage.NOT_STORABLE)
            return Step.CALLBACK

        try:
            await self.cache.put(CacheEntry(
                fingerprint=ctx.fingerprint,
                response=ctx.response,
                raw=ctx.body,
                expires_at=expires_at,
            ))
        except Exception as e:
            self.logger.error("Failed to store response in cache", error=str(e))
            await self._release(ctx, LockMessage.NOT_STORABLE)
            return Step.CALLBACK

        ctx.stored = True
        ctx.expires_at = expires_at
        self.logger.debug("Response stored", url=ctx.request.url, expires_at=expires_at)
        await self._release(ctx, LockMessage.RELEASED)
        return Step.CALLBACK

    async def _callback(self, ctx: PipelineContext) -> Step:
        if ctx.stored and ctx.fingerprint is not None:
            pass_back = self._make_pass_back(ctx.fingerprint, ctx.expires_at)
        else:
            pass_back = _noop_pass_back

        ctx.result = RequestResult(
            error=ctx.error,
            response=ctx.response,
            body=ctx.body,
            pass_back_to_cache=pass_back,
        )

        if ctx.callback is not None:
            outcome = ctx.callback(ctx.error, ctx.response, ctx.body, pass_back)
            if inspect.isawaitable(outcome):
                await outcome
        return Step.DONE

    def _make_pass_back(self, fingerprint: str, expires_at: Optional[int]):
        cache = self.cache
        logger = self.logger

        async def pass_back_to_cache(error: Optional[BaseException] = None, result: Any = None) -> None:
            """Store a processed representation, or purge when processing failed."""
            try:
                if error:
                    await cache.purge(fingerprint)
                elif isinstance(result, str):
                    await cache.put(CacheEntry(fingerprint=fingerprint, processed=result, expires_at=expires_at))
            except Exception as e:
                logger.error("Failed to pass processed body back to cache", fingerprint=fingerprint, error=str(e))

        return pass_back_to_cache

    async def _purge(self, fingerprint: str) -> None:
        try:
            await self.cache.purge(fingerprint)
        except Exception as e:
            self.logger.error("Failed to purge cache entry", fingerprint=fingerprint, error=str(e))

    async def _release(self, ctx: PipelineContext, message: LockMessage) -> None:
        if ctx.lock_token is None:
            return
        token, ctx.lock_token = ctx.lock_token, None
        try:
            await self.lock_manager.release(ctx.fingerprint, token, message)
        except Exception as e:
            self.logger.error("Failed to release lock", message=message.value, error=str(e))
