"""
End-to-end tests for the complete request pipeline.

The transport is httpx with a MockTransport; cache and lock backends are the
in-process ones, so these tests need no Redis.
"""

import asyncio
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest

from requestor import Requestor
from requestor.adapters.redis_client import RedisStore
from requestor.adapters.transport import HttpxTransport
from requestor.caching.memory_store import MemoryCacheStore
from requestor.locking.memory_lock import MemoryLockManager
from shared.errors import RateLimitError


URL = "https://api.example.com/items"


class Upstream:
    """Fake upstream counting the requests it serves."""

    def __init__(self, headers=None, delay=0.0):
        self.headers = {"cache-control": "max-age=60"} if headers is None else headers
        self.delay = delay
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        headers = dict(self.headers)
        headers["set-cookie"] = "visit=1; Path=/"
        return httpx.Response(200, headers=headers, text=f"body-{len(self.requests)}")


class CookieJar:
    """Asynchronous jar remembering every cookie it is given."""

    def __init__(self):
        self.cookies = []

    async def get_cookie_string(self, url):
        return "; ".join(cookie.split(";")[0] for cookie in self.cookies)

    async def set_cookie(self, set_cookie_header, url):
        self.cookies.append(set_cookie_header)


def make_requestor(upstream, **kwargs) -> Requestor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    requestor = Requestor(HttpxTransport(client=client), **kwargs)
    return requestor.use_backends(MemoryCacheStore(), MemoryLockManager())


class TestEndToEndFlow:
    """End-to-end tests for caching, collapsing and limiting."""

    @pytest.fixture
    def upstream(self):
        return Upstream()

    @pytest.fixture
    def requestor(self, upstream):
        return make_requestor(upstream)

    @pytest.mark.asyncio
    async def test_max_age_caching(self, requestor, upstream):
        """Test a max-age=60 response is served from cache inside the window and refetched after."""
        now = time.time()

        with patch("time.time", return_value=now):
            first = await requestor.get(URL)
        with patch("time.time", return_value=now + 30):
            second = await requestor.get(URL)
        with patch("time.time", return_value=now + 61):
            third = await requestor.get(URL)

        assert first.body == "body-1"
        assert first.from_cache is False
        assert second.body == "body-1"
        assert second.from_cache is True
        assert third.body == "body-2"
        assert third.from_cache is False
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_stampede_executes_once(self):
        """Test identical concurrent GETs reach the upstream once."""
        upstream = Upstream(delay=0.05)
        requestor = make_requestor(upstream)

        results = await asyncio.gather(*(requestor.get(URL) for _ in range(10)))

        assert len(upstream.requests) == 1
        assert {result.body for result in results} == {"body-1"}
        assert requestor.get_stats()["served_from_cache"] == 9

    @pytest.mark.asyncio
    async def test_different_queries_are_distinct(self, requestor, upstream):
        await requestor.get(URL, {"qs": {"page": 1}})
        await requestor.get(URL, {"qs": {"page": 2}})
        await requestor.get(f"{URL}?page=1")

        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_repeated_query_keys_reach_upstream(self, requestor, upstream):
        await requestor.get(f"{URL}?tag=a&tag=b")
        await requestor.get(f"{URL}?tag=b")

        assert [str(request.url) for request in upstream.requests] == [f"{URL}?tag=a&tag=b", f"{URL}?tag=b"]

    @pytest.mark.asyncio
    async def test_post_always_executes(self, requestor, upstream):
        await requestor.post(URL, {"json": {"a": 1}})
        await requestor.post(URL, {"json": {"a": 1}})

        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_processed_body_round_trip(self, requestor, upstream):
        """Test a callback's processed body is what later hits receive."""
        async def process(error, response, body, pass_back_to_cache):
            await pass_back_to_cache(None, body.upper())

        await requestor.get(URL, process)
        result = await requestor.get(URL)

        assert result.body == "BODY-1"
        assert result.response.processed is True
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_cookie_jar(self, requestor, upstream):
        """Test jar cookies are sent and response cookies are stored back."""
        jar = CookieJar()
        jar.cookies.append("session=abc; Path=/")

        await requestor.get(URL, {"jar": jar, "disableCache": True})

        assert upstream.requests[0].headers["cookie"] == "session=abc"
        assert jar.cookies[-1] == "visit=1; Path=/"

    @pytest.mark.asyncio
    async def test_rate_limit(self, upstream):
        """Test the host bucket rejects calls once the window is used up."""
        requestor = make_requestor(upstream)
        store = RedisStore(client=MagicMock(), failure_threshold=1)
        store.circuit_breaker.record_failure()
        requestor.set_store(store)
        requestor.set_limits({"api.example.com": {"limit": 2, "duration_ms": 60000}})

        await requestor.get(URL, {"disableCache": True})
        await requestor.get(URL, {"disableCache": True})
        with pytest.raises(RateLimitError) as exc_info:
            await requestor.get(URL, {"disableCache": True})

        assert exc_info.value.limit == 2
        assert exc_info.value.host == "api.example.com"
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_cache_hits_skip_rate_limit(self, upstream):
        requestor = make_requestor(upstream)
        store = RedisStore(client=MagicMock(), failure_threshold=1)
        store.circuit_breaker.record_failure()
        requestor.set_store(store)
        requestor.set_limits({"api.example.com": {"limit": 1}})

        await requestor.get(URL)
        result = await requestor.get(URL)

        assert result.from_cache is True
