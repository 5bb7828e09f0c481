"""
Unit tests for the caller-facing Requestor.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from requestor.adapters.redis_client import RedisStore
from requestor.adapters.transport import HttpxTransport
from requestor.caching.memory_store import MemoryCacheStore
from requestor.caching.redis_store import RedisCacheStore
from requestor.locking.memory_lock import MemoryLockManager
from requestor.locking.redis_lock import RedisLockManager
from requestor.models import CachePolicy, RequestDescriptor, ThrottleConfig
from requestor.requestor import Requestor, parse_args
from shared.config import RequestorConfig
from shared.errors import ConfigurationError, InvocationError


URL = "https://api.example.com/items"


def callback(error, response, body, pass_back):
    return None


class FakeRedis:
    """Dict-backed stand-in for the commands the cache and lock backends issue."""

    def __init__(self):
        self.data = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def ping(self):
        return True

    async def set(self, key, value, nx=False, px=None, **kwargs):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def eval(self, script, numkeys, lock_key, channel, token, message):
        if self.data.get(lock_key) != token:
            return 0
        del self.data[lock_key]
        return 1

    async def delete(self, *keys):
        return sum(self.data.pop(key, None) is not None for key in keys)


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def mget(self, *keys):
        self.commands.append(lambda: [self.redis.data.get(key) for key in keys])

    def ttl(self, key):
        self.commands.append(lambda: 60 if key in self.redis.data else -2)

    def set(self, key, value, **kwargs):
        self.commands.append(lambda: self.redis.data.__setitem__(key, value))

    def delete(self, *keys):
        self.commands.append(lambda: [self.redis.data.pop(key, None) for key in keys])

    async def execute(self):
        return [command() for command in self.commands]


class TestParseArgs:
    """Test cases for flexible argument parsing."""

    def test_uri_only(self):
        descriptor, cb = parse_args((URL,))
        assert descriptor.url == URL
        assert descriptor.method == "GET"
        assert cb is None

    def test_uri_and_callback(self):
        descriptor, cb = parse_args((URL, callback))
        assert descriptor.url == URL
        assert cb is callback

    def test_uri_options_callback(self):
        descriptor, cb = parse_args((URL, {"ttl": 30, "forceFresh": True}, callback))
        assert descriptor.ttl == 30
        assert descriptor.force_fresh is True
        assert cb is callback

    def test_options_only(self):
        descriptor, _ = parse_args(({"uri": URL, "method": "post", "qs": {"a": 1}},))
        assert descriptor.url == URL
        assert descriptor.method == "POST"
        assert descriptor.params == {"a": 1}

    def test_positional_uri_wins(self):
        descriptor, _ = parse_args((URL, {"uri": "https://other.example.com/"}))
        assert descriptor.url == URL

    def test_keyword_options(self):
        descriptor, cb = parse_args((URL,), {"headers": {"Accept": "text/plain"}, "callback": callback})
        assert descriptor.headers == {"accept": "text/plain"}
        assert cb is callback

    def test_descriptor_with_overrides(self):
        original = RequestDescriptor(url=URL, params={"page": "1"})
        descriptor, _ = parse_args((original, {"ttl": 10}))
        assert descriptor.ttl == 10
        assert descriptor.params == {"page": "1"}
        assert original.ttl is None

    def test_base_url(self):
        descriptor, _ = parse_args(({"baseUrl": "https://api.example.com/", "uri": "/items"},))
        assert descriptor.url == URL

    def test_base_url_rejects_absolute_uri(self):
        with pytest.raises(InvocationError):
            parse_args(({"baseUrl": "https://api.example.com", "uri": "https://evil.example.com/"},))

    def test_no_arguments(self):
        with pytest.raises(InvocationError):
            parse_args(())

    def test_bad_first_argument(self):
        with pytest.raises(InvocationError) as exc_info:
            parse_args((42,))
        assert exc_info.value.code == "INVOCATION_ERROR"

    def test_bad_second_argument(self):
        with pytest.raises(InvocationError):
            parse_args((URL, 42))

    def test_relative_url(self):
        with pytest.raises(InvocationError):
            parse_args(("/items",))

    def test_unknown_option(self):
        with pytest.raises(InvocationError) as exc_info:
            parse_args((URL, {"colour": "blue"}))
        assert exc_info.value.details == {"options": ["colour"]}


class TestSetup:
    """Test cases for setup ordering."""

    @pytest.fixture
    def store(self):
        return RedisStore(client=MagicMock(), key_prefix="test")

    def test_store_can_only_be_set_once(self, store):
        requestor = Requestor().set_store(store)
        with pytest.raises(ConfigurationError):
            requestor.set_store(store)

    def test_cache_requires_store(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Requestor().enable_cache()
        assert exc_info.value.code == "CONFIGURATION_ERROR"

    def test_enable_cache_builds_redis_backends(self, store):
        requestor = Requestor().set_store(store).enable_cache()
        assert isinstance(requestor.cache, RedisCacheStore)
        assert isinstance(requestor.lock_manager, RedisLockManager)

    def test_enable_cache_twice_keeps_first(self, store):
        requestor = Requestor().set_store(store).enable_cache()
        cache = requestor.cache
        requestor.enable_cache()
        assert requestor.cache is cache

    def test_cache_options_require_cache(self, store):
        with pytest.raises(ConfigurationError):
            Requestor().set_store(store).add_cache_options({"api.example.com": {"store_private": True}})

    def test_cache_options(self, store):
        requestor = Requestor().set_store(store).enable_cache()
        requestor.add_cache_options({"api.example.com": {"store_private": True}})
        assert requestor.cache_policies["api.example.com"] == CachePolicy(store_private=True)

    def test_limits_require_store(self):
        with pytest.raises(ConfigurationError):
            Requestor().set_limits({"api.example.com": {"limit": 10}})

    def test_limits_do_not_overwrite(self, store):
        """Test a second limit definition for the same host is ignored."""
        requestor = Requestor().set_store(store)
        requestor.set_limits({"api.example.com": ThrottleConfig(limit=10, duration_ms=1000)})
        requestor.set_limits({"api.example.com": {"limit": 99}})

        limiter = requestor.limiters["api.example.com"]
        assert limiter.limit == 10
        assert limiter.duration_ms == 1000
        assert limiter.store is store


class TestVerbs:
    """Test cases for the per-verb surface."""

    @pytest.fixture
    def seen(self):
        return []

    @pytest.fixture
    def requestor(self, seen):
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/broken":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, headers={"cache-control": "max-age=60"}, text="ok")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return Requestor(HttpxTransport(client=client)).use_backends(MemoryCacheStore(), MemoryLockManager())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("verb,method", [
        ("get", "GET"),
        ("head", "HEAD"),
        ("post", "POST"),
        ("put", "PUT"),
        ("patch", "PATCH"),
        ("delete", "DELETE"),
    ])
    async def test_verb_sets_method(self, requestor, seen, verb, method):
        result = await getattr(requestor, verb)(URL)
        assert result.response.status_code == 200
        assert seen[0].method == method

    @pytest.mark.asyncio
    async def test_request_uses_method_option(self, requestor, seen):
        await requestor.request({"uri": URL, "method": "PUT", "json": {"a": 1}})
        assert seen[0].method == "PUT"
        assert json.loads(seen[0].content) == {"a": 1}

    @pytest.mark.asyncio
    async def test_head_with_body_rejected(self, requestor, seen):
        """Test HEAD with a body fails before any I/O."""
        with pytest.raises(InvocationError):
            await requestor.head(URL, {"body": "data"})
        assert seen == []

    @pytest.mark.asyncio
    async def test_error_raised_without_callback(self, requestor):
        with pytest.raises(httpx.ConnectError):
            await requestor.get("https://api.example.com/broken")

    @pytest.mark.asyncio
    async def test_error_passed_to_callback(self, requestor):
        errors = []

        async def on_done(error, response, body, pass_back):
            errors.append(error)

        result = await requestor.get("https://api.example.com/broken", on_done)

        assert isinstance(errors[0], httpx.ConnectError)
        assert result.error is errors[0]

    @pytest.mark.asyncio
    async def test_query_params_sent(self, requestor, seen):
        await requestor.get(f"{URL}?page=2", {"qs": {"size": 10}})
        assert seen[0].url.params["page"] == "2"
        assert seen[0].url.params["size"] == "10"

    @pytest.mark.asyncio
    async def test_repeated_query_keys_sent(self, requestor, seen):
        await requestor.get(f"{URL}?tag=a&tag=b")
        assert seen[0].url.params.get_list("tag") == ["a", "b"]
        assert str(seen[0].url) == f"{URL}?tag=a&tag=b"

    @pytest.mark.asyncio
    async def test_stats(self, requestor):
        await requestor.get(URL)
        await requestor.get(URL)
        assert requestor.get_stats() == {"received_requests": 2, "served_from_cache": 1, "cache_miss": 1}


class TestRedisBackedFacade:
    """Test cases for a facade whose store is built from a redis url."""

    @pytest.fixture
    def seen(self):
        return []

    @pytest.fixture
    def transport(self, seen):
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, headers={"cache-control": "max-age=60"}, text="ok")

        return HttpxTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store", ["redis://localhost:6379/0", RedisStore("redis://localhost:6379/0")])
    async def test_second_get_served_from_cache(self, transport, seen, store):
        """Test set_store + enable_cache caches without an explicit connect()."""
        fake_redis = FakeRedis()

        with patch("requestor.adapters.redis_client.redis.from_url", return_value=fake_redis) as mock_from_url:
            requestor = Requestor(transport).set_store(store).enable_cache()
            first = await requestor.get(URL)
            second = await requestor.get(URL)

        mock_from_url.assert_called_once()
        assert requestor.store.connected is True
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.body == "ok"
        assert len(seen) == 1
        assert not any(key.startswith("requestor:lock:") for key in fake_redis.data)


class TestFromConfig:
    """Test cases for Requestor.from_config."""

    @pytest.mark.asyncio
    async def test_wires_policies(self, tmp_path: Path):
        policy_file = tmp_path / "policies.json"
        policy_file.write_text(json.dumps({
            "throttle": {"api.example.com": {"limit": 5, "duration_ms": 1000}},
            "cache": {"api.example.com": {"ignore_no_last_mod": True}},
        }))
        config = RequestorConfig(policy_file=str(policy_file), redis_url="redis://localhost:6390/0")

        with patch.object(RedisStore, "connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.return_value = True
            requestor = await Requestor.from_config(config)

        mock_connect.assert_awaited_once()
        assert requestor.limiters["api.example.com"].limit == 5
        assert requestor.cache_policies["api.example.com"].ignore_no_last_mod is True
        assert isinstance(requestor.cache, RedisCacheStore)

    @pytest.mark.asyncio
    async def test_disable_cache(self):
        config = RequestorConfig(disable_cache=True)

        with patch.object(RedisStore, "connect", new_callable=AsyncMock):
            requestor = await Requestor.from_config(config)

        assert requestor.cache is None
        assert requestor.limiters == {}
