"""RedisCache against a stub async client; no Redis server required."""

import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from hyreauth.service.errors import ServiceUnavailableError
from hyreauth.storage.errors import StoreUnavailableError
from hyreauth.storage.redis_cache import RedisCache, escape_glob


class StubRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.calls = []
        self.fail_with = None

    def _check(self, name):
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self):
        self._check("ping")
        return True

    async def get(self, key):
        self._check("get")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check("set")
        self.data[key] = value
        self.ttls[key] = ex if ex is not None else -1
        return True

    async def delete(self, key):
        self._check("delete")
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def ttl(self, key):
        self._check("ttl")
        return self.ttls.get(key, -2)

    async def scan_iter(self, match=None, count=None):
        self._check("scan")
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key


@pytest.fixture
def stub():
    return StubRedis()


@pytest.fixture
def redis_cache(stub):
    return RedisCache("redis://localhost:6379/0", client=stub)


async def test_round_trip(redis_cache, stub):
    await redis_cache.set_with_ttl("otp:email:a@x.com", "{}", 600)

    assert await redis_cache.get("otp:email:a@x.com") == "{}"
    assert await redis_cache.ttl_remaining("otp:email:a@x.com") == 600
    assert stub.ttls["otp:email:a@x.com"] == 600
    assert await redis_cache.delete("otp:email:a@x.com") == 1
    assert await redis_cache.ttl_remaining("otp:email:a@x.com") == -2


async def test_keys_matching_uses_scan(redis_cache, stub):
    for key in ["session:p1:a", "session:p1:b", "session:p2:a"]:
        await redis_cache.set_with_ttl(key, "1", 60)

    keys = await redis_cache.keys_matching("session:p1:*")

    assert sorted(keys) == ["session:p1:a", "session:p1:b"]
    assert "scan" in stub.calls


async def test_ping(redis_cache):
    assert await redis_cache.ping() is True


async def test_non_positive_ttl_rejected(redis_cache, stub):
    with pytest.raises(ValueError):
        await redis_cache.set_with_ttl("k", "v", 0)
    assert "set" not in stub.calls


@pytest.mark.parametrize(
    "operation,call",
    [
        ("get", lambda cache: cache.get("k")),
        ("set", lambda cache: cache.set_with_ttl("k", "v", 5)),
        ("delete", lambda cache: cache.delete("k")),
        ("ttl", lambda cache: cache.ttl_remaining("k")),
        ("scan", lambda cache: cache.keys_matching("k*")),
    ],
)
async def test_redis_errors_become_unavailable(redis_cache, stub, operation, call):
    stub.fail_with = RedisConnectionError("connection refused")

    with pytest.raises(StoreUnavailableError) as excinfo:
        await call(redis_cache)

    assert isinstance(excinfo.value, ServiceUnavailableError)
    assert excinfo.value.status_code == 503
    assert excinfo.value.operation == operation
    assert isinstance(excinfo.value.cause, RedisConnectionError)


def test_escape_glob():
    assert escape_glob("plain@x.com") == "plain@x.com"
    assert escape_glob("a*b?[c]\\") == "a\\*b\\?\\[c\\]\\\\"
