"""Tests for the key-value adapter's degradation behaviour."""

import json

import pytest

from airwave.storage.redis_cache import RedisCache


class TestRedisCacheOperations:
    async def test_set_get_delete(self, cache):
        assert await cache.set("k", "v", ex=60)
        assert await cache.get("k") == "v"
        assert await cache.exists("k")

        assert await cache.delete("k") == 1
        assert await cache.get("k") is None
        assert not await cache.exists("k")

    async def test_expiry_is_clamped_to_one_second(self, cache, fake_redis):
        await cache.set("k", "v", ex=0)

        assert fake_redis.expiry["k"] > 0

    async def test_set_members(self, cache):
        assert await cache.sadd("s", "a", "b") == 2
        assert await cache.smembers("s") == {"a", "b"}
        assert await cache.srem("s", "a") == 1
        assert await cache.smembers("s") == {"b"}
        assert await cache.smembers("missing") == set()

    async def test_empty_variadic_calls_skip_the_server(self, cache, fake_redis):
        assert await cache.delete() == 0
        assert await cache.sadd("s") == 0
        assert await cache.srem("s") == 0
        assert fake_redis.calls == []

    async def test_json_helpers(self, cache, fake_redis):
        await cache.set_json("j", {"a": 1})

        assert await cache.get_json("j") == {"a": 1}
        fake_redis.values["j"] = "{broken"
        assert await cache.get_json("j") is None

    async def test_cache_refresh_token_pipeline(self, cache, fake_redis):
        entry = {"userId": "u1", "sessionId": "s1", "createdAt": 1.0}

        assert await cache.cache_refresh_token("abc", entry, "u1", 3600)

        assert json.loads(fake_redis.values["refresh_token:abc"]) == entry
        assert fake_redis.sets["user:u1:refresh_tokens"] == {"abc"}
        assert "user:u1:refresh_tokens" in fake_redis.expiry

    async def test_denylist(self, cache):
        assert not await cache.is_access_token_denylisted("h")

        await cache.denylist_access_token("h", 60)

        assert await cache.is_access_token_denylisted("h")
        assert await cache.get("blocklist:h") == "1"

    async def test_denylist_skips_expired_tokens(self, cache, fake_redis):
        assert await cache.denylist_access_token("h", 0)
        assert "blocklist:h" not in fake_redis.values


class TestRedisCacheDegradation:
    """Every failure turns into a neutral result instead of an exception."""

    async def test_connection_errors_return_defaults(self, cache, fake_redis):
        fake_redis.broken = True

        assert await cache.get("k") is None
        assert await cache.set("k", "v") is False
        assert await cache.delete("k") == 0
        assert await cache.exists("k") is False
        assert await cache.sadd("s", "a") == 0
        assert await cache.srem("s", "a") == 0
        assert await cache.smembers("s") == set()
        assert await cache.expire("k", 10) is False
        assert await cache.ping() is False
        assert await cache.get_json("k") is None
        assert await cache.cache_refresh_token("h", {}, "u", 10) is False
        assert await cache.is_access_token_denylisted("h") is False

    async def test_slow_commands_time_out(self, fake_redis):
        fake_redis.delay = 0.5
        slow = RedisCache(client=fake_redis, operation_timeout=0.05)

        assert await slow.get("k") is None
        assert await slow.ping() is False

    async def test_close_uses_aclose(self, cache, fake_redis):
        await cache.close()

        assert fake_redis.closed


def test_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisCache()
