import asyncio
import inspect
import os
import sys
import time
from pathlib import Path

# Environment must be in place before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from airwave.service.runtime import reset_runtime_for_tests  # noqa: E402
from airwave.storage.redis_cache import RedisCache  # noqa: E402


class FakeRedisError(ConnectionError):
    pass


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.commands: list = []

    def set(self, *args, **kwargs):
        self.commands.append(("set", args, kwargs))
        return self

    def sadd(self, *args, **kwargs):
        self.commands.append(("sadd", args, kwargs))
        return self

    def expire(self, *args, **kwargs):
        self.commands.append(("expire", args, kwargs))
        return self

    async def execute(self) -> list:
        results = []
        for name, args, kwargs in self.commands:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.commands = []
        return results


class FakeRedis:
    """In-process stand-in for ``redis.asyncio.Redis`` with decoded responses.

    Only the commands the cache wrapper issues are implemented. Set
    ``broken = True`` to make every command raise, or ``delay`` to make every
    command sleep before answering.
    """

    def __init__(self) -> None:
        self.values: dict = {}
        self.sets: dict = {}
        self.expiry: dict = {}
        self.broken = False
        self.delay = 0.0
        self.closed = False
        self.calls: list = []

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.broken:
            raise FakeRedisError("connection refused")
        now = time.time()
        for key, deadline in list(self.expiry.items()):
            if deadline <= now:
                self.values.pop(key, None)
                self.sets.pop(key, None)
                self.expiry.pop(key, None)

    async def ping(self):
        await self._enter("ping")
        return True

    async def get(self, key):
        await self._enter("get")
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        await self._enter("set")
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = time.time() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys):
        await self._enter("delete")
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def exists(self, key):
        await self._enter("exists")
        return int(key in self.values or key in self.sets)

    async def sadd(self, key, *members):
        await self._enter("sadd")
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def srem(self, key, *members):
        await self._enter("srem")
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        if not bucket:
            self.sets.pop(key, None)
        return removed

    async def smembers(self, key):
        await self._enter("smembers")
        return set(self.sets.get(key, set()))

    async def expire(self, key, seconds):
        await self._enter("expire")
        if key not in self.values and key not in self.sets:
            return False
        self.expiry[key] = time.time() + seconds
        return True

    def pipeline(self):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return RedisCache(client=fake_redis, operation_timeout=0.5)


@pytest.fixture(autouse=True)
def reset_runtime_state(cache):
    reset_runtime_for_tests(cache=cache)
    yield
    reset_runtime_for_tests(cache=RedisCache(client=FakeRedis()))


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
