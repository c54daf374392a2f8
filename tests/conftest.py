import asyncio
import dataclasses
from collections import defaultdict

import pytest

from parser_worker.config import load_config
from parser_worker.models import Job, parse_job_data


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio calls the queue makes."""

    def __init__(self):
        self.hashes = {}
        self.lists = defaultdict(list)
        self.counters = defaultdict(int)
        self.closed = False
        self.fail = {}  # method name -> exception raised once

    def _maybe_fail(self, method):
        exc = self.fail.pop(method, None)
        if exc is not None:
            raise exc

    async def incr(self, key):
        self.counters[key] += 1
        return self.counters[key]

    async def hset(self, key, mapping):
        self._maybe_fail("hset")
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hincrby(self, key, field, amount=1):
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    async def rpush(self, key, *values):
        self._maybe_fail("rpush")
        self.lists[key].extend(str(v) for v in values)
        return len(self.lists[key])

    async def lpush(self, key, *values):
        for v in values:
            self.lists[key].insert(0, str(v))
        return len(self.lists[key])

    async def blpop(self, keys, timeout=0):
        self._maybe_fail("blpop")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for k in keys:
                if self.lists[k]:
                    return k, self.lists[k].pop(0)
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(0.005)

    async def aclose(self):
        self.closed = True


class StubEnvironment:
    """Environment double: records options and teardown calls."""

    def __init__(self, options, *, teardown_error=None):
        self.options = options
        self.teardowns = 0
        self.teardown_error = teardown_error

    async def tear_down(self):
        self.teardowns += 1
        if self.teardown_error is not None:
            raise self.teardown_error


class DoneRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, error, result):
        self.calls.append((error, result))


@pytest.fixture
def cfg(monkeypatch):
    for k in ("TIME_LIMIT_FOR_JOB", "GOOSE_MEMORY_LIMIT", "QUEUE_NAME", "QUEUE_CONCURRENCY"):
        monkeypatch.delenv(k, raising=False)
    return dataclasses.replace(load_config(), job_time_limit_ms=1000)


@pytest.fixture
def fake_redis():
    return FakeRedis()


def make_job(request=None, job_id="1", channel="parser-default"):
    request = request or {"url": "http://example.com/", "rules": {"scope": "h1"}}
    return Job(id=job_id, channel=channel, data=parse_job_data({"request": request}))
