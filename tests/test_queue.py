import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from parser_worker.errors import InvalidJobError, JobTimeoutError, QueueError, WorkerError, error_payload
from parser_worker.queue import COMPLETE, FAILED, INACTIVE, RedisJobQueue


def _queue(fake_redis, **kwargs):
    kwargs.setdefault("poll_timeout_s", 0.02)
    kwargs.setdefault("error_backoff_ms", 10)
    return RedisJobQueue(fake_redis, **kwargs)


async def _wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_enqueue_stores_record_and_waiting_id(fake_redis):
    q = _queue(fake_redis)
    job_id = await q.enqueue("parser-default", {"url": "http://example.com/", "rulesParams": {"a": 1}})

    assert job_id == "1"
    assert fake_redis.lists["q:parser-default:inactive"] == ["1"]
    record = await q.get_job_record(job_id)
    assert record["state"] == INACTIVE
    assert record["type"] == "parser-default"
    data = json.loads(record["data"])
    assert data["request"]["url"] == "http://example.com/"
    assert data["request"]["rulesParams"] == {"a": 1}


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_request(fake_redis):
    q = _queue(fake_redis)
    with pytest.raises(InvalidJobError):
        await q.enqueue("parser-default", {"rules": {}})
    assert fake_redis.lists["q:parser-default:inactive"] == []


@pytest.mark.asyncio
async def test_successful_job_is_recorded_complete(fake_redis):
    q = _queue(fake_redis)
    seen = []

    async def handler(job, done):
        seen.append((job.id, job.request.url))
        await done(None, {"result": {"title": "x"}})

    job_id = await q.enqueue("parser-default", {"url": "http://example.com/"})
    await q.process("parser-default", handler)
    await _wait_for(lambda: fake_redis.lists["q:parser-default:complete"])
    await q.shutdown(1)

    assert seen == [("1", "http://example.com/")]
    record = await q.get_job_record(job_id)
    assert record["state"] == COMPLETE
    assert json.loads(record["result"]) == {"result": {"title": "x"}}
    assert record["attempts"] == "1"
    assert fake_redis.closed is True


@pytest.mark.asyncio
async def test_failed_job_keeps_error_details(fake_redis):
    q = _queue(fake_redis)

    async def handler(job, done):
        await done(JobTimeoutError(100), None)
        # a second outcome is ignored
        await done(None, {"result": 1})

    job_id = await q.enqueue("parser-default", {"url": "http://example.com/"})
    await q.process("parser-default", handler)
    await _wait_for(lambda: fake_redis.lists["q:parser-default:failed"])
    await q.shutdown(1)

    record = await q.get_job_record(job_id)
    assert record["state"] == FAILED
    error = json.loads(record["error"])
    assert error["type"] == "JobTimeoutError"
    assert error["limit_ms"] == 100
    assert fake_redis.lists["q:parser-default:complete"] == []


@pytest.mark.asyncio
async def test_invalid_payload_fails_without_calling_handler(fake_redis):
    q = _queue(fake_redis)
    called = []

    async def handler(job, done):
        called.append(job)

    await fake_redis.hset("q:job:7", mapping={"type": "parser-default", "data": json.dumps({"request": {}})})
    await fake_redis.rpush("q:parser-default:inactive", "7")
    await q.process("parser-default", handler)
    await _wait_for(lambda: fake_redis.lists["q:parser-default:failed"])
    await q.shutdown(1)

    assert called == []
    error = json.loads((await q.get_job_record("7"))["error"])
    assert error["type"] == "InvalidJobError"


@pytest.mark.asyncio
async def test_crashing_handler_is_reported_failed(fake_redis):
    q = _queue(fake_redis)

    async def handler(job, done):
        raise RuntimeError("handler bug")

    job_id = await q.enqueue("parser-default", {"url": "http://example.com/"})
    await q.process("parser-default", handler)
    await _wait_for(lambda: fake_redis.lists["q:parser-default:failed"])
    await q.shutdown(1)

    error = json.loads((await q.get_job_record(job_id))["error"])
    assert error == {"type": "RuntimeError", "message": "handler bug"}


@pytest.mark.asyncio
async def test_dequeue_errors_are_emitted_and_consumer_keeps_going(fake_redis):
    q = _queue(fake_redis)
    errors = []
    q.on_error(errors.append)
    fake_redis.fail["blpop"] = RedisConnectionError("connection reset")

    async def handler(job, done):
        await done(None, {"result": None})

    await q.enqueue("parser-default", {"url": "http://example.com/"})
    await q.process("parser-default", handler)
    await _wait_for(lambda: fake_redis.lists["q:parser-default:complete"])
    await q.shutdown(1)

    assert len(errors) == 1
    assert isinstance(errors[0], QueueError)
    assert errors[0].channel == "parser-default"


@pytest.mark.asyncio
async def test_record_retries_transient_redis_errors(fake_redis):
    q = _queue(fake_redis)
    errors = []
    q.on_error(errors.append)
    fake_redis.fail["rpush"] = RedisConnectionError("blip")

    await fake_redis.hset("q:job:3", mapping={"type": "parser-default"})
    await q._finish("parser-default", "3", None, {"result": 1})

    assert fake_redis.lists["q:parser-default:complete"] == ["3"]
    assert errors == []


@pytest.mark.asyncio
async def test_shutdown_interrupts_jobs_after_grace(fake_redis):
    q = _queue(fake_redis)
    started = asyncio.Event()

    async def handler(job, done):
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            await done(WorkerError("Job interrupted by worker shutdown"), None)
            raise

    job_id = await q.enqueue("parser-default", {"url": "http://example.com/"})
    await q.process("parser-default", handler)
    await started.wait()
    await q.shutdown(0.05)

    record = await q.get_job_record(job_id)
    assert record["state"] == FAILED
    assert "shutdown" in json.loads(record["error"])["message"]
    assert q.accepting is False


@pytest.mark.asyncio
async def test_paused_queue_takes_no_new_jobs(fake_redis):
    q = _queue(fake_redis)
    called = []

    async def handler(job, done):
        called.append(job.id)

    await q.process("parser-default", handler)
    q.pause()
    await q.enqueue("parser-default", {"url": "http://example.com/"})
    await asyncio.sleep(0.06)
    await q.shutdown(1)

    assert called == []
    assert fake_redis.lists["q:parser-default:inactive"] == ["1"]


def test_error_payload_shapes():
    assert error_payload(ValueError("x")) == {"type": "ValueError", "message": "x"}
    payload = error_payload(JobTimeoutError(250))
    assert payload["limit_ms"] == 250
    assert "250" in payload["message"]
