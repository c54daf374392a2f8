from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from .config import Config
from .errors import InvalidJobError, QueueError, error_payload
from .models import Job, parse_job_data
from .utils import retry_async

logger = logging.getLogger(__name__)

# done(error, result) as handed to job handlers
DoneFn = Callable[[Optional[BaseException], Optional[Dict[str, Any]]], Awaitable[None]]
JobHandler = Callable[[Job, DoneFn], Awaitable[Any]]

INACTIVE = "inactive"
ACTIVE = "active"
COMPLETE = "complete"
FAILED = "failed"


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisJobQueue:
    """
    Small Redis-backed job queue.

    Layout (prefix "q" by default):
      <prefix>:ids                  INCR counter for job ids
      <prefix>:job:<id>             hash: type, data, state, attempts, result|error, *_at
      <prefix>:<channel>:inactive   list of waiting ids (RPUSH / BLPOP)
      <prefix>:<channel>:complete   list of finished ids
      <prefix>:<channel>:failed     list of failed ids

    Delivery, storage and retries belong to this layer; handlers only call
    done(error, result) once per job.
    """

    def __init__(
        self,
        client: Any,
        *,
        prefix: str = "q",
        poll_timeout_s: int = 1,
        error_backoff_ms: int = 1000,
    ) -> None:
        self._client = client
        self.prefix = prefix
        self.poll_timeout_s = poll_timeout_s
        self.error_backoff_ms = error_backoff_ms
        self._accepting = False
        self._consumers: Set[asyncio.Task] = set()
        self._error_listeners: List[Callable[[BaseException], Any]] = []
        self.active_jobs: Dict[str, Job] = {}

    @classmethod
    def from_config(cls, cfg: Config) -> "RedisJobQueue":
        client = aioredis.Redis(
            host=cfg.redis_host,
            port=cfg.redis_port,
            password=cfg.redis_password,
            db=cfg.redis_db,
            decode_responses=True,
        )
        logger.info("Queue initialized %s:%s", cfg.redis_host, cfg.redis_port)
        return cls(
            client,
            prefix=cfg.queue_key_prefix,
            poll_timeout_s=cfg.queue_poll_timeout_s,
            error_backoff_ms=cfg.queue_error_backoff_ms,
        )

    # ---------------- keys ----------------

    def key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + tuple(str(p) for p in parts))

    def job_key(self, job_id: str) -> str:
        return self.key("job", job_id)

    # ---------------- events ----------------

    def on_error(self, listener: Callable[[BaseException], Any]) -> None:
        self._error_listeners.append(listener)

    def _emit_error(self, exc: BaseException) -> None:
        logger.warning("Queue error: %s", exc)
        for listener in list(self._error_listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("Queue error listener raised")

    # ---------------- producer ----------------

    async def enqueue(self, channel: str, request: Dict[str, Any]) -> str:
        """Validate and push a job; returns its id."""
        data = parse_job_data({"request": request}).model_dump(by_alias=True, exclude_none=True)
        job_id = str(await self._client.incr(self.key("ids")))
        await self._client.hset(self.job_key(job_id), mapping={
            "type": channel,
            "data": json.dumps(data),
            "state": INACTIVE,
            "attempts": 0,
            "created_at": _now_ms(),
        })
        await self._client.rpush(self.key(channel, INACTIVE), job_id)
        logger.debug("Enqueued job %s on %s", job_id, channel)
        return job_id

    async def get_job_record(self, job_id: str) -> Dict[str, Any]:
        return dict(await self._client.hgetall(self.job_key(job_id)) or {})

    # ---------------- consumer ----------------

    @property
    def accepting(self) -> bool:
        return self._accepting

    def pause(self) -> None:
        """Stop taking new jobs right away; in-flight jobs keep running."""
        self._accepting = False

    async def process(self, channel: str, handler: JobHandler, concurrency: int = 1) -> None:
        """Start `concurrency` consumer loops for the channel and return."""
        self._accepting = True
        for i in range(max(1, int(concurrency))):
            t = asyncio.create_task(self._consume(channel, handler), name=f"queue-{channel}-{i}")
            self._consumers.add(t)
            t.add_done_callback(self._consumers.discard)
        logger.info("Consuming %s with concurrency=%d", channel, concurrency)

    async def _consume(self, channel: str, handler: JobHandler) -> None:
        waiting = self.key(channel, INACTIVE)
        while self._accepting:
            try:
                popped = await self._client.blpop([waiting], timeout=self.poll_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._emit_error(QueueError(f"dequeue failed: {e}", channel=channel))
                await asyncio.sleep(self.error_backoff_ms / 1000.0)
                continue
            if not popped:
                continue
            job_id = str(popped[1])
            if not self._accepting:
                # shutdown started while we were blocked; give the job back
                await self._client.lpush(waiting, job_id)
                break
            await self._run_job(channel, job_id, handler)

    async def _load(self, channel: str, job_id: str) -> Job:
        record = await self.get_job_record(job_id)
        if not record:
            raise QueueError(f"job {job_id} has no record", channel=channel)
        try:
            raw = json.loads(record.get("data") or "{}")
        except ValueError as e:
            raise InvalidJobError(f"Job {job_id} data is not JSON: {e}") from e
        return Job(
            id=job_id,
            channel=record.get("type") or channel,
            data=parse_job_data(raw),
            attempts=int(record.get("attempts") or 0),
        )

    async def _run_job(self, channel: str, job_id: str, handler: JobHandler) -> None:
        try:
            job = await self._load(channel, job_id)
        except InvalidJobError as e:
            logger.warning("Rejecting job %s: %s", job_id, e)
            await self._finish(channel, job_id, e, None)
            return
        except QueueError as e:
            self._emit_error(e)
            return
        except Exception as e:
            self._emit_error(QueueError(f"could not load job {job_id}: {e}", channel=channel))
            return

        try:
            await self._client.hset(self.job_key(job_id), mapping={"state": ACTIVE, "started_at": _now_ms()})
            await self._client.hincrby(self.job_key(job_id), "attempts", 1)
        except Exception as e:
            self._emit_error(QueueError(f"could not mark job {job_id} active: {e}", channel=channel))
        self.active_jobs[job_id] = job
        reported = False

        async def done(error: Optional[BaseException] = None, result: Optional[Dict[str, Any]] = None) -> None:
            nonlocal reported
            if reported:
                logger.warning("Job %s reported twice; ignoring the second outcome", job_id)
                return
            reported = True
            await self._finish(channel, job_id, error, result)

        try:
            await handler(job, done)
        except Exception as e:
            logger.exception("Handler crashed on job %s", job_id)
            if not reported:
                await done(e, None)
        finally:
            self.active_jobs.pop(job_id, None)

    async def _finish(
        self,
        channel: str,
        job_id: str,
        error: Optional[BaseException],
        result: Optional[Dict[str, Any]],
    ) -> None:
        fields: Dict[str, Any] = {"updated_at": _now_ms()}
        if error is None:
            state = COMPLETE
            fields["result"] = json.dumps(result, default=str)
        else:
            state = FAILED
            fields["error"] = json.dumps(error_payload(error))
            fields["failed_at"] = fields["updated_at"]
        fields["state"] = state
        try:
            await self._record(channel, job_id, state, fields)
        except Exception as e:
            self._emit_error(QueueError(f"could not record {state} for job {job_id}: {e}", channel=channel))

    @retry_async(3, 100, 2000, 100, on=(RedisConnectionError, RedisTimeoutError, OSError))
    async def _record(self, channel: str, job_id: str, state: str, fields: Dict[str, Any]) -> None:
        await self._client.hset(self.job_key(job_id), mapping=fields)
        await self._client.rpush(self.key(channel, state), job_id)

    # ---------------- shutdown ----------------

    async def shutdown(self, timeout_s: float) -> None:
        """
        Stop taking jobs, give in-flight ones up to timeout_s to finish, then
        cancel what is left (their handlers report them as failed) and close
        the connection.
        """
        self._accepting = False
        consumers = set(self._consumers)
        if consumers:
            _, pending = await asyncio.wait(consumers, timeout=max(0.0, timeout_s))
            if pending:
                logger.warning("Shutdown grace elapsed; interrupting %d consumer(s)", len(pending))
                for t in pending:
                    t.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._consumers.clear()
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error while closing queue connection: %s", e)
        logger.info("Queue shut down")
