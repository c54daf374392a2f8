from __future__ import annotations

import asyncio
import contextvars
import enum
import functools
import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .config import Config
from .errors import CleanupError, CollaboratorError, JobTimeoutError, WorkerError
from .models import Job, JobRequest
from .utils import encode_uri, load_object, maybe_await, reset_job_context, set_job_context

logger = logging.getLogger(__name__)

# report(error, result) -> None | Awaitable[None]
ReportFn = Callable[[Optional[BaseException], Optional[Dict[str, Any]]], Any]


# ---------------------------
# Deadline
# ---------------------------

class DeadlineHandle:
    __slots__ = ("duration_ms", "fired", "disarmed", "_timer")

    def __init__(self, duration_ms: int) -> None:
        self.duration_ms = duration_ms
        self.fired = False
        self.disarmed = False
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return not (self.fired or self.disarmed)


class DeadlineGuard:
    """
    One wall-clock deadline for one job.

    arm() schedules on_expire on the running loop; disarm() cancels it.
    Disarming twice, or after the timer fired, does nothing.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self.handle: Optional[DeadlineHandle] = None

    def arm(self, duration_ms: int, on_expire: Callable[[], Any]) -> DeadlineHandle:
        if self.handle is not None:
            raise RuntimeError("DeadlineGuard is single-use and already armed")
        loop = self._loop or asyncio.get_running_loop()
        handle = DeadlineHandle(int(duration_ms))

        def _expire() -> None:
            if not handle.pending:
                return
            handle.fired = True
            handle._timer = None
            on_expire()

        handle._timer = loop.call_later(max(0.0, handle.duration_ms / 1000.0), _expire)
        self.handle = handle
        return handle

    def disarm(self, handle: Optional[DeadlineHandle] = None) -> None:
        handle = handle or self.handle
        if handle is None:
            return
        handle.disarmed = True
        timer, handle._timer = handle._timer, None
        if timer is not None:
            timer.cancel()

    @property
    def fired(self) -> bool:
        return bool(self.handle and self.handle.fired)


# ---------------------------
# Completion gate
# ---------------------------

class CompletionGate:
    """
    Exactly-once outcome reporting for one job.

    The first complete()/complete_soon() wins: it records (error, result),
    tears the environment down when the outcome is an error, then calls
    the report function. Every later call returns False and does nothing.
    """

    def __init__(
        self,
        report: ReportFn,
        *,
        cleanup: Optional[Callable[[], Any]] = None,
        job_id: Optional[str] = None,
    ) -> None:
        self._report = report
        self._cleanup = cleanup
        self.job_id = job_id
        self._lock = threading.Lock()
        self._completed = False
        self._reported = asyncio.Event()
        self._finisher: Optional[asyncio.Task] = None
        self.error: Optional[BaseException] = None
        self.result: Optional[Dict[str, Any]] = None
        self.discarded = 0

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def reported(self) -> bool:
        return self._reported.is_set()

    def claim(self, error: Optional[BaseException], result: Optional[Dict[str, Any]]) -> bool:
        with self._lock:
            if self._completed:
                self.discarded += 1
                return False
            self._completed = True
            self.error = error
            self.result = None if error is not None else result
            return True

    async def complete(
        self,
        error: Optional[BaseException] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not self.claim(error, result):
            logger.debug("Late completion discarded (error=%r)", error)
            return False
        await self._finish()
        return True

    def complete_soon(
        self,
        error: Optional[BaseException] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Same as complete() for synchronous callers (timers, loop handlers)."""
        if not self.claim(error, result):
            logger.debug("Late completion discarded (error=%r)", error)
            return False
        loop = asyncio.get_running_loop()
        self._finisher = loop.create_task(self._finish(), name=f"complete-job-{self.job_id}")
        return True

    async def _finish(self) -> None:
        try:
            if self.error is not None and self._cleanup is not None:
                try:
                    await maybe_await(self._cleanup())
                except Exception as e:
                    err = CleanupError(f"Environment teardown failed: {e!r}")
                    logger.warning("%s", err, exc_info=True)
            try:
                await maybe_await(self._report(self.error, self.result))
            except Exception:
                logger.exception("Completion callback raised for job %s", self.job_id)
        finally:
            self._reported.set()

    async def wait(self) -> None:
        await self._reported.wait()


# ---------------------------
# Fault barrier
# ---------------------------

_CURRENT_BARRIER: contextvars.ContextVar[Optional["FaultBarrier"]] = contextvars.ContextVar(
    "_CURRENT_BARRIER", default=None
)

# loop -> {"prev": handler, "handler": ours, "prev_factory": ..., "factory": ours, "refs": n}
_ROUTERS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, Any]]" = weakref.WeakKeyDictionary()


def current_barrier() -> Optional["FaultBarrier"]:
    """Barrier of the job executing in the current task, if any."""
    return _CURRENT_BARRIER.get()


class _JobTask(asyncio.Task):
    """Task created while a job runs; remembers that job's barrier."""
    _fault_barrier: Optional["FaultBarrier"] = None


def _make_task_factory(prev: Optional[Callable[..., Any]]) -> Callable[..., Any]:
    # Task.get_context() only exists from 3.12, so tasks are tagged when created
    def _factory(loop, coro, **kwargs):
        ctx = kwargs.get("context")
        barrier = ctx.get(_CURRENT_BARRIER) if ctx is not None else _CURRENT_BARRIER.get()
        if prev is not None:
            task = prev(loop, coro, **kwargs)
        elif barrier is not None:
            task = _JobTask(coro, loop=loop, **kwargs)
        else:
            task = asyncio.Task(coro, loop=loop, **kwargs)
        if barrier is not None:
            try:
                task._fault_barrier = barrier
            except AttributeError:
                logger.debug("Task %r cannot be tagged with its job barrier", task)
        return task
    return _factory


def _barrier_for(context: dict) -> Optional["FaultBarrier"]:
    for key in ("task", "future"):
        fut = context.get(key)
        if fut is None:
            continue
        barrier = getattr(fut, "_fault_barrier", None)
        if barrier is not None:
            return barrier
        get_context = getattr(fut, "get_context", None)
        if get_context is not None:
            barrier = get_context().get(_CURRENT_BARRIER)
            if barrier is not None:
                return barrier
    # loop callbacks keep the context they were scheduled from
    handle_ctx = getattr(context.get("handle"), "_context", None)
    if handle_ctx is not None:
        return handle_ctx.get(_CURRENT_BARRIER)
    return None


def _install_router(loop: asyncio.AbstractEventLoop) -> None:
    """
    Route loop-level exceptions ('Exception in callback', 'Task exception
    was never retrieved') to the barrier owning the failing callback/task.
    Anything not owned by a barrier goes to the previous handler.
    """
    state = _ROUTERS.get(loop)
    if state is None:
        prev = loop.get_exception_handler()
        prev_factory = loop.get_task_factory()

        def _handler(_loop, context: dict):
            exc = context.get("exception")
            barrier = _barrier_for(context)
            if barrier is not None and isinstance(exc, Exception):
                barrier.report(exc)
                return
            if prev:
                prev(_loop, context)
            else:
                _loop.default_exception_handler(context)

        factory = _make_task_factory(prev_factory)
        loop.set_exception_handler(_handler)
        loop.set_task_factory(factory)
        state = {
            "prev": prev,
            "handler": _handler,
            "prev_factory": prev_factory,
            "factory": factory,
            "refs": 0,
        }
        _ROUTERS[loop] = state
    state["refs"] += 1


def _uninstall_router(loop: asyncio.AbstractEventLoop) -> None:
    state = _ROUTERS.get(loop)
    if state is None:
        return
    state["refs"] -= 1
    if state["refs"] > 0:
        return
    # someone else may have replaced our hooks meanwhile; leave theirs alone
    if loop.get_exception_handler() is state["handler"]:
        loop.set_exception_handler(state["prev"])
    if loop.get_task_factory() is state["factory"]:
        loop.set_task_factory(state["prev_factory"])
    del _ROUTERS[loop]


class FaultBarrier:
    """
    Error scope for one job's asynchronous activity.

    The job coroutine runs in a task whose context carries this barrier, so
    tasks and loop callbacks it creates inherit it. Failures that never reach
    the awaited path are turned into a single on_fault(exc) call:

    - exceptions raised by call_soon/call_later callbacks scheduled by the job
    - never-retrieved exceptions of tasks created by the job
    - failures of tasks started with spawn()
    - anything passed to report() (event emitters running outside the
      job's context capture current_barrier() and call it)

    Faults belonging to other jobs or to no job are not touched.
    """

    def __init__(self, on_fault: Callable[[BaseException], Any], *, name: str = "job") -> None:
        self._on_fault = on_fault
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._context: Optional[contextvars.Context] = None
        self._root: Optional[asyncio.Task] = None
        self._children: Set[asyncio.Task] = set()
        self._closed = False
        self.faults: list[BaseException] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def root(self) -> Optional[asyncio.Task]:
        return self._root

    def run(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Start the job coroutine inside the barrier; returns its task."""
        if self._root is not None:
            coro.close()  # type: ignore[union-attr]
            raise RuntimeError(f"FaultBarrier {self.name} already running")
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        ctx.run(_CURRENT_BARRIER.set, self)
        self._loop = loop
        self._context = ctx
        _install_router(loop)
        self._root = loop.create_task(coro, name=self.name, context=ctx)
        self._root.add_done_callback(self._on_task_done)
        return self._root

    def spawn(self, coro: Awaitable[Any], *, name: Optional[str] = None) -> asyncio.Task:
        """Job-scoped background task; its failure fails the job."""
        if self._context is None or self._loop is None:
            coro.close()  # type: ignore[union-attr]
            raise RuntimeError(f"FaultBarrier {self.name} is not running")
        task = self._loop.create_task(coro, name=name, context=self._context)
        self._children.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._children.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, Exception):
            self.report(exc)

    def report(self, exc: BaseException) -> None:
        if self._closed:
            logger.debug("[%s] fault after job end ignored: %r", self.name, exc)
            return
        self.faults.append(exc)
        logger.debug("[%s] fault intercepted: %r", self.name, exc)
        self._on_fault(exc)

    def close(self) -> None:
        """
        End of the job's scope. Spawned children are cancelled; the root task
        is left alone (a timed-out parse cannot be preempted, its late
        outcome is dropped by the gate).
        """
        if self._closed:
            return
        self._closed = True
        for t in list(self._children):
            if not t.done():
                t.cancel()
        if self._loop is not None:
            _uninstall_router(self._loop)


# ---------------------------
# Supervisor
# ---------------------------

class JobState(str, enum.Enum):
    RECEIVED = "received"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REPORTED = "reported"


@dataclass
class ExecutionContext:
    job_id: str
    url: str
    options: Dict[str, Any]
    environment: Any = None


@dataclass
class JobRun:
    job: Job
    state: JobState = JobState.RECEIVED
    outcome: Optional[JobState] = None
    context: Optional[ExecutionContext] = None
    gate: Optional[CompletionGate] = None
    guard: Optional[DeadlineGuard] = None
    barrier: Optional[FaultBarrier] = None
    teardowns: int = 0
    history: list = field(default_factory=list)

    def move(self, state: JobState) -> None:
        self.history.append(state)
        self.state = state


def build_env_options(defaults: Dict[str, Any], job_options: Optional[Dict[str, Any]], url: str) -> Dict[str, Any]:
    """Job-supplied options over process defaults, plus the escaped URL."""
    options = dict(defaults)
    options.update(dict(job_options or {}))
    options["url"] = encode_uri(url)
    return options


def _outcome_for(error: Optional[BaseException]) -> JobState:
    if error is None:
        return JobState.SUCCEEDED
    if isinstance(error, JobTimeoutError):
        return JobState.TIMED_OUT
    return JobState.FAILED


class JobExecutionSupervisor:
    """
    Runs one dequeued job at a time per call to run():

        build context -> arm deadline -> parse inside the fault barrier
        -> first terminal signal wins the gate -> teardown on error -> report

    The deadline does not stop the parser; it only stops waiting for it.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        environment_factory: Optional[Callable[..., Any]] = None,
        parser_factory: Optional[Callable[..., Any]] = None,
        time_limit_ms: Optional[int] = None,
    ) -> None:
        self.cfg = cfg
        # environments share the worker's Config instead of reloading it per job
        self._environment_factory = environment_factory or functools.partial(
            load_object(cfg.environment_class), cfg=cfg
        )
        self._parser_factory = parser_factory or load_object(cfg.parser_class)
        self.time_limit_ms = int(time_limit_ms or cfg.job_time_limit_ms)
        self._defaults = cfg.default_env_options()
        self.in_flight: Dict[str, JobRun] = {}

    def build_context(self, job: Job) -> ExecutionContext:
        req = job.request
        options = build_env_options(self._defaults, req.options, req.url)
        ctx = ExecutionContext(job_id=job.id, url=options["url"], options=options)
        ctx.environment = self._environment_factory(options)
        return ctx

    async def run(self, job: Job, done: ReportFn) -> JobRun:
        run = JobRun(job=job)
        token = set_job_context(job.id)
        try:
            logger.debug("New task on queue %s with data %s", job.channel, job.request.model_dump(by_alias=True))
            gate = CompletionGate(self._reporter(run, done), cleanup=lambda: self._tear_down(run), job_id=job.id)
            guard = DeadlineGuard()
            barrier = FaultBarrier(lambda exc: self._on_fault(run, exc), name=f"job-{job.id}")
            run.gate, run.guard, run.barrier = gate, guard, barrier
            self.in_flight[job.id] = run

            guard.arm(self.time_limit_ms, lambda: self._on_expire(run))
            run.move(JobState.RUNNING)
            barrier.run(self._execute(run))
            try:
                await gate.wait()
            except asyncio.CancelledError:
                logger.warning("Job %s interrupted before completion", job.id)
                await gate.complete(WorkerError("Job interrupted by worker shutdown"), None)
                raise
            finally:
                guard.disarm()
                barrier.close()
                self.in_flight.pop(job.id, None)
            return run
        finally:
            reset_job_context(token)

    async def _execute(self, run: JobRun) -> None:
        req: JobRequest = run.job.request
        try:
            run.context = self.build_context(run.job)
            result = await self._parse(run.context, req)
        except Exception as e:
            logger.debug("Parsing error: %s", e, exc_info=True)
            run.guard.disarm()
            await run.gate.complete(CollaboratorError.wrap(e), None)
            return
        logger.debug("Work is done!")
        run.guard.disarm()
        await run.gate.complete(None, {"result": result})

    async def _parse(self, ctx: ExecutionContext, req: JobRequest) -> Any:
        parser_options: Dict[str, Any] = {"environment": ctx.environment}
        if req.pagination:
            parser_options["pagination"] = req.pagination
        parser = self._parser_factory(**parser_options)
        return await maybe_await(parser.parse(
            actions=req.actions,
            rules=req.rules,
            transform=req.transform,
            rules_params=req.rules_params,
        ))

    def _on_expire(self, run: JobRun) -> None:
        if run.gate.completed:
            return
        logger.warning("Job %s exceeded time limit of %d ms", run.job.id, self.time_limit_ms)
        run.gate.complete_soon(JobTimeoutError(self.time_limit_ms), None)

    def _on_fault(self, run: JobRun, exc: BaseException) -> None:
        logger.warning("Error had happened: %s", exc, exc_info=exc)
        run.guard.disarm()
        run.gate.complete_soon(CollaboratorError.wrap(exc), None)

    async def _tear_down(self, run: JobRun) -> None:
        env = run.context.environment if run.context is not None else None
        if env is None:
            return
        run.teardowns += 1
        await maybe_await(env.tear_down())

    def _reporter(self, run: JobRun, done: ReportFn) -> ReportFn:
        async def _report(error: Optional[BaseException], result: Optional[Dict[str, Any]]) -> None:
            run.outcome = _outcome_for(error)
            run.move(run.outcome)
            if error is None:
                logger.info("Job %s finished", run.job.id)
            else:
                logger.warning("Job %s failed (%s): %s", run.job.id, type(error).__name__, error)
            try:
                await maybe_await(done(error, result))
            finally:
                run.move(JobState.REPORTED)
        return _report
