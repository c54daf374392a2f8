from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Optional

from .config import Config
from .models import Job
from .queue import DoneFn, RedisJobQueue
from .resource_monitor import ResourceMonitor
from .supervisor import JobExecutionSupervisor

logger = logging.getLogger(__name__)


class Worker:
    """
    Queue consumer around the supervisor.

    Memory is checked when a job starts and again once it is reported; a
    breach (or SIGINT/SIGTERM) stops intake, lets in-flight jobs drain for
    up to the job time limit, and makes run() return exit code 0.
    """

    def __init__(
        self,
        cfg: Config,
        queue: RedisJobQueue,
        *,
        supervisor: Optional[JobExecutionSupervisor] = None,
        monitor: Optional[ResourceMonitor] = None,
    ) -> None:
        self.cfg = cfg
        self.queue = queue
        self.supervisor = supervisor or JobExecutionSupervisor(cfg)
        self.monitor = monitor or ResourceMonitor(cfg.memory_limit_bytes)
        self._stop = asyncio.Event()
        self.shutdown_reason: Optional[str] = None
        self.jobs_handled = 0

    @property
    def grace_s(self) -> float:
        return self.cfg.job_time_limit_ms / 1000.0

    def request_shutdown(self, reason: str) -> None:
        if self.shutdown_reason is not None:
            return
        self.shutdown_reason = reason
        logger.warning("Shutdown requested (%s); no new jobs will be taken", reason)
        self.queue.pause()
        self._stop.set()

    def _check_memory(self) -> None:
        try:
            breached = self.monitor.check()
        except Exception as e:
            logger.warning("Memory sampling failed: %s", e)
            return
        if breached:
            self.request_shutdown("memory limit exceeded")

    async def handle(self, job: Job, done: DoneFn) -> Any:
        self._check_memory()
        run = await self.supervisor.run(job, done)
        self.jobs_handled += 1
        self._check_memory()
        return run

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, f"signal {sig.name}")
            except (NotImplementedError, RuntimeError):
                # e.g. Windows / non-main thread
                logger.debug("Signal handler for %s not installed", sig.name)

    async def run(self) -> int:
        self.queue.on_error(lambda e: logger.debug("Queue error: %r", e))
        logger.info("Connecting to %s queue", self.cfg.queue_name)
        await self.queue.process(self.cfg.queue_name, self.handle, self.cfg.queue_concurrency)
        await self._stop.wait()
        await self.queue.shutdown(self.grace_s)
        logger.info("Worker stopped after %d job(s): %s", self.jobs_handled, self.shutdown_reason)
        return 0
