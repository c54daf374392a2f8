from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from parser_worker.config import MIB, Config, load_config
from parser_worker.queue import RedisJobQueue
from parser_worker.utils import init_logging
from parser_worker.worker import Worker


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Consume parsing jobs from the queue and run them under time/memory limits"
    )
    p.add_argument("--queue", type=str, default=None, help="Queue channel to consume (env QUEUE_NAME)")
    p.add_argument("--concurrency", type=int, default=None, help="Jobs processed in parallel (env QUEUE_CONCURRENCY)")
    p.add_argument("--time-limit-ms", type=int, default=None, help="Per-job time limit (env TIME_LIMIT_FOR_JOB)")
    p.add_argument("--memory-limit-mb", type=int, default=None, help="RSS limit before self-shutdown (env GOOSE_MEMORY_LIMIT)")
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")
    p.add_argument("--log-file", type=Path, default=None, help="Log file path (env LOG_FILE)")

    p.add_argument("--enqueue", type=str, default=None, metavar="URL", help="Push one job for URL and exit")
    p.add_argument("--rules", type=str, default="{}", help="JSON rules for --enqueue")
    p.add_argument("--options", type=str, default="{}", help="JSON environment options for --enqueue")
    return p.parse_args(argv)


def _apply_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    changes = {}
    if args.queue:
        changes["queue_name"] = args.queue
    if args.concurrency:
        changes["queue_concurrency"] = max(1, args.concurrency)
    if args.time_limit_ms:
        changes["job_time_limit_ms"] = max(100, args.time_limit_ms)
    if args.memory_limit_mb:
        changes["memory_limit_bytes"] = max(16, args.memory_limit_mb) * MIB
    if args.log_level:
        changes["log_level"] = args.log_level
    if args.log_file:
        changes["log_file"] = args.log_file
    return dataclasses.replace(cfg, **changes) if changes else cfg


async def _enqueue(cfg: Config, args: argparse.Namespace) -> int:
    queue = RedisJobQueue.from_config(cfg)
    try:
        job_id = await queue.enqueue(cfg.queue_name, {
            "url": args.enqueue,
            "rules": json.loads(args.rules),
            "options": json.loads(args.options),
        })
    finally:
        await queue.shutdown(0)
    print(f"Enqueued job {job_id} on {cfg.queue_name}")
    return 0


async def main_async(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    cfg = _apply_overrides(load_config(), args)

    init_logging(cfg.log_file, getattr(logging, cfg.log_level, logging.INFO))
    log = logging.getLogger("run_worker")

    if args.enqueue:
        return await _enqueue(cfg, args)

    log.info(
        "Worker config: queue=%s concurrency=%d time_limit_ms=%d memory_limit_mb=%d",
        cfg.queue_name, cfg.queue_concurrency, cfg.job_time_limit_ms, cfg.memory_limit_bytes // MIB,
    )
    worker = Worker(cfg, RedisJobQueue.from_config(cfg))
    worker.install_signal_handlers()
    return await worker.run()


# ----------------------------
# Entrypoint
# ----------------------------

def main() -> None:
    sys.exit(asyncio.run(main_async()))

if __name__ == "__main__":
    main()
