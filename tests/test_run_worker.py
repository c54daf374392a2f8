from pathlib import Path

import run_worker
from parser_worker.config import MIB


def test_cli_overrides_config(cfg):
    args = run_worker._parse_args([
        "--queue", "parser-high",
        "--concurrency", "3",
        "--time-limit-ms", "10",
        "--memory-limit-mb", "512",
        "--log-level", "DEBUG",
        "--log-file", "/tmp/pw.log",
    ])
    out = run_worker._apply_overrides(cfg, args)

    assert out.queue_name == "parser-high"
    assert out.queue_concurrency == 3
    # clamped like the env loader
    assert out.job_time_limit_ms == 100
    assert out.memory_limit_bytes == 512 * MIB
    assert out.log_level == "DEBUG"
    assert out.log_file == Path("/tmp/pw.log")


def test_no_flags_keeps_config(cfg):
    args = run_worker._parse_args([])
    assert run_worker._apply_overrides(cfg, args) is cfg
    assert args.enqueue is None
    assert args.rules == "{}"
