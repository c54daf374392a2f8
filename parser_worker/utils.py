from __future__ import annotations

import importlib
import inspect
import logging
import os
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple
from urllib.parse import quote

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)

# ========== Environment & Logging helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)


# Per-task context: which job is being executed right now?
_CURRENT_JOB_ID: ContextVar[Optional[str]] = ContextVar("_CURRENT_JOB_ID", default=None)


class _JobIdFilter(logging.Filter):
    """
    Stamp every record with the id of the job running in the current task
    ("-" outside of a job), so interleaved jobs stay readable in one log.
    """
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.job_id = _CURRENT_JOB_ID.get() or "-"
        return True


def set_job_context(job_id: str):
    """Returns a token you must pass to reset_job_context() when done."""
    return _CURRENT_JOB_ID.set(str(job_id))


def reset_job_context(token) -> None:
    _CURRENT_JOB_ID.reset(token)


def init_logging(log_path: Optional[Path], level: int = logging.INFO) -> None:
    """
    Simple file+console logger. Call once early (run_worker.py) with cfg.log_file.
    """
    fmt = "%(levelname)s %(asctime)s %(name)s [job=%(job_id)s]: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path, encoding="utf-8"))
    for h in handlers:
        h.addFilter(_JobIdFilter())
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, handlers=handlers, force=True)


# ========== URL & import helpers ==========

# Characters encodeURI() leaves alone: reserved + unreserved + '#'
_URI_SAFE = ";,/?:@&=+$-_.!~*'()#"


def encode_uri(url: str) -> str:
    """
    Escape a URL the way a browser address bar would: spaces and non-ASCII
    are percent-encoded, URL structure and existing escapes are kept.
    Unlike JS encodeURI, an existing %XX escape is not encoded again.
    """
    url = (url or "").strip()
    out = []
    i = 0
    while i < len(url):
        ch = url[i]
        # keep well-formed %XX escapes as-is (no double encoding)
        if ch == "%" and i + 2 < len(url) and _is_hex(url[i + 1:i + 3]):
            out.append(url[i:i + 3])
            i += 3
            continue
        out.append(quote(ch, safe=_URI_SAFE))
        i += 1
    return "".join(out)


def _is_hex(s: str) -> bool:
    return len(s) == 2 and all(c in "0123456789abcdefABCDEF" for c in s)


def load_object(path: str) -> Any:
    """
    Resolve 'package.module:Attr' (or 'package.module.Attr') to the object.
    Used to plug alternative environment/parser implementations via env.
    """
    if ":" in path:
        mod_name, _, attr = path.partition(":")
    else:
        mod_name, _, attr = path.rpartition(".")
    if not mod_name or not attr:
        raise ValueError(f"Invalid import path: {path!r}")
    module = importlib.import_module(mod_name)
    try:
        obj = module
        for part in attr.split("."):
            obj = getattr(obj, part)
    except AttributeError as e:
        raise ValueError(f"{mod_name!r} has no attribute {attr!r}") from e
    return obj


# ========== Retry decorators ==========

def retry_async(
    max_attempts: int,
    initial_delay_ms: int,
    max_delay_ms: int,
    jitter_ms: int,
    *,
    on: Tuple[type, ...] = (IOError, TimeoutError),
):
    def _decorator(fn: Callable[..., Awaitable]):
        @retry(
            reraise=True,
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential_jitter(
                initial=initial_delay_ms / 1000.0,
                max=max_delay_ms / 1000.0,
                jitter=jitter_ms / 1000.0,
            ),
            retry=retry_if_exception_type(on),
        )
        async def wrapper(*args, **kwargs):
            return await fn(*args, **kwargs)
        return wrapper
    return _decorator


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
