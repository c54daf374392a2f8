from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional
from .utils import getenv_bool, getenv_int, getenv_str

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"

SNAPSHOT_DIR: Path = DATA_DIR / "snapshots"
LOG_FILE: Path = LOG_DIR / "parser-worker.log"

MIB: int = 1024 * 1024

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Queue
    queue_name: str
    queue_concurrency: int
    queue_key_prefix: str
    queue_poll_timeout_s: int
    queue_error_backoff_ms: int

    # Redis backend
    redis_host: str
    redis_port: int
    redis_password: Optional[str]
    redis_db: int

    # Supervision limits
    memory_limit_bytes: int
    job_time_limit_ms: int

    # Default environment options (job options override these)
    screen_width: int
    screen_height: int
    user_agent: str
    snapshot: bool
    load_images: bool
    web_security: bool

    # Default collaborators (import paths)
    environment_class: str
    parser_class: str

    # Browser
    page_load_timeout_ms: int
    navigation_wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"]

    # Paths / logging
    snapshot_dir: Path
    log_file: Path
    log_level: str

    def default_env_options(self) -> Dict[str, Any]:
        """Fresh copy of the process-wide defaults; callers may mutate it."""
        return {
            "screen": {"width": self.screen_width, "height": self.screen_height},
            "userAgent": self.user_agent,
            "snapshot": self.snapshot,
            "loadImages": self.load_images,
            "webSecurity": self.web_security,
        }


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        # queue
        queue_name=getenv_str("QUEUE_NAME", "parser-default"),
        # one job at a time per worker unless told otherwise
        queue_concurrency=getenv_int("QUEUE_CONCURRENCY", 1, 1, 64),
        queue_key_prefix=getenv_str("QUEUE_KEY_PREFIX", "q"),
        queue_poll_timeout_s=getenv_int("QUEUE_POLL_TIMEOUT_SECONDS", 1, 1, 30),
        queue_error_backoff_ms=getenv_int("QUEUE_ERROR_BACKOFF_MS", 1000, 10, 60000),

        # redis
        redis_host=getenv_str("REDIS_ENV_REDIS_HOST", "redis"),
        redis_port=getenv_int("REDIS_ENV_REDIS_PORT", 6379, 1, 65535),
        redis_password=getenv_str("REDIS_ENV_REDIS_PASS", "") or None,
        redis_db=getenv_int("REDIS_ENV_REDIS_DB", 0, 0, 15),

        # limits
        memory_limit_bytes=getenv_int("GOOSE_MEMORY_LIMIT", 256, 16, 1024 * 1024) * MIB,
        job_time_limit_ms=getenv_int("TIME_LIMIT_FOR_JOB", 2 * 60 * 1000, 100, 60 * 60 * 1000),

        # environment defaults
        screen_width=getenv_int("SCREEN_WIDTH", 1440, 320, 7680),
        screen_height=getenv_int("SCREEN_HEIGHT", 900, 240, 4320),
        user_agent=getenv_str("PARSER_USER_AGENT", DEFAULT_USER_AGENT),
        snapshot=getenv_bool("ENV_SNAPSHOT", False),
        load_images=getenv_bool("ENV_LOAD_IMAGES", True),
        web_security=getenv_bool("ENV_WEB_SECURITY", False),

        # collaborators
        environment_class=getenv_str("ENVIRONMENT_CLASS", "parser_worker.environment:PlaywrightEnvironment"),
        parser_class=getenv_str("PARSER_CLASS", "parser_worker.environment:SelectorParser"),

        # browser
        page_load_timeout_ms=getenv_int("PAGE_LOAD_TIMEOUT_MS", 30000, 1000, 180000),
        navigation_wait_until=getenv_str("NAV_WAIT_UNTIL", "domcontentloaded"),

        # paths / logging
        snapshot_dir=Path(getenv_str("SNAPSHOT_DIR", str(SNAPSHOT_DIR))),
        log_file=Path(getenv_str("LOG_FILE", str(LOG_FILE))),
        log_level=getenv_str("LOG_LEVEL", "INFO").upper(),
    )
    return cfg
