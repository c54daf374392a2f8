from __future__ import annotations

import logging
import os
from typing import Any, Optional
import psutil

logger = logging.getLogger(__name__)


def should_shutdown(rss_bytes: int, threshold_bytes: int) -> bool:
    """True iff the sampled resident memory is strictly above the threshold."""
    return int(rss_bytes) > int(threshold_bytes)


class ResourceMonitor:
    """
    Samples this process' resident memory via psutil and decides whether
    the worker should retire itself.

    The decision is advisory: the caller stops taking jobs, drains the
    in-flight ones and exits. Nothing here kills anything.
    """

    def __init__(self, threshold_bytes: int, *, process: Optional[Any] = None) -> None:
        self.threshold_bytes = int(threshold_bytes)
        self._process = process

    def _proc(self) -> Any:
        if self._process is None:
            self._process = psutil.Process(os.getpid())
        return self._process

    def sample(self) -> int:
        return int(self._proc().memory_info().rss)

    def should_shutdown(self, rss_bytes: int, threshold_bytes: Optional[int] = None) -> bool:
        limit = self.threshold_bytes if threshold_bytes is None else threshold_bytes
        return should_shutdown(rss_bytes, limit)

    def check(self) -> bool:
        rss = self.sample()
        logger.debug("Memory used: %d bytes (limit=%d)", rss, self.threshold_bytes)
        if self.should_shutdown(rss):
            logger.warning(
                "Memory limit exceeded: rss=%.1f MiB > limit=%.1f MiB",
                rss / (1024 * 1024),
                self.threshold_bytes / (1024 * 1024),
            )
            return True
        return False
