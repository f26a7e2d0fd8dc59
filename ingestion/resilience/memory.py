"""
Memory watchdog.

Samples the resident set size of the worker process. Above the ceiling it
forces a garbage collection; if that does not help, ingestion pauses (the
caller simply does not pull the next chunk) and the check repeats every
interval until usage falls back under the ceiling.
"""

import asyncio
import gc
import logging
from typing import Callable, Optional

import psutil

from core.config import settings
from ingestion.resilience.log_throttle import LogThrottler

logger = logging.getLogger(__name__)

_process = psutil.Process()


def process_rss_mb() -> float:
    """Resident set size of this process in MiB"""
    return _process.memory_info().rss / (1024 * 1024)


class MemoryWatchdog:
    """
    Gate between chunks (and before claiming new runs).

    Attributes:
        ceiling_mb: Resident memory limit
        check_interval: Seconds between re-checks while paused
        pauses: Number of pause episodes so far
        forced_collections: Number of forced gc passes
        peak_mb: Highest sample observed
    """

    def __init__(
        self,
        ceiling_mb: float = None,
        check_interval: float = None,
        sampler: Callable[[], float] = process_rss_mb,
        collect: Callable[[], int] = gc.collect,
        throttler: Optional[LogThrottler] = None,
    ):
        self.ceiling_mb = settings.MEMORY_CEILING_MB if ceiling_mb is None else ceiling_mb
        self.check_interval = (
            settings.MEMORY_CHECK_INTERVAL_SECONDS if check_interval is None else check_interval
        )
        self._sampler = sampler
        self._collect = collect
        self._throttler = throttler or LogThrottler()

        self.pauses = 0
        self.forced_collections = 0
        self.peak_mb = 0.0

    def usage_mb(self) -> float:
        usage = self._sampler()
        if usage > self.peak_mb:
            self.peak_mb = usage
        return usage

    def is_safe(self) -> bool:
        return self.usage_mb() < self.ceiling_mb

    def relieve(self) -> bool:
        """Force a collection if above the ceiling. Returns True when under it."""
        if self.is_safe():
            return True
        self._collect()
        self.forced_collections += 1
        return self.is_safe()

    async def wait_until_safe(self) -> float:
        """
        Block until memory is under the ceiling.

        Returns:
            Seconds spent paused (0.0 when no pause was needed)
        """
        if self.relieve():
            return 0.0

        self.pauses += 1
        paused = 0.0
        while True:
            self._throttler.warning(
                logger,
                "memory-pause",
                f"Memory {self.usage_mb():.0f}MB above ceiling {self.ceiling_mb:.0f}MB, "
                f"pausing ingestion"
            )
            await asyncio.sleep(self.check_interval)
            paused += self.check_interval
            if self.relieve():
                break

        logger.info(f"Memory back under ceiling after {paused:.1f}s, resuming ingestion")
        return paused

    def status(self):
        usage = self.usage_mb()
        return {
            "rss_mb": round(usage, 1),
            "ceiling_mb": self.ceiling_mb,
            "peak_mb": round(self.peak_mb, 1),
            "safe": usage < self.ceiling_mb,
            "pauses": self.pauses,
            "forced_collections": self.forced_collections,
        }
