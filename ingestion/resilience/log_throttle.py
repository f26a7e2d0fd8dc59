"""
Rate limiting for repeated log lines.

During a sustained outage every batch produces the same "dependency
unavailable" warning; the throttler lets one through per window per key and
reports how many were swallowed in between.
"""

import logging
import time
from typing import Callable, Dict, List, Tuple

from core.config import settings


class LogThrottler:
    """At most one emission per ``window_seconds`` for each message key."""

    # Keys older than the window are pruned once the table grows past this
    PRUNE_THRESHOLD = 1000

    def __init__(self, window_seconds: float = None, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = (
            settings.LOG_THROTTLE_WINDOW_SECONDS if window_seconds is None else window_seconds
        )
        self._clock = clock
        # key -> [last_emitted_at, suppressed_since_then]
        self._entries: Dict[str, List] = {}

    def should_log(self, key: str) -> Tuple[bool, int]:
        """
        Returns:
            (emit, suppressed) where suppressed is the number of messages
            swallowed for this key since its last emission
        """
        now = self._clock()
        entry = self._entries.get(key)

        if entry is None or now - entry[0] >= self.window_seconds:
            suppressed = entry[1] if entry else 0
            self._entries[key] = [now, 0]
            if len(self._entries) > self.PRUNE_THRESHOLD:
                self._prune(now)
            return True, suppressed

        entry[1] += 1
        return False, entry[1]

    def log(self, logger: logging.Logger, level: int, key: str, message: str) -> bool:
        emit, suppressed = self.should_log(key)
        if not emit:
            return False
        if suppressed:
            message = f"{message} ({suppressed} similar messages suppressed)"
        logger.log(level, message)
        return True

    def warning(self, logger: logging.Logger, key: str, message: str) -> bool:
        return self.log(logger, logging.WARNING, key, message)

    def error(self, logger: logging.Logger, key: str, message: str) -> bool:
        return self.log(logger, logging.ERROR, key, message)

    def _prune(self, now: float):
        stale = [k for k, (at, _) in self._entries.items() if now - at >= self.window_seconds]
        for k in stale:
            del self._entries[k]

    def reset(self):
        self._entries.clear()
