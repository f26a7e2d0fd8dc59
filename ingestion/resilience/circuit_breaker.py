"""
Circuit breaker guarding one downstream dependency.

closed     every call goes through; consecutive failures are counted
open       calls fail immediately with CircuitOpenError until the cooldown ends
half_open  exactly one probe call is let through; success closes the breaker,
           failure reopens it with a longer cooldown (capped)
"""

import enum
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Tuple, Type

from core.config import settings
from core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class BreakerState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Per-dependency circuit breaker.

    Attributes:
        name: Dependency label used in logs and errors
        failure_threshold: Consecutive failures that open the breaker
        cooldown: Initial open period in seconds
        max_cooldown: Upper bound for the extended cooldown after failed probes
        ignored_exceptions: Failures that prove the dependency is reachable
            (e.g. rate limiting) and therefore never count against it
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown: float = 30.0,
        max_cooldown: float = 300.0,
        cooldown_multiplier: float = 2.0,
        ignored_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_cooldown = cooldown
        self.max_cooldown = max_cooldown
        self.cooldown_multiplier = cooldown_multiplier
        self.ignored_exceptions = tuple(ignored_exceptions)
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._failures = 0
        self._cooldown = cooldown
        self._opened_at = 0.0
        self._probe_in_flight = False
        self.times_opened = 0
        self.rejected_calls = 0

    @classmethod
    def from_settings(cls, name: str, config=settings, **kwargs) -> "CircuitBreaker":
        return cls(
            name,
            failure_threshold=config.BREAKER_FAILURE_THRESHOLD,
            cooldown=config.BREAKER_COOLDOWN_SECONDS,
            max_cooldown=config.BREAKER_MAX_COOLDOWN_SECONDS,
            **kwargs
        )

    @property
    def state(self) -> BreakerState:
        if self._state == BreakerState.OPEN and self._remaining() <= 0:
            return BreakerState.HALF_OPEN
        return self._state

    @property
    def is_available(self) -> bool:
        """False while the breaker is open and still cooling down"""
        return self.state != BreakerState.OPEN

    def _remaining(self) -> float:
        return self._opened_at + self._cooldown - self._clock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` through the breaker."""
        self.before_call()
        try:
            result = await func(*args, **kwargs)
        except self.ignored_exceptions:
            self._probe_in_flight = False
            raise
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def before_call(self):
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: While open, or while a half-open probe is in flight
        """
        if self._state == BreakerState.OPEN:
            remaining = self._remaining()
            if remaining > 0:
                self.rejected_calls += 1
                raise CircuitOpenError(
                    f"Circuit breaker open for {self.name}",
                    context={"dependency": self.name},
                    retry_in=remaining
                )
            self._state = BreakerState.HALF_OPEN
            logger.info(f"Circuit breaker for {self.name} half-open, probing")

        if self._state == BreakerState.HALF_OPEN:
            if self._probe_in_flight:
                self.rejected_calls += 1
                raise CircuitOpenError(
                    f"Circuit breaker for {self.name} is probing",
                    context={"dependency": self.name},
                    retry_in=0.0
                )
            self._probe_in_flight = True

    def record_success(self):
        if self._state != BreakerState.CLOSED:
            logger.info(f"Circuit breaker for {self.name} closed")
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._cooldown = self.base_cooldown
        self._probe_in_flight = False

    def record_failure(self, exc: BaseException = None):
        self._failures += 1
        self._probe_in_flight = False

        if self._state == BreakerState.HALF_OPEN:
            self._cooldown = min(self._cooldown * self.cooldown_multiplier, self.max_cooldown)
            self._open(exc)
        elif self._state == BreakerState.CLOSED and self._failures >= self.failure_threshold:
            self._open(exc)

    def _open(self, exc: BaseException = None):
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self.times_opened += 1
        reason = f" ({type(exc).__name__})" if exc is not None else ""
        logger.warning(
            f"Circuit breaker opened for {self.name} after {self._failures} "
            f"consecutive failures{reason}. Cooling down for {self._cooldown:.0f}s"
        )

    def reset(self):
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._cooldown = self.base_cooldown
        self._probe_in_flight = False

    def status(self) -> Dict[str, Any]:
        state = self.state
        return {
            "name": self.name,
            "state": state.value,
            "consecutive_failures": self._failures,
            "cooldown_seconds": self._cooldown,
            "retry_in": max(self._remaining(), 0.0) if state == BreakerState.OPEN else 0.0,
            "times_opened": self.times_opened,
            "rejected_calls": self.rejected_calls,
        }
