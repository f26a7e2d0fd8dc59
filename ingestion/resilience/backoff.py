"""
Exponential backoff with jitter for connection-level failures.

Only failures that say nothing about the request itself (refused, reset,
timed out, throttled) are retried. Application errors and authentication
failures propagate on the first attempt.
"""

import asyncio
import logging
import random
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from core.config import settings
from core.exceptions import (
    NonRetryableError,
    RetryableError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)


@dataclass
class BackoffPolicy:
    """
    Delay schedule for one retry sequence.

    delay(attempt) = min(base_delay * multiplier ** attempt, max_delay),
    then scaled by a random factor in [1 - jitter, 1 + jitter].
    """
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    max_retries: int = 5
    jitter: float = 0.2

    @classmethod
    def from_settings(cls, config=settings) -> "BackoffPolicy":
        return cls(
            base_delay=config.RETRY_BASE_DELAY_SECONDS,
            max_delay=config.RETRY_MAX_DELAY_SECONDS,
            max_retries=config.MAX_RETRIES,
        )

    def compute_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return max(delay, 0.0)

    def should_retry(self, attempt: int) -> bool:
        """attempt is the zero-based index of the retry about to happen"""
        return attempt < self.max_retries


def is_connection_error(exc: BaseException) -> bool:
    """Return True for failures worth retrying with backoff."""
    if isinstance(exc, NonRetryableError):
        return False
    if isinstance(exc, RetryableError):
        return True
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError, socket.timeout, EOFError)):
        return True
    # DNS hiccups (EAI_AGAIN) surface as gaierror
    if isinstance(exc, socket.gaierror):
        return True
    return False


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    policy: BackoffPolicy,
    operation: str = "operation",
    retry_on: Callable[[BaseException], bool] = is_connection_error,
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    **kwargs
) -> Any:
    """
    Await ``func(*args, **kwargs)``, retrying retryable failures.

    Args:
        func: Coroutine function to call
        policy: Delay schedule and retry bound
        operation: Label used in logs and error context
        retry_on: Predicate deciding whether a failure is retried
        on_retry: Called as on_retry(retry_number, delay, exc) before sleeping

    Returns:
        Whatever ``func`` returns

    Raises:
        RetryExhaustedError: When every retry failed (last failure as cause)
        Exception: Any failure ``retry_on`` rejects, unchanged
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not retry_on(e):
                raise

            if not policy.should_retry(attempt):
                raise RetryExhaustedError(
                    f"{operation} failed after {attempt + 1} attempts",
                    context={"operation": operation, "attempts": attempt + 1},
                    original_exception=e
                )

            delay = policy.compute_delay(attempt)
            attempt += 1
            if on_retry:
                on_retry(attempt, delay, e)
            logger.warning(
                f"{operation} failed ({type(e).__name__}), "
                f"retry {attempt}/{policy.max_retries} in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
