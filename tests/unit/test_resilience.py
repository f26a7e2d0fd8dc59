"""
Tests for backoff, circuit breaker, log throttling and the memory watchdog
"""

import logging

import httpx
import pytest

from core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    NetworkError,
    RateLimitError,
    RetryExhaustedError,
    UpsertError,
)
from ingestion.resilience.backoff import BackoffPolicy, is_connection_error, retry_async
from ingestion.resilience.circuit_breaker import BreakerState, CircuitBreaker
from ingestion.resilience.log_throttle import LogThrottler
from ingestion.resilience.memory import MemoryWatchdog


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Flaky:
    """Coroutine callable failing a fixed number of times before succeeding"""

    def __init__(self, failures, exc_factory=lambda: ConnectionResetError("reset")):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0

    async def __call__(self, value="ok"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return value


# ============================================================================
# Backoff
# ============================================================================

class TestBackoffPolicy:

    def test_delay_grows_and_caps(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=5.0, multiplier=2.0, jitter=0.0)

        assert [policy.compute_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_band(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=100.0, jitter=0.2)

        for _ in range(50):
            assert 8.0 <= policy.compute_delay(0) <= 12.0

    def test_retry_bound(self):
        policy = BackoffPolicy(max_retries=2)

        assert policy.should_retry(0)
        assert policy.should_retry(1)
        assert not policy.should_retry(2)


class TestConnectionErrorClassification:

    @pytest.mark.parametrize("exc", [
        ConnectionRefusedError(),
        ConnectionResetError(),
        TimeoutError(),
        EOFError(),
        httpx.ConnectTimeout("slow"),
        httpx.ConnectError("refused"),
        NetworkError("dropped"),
        RateLimitError("429"),
    ])
    def test_retryable(self, exc):
        assert is_connection_error(exc)

    @pytest.mark.parametrize("exc", [
        AuthenticationError("530 Login incorrect"),
        ValueError("bad row"),
        KeyError("price"),
        UpsertError("constraint"),
    ])
    def test_not_retryable(self, exc):
        assert not is_connection_error(exc)


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, fast_policy):
        func = Flaky(failures=2)
        retries = []

        result = await retry_async(
            func, "done", policy=fast_policy, operation="list",
            on_retry=lambda n, delay, exc: retries.append(n)
        )

        assert result == "done"
        assert func.calls == 3
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_exhaustion_wraps_last_failure(self, fast_policy):
        func = Flaky(failures=10)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_async(func, policy=fast_policy, operation="list files")

        assert func.calls == fast_policy.max_retries + 1
        assert isinstance(exc_info.value.original_exception, ConnectionResetError)
        assert exc_info.value.context["attempts"] == 3

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self, fast_policy):
        func = Flaky(failures=5, exc_factory=lambda: AuthenticationError("denied"))

        with pytest.raises(AuthenticationError):
            await retry_async(func, policy=fast_policy)

        assert func.calls == 1


# ============================================================================
# Circuit breaker
# ============================================================================

async def boom():
    raise ConnectionRefusedError("down")


async def fine():
    return "ok"


class TestCircuitBreaker:

    def make_breaker(self, clock, **kwargs):
        options = dict(failure_threshold=3, cooldown=10.0, max_cooldown=40.0, clock=clock)
        options.update(kwargs)
        return CircuitBreaker("search-index", **options)

    async def trip(self, breaker, times):
        for _ in range(times):
            with pytest.raises(ConnectionRefusedError):
                await breaker.call(boom)

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock)

        await self.trip(breaker, 3)

        assert breaker.state == BreakerState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(fine)
        assert exc_info.value.retry_in == pytest.approx(10.0)
        assert breaker.rejected_calls == 1

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = self.make_breaker(FakeClock())

        await self.trip(breaker, 2)
        await breaker.call(fine)
        await self.trip(breaker, 2)

        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock)
        await self.trip(breaker, 3)

        clock.advance(10.0)
        assert breaker.state == BreakerState.HALF_OPEN

        assert await breaker.call(fine) == "ok"
        assert breaker.state == BreakerState.CLOSED
        assert breaker.status()["cooldown_seconds"] == 10.0

    @pytest.mark.asyncio
    async def test_failed_probe_extends_cooldown_with_cap(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock)
        await self.trip(breaker, 3)

        for expected in (20.0, 40.0, 40.0):
            clock.advance(breaker.status()["cooldown_seconds"])
            await self.trip(breaker, 1)
            assert breaker.state == BreakerState.OPEN
            assert breaker.status()["cooldown_seconds"] == expected

    def test_only_one_probe_in_half_open(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock, failure_threshold=1)
        breaker.record_failure()
        clock.advance(10.0)

        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    @pytest.mark.asyncio
    async def test_ignored_exceptions_do_not_count(self):
        breaker = self.make_breaker(FakeClock(), failure_threshold=1, ignored_exceptions=(UpsertError,))

        async def bad_batch():
            raise UpsertError("constraint violation")

        for _ in range(3):
            with pytest.raises(UpsertError):
                await breaker.call(bad_batch)

        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_status_snapshot(self):
        clock = FakeClock()
        breaker = self.make_breaker(clock, failure_threshold=1)
        await self.trip(breaker, 1)
        clock.advance(4.0)

        status = breaker.status()

        assert status["name"] == "search-index"
        assert status["state"] == "open"
        assert status["retry_in"] == pytest.approx(6.0)
        assert status["times_opened"] == 1


# ============================================================================
# Log throttling
# ============================================================================

class TestLogThrottler:

    def test_one_emission_per_window(self):
        clock = FakeClock()
        throttler = LogThrottler(window_seconds=30, clock=clock)

        assert throttler.should_log("store-down") == (True, 0)
        assert throttler.should_log("store-down") == (False, 1)
        assert throttler.should_log("store-down") == (False, 2)
        assert throttler.should_log("other") == (True, 0)

        clock.advance(30)
        assert throttler.should_log("store-down") == (True, 2)

    def test_suppressed_count_is_reported(self, caplog):
        clock = FakeClock()
        throttler = LogThrottler(window_seconds=30, clock=clock)
        log = logging.getLogger("tests.throttle")

        with caplog.at_level(logging.WARNING, logger="tests.throttle"):
            for _ in range(4):
                throttler.warning(log, "k", "Store unavailable")
            clock.advance(31)
            throttler.warning(log, "k", "Store unavailable")

        messages = [r.getMessage() for r in caplog.records]
        assert messages == [
            "Store unavailable",
            "Store unavailable (3 similar messages suppressed)",
        ]


# ============================================================================
# Memory watchdog
# ============================================================================

class TestMemoryWatchdog:

    def test_forced_collection_can_relieve(self):
        samples = iter([900.0, 400.0])
        collected = []
        watchdog = MemoryWatchdog(
            ceiling_mb=512, check_interval=0.0,
            sampler=lambda: next(samples), collect=lambda: collected.append(1) or 0
        )

        assert watchdog.relieve()
        assert collected == [1]
        assert watchdog.forced_collections == 1
        assert watchdog.peak_mb == 900.0

    @pytest.mark.asyncio
    async def test_pauses_until_under_ceiling(self):
        samples = iter([900.0, 900.0, 900.0, 900.0, 100.0])
        watchdog = MemoryWatchdog(
            ceiling_mb=512, check_interval=0.0,
            sampler=lambda: next(samples), collect=lambda: 0
        )

        await watchdog.wait_until_safe()

        assert watchdog.pauses == 1
        assert watchdog.forced_collections == 2

    @pytest.mark.asyncio
    async def test_no_pause_when_safe(self):
        watchdog = MemoryWatchdog(ceiling_mb=512, check_interval=0.0, sampler=lambda: 100.0, collect=lambda: 0)

        assert await watchdog.wait_until_safe() == 0.0
        assert watchdog.pauses == 0
        assert watchdog.status()["safe"] is True
