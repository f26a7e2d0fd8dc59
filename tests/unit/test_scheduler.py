"""
Tests for the sync worker (request polling and scheduled enqueueing)
"""

import asyncio

import pytest

from core.exceptions import AuthenticationError
from ingestion.resilience.circuit_breaker import CircuitBreaker
from ingestion.resilience.memory import MemoryWatchdog
from ingestion.scheduler import SyncWorker
from models.base import IntegrationStatus, RequestStatus, SyncFrequency, TriggerSource
from tests.conftest import FakeExtractor


@pytest.fixture
def make_worker(make_runner, repository, sample_chunk):
    def factory(extractor=None, **kwargs):
        runner = make_runner(extractor or FakeExtractor({"parts.csv": [sample_chunk]}))
        options = dict(poll_interval=1, schedule_check_minutes=1, progress_retention=60)
        options.update(kwargs)
        return SyncWorker(runner, repository, **options)

    return factory


class TestPolling:

    @pytest.mark.asyncio
    async def test_runs_pending_request(self, make_worker, repository, part_store):
        worker = make_worker()
        request = await repository.create_request(1)

        result = await worker.poll_once()

        assert result.records_inserted == 2
        assert request.status == RequestStatus.COMPLETED
        assert request.result["records_inserted"] == 2
        assert request.error is None
        assert request.progress["status"] == "completed"
        assert len(part_store.rows) == 2
        assert not worker.busy

    @pytest.mark.asyncio
    async def test_nothing_pending(self, make_worker):
        assert await make_worker().poll_once() is None

    @pytest.mark.asyncio
    async def test_failed_run_fails_request(self, make_worker, repository):
        worker = make_worker(FakeExtractor({}, listing_error=AuthenticationError("530 Login incorrect")))
        request = await repository.create_request(1)

        result = await worker.poll_once()

        assert result.status == RequestStatus.FAILED
        assert request.status == RequestStatus.FAILED
        assert "530" in request.error

    @pytest.mark.asyncio
    async def test_rejected_run_fails_request(self, make_worker, repository, registry):
        worker = make_worker()
        request = await repository.create_request(1)

        async with registry.claim(1):
            assert await worker.poll_once() is None

        assert request.status == RequestStatus.FAILED
        assert "already in progress" in request.error

    @pytest.mark.asyncio
    async def test_integration_syncing_elsewhere_fails_request(self, make_worker, repository):
        repository.integrations[1].status = IntegrationStatus.SYNCING
        worker = make_worker()
        request = await repository.create_request(1)

        assert await worker.poll_once() is None

        assert request.status == RequestStatus.FAILED
        assert "another process" in request.error

    @pytest.mark.asyncio
    async def test_memory_pressure_blocks_claims(self, make_worker, repository):
        watchdog = MemoryWatchdog(ceiling_mb=100, check_interval=0.0, sampler=lambda: 500.0, collect=lambda: 0)
        worker = make_worker(watchdog=watchdog)
        request = await repository.create_request(1)

        assert await worker.poll_once() is None
        assert request.status == RequestStatus.PENDING
        assert watchdog.forced_collections == 1

    @pytest.mark.asyncio
    async def test_open_breaker_blocks_claims(self, make_worker, repository):
        breaker = CircuitBreaker("document-store", failure_threshold=1, cooldown=60.0)
        breaker.record_failure()
        worker = make_worker(breakers=[breaker])
        request = await repository.create_request(1)

        assert not worker.can_claim()
        assert await worker.poll_once() is None
        assert request.status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_oldest_request_first(self, make_worker, repository):
        repository.add_integration(2, name="Beta Parts")
        first = await repository.create_request(1)
        await asyncio.sleep(0.01)
        second = await repository.create_request(2)
        worker = make_worker()

        await worker.poll_once()

        assert first.status == RequestStatus.COMPLETED
        assert second.status == RequestStatus.PENDING


class TestScheduling:

    @pytest.mark.asyncio
    async def test_due_integrations_are_queued_once(self, make_worker, repository):
        repository.integrations[1].sync_frequency = SyncFrequency.DAILY
        worker = make_worker()

        assert await worker.enqueue_due() == 1
        assert await worker.enqueue_due() == 0

        queued = list(repository.requests.values())
        assert len(queued) == 1
        assert queued[0].triggered_by == TriggerSource.SCHEDULE

    @pytest.mark.asyncio
    async def test_manual_integrations_are_skipped(self, make_worker, repository):
        assert await make_worker().enqueue_due() == 0
        assert repository.requests == {}


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_registers_jobs_and_stop_shuts_down(self, make_worker, search_index):
        worker = make_worker()

        await worker.start()
        assert {job.id for job in worker.scheduler.get_jobs()} == {"poll", "schedule"}
        assert worker.scheduler.running

        await worker.stop()

        assert not worker.can_claim()
        assert search_index.closed

    @pytest.mark.asyncio
    async def test_stop_waits_for_active_run(self, make_worker, repository):
        worker = make_worker()
        release = asyncio.Event()

        async def slow_execute(request):
            await release.wait()
            return None

        worker._execute = slow_execute
        await repository.create_request(1)
        poll = asyncio.ensure_future(worker.poll_once())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert worker.busy

        stopping = asyncio.ensure_future(worker.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        release.set()
        await stopping
        await poll
        assert not worker.busy
