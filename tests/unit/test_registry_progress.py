"""
Tests for the run registry and progress tracking
"""

import asyncio

import pytest

from core.exceptions import NetworkError, SyncInProgressError
from ingestion.progress import (
    ProgressSink,
    ProgressTracker,
    RegistryProgressSink,
    RequestProgressSink,
)
from ingestion.registry import RunRegistry
from models.base import RequestStatus, SyncPhase
from schemas.progress import MAX_PROGRESS_ERRORS, SyncProgress


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class RecordingSink(ProgressSink):
    def __init__(self):
        self.snapshots = []

    async def publish(self, progress, final=False):
        self.snapshots.append((progress, final))


class BrokenSink(ProgressSink):
    async def publish(self, progress, final=False):
        raise RuntimeError("status store down")


class TestRunRegistry:

    @pytest.mark.asyncio
    async def test_second_claim_is_rejected(self):
        registry = RunRegistry(retention_seconds=60)

        async with registry.claim(1):
            assert registry.is_syncing(1)
            assert registry.active_integrations() == [1]
            with pytest.raises(SyncInProgressError):
                async with registry.claim(1):
                    pass
            # other integrations are independent
            async with registry.claim(2):
                assert sorted(registry.active_integrations()) == [1, 2]

        assert not registry.is_syncing(1)

    @pytest.mark.asyncio
    async def test_claim_released_on_error(self):
        registry = RunRegistry(retention_seconds=60)

        with pytest.raises(ValueError):
            async with registry.claim(1):
                raise ValueError("boom")

        async with registry.claim(1):
            assert registry.is_syncing(1)

    @pytest.mark.asyncio
    async def test_progress_expires_after_retention(self):
        clock = FakeClock()
        registry = RunRegistry(retention_seconds=30, clock=clock)

        async with registry.claim(1):
            registry.publish(SyncProgress(integration_id=1))
        registry.retire(1)

        clock.now = 29.0
        assert registry.get_progress(1) is not None

        clock.now = 30.0
        assert registry.get_progress(1) is None
        assert registry.purge_expired() == 0

    @pytest.mark.asyncio
    async def test_new_claim_cancels_expiry(self):
        clock = FakeClock()
        registry = RunRegistry(retention_seconds=30, clock=clock)
        registry.publish(SyncProgress(integration_id=1))
        registry.retire(1)

        async with registry.claim(1):
            clock.now = 100.0
            assert registry.get_progress(1) is not None


class TestProgressTracker:

    @pytest.mark.asyncio
    async def test_counters_accumulate_and_publish(self):
        sink = RecordingSink()
        tracker = ProgressTracker(7, [sink])

        await tracker.set_files_total(2)
        await tracker.add(records_processed=3, records_inserted=2)
        await tracker.add(records_processed=1, records_updated=1)

        progress = sink.snapshots[-1][0]
        assert progress.files_total == 2
        assert progress.records_processed == 4
        assert progress.records_inserted == 2
        assert progress.records_updated == 1

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self):
        sink = RecordingSink()
        tracker = ProgressTracker(7, [sink])

        await tracker.add(records_processed=1)
        await tracker.add(records_processed=1)

        assert [s.records_processed for s, _ in sink.snapshots] == [1, 2]

    @pytest.mark.asyncio
    async def test_rejects_unknown_or_negative_counters(self):
        tracker = ProgressTracker(7)

        with pytest.raises(ValueError):
            await tracker.add(records_processed=-1)
        with pytest.raises(ValueError):
            await tracker.add(phase=1)

    @pytest.mark.asyncio
    async def test_concurrent_updates_never_lose_counts(self):
        sink = RecordingSink()
        tracker = ProgressTracker(7, [sink])

        await asyncio.gather(*(tracker.add(records_processed=1) for _ in range(50)))

        counts = [s.records_processed for s, _ in sink.snapshots]
        assert counts == sorted(counts)
        assert counts[-1] == 50

    @pytest.mark.asyncio
    async def test_errors_are_bounded(self):
        tracker = ProgressTracker(7)

        for i in range(MAX_PROGRESS_ERRORS + 5):
            await tracker.record_error(f"f{i}.csv", NetworkError("reset"))

        assert len(tracker.progress.errors) == MAX_PROGRESS_ERRORS
        assert tracker.progress.errors[0].error_type == "NetworkError"
        assert tracker.progress.errors[0].message == "reset"

    @pytest.mark.asyncio
    async def test_finish_is_final(self):
        sink = RecordingSink()
        tracker = ProgressTracker(7, [sink])
        await tracker.start_file("a.csv")

        await tracker.finish(RequestStatus.COMPLETED, SyncPhase.COMPLETED, "done")

        progress, final = sink.snapshots[-1]
        assert final is True
        assert progress.current_file is None
        assert progress.message == "done"

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_run(self):
        sink = RecordingSink()
        tracker = ProgressTracker(7, [BrokenSink(), sink])

        await tracker.add(records_processed=1)

        assert len(sink.snapshots) == 1

    @pytest.mark.asyncio
    async def test_camel_case_document(self):
        tracker = ProgressTracker(7)
        await tracker.add(records_inserted=3, index_retries=2)

        document = tracker.progress.to_document()

        assert document["integrationId"] == 7
        assert document["recordsInserted"] == 3
        assert document["indexRetries"] == 2
        assert "records_inserted" not in document


class TestSinks:

    @pytest.mark.asyncio
    async def test_registry_sink(self):
        registry = RunRegistry(retention_seconds=60)
        tracker = ProgressTracker(3, [RegistryProgressSink(registry)])

        await tracker.add(records_processed=5)

        assert registry.get_progress(3).records_processed == 5

    @pytest.mark.asyncio
    async def test_request_sink_throttles_but_writes_final(self, repository):
        request = await repository.create_request(1)
        tracker = ProgressTracker(1, [RequestProgressSink(repository, request.id, min_interval=3600)])

        for _ in range(5):
            await tracker.add(records_processed=1)
        await tracker.finish(RequestStatus.COMPLETED, SyncPhase.COMPLETED)

        assert len(repository.progress_updates) == 2
        assert repository.progress_updates[-1]["recordsProcessed"] == 5
        assert repository.requests[request.id].progress["status"] == "completed"
