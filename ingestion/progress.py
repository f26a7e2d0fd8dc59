"""
Progress reporting from a run to its status sinks.

The tracker is the only writer of a run's progress document. Mutations and
snapshots happen under one lock, so every sink sees counters that never go
backwards, even with several files being processed concurrently.
"""

import asyncio
import time
from datetime import datetime
from typing import List, Optional, Sequence
import logging

from core.exceptions import SyncError
from ingestion.registry import RunRegistry
from ingestion.resilience.log_throttle import LogThrottler
from models.base import RequestStatus, SyncPhase
from schemas.progress import MAX_PROGRESS_ERRORS, RunError, SyncProgress

logger = logging.getLogger(__name__)

COUNTERS = (
    "files_processed", "files_failed",
    "records_processed", "records_inserted", "records_updated",
    "records_rejected", "records_failed", "records_indexed", "index_errors",
    "index_retries",
)


class ProgressSink:
    """Receives progress snapshots. ``final`` marks the terminal snapshot."""

    async def publish(self, progress: SyncProgress, final: bool = False):
        raise NotImplementedError


class RegistryProgressSink(ProgressSink):
    """Keeps the latest snapshot in the in-process run registry"""

    def __init__(self, registry: RunRegistry):
        self.registry = registry

    async def publish(self, progress: SyncProgress, final: bool = False):
        self.registry.publish(progress)


class RequestProgressSink(ProgressSink):
    """
    Mirrors progress onto the sync_requests row for out-of-process readers.

    Writes are spaced at least ``min_interval`` seconds apart; the terminal
    snapshot is always written.
    """

    def __init__(self, repository, request_id: int, min_interval: float = 1.0):
        self.repository = repository
        self.request_id = request_id
        self.min_interval = min_interval
        self._last_write = None

    async def publish(self, progress: SyncProgress, final: bool = False):
        now = time.monotonic()
        if not final and self._last_write is not None and now - self._last_write < self.min_interval:
            return
        self._last_write = now
        await self.repository.update_request_progress(self.request_id, progress.to_document())


class ProgressTracker:
    """
    Owns the progress document of one run.

    Example:
        tracker = ProgressTracker(integration_id, [RegistryProgressSink(registry)])
        await tracker.set_phase(SyncPhase.LISTING)
        await tracker.add(records_inserted=500, records_updated=20)
    """

    def __init__(
        self,
        integration_id: int,
        sinks: Sequence[ProgressSink] = (),
        throttler: Optional[LogThrottler] = None,
    ):
        self.progress = SyncProgress(integration_id=integration_id)
        self.sinks: List[ProgressSink] = list(sinks)
        self.throttler = throttler or LogThrottler()
        self._lock = asyncio.Lock()

    async def _publish(self, final: bool = False):
        """Caller holds the lock."""
        self.progress.updated_at = datetime.utcnow()
        snapshot = self.progress.copy(deep=True)
        for sink in self.sinks:
            try:
                await sink.publish(snapshot, final=final)
            except Exception as e:
                self.throttler.warning(
                    logger,
                    f"progress-sink:{type(sink).__name__}",
                    f"Progress sink {type(sink).__name__} failed: {type(e).__name__}: {e}"
                )

    async def set_phase(self, phase: SyncPhase, message: Optional[str] = None):
        async with self._lock:
            if self.progress.phase == phase and message is None:
                return
            self.progress.phase = phase
            if message is not None:
                self.progress.message = message
            await self._publish()

    async def set_files_total(self, total: int):
        async with self._lock:
            self.progress.files_total = max(self.progress.files_total, total)
            await self._publish()

    async def start_file(self, file_name: str):
        async with self._lock:
            self.progress.current_file = file_name
            self.progress.phase = SyncPhase.DOWNLOADING
            await self._publish()

    async def add(self, **increments: int):
        """
        Add to counters.

        Raises:
            ValueError: Unknown counter or negative increment
        """
        for name, value in increments.items():
            if name not in COUNTERS:
                raise ValueError(f"Unknown progress counter: {name}")
            if value < 0:
                raise ValueError(f"Progress counters only grow ({name}={value})")

        async with self._lock:
            for name, value in increments.items():
                setattr(self.progress, name, getattr(self.progress, name) + value)
            await self._publish()

    async def record_error(self, file_name: Optional[str], error: BaseException):
        message = error.message if isinstance(error, SyncError) else str(error)
        async with self._lock:
            if len(self.progress.errors) < MAX_PROGRESS_ERRORS:
                self.progress.errors.append(RunError(
                    file=file_name,
                    error_type=type(error).__name__,
                    message=message,
                ))
            await self._publish()

    async def finish(self, status: RequestStatus, phase: SyncPhase, message: Optional[str] = None):
        async with self._lock:
            self.progress.status = status
            self.progress.phase = phase
            self.progress.current_file = None
            if message is not None:
                self.progress.message = message
            await self._publish(final=True)
