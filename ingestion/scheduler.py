"""
Sync worker: request polling and scheduled enqueueing on APScheduler
"""

import asyncio
import logging
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from core.database import async_session_maker
from core.exceptions import SyncError, SyncInProgressError
from ingestion.progress import RequestProgressSink
from ingestion.repository import SyncRepository
from ingestion.resilience.circuit_breaker import CircuitBreaker
from ingestion.resilience.log_throttle import LogThrottler
from ingestion.resilience.memory import MemoryWatchdog
from ingestion.runner import SyncRunner, build_runner
from models.base import RequestStatus, TriggerSource
from models.sync_request import SyncRequest
from schemas.progress import SyncResult

logger = logging.getLogger(__name__)


class SyncWorker:
    """
    Single worker process: polls for sync requests and runs them one at a time.

    Two APScheduler jobs drive it:
    - ``poll`` every POLL_INTERVAL_SECONDS claims the oldest pending request,
      unless memory is above the ceiling or a breaker is open
    - ``schedule`` every SCHEDULE_CHECK_MINUTES queues syncs for integrations
      whose interval has elapsed and purges expired progress documents
    """

    def __init__(
        self,
        runner: SyncRunner,
        repository: SyncRepository,
        watchdog: Optional[MemoryWatchdog] = None,
        breakers: Optional[List[CircuitBreaker]] = None,
        poll_interval: float = None,
        schedule_check_minutes: float = None,
        progress_retention: float = None,
        throttler: Optional[LogThrottler] = None,
    ):
        self.runner = runner
        self.repository = repository
        self.watchdog = watchdog or runner.watchdog
        self.breakers = breakers if breakers is not None else runner.breakers
        self.poll_interval = poll_interval or settings.POLL_INTERVAL_SECONDS
        self.schedule_check_minutes = schedule_check_minutes or settings.SCHEDULE_CHECK_MINUTES
        self.progress_retention = (
            settings.PROGRESS_RETENTION_SECONDS if progress_retention is None else progress_retention
        )
        self.throttler = throttler or runner.throttler
        self.scheduler = AsyncIOScheduler()
        self._in_flight: Optional[asyncio.Future] = None
        self._stopping = False

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def can_claim(self) -> bool:
        """Gate checked before every claim."""
        if self._stopping or self.busy:
            return False
        if not self.watchdog.relieve():
            self.throttler.warning(
                logger,
                "worker-memory",
                f"Memory above ceiling ({self.watchdog.usage_mb():.0f}MB), not claiming new syncs"
            )
            return False
        open_breakers = [breaker.name for breaker in self.breakers if not breaker.is_available]
        if open_breakers:
            self.throttler.warning(
                logger,
                "worker-breakers",
                f"Circuit open for {', '.join(open_breakers)}, not claiming new syncs"
            )
            return False
        return True

    async def poll_once(self) -> Optional[SyncResult]:
        """Claim and run at most one pending request."""
        if not self.can_claim():
            return None

        request = await self.repository.claim_next_request()
        if request is None:
            return None

        # Shielded so a scheduler shutdown cannot cancel a run half way
        in_flight = asyncio.ensure_future(self._execute(request))
        self._in_flight = in_flight
        try:
            return await asyncio.shield(in_flight)
        finally:
            if in_flight.done() and self._in_flight is in_flight:
                self._in_flight = None

    async def _execute(self, request: SyncRequest) -> Optional[SyncResult]:
        logger.info(f"Worker: running sync request {request.id} for integration {request.integration_id}")
        try:
            result = await self.runner.run(
                request.integration_id,
                triggered_by=request.triggered_by,
                request_id=request.id,
                sinks=[RequestProgressSink(self.repository, request.id)],
            )
        except SyncError as e:
            # Rejected before the run started (already running, integration gone)
            logger.warning(f"Worker: sync request {request.id} rejected: {e.message}")
            await self.repository.finish_request(request.id, RequestStatus.FAILED, error=e.message)
            return None

        await self.repository.finish_request(
            request.id,
            result.status,
            result=result.to_document(),
            error=result.error_message,
        )
        return result

    async def enqueue_due(self) -> int:
        """Queue schedule-triggered requests for due integrations."""
        queued = 0
        for integration in await self.repository.due_integrations():
            try:
                await self.repository.create_request(integration.id, TriggerSource.SCHEDULE)
                queued += 1
            except SyncInProgressError:
                logger.debug(f"Integration {integration.id} already has an active request")

        purged = await self.repository.purge_stale_progress(self.progress_retention)
        self.runner.registry.purge_expired()
        if queued or purged:
            logger.info(f"Scheduler: queued {queued} scheduled syncs, purged {purged} progress documents")
        return queued

    async def _run_job(self, job):
        try:
            await job()
        except SyncError as e:
            self.throttler.error(logger, f"worker-job:{job.__name__}", f"Worker job {job.__name__} failed: {e.message}")
        except Exception:
            logger.exception(f"Worker job {job.__name__} failed")

    async def _poll_job(self):
        await self._run_job(self.poll_once)

    async def _schedule_job(self):
        await self._run_job(self.enqueue_due)

    async def start(self):
        """Recover abandoned requests and start both jobs"""
        await self.repository.fail_abandoned_requests()
        await self._schedule_job()

        self.scheduler.add_job(
            self._poll_job,
            trigger=IntervalTrigger(seconds=self.poll_interval),
            id="poll",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.add_job(
            self._schedule_job,
            trigger=IntervalTrigger(minutes=self.schedule_check_minutes),
            id="schedule",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(
            f"Sync worker started (poll every {self.poll_interval}s, "
            f"schedule check every {self.schedule_check_minutes}min)"
        )

    async def stop(self):
        """Stop claiming, let the active run finish, then shut the scheduler down."""
        self._stopping = True
        if self.scheduler.running:
            self.scheduler.pause()

        if self.busy:
            logger.info("Sync worker waiting for the active sync to finish")
            await asyncio.wait([self._in_flight])
        self._in_flight = None

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.runner.indexer.close()
        logger.info("Sync worker stopped")


def build_worker(session_factory=None) -> SyncWorker:
    """Wire a worker (and its runner) against the configured stores."""
    session_factory = session_factory or async_session_maker
    runner = build_runner(session_factory)
    return SyncWorker(runner, runner.repository)
