# ============================================================================
# File: ingestion/runner.py
# Description: Sync orchestrator - one full run of one integration
# ============================================================================
"""
Sync Runner - drives one integration through the sync state machine.

    idle -> listing -> downloading -> parsing -> importing -> indexing -> completed
                                                                       \\-> failed

Guarantees:
- At most one run per integration at a time (RunRegistry claim within the
  process, the integration's syncing status across processes)
- Files fan out in bounded slices; one bad file never aborts the run
- Only credential rejection, unusable configuration and an unreachable
  document store abort a run
- Chunks are pulled only after the previous batch was written and only while
  memory is under the ceiling
- Every finished run is archived in sync history with its cause on failure
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

from core.config import settings
from core.database import async_session_maker
from core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    RateLimitError,
    RetryExhaustedError,
    StoreUnavailableError,
    SyncError,
    SyncInProgressError,
    UpsertError,
)
from ingestion.extractors.api_extractor import APIExtractor
from ingestion.extractors.base import FileDescriptor, SourceExtractor
from ingestion.extractors.ftp_extractor import FTPExtractor
from ingestion.loaders.batch_writer import BatchResult, BatchWriter
from ingestion.loaders.postgres_loader import PostgresPartStore
from ingestion.loaders.search_loader import ElasticsearchIndexer
from ingestion.progress import ProgressSink, ProgressTracker, RegistryProgressSink
from ingestion.registry import RunRegistry
from ingestion.repository import SyncRepository
from ingestion.resilience.backoff import BackoffPolicy, retry_async
from ingestion.resilience.circuit_breaker import CircuitBreaker
from ingestion.resilience.log_throttle import LogThrottler
from ingestion.resilience.memory import MemoryWatchdog
from ingestion.transformers.normalizer import RecordNormalizer
from models.base import IntegrationStatus, IntegrationType, RequestStatus, SyncPhase, TriggerSource
from schemas.integration import IntegrationConfig
from schemas.progress import FileResult, RunError, SyncResult

logger = logging.getLogger(__name__)

# Errors that end the whole run instead of just the current file
FATAL_ERRORS = (AuthenticationError, ConfigurationError, StoreUnavailableError)


def build_extractor(config: IntegrationConfig, policy: BackoffPolicy) -> SourceExtractor:
    """
    Raises:
        ConfigurationError: Unsupported integration type
    """
    if config.type == IntegrationType.FTP:
        return FTPExtractor(config.ftp, policy=policy)
    if config.type == IntegrationType.API:
        return APIExtractor(config.api, policy=policy)
    raise ConfigurationError(
        f"Unsupported integration type: {config.type}",
        context={"integration_id": config.id}
    )


async def check_connection(
    integration,
    extractor_factory: Optional[Callable[[IntegrationConfig, BackoffPolicy], SourceExtractor]] = None,
    policy: Optional[BackoffPolicy] = None,
) -> Dict[str, Any]:
    """
    Check that an integration's source is reachable with its stored settings.

    Never raises for source or configuration problems; the outcome says what
    went wrong.
    """
    try:
        config = IntegrationConfig.from_model(integration)
        extractor = (extractor_factory or build_extractor)(config, policy or BackoffPolicy.from_settings())
    except ConfigurationError as e:
        return {"success": False, "message": e.message, "error": type(e).__name__}

    outcome = await extractor.test_connection()
    logger.info(
        f"Connection check for {config.name} ({config.type}): "
        f"{'ok' if outcome['success'] else outcome['message']}"
    )
    return outcome


class SyncRunner:
    """
    Production sync orchestrator.

    Responsibilities:
    - Enforce one run per integration
    - Drive listing, per-file streaming and final indexing
    - Keep per-file failures local to the file
    - Publish monotonic progress and archive the final result
    """

    def __init__(
        self,
        repository: SyncRepository,
        store: PostgresPartStore,
        indexer: ElasticsearchIndexer,
        registry: Optional[RunRegistry] = None,
        watchdog: Optional[MemoryWatchdog] = None,
        store_breaker: Optional[CircuitBreaker] = None,
        index_breaker: Optional[CircuitBreaker] = None,
        policy: Optional[BackoffPolicy] = None,
        throttler: Optional[LogThrottler] = None,
        extractor_factory: Callable[[IntegrationConfig, BackoffPolicy], SourceExtractor] = build_extractor,
        batch_size: int = None,
        parallel_files: int = None,
        index_batch_size: int = None,
        index_pause: float = None,
    ):
        self.repository = repository
        self.store = store
        self.indexer = indexer
        self.registry = registry or RunRegistry()
        self.throttler = throttler or LogThrottler()
        self.watchdog = watchdog or MemoryWatchdog(throttler=self.throttler)
        self.store_breaker = store_breaker or CircuitBreaker.from_settings(
            "document-store", ignored_exceptions=(UpsertError,)
        )
        self.index_breaker = index_breaker or CircuitBreaker.from_settings(
            "search-index", ignored_exceptions=(RateLimitError,)
        )
        self.policy = policy or BackoffPolicy.from_settings()
        self.extractor_factory = extractor_factory
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.parallel_files = parallel_files or settings.PARALLEL_DOWNLOADS
        self.writer = BatchWriter(
            store=store,
            indexer=indexer,
            store_breaker=self.store_breaker,
            index_breaker=self.index_breaker,
            policy=self.policy,
            index_batch_size=index_batch_size,
            index_pause=index_pause,
            throttler=self.throttler,
        )

    @property
    def breakers(self) -> List[CircuitBreaker]:
        return [self.store_breaker, self.index_breaker]

    async def run(
        self,
        integration_id: int,
        triggered_by: TriggerSource = TriggerSource.ADMIN,
        request_id: Optional[int] = None,
        sinks: Sequence[ProgressSink] = (),
        force: bool = False,
    ) -> SyncResult:
        """
        Run a full sync of one integration.

        Failures inside the run (fatal or not) are reported through the
        returned result, which is also archived as sync history.

        Args:
            integration_id: Integration to sync
            triggered_by: Who asked for the run
            request_id: Sync request being served, if any
            sinks: Extra progress sinks besides the run registry
            force: Take over an integration another process left in syncing

        Returns:
            SyncResult with final counts, status and failure cause

        Raises:
            SyncInProgressError: A run for this integration is already active,
                in this process or another one
            IntegrationNotFoundError: Unknown integration
        """
        async with self.registry.claim(integration_id):
            integration = await self.repository.get_integration(integration_id)
            await self.repository.mark_syncing(integration_id, force=force)
            tracker = ProgressTracker(
                integration_id,
                [RegistryProgressSink(self.registry), *sinks],
                throttler=self.throttler,
            )
            try:
                return await self._run_claimed(integration, tracker, triggered_by, request_id)
            finally:
                self.registry.retire(integration_id)

    async def _run_claimed(
        self,
        integration,
        tracker: ProgressTracker,
        triggered_by: TriggerSource,
        request_id: Optional[int],
    ) -> SyncResult:
        started_at = datetime.utcnow()
        started = time.monotonic()
        file_results: List[FileResult] = []
        status = RequestStatus.COMPLETED
        phase = SyncPhase.COMPLETED
        error_message = None
        message = None
        extractor = None

        logger.info(f"Starting sync of integration {integration.id} ({integration.name}), trigger={triggered_by}")

        try:
            config = IntegrationConfig.from_model(integration)
            extractor = self.extractor_factory(config, self.policy)

            # --------------------------------------------------
            # PHASE 1: LISTING
            # --------------------------------------------------
            await tracker.set_phase(SyncPhase.LISTING)
            try:
                files = await retry_async(
                    extractor.list_files,
                    policy=self.policy,
                    operation=f"list files for {config.name}",
                )
            except RetryExhaustedError as e:
                raise RetryExhaustedError(
                    f"Could not list files for {config.name}",
                    context={"integration_id": config.id},
                    original_exception=e.original_exception
                )
            await tracker.set_files_total(len(files))
            logger.info(f"Found {len(files)} files for {config.name}")

            # --------------------------------------------------
            # PHASE 2: DOWNLOAD / PARSE / IMPORT
            # --------------------------------------------------
            if not files:
                message = "No files to import"
            for start in range(0, len(files), self.parallel_files):
                slice_ = files[start:start + self.parallel_files]
                outcomes = await asyncio.gather(
                    *(self._process_file(config, extractor, descriptor, tracker) for descriptor in slice_),
                    return_exceptions=True,
                )

                fatal = None
                for descriptor, outcome in zip(slice_, outcomes):
                    if isinstance(outcome, FileResult):
                        file_results.append(outcome)
                    elif isinstance(outcome, Exception):
                        file_results.append(FileResult(
                            file_name=descriptor.name, status="failed", error=str(outcome)
                        ))
                        if fatal is None:
                            fatal = outcome
                    else:
                        raise outcome
                if fatal is not None:
                    raise fatal

            # --------------------------------------------------
            # PHASE 3: INDEXING
            # --------------------------------------------------
            await tracker.set_phase(SyncPhase.INDEXING)
            await self._finalize_index()

            failed_files = [result for result in file_results if result.status == "failed"]
            if file_results and len(failed_files) == len(file_results):
                status = RequestStatus.FAILED
                phase = SyncPhase.FAILED
                error_message = f"All {len(file_results)} files failed"
                message = error_message

        except SyncError as e:
            status = RequestStatus.FAILED
            phase = SyncPhase.FAILED
            error_message = e.message
            message = f"Sync failed: {e.message}"
            await tracker.record_error(None, e)
            logger.error(
                f"Sync of integration {integration.id} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )

        except Exception as e:
            status = RequestStatus.FAILED
            phase = SyncPhase.FAILED
            error_message = f"Unexpected error: {type(e).__name__}: {e}"
            message = error_message
            await tracker.record_error(None, e)
            logger.exception(f"Unexpected error during sync of integration {integration.id}")

        finally:
            if extractor is not None:
                await extractor.close()

        await tracker.finish(status, phase, message)
        progress = tracker.progress
        result = SyncResult(
            integration_id=integration.id,
            integration_name=integration.name,
            status=status,
            phase=phase,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            duration_seconds=round(time.monotonic() - started, 3),
            files_total=progress.files_total,
            files_processed=progress.files_processed,
            files_failed=progress.files_failed,
            records_processed=progress.records_processed,
            records_inserted=progress.records_inserted,
            records_updated=progress.records_updated,
            records_rejected=progress.records_rejected,
            records_failed=progress.records_failed,
            records_indexed=progress.records_indexed,
            index_errors=progress.index_errors,
            index_retries=progress.index_retries,
            error_message=error_message,
            errors=[RunError(**error.dict()) for error in progress.errors],
            file_results=file_results,
        )

        try:
            await self.repository.record_run(result, request_id=request_id, triggered_by=triggered_by)
        except SyncError as e:
            logger.error(f"Could not archive sync of integration {integration.id}: {e.message}")

        logger.info(
            f"Sync of {integration.name} {result.status} in {result.duration_seconds:.1f}s - "
            f"files {result.files_processed}/{result.files_total} ({result.files_failed} failed), "
            f"inserted {result.records_inserted}, updated {result.records_updated}, "
            f"rejected {result.records_rejected}, indexed {result.records_indexed} "
            f"({result.index_errors} index errors)"
        )
        return result

    async def _process_file(
        self,
        config: IntegrationConfig,
        extractor: SourceExtractor,
        descriptor: FileDescriptor,
        tracker: ProgressTracker,
    ) -> FileResult:
        """
        Stream one file through normalize -> batch -> dual write.

        Returns:
            FileResult (status "failed" for non-fatal errors)

        Raises:
            AuthenticationError, ConfigurationError, StoreUnavailableError
        """
        file_result = FileResult(file_name=descriptor.name)
        normalizer = RecordNormalizer.for_integration(config, descriptor.name)
        batch = []
        seen = {"processed": 0, "rejected": 0}

        await tracker.start_file(descriptor.name)
        chunks = extractor.iter_row_chunks(descriptor)
        try:
            while True:
                await self.watchdog.wait_until_safe()
                try:
                    chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    break

                await tracker.set_phase(SyncPhase.PARSING)
                for record in normalizer.normalize_rows(chunk.rows, chunk.headers):
                    batch.append(record)
                    if len(batch) >= self.batch_size:
                        pending, batch = batch, []
                        await self._flush(pending, file_result, tracker)
                del chunk

                processed = normalizer.stats["processed"] - seen["processed"]
                rejected = normalizer.stats["rejected"] - seen["rejected"]
                seen["processed"] += processed
                seen["rejected"] += rejected
                file_result.records_processed += processed
                file_result.records_rejected += rejected
                await tracker.add(records_processed=processed, records_rejected=rejected)

            if batch:
                pending, batch = batch, []
                await self._flush(pending, file_result, tracker)

        except FATAL_ERRORS:
            await tracker.add(files_failed=1)
            raise

        except Exception as e:
            file_result.status = "failed"
            file_result.error = e.message if isinstance(e, SyncError) else f"{type(e).__name__}: {e}"
            await tracker.record_error(descriptor.name, e)
            await tracker.add(files_failed=1)
            self.throttler.error(
                logger,
                f"file-failed:{config.id}:{type(e).__name__}",
                f"File {descriptor.name} of {config.name} failed: {file_result.error}"
            )
            return file_result

        finally:
            await chunks.aclose()

        await tracker.add(files_processed=1)
        logger.info(
            f"Imported {descriptor.name}: {file_result.records_inserted} inserted, "
            f"{file_result.records_updated} updated, {file_result.records_rejected} rejected"
        )
        return file_result

    async def _flush(self, pending, file_result: FileResult, tracker: ProgressTracker):
        await tracker.set_phase(SyncPhase.IMPORTING)
        written = await self.writer.write(pending)

        file_result.records_inserted += written.inserted
        file_result.records_updated += written.updated
        file_result.records_failed += written.store_failed
        file_result.records_indexed += written.indexed
        file_result.index_errors += written.index_errors
        file_result.index_retries += written.rate_limit_retries

        if written.store_error:
            await tracker.record_error(
                file_result.file_name,
                SyncError(written.store_error),
            )
        await tracker.add(
            records_inserted=written.inserted,
            records_updated=written.updated,
            records_failed=written.store_failed,
            records_indexed=written.indexed,
            index_errors=written.index_errors,
            index_retries=written.rate_limit_retries,
        )

    async def _finalize_index(self):
        """Make the run's documents searchable; a failure only costs freshness."""
        try:
            await self.index_breaker.call(self.indexer.refresh)
        except SyncError as e:
            self.throttler.warning(logger, "index-refresh", f"Search index refresh failed: {e.message}")
        self.indexer.invalidate_count_cache()

    @staticmethod
    def _ensure_not_syncing(integration):
        if integration.status == IntegrationStatus.SYNCING:
            raise SyncInProgressError(
                f"Sync already in progress for integration {integration.id} in another process",
                context={"integration_id": integration.id}
            )

    async def reindex_integration(self, integration_id: int, page_size: int = None) -> Dict[str, Any]:
        """
        Rebuild an integration's search documents from the document store.

        Repairs the index after index-side failures without going back to the
        source. Pages are pulled only while memory is under the ceiling.

        Raises:
            SyncInProgressError: A run for this integration is active
            DocumentStoreError: Reading the stored parts failed
        """
        started = time.monotonic()
        async with self.registry.claim(integration_id):
            integration = await self.repository.get_integration(integration_id)
            self._ensure_not_syncing(integration)

            logger.info(f"Re-indexing integration {integration_id} ({integration.name}) from the document store")
            result = BatchResult()
            pages = self.store.iter_records(integration_id, page_size or self.batch_size)
            try:
                while True:
                    await self.watchdog.wait_until_safe()
                    try:
                        records = await pages.__anext__()
                    except StopAsyncIteration:
                        break
                    await self.writer.write_index(records, result)
            finally:
                await pages.aclose()

            await self._finalize_index()

        logger.info(
            f"Re-indexed integration {integration_id} in {time.monotonic() - started:.1f}s: "
            f"{result.indexed}/{result.records} documents ({result.index_errors} errors)"
        )
        return {
            "integration_id": integration_id,
            "records": result.records,
            "documents_indexed": result.indexed,
            "index_errors": result.index_errors,
            "index_retries": result.rate_limit_retries,
        }

    async def test_connection(self, integration_id: int) -> Dict[str, Any]:
        """
        Raises:
            IntegrationNotFoundError: Unknown integration
        """
        integration = await self.repository.get_integration(integration_id)
        return await check_connection(integration, self.extractor_factory, self.policy)

    async def clear_integration_data(self, integration_id: int) -> dict:
        """
        Remove every part of an integration from both stores.

        Holds the integration's run lock, so it cannot interleave with a sync.

        Raises:
            SyncInProgressError: A run for this integration is active
            DocumentStoreError: The document store delete failed
        """
        async with self.registry.claim(integration_id):
            integration = await self.repository.get_integration(integration_id)
            self._ensure_not_syncing(integration)
            parts_deleted = await self.store.delete_by_integration(integration_id)
            documents_deleted = None
            try:
                documents_deleted = await self.indexer.delete_by_integration(integration_id)
            except SyncError as e:
                logger.warning(
                    f"Search index cleanup for integration {integration_id} failed: {e.message}"
                )
            await self.repository.reset_integration_stats(integration_id)

        return {
            "integration_id": integration_id,
            "parts_deleted": parts_deleted,
            "documents_deleted": documents_deleted,
        }


def build_runner(session_factory=None, registry: Optional[RunRegistry] = None) -> SyncRunner:
    """Wire a runner against the configured database and search index."""
    session_factory = session_factory or async_session_maker
    return SyncRunner(
        repository=SyncRepository(session_factory),
        store=PostgresPartStore(session_factory),
        indexer=ElasticsearchIndexer(),
        registry=registry,
    )
