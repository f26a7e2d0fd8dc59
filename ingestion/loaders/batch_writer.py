"""
Dual-store batch writer.

A batch goes to the document store (bulk upsert) and to the search index
(bulk index, re-chunked into smaller sub-batches). The two writes are
independent: a failure on one side is counted and logged, never rolled back
or allowed to block the other side.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
import logging

from core.config import settings
from core.exceptions import (
    CircuitOpenError,
    DocumentStoreError,
    RateLimitError,
    RetryExhaustedError,
    StoreUnavailableError,
    SyncError,
)
from ingestion.loaders.postgres_loader import PostgresPartStore
from ingestion.loaders.search_loader import ElasticsearchIndexer
from ingestion.resilience.backoff import BackoffPolicy, is_connection_error, retry_async
from ingestion.resilience.circuit_breaker import CircuitBreaker
from ingestion.resilience.log_throttle import LogThrottler
from schemas.part import PartRecord

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    records: int = 0
    inserted: int = 0
    updated: int = 0
    store_failed: int = 0
    indexed: int = 0
    index_errors: int = 0
    rate_limit_retries: int = 0
    store_error: Optional[str] = None


def _store_retryable(exc: BaseException) -> bool:
    return isinstance(exc, CircuitOpenError) or is_connection_error(exc)


class BatchWriter:
    """
    Write batches of PartRecords to both stores.

    The caller hands the batch over and starts a fresh list; the writer
    clears the handed-over list once both writes are done so its records can
    be reclaimed before the next batch fills up.

    Example:
        pending, batch = batch, []
        result = await writer.write(pending)
    """

    def __init__(
        self,
        store: PostgresPartStore,
        indexer: ElasticsearchIndexer,
        store_breaker: CircuitBreaker,
        index_breaker: CircuitBreaker,
        policy: Optional[BackoffPolicy] = None,
        index_batch_size: int = None,
        index_pause: float = None,
        throttler: Optional[LogThrottler] = None,
    ):
        self.store = store
        self.indexer = indexer
        self.store_breaker = store_breaker
        self.index_breaker = index_breaker
        self.policy = policy or BackoffPolicy.from_settings()
        self.index_batch_size = index_batch_size or settings.INDEX_BATCH_SIZE
        self.index_pause = settings.INDEX_BATCH_PAUSE_SECONDS if index_pause is None else index_pause
        self.throttler = throttler or LogThrottler()

    async def write(self, records: List[PartRecord]) -> BatchResult:
        """
        Persist one batch.

        Returns:
            BatchResult with per-store counts

        Raises:
            StoreUnavailableError: The document store stayed unreachable after
                every retry (raised after the index write was attempted)
        """
        result = BatchResult(records=len(records))
        if not records:
            return result

        try:
            unavailable = None
            try:
                await self._write_store(records, result)
            except StoreUnavailableError as e:
                unavailable = e

            await self._write_index(records, result)

            if unavailable is not None:
                raise unavailable
            return result
        finally:
            records.clear()

    async def write_index(self, records: List[PartRecord], result: Optional[BatchResult] = None) -> BatchResult:
        """
        Index records without touching the document store.

        Used to rebuild the search index from stored parts; index failures
        are counted on the result, never raised.
        """
        result = result or BatchResult()
        result.records += len(records)
        await self._write_index(records, result)
        return result

    async def _write_store(self, records: List[PartRecord], result: BatchResult):
        try:
            upserted = await retry_async(
                self.store_breaker.call,
                self.store.bulk_upsert,
                records,
                policy=self.policy,
                operation="document store upsert",
                retry_on=_store_retryable,
            )
        except RetryExhaustedError as e:
            raise StoreUnavailableError(
                "Document store unavailable after retries",
                context={"batch_size": len(records), "breaker": self.store_breaker.status()["state"]},
                original_exception=e.original_exception
            )
        except DocumentStoreError as e:
            result.store_failed = len(records)
            result.store_error = e.message
            self.throttler.error(
                logger,
                f"store-error:{type(e).__name__}",
                f"Document store rejected batch of {len(records)}: {e.message}"
            )
            return

        result.inserted = upserted.inserted
        result.updated = upserted.updated

    async def _write_index(self, records: List[PartRecord], result: BatchResult):
        now = datetime.utcnow()
        for start in range(0, len(records), self.index_batch_size):
            if start:
                await asyncio.sleep(self.index_pause)

            documents = [
                (record.document_id, record.to_document(now))
                for record in records[start:start + self.index_batch_size]
            ]
            try:
                indexed = await self.index_breaker.call(self.indexer.bulk_index, documents)
            except CircuitOpenError as e:
                result.index_errors += len(documents)
                self.throttler.warning(
                    logger,
                    "index-circuit-open",
                    f"Search index circuit open, skipped {len(documents)} documents "
                    f"(retry in {e.retry_in or 0:.0f}s)"
                )
                continue
            except RateLimitError:
                result.index_errors += len(documents)
                self.throttler.warning(
                    logger,
                    "index-rate-limited",
                    f"Search index still throttling after retries, skipped {len(documents)} documents"
                )
                continue
            except SyncError as e:
                result.index_errors += len(documents)
                self.throttler.warning(
                    logger,
                    f"index-error:{type(e).__name__}",
                    f"Search index write failed for {len(documents)} documents: {e.message}"
                )
                continue

            result.indexed += indexed.indexed
            result.index_errors += indexed.errors
            result.rate_limit_retries += indexed.rate_limit_retries
