"""
Pytest configuration and fixtures

The pipeline talks to its stores through small interfaces (part store,
search indexer, repository, extractor), so most tests run against the
in-memory doubles below instead of live PostgreSQL / Elasticsearch / FTP.
"""

import pytest
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from core.exceptions import IntegrationNotFoundError, SyncInProgressError
from ingestion.extractors.base import FileDescriptor, RowChunk, SourceExtractor
from ingestion.loaders.postgres_loader import UpsertResult
from ingestion.loaders.search_loader import IndexResult
from ingestion.registry import RunRegistry
from ingestion.resilience.backoff import BackoffPolicy
from ingestion.resilience.circuit_breaker import CircuitBreaker
from ingestion.resilience.memory import MemoryWatchdog
from ingestion.runner import SyncRunner
from models.base import (
    IntegrationStatus,
    IntegrationType,
    RequestStatus,
    SyncFrequency,
    TriggerSource,
)
from schemas.part import PartRecord


# ============================================================================
# Store doubles
# ============================================================================

class InMemoryPartStore:
    """Document store keyed like the parts table unique constraint"""

    def __init__(self):
        self.rows: Dict[tuple, Dict[str, Any]] = {}
        self.fail_with: Optional[BaseException] = None
        self.calls = 0

    async def bulk_upsert(self, records):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with

        result = UpsertResult()
        now = datetime.utcnow()
        for record in records:
            if record.key in self.rows:
                result.updated += 1
            else:
                result.inserted += 1
            self.rows[record.key] = record.to_row(now)
        return result

    async def delete_by_integration(self, integration_id):
        doomed = [key for key, row in self.rows.items() if row["integration_id"] == integration_id]
        for key in doomed:
            del self.rows[key]
        return len(doomed)

    async def iter_records(self, integration_id, page_size=100):
        rows = [SimpleNamespace(**row) for row in self.rows.values() if row["integration_id"] == integration_id]
        for start in range(0, len(rows), page_size):
            yield [PartRecord.from_part(row) for row in rows[start:start + page_size]]

    def get(self, part_number, integration_id=1, file_name="parts.csv"):
        return self.rows.get((part_number, integration_id, file_name))


class FakeSearchIndex:
    """Search index double: documents by id, optional failure injection"""

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.fail_with: Optional[BaseException] = None
        self.bulk_calls = 0
        self.refreshed = 0
        self.cache_invalidations = 0
        self.closed = False

    async def bulk_index(self, documents):
        self.bulk_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        for doc_id, body in documents:
            self.documents[doc_id] = body
        return IndexResult(indexed=len(documents))

    async def refresh(self):
        self.refreshed += 1
        return True

    def invalidate_count_cache(self):
        self.cache_invalidations += 1

    async def delete_by_integration(self, integration_id):
        doomed = [doc_id for doc_id, body in self.documents.items() if body["integration_id"] == integration_id]
        for doc_id in doomed:
            del self.documents[doc_id]
        return len(doomed)

    async def ping(self):
        return True

    async def close(self):
        self.closed = True


class FakeRepository:
    """In-memory SyncRepository with the same method surface"""

    def __init__(self):
        self.integrations: Dict[int, SimpleNamespace] = {}
        self.requests: Dict[int, SimpleNamespace] = {}
        self.history: List[Any] = []
        self.progress_updates: List[Dict[str, Any]] = []
        self.synced: List[int] = []

    def add_integration(self, integration_id=1, name="Acme Parts", type=IntegrationType.FTP, **overrides):
        integration = SimpleNamespace(
            id=integration_id,
            name=name,
            type=type,
            status=IntegrationStatus.ACTIVE,
            enabled=True,
            ftp_config={"host": "ftp.example.com", "username": "acme", "password": "secret"},
            api_config=None,
            column_mapping={},
            default_currency="USD",
            sync_frequency=SyncFrequency.MANUAL,
            last_sync_at=None,
            last_sync=None,
        )
        for key, value in overrides.items():
            setattr(integration, key, value)
        self.integrations[integration_id] = integration
        return integration

    async def get_integration(self, integration_id):
        if integration_id not in self.integrations:
            raise IntegrationNotFoundError(
                f"Integration {integration_id} not found",
                context={"integration_id": integration_id}
            )
        return self.integrations[integration_id]

    async def mark_syncing(self, integration_id, force=False):
        if self.integrations[integration_id].status == IntegrationStatus.SYNCING and not force:
            raise SyncInProgressError(
                f"Sync already in progress for integration {integration_id} in another process",
                context={"integration_id": integration_id}
            )
        self.synced.append(integration_id)
        self.integrations[integration_id].status = IntegrationStatus.SYNCING

    async def record_run(self, result, request_id=None, triggered_by=TriggerSource.ADMIN):
        self.history.append(SimpleNamespace(result=result, request_id=request_id, triggered_by=triggered_by))
        integration = self.integrations[result.integration_id]
        integration.status = IntegrationStatus.ACTIVE if result.succeeded else IntegrationStatus.ERROR
        integration.last_sync_at = result.completed_at

    async def reset_integration_stats(self, integration_id):
        return None

    def _history_rows(self, integration_id):
        rows = []
        for run_id, entry in enumerate(self.history, start=1):
            if entry.result.integration_id != integration_id:
                continue
            rows.append(SimpleNamespace(run_id=run_id, triggered_by=entry.triggered_by, **entry.result.dict()))
        return list(reversed(rows))

    async def latest_history(self, integration_id):
        rows = self._history_rows(integration_id)
        return rows[0] if rows else None

    async def list_history(self, integration_id, limit=20):
        return self._history_rows(integration_id)[:limit]

    async def latest_request(self, integration_id):
        requests = [r for r in self.requests.values() if r.integration_id == integration_id]
        return max(requests, key=lambda r: r.created_at) if requests else None

    async def due_integrations(self, now=None):
        return [i for i in self.integrations.values() if i.enabled and i.sync_frequency != SyncFrequency.MANUAL]

    async def create_request(self, integration_id, triggered_by=TriggerSource.ADMIN):
        await self.get_integration(integration_id)
        for request in self.requests.values():
            if request.integration_id == integration_id and request.status in (
                RequestStatus.PENDING, RequestStatus.PROCESSING
            ):
                raise SyncInProgressError(
                    f"Sync already queued or running for integration {integration_id}",
                    context={"integration_id": integration_id}
                )
        request = SimpleNamespace(
            id=len(self.requests) + 1,
            integration_id=integration_id,
            status=RequestStatus.PENDING,
            triggered_by=triggered_by,
            progress=None,
            result=None,
            error=None,
            created_at=datetime.utcnow(),
            completed_at=None,
        )
        self.requests[request.id] = request
        return request

    async def claim_next_request(self):
        pending = [r for r in self.requests.values() if r.status == RequestStatus.PENDING]
        if not pending:
            return None
        request = min(pending, key=lambda r: r.created_at)
        request.status = RequestStatus.PROCESSING
        return request

    async def update_request_progress(self, request_id, progress):
        self.progress_updates.append(progress)
        self.requests[request_id].progress = progress

    async def finish_request(self, request_id, status, result=None, error=None):
        request = self.requests[request_id]
        request.status = RequestStatus(status)
        request.result = result
        request.error = error
        request.completed_at = datetime.utcnow()

    async def fail_abandoned_requests(self):
        return 0

    async def purge_stale_progress(self, retention_seconds):
        return 0


# ============================================================================
# Source double
# ============================================================================

class FakeExtractor(SourceExtractor):
    """
    Serves pre-baked row chunks per file.

    ``files`` maps file name to a list of RowChunk, or to an exception raised
    when the file is pulled. ``listing_error`` is raised by list_files.
    """

    source_type = "fake"

    def __init__(self, files: Dict[str, Any], listing_error: Optional[BaseException] = None):
        self.files = files
        self.listing_error = listing_error
        self.closed_iterators = 0
        self.pulled: List[str] = []

    async def list_files(self):
        if self.listing_error is not None:
            raise self.listing_error
        return [FileDescriptor(name=name) for name in self.files]

    async def iter_row_chunks(self, descriptor):
        content = self.files[descriptor.name]
        try:
            if isinstance(content, BaseException):
                raise content
            for chunk in content:
                self.pulled.append(descriptor.name)
                yield chunk
        finally:
            self.closed_iterators += 1


def csv_chunk(headers, *rows):
    """RowChunk as the CSV reader produces it"""
    return RowChunk(headers=list(headers), rows=[dict(zip(headers, row)) for row in rows])


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fast_policy():
    """Backoff without real sleeping"""
    return BackoffPolicy(base_delay=0.0, max_delay=0.0, max_retries=2, jitter=0.0)


@pytest.fixture
def part_store():
    return InMemoryPartStore()


@pytest.fixture
def search_index():
    return FakeSearchIndex()


@pytest.fixture
def repository():
    repo = FakeRepository()
    repo.add_integration()
    return repo


@pytest.fixture
def registry():
    return RunRegistry(retention_seconds=60)


@pytest.fixture
def watchdog():
    return MemoryWatchdog(ceiling_mb=10_000, check_interval=0.0, sampler=lambda: 100.0, collect=lambda: 0)


@pytest.fixture
def make_runner(repository, part_store, search_index, registry, watchdog, fast_policy):
    """Build a SyncRunner around a FakeExtractor"""

    def factory(extractor: SourceExtractor, **kwargs):
        options = dict(
            repository=repository,
            store=part_store,
            indexer=search_index,
            registry=registry,
            watchdog=watchdog,
            store_breaker=CircuitBreaker("document-store", failure_threshold=100),
            index_breaker=CircuitBreaker("search-index", failure_threshold=100),
            policy=fast_policy,
            extractor_factory=lambda config, policy: extractor,
            batch_size=2,
            parallel_files=2,
            index_pause=0.0,
        )
        options.update(kwargs)
        return SyncRunner(**options)

    return factory


@pytest.fixture
def sample_chunk():
    """The three-row file: two valid parts, one without a part number"""
    return RowChunk(
        headers=["PN", "Qty", "Price"],
        rows=[
            {"PN": "ABC-1", "Qty": "5", "Price": "10,50"},
            {"PN": "", "Qty": "2"},
            {"PN": "XYZ-2", "Qty": "-", "Price": "$20"},
        ],
    )
