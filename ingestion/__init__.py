"""
Bulk ingestion pipeline: remote sources into the document store and search index.

Modules:
    runner: SyncRunner, the per-integration sync state machine
    scheduler: SyncWorker, APScheduler-driven request polling and scheduling
    registry: RunRegistry, one-run-per-integration locks and live progress
    progress: ProgressTracker and its sinks
    repository: SyncRepository, integrations / requests / history persistence

Subpackages:
    extractors: FTP and paginated API sources (pull-based row chunks)
    transformers: Header resolution, value parsing, CSV streaming, normalization
    loaders: Document store upsert, search index bulk writes, dual-store batches
    resilience: Backoff, circuit breakers, memory watchdog, log throttling

Architecture:
    listing -> per file (bounded fan-out): download -> parse -> normalize
    -> batch -> document store upsert + search index bulk -> indexing

    Only one batch per file is held in memory at a time. A file failing
    never aborts the run; rejected credentials, unusable configuration and
    an unreachable document store do.

Usage:
    from ingestion.runner import build_runner

    runner = build_runner()
    result = await runner.run(integration_id)
    print(f"{result.records_inserted} inserted, {result.records_updated} updated")

Error Handling:
    All components raise the custom exceptions from core.exceptions; the
    RetryableError / NonRetryableError mixins decide what backoff retries.
"""

__all__ = [
    "SyncRunner",
    "SyncWorker",
    "RunRegistry",
    "ProgressTracker",
    "SyncRepository",
]
