"""
Run the sync worker or a one-off command against one integration.

Usage:
    python scripts/run_sync.py worker
    python scripts/run_sync.py sync <integration_id> [--force]
    python scripts/run_sync.py clear <integration_id>
    python scripts/run_sync.py reindex <integration_id>
    python scripts/run_sync.py check <integration_id>
"""

import argparse
import asyncio
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.exceptions import SyncError
from core.logging import setup_logging
from ingestion.runner import build_runner
from ingestion.scheduler import build_worker
from models.base import TriggerSource

logger = logging.getLogger(__name__)


async def run_worker() -> int:
    """Run the worker until SIGINT/SIGTERM, then drain the active sync."""
    worker = build_worker()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await worker.start()
    await stop.wait()
    logger.info("Shutdown requested")
    await worker.stop()
    return 0


async def run_once(integration_id: int, force: bool = False) -> int:
    runner = build_runner()
    try:
        result = await runner.run(integration_id, triggered_by=TriggerSource.ADMIN, force=force)
    except SyncError as e:
        logger.error(f"Sync not started: {e}")
        return 1
    finally:
        await runner.indexer.close()

    logger.info(
        f"Sync {result.status}: {result.files_processed}/{result.files_total} files, "
        f"{result.records_inserted} inserted, {result.records_updated} updated, "
        f"{result.records_rejected} rejected, {result.index_errors} index errors"
    )
    if result.error_message:
        logger.error(f"Cause: {result.error_message}")
    return 0 if result.succeeded else 1


async def clear(integration_id: int) -> int:
    runner = build_runner()
    try:
        outcome = await runner.clear_integration_data(integration_id)
    except SyncError as e:
        logger.error(f"Clear failed: {e}")
        return 1
    finally:
        await runner.indexer.close()

    logger.info(
        f"Cleared integration {integration_id}: {outcome['parts_deleted']} parts, "
        f"{outcome['documents_deleted']} index documents"
    )
    return 0


async def reindex(integration_id: int) -> int:
    runner = build_runner()
    try:
        outcome = await runner.reindex_integration(integration_id)
    except SyncError as e:
        logger.error(f"Re-index failed: {e}")
        return 1
    finally:
        await runner.indexer.close()

    logger.info(
        f"Re-indexed integration {integration_id}: {outcome['documents_indexed']}/{outcome['records']} "
        f"documents, {outcome['index_errors']} errors"
    )
    return 0 if not outcome["index_errors"] else 1


async def check(integration_id: int) -> int:
    runner = build_runner()
    try:
        outcome = await runner.test_connection(integration_id)
    except SyncError as e:
        logger.error(f"Connection check failed: {e}")
        return 1
    finally:
        await runner.indexer.close()

    if not outcome["success"]:
        logger.error(f"Connection to integration {integration_id} failed: {outcome['message']}")
        return 1
    logger.info(f"Connection to integration {integration_id} ok, {outcome.get('files_found', 0)} files found")
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Parts sync pipeline")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("worker", help="Start the long-running sync worker")

    sync_parser = commands.add_parser("sync", help="Sync one integration in the foreground")
    sync_parser.add_argument("integration_id", type=int)
    sync_parser.add_argument(
        "--force", action="store_true",
        help="Take over an integration left in syncing by a process that died"
    )

    clear_parser = commands.add_parser("clear", help="Delete all parts of one integration")
    clear_parser.add_argument("integration_id", type=int)

    reindex_parser = commands.add_parser("reindex", help="Rebuild the search index of one integration from PostgreSQL")
    reindex_parser.add_argument("integration_id", type=int)

    check_parser = commands.add_parser("check", help="Test the source connection of one integration")
    check_parser.add_argument("integration_id", type=int)

    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging()

    if args.command == "worker":
        return asyncio.run(run_worker())
    if args.command == "sync":
        return asyncio.run(run_once(args.integration_id, force=args.force))
    if args.command == "reindex":
        return asyncio.run(reindex(args.integration_id))
    if args.command == "check":
        return asyncio.run(check(args.integration_id))
    return asyncio.run(clear(args.integration_id))


if __name__ == "__main__":
    sys.exit(main())
