"""
Run registry: which integrations are syncing right now, and their progress.

One registry lives per worker process and is handed to the runner and the
status API explicitly. It owns one asyncio.Lock per integration; claiming a
lock that is already held is rejected rather than queued.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional
import logging

from core.config import settings
from core.exceptions import SyncInProgressError
from schemas.progress import SyncProgress

logger = logging.getLogger(__name__)


class RunRegistry:
    """
    Mutual exclusion and live progress per integration.

    Progress of a finished run stays readable for ``retention_seconds`` so
    pollers see the terminal state, then disappears; after that the run
    history is authoritative.
    """

    def __init__(self, retention_seconds: float = None, clock: Callable[[], float] = time.monotonic):
        self.retention_seconds = (
            settings.PROGRESS_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        )
        self._clock = clock
        self._locks: Dict[int, asyncio.Lock] = {}
        self._progress: Dict[int, SyncProgress] = {}
        self._expires_at: Dict[int, float] = {}

    def is_syncing(self, integration_id: int) -> bool:
        lock = self._locks.get(integration_id)
        return lock is not None and lock.locked()

    def active_integrations(self) -> List[int]:
        return [integration_id for integration_id, lock in self._locks.items() if lock.locked()]

    @asynccontextmanager
    async def claim(self, integration_id: int):
        """
        Hold the integration's run lock for the duration of the block.

        Raises:
            SyncInProgressError: Another run holds the lock
        """
        lock = self._locks.setdefault(integration_id, asyncio.Lock())
        if lock.locked():
            raise SyncInProgressError(
                f"Sync already in progress for integration {integration_id}",
                context={"integration_id": integration_id}
            )
        await lock.acquire()
        self._expires_at.pop(integration_id, None)
        try:
            yield
        finally:
            lock.release()

    def publish(self, progress: SyncProgress):
        self._progress[progress.integration_id] = progress

    def get_progress(self, integration_id: int) -> Optional[SyncProgress]:
        self.purge_expired()
        return self._progress.get(integration_id)

    def retire(self, integration_id: int):
        """Schedule the progress snapshot for removal after the retention window."""
        self._expires_at[integration_id] = self._clock() + self.retention_seconds

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [i for i, at in self._expires_at.items() if at <= now and not self.is_syncing(i)]
        for integration_id in expired:
            self._progress.pop(integration_id, None)
            self._expires_at.pop(integration_id, None)
            lock = self._locks.get(integration_id)
            if lock is not None and not lock.locked():
                del self._locks[integration_id]
        return len(expired)
