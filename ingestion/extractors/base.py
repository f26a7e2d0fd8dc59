"""
Abstract base class for remote sources
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from core.exceptions import SyncError


@dataclass
class FileDescriptor:
    """One unit of work offered by a source (a remote file or an API endpoint)"""
    name: str
    size: Optional[int] = None
    modified: Optional[datetime] = None


@dataclass
class RowChunk:
    """A bounded slice of raw rows sharing one header set"""
    headers: Optional[List[str]]
    rows: List[Dict[str, Any]] = field(default_factory=list)

    def __len__(self):
        return len(self.rows)


class SourceExtractor(ABC):
    """
    Abstract base class for all sources.

    Extractors are stateless between calls: every listing and every
    download opens its own connection and closes it before returning.

    The orchestrator drives them pull-style: it asks ``iter_row_chunks``
    for the next chunk only after the previous one has been written, which
    is what bounds memory during a run.
    """

    source_type: str = "unknown"

    @abstractmethod
    async def list_files(self) -> List[FileDescriptor]:
        """
        List the units of work currently available.

        Raises:
            AuthenticationError: Credentials rejected (fatal)
            NetworkError: Connection-level failure (retryable)
        """
        pass

    @abstractmethod
    def iter_row_chunks(self, descriptor: FileDescriptor) -> AsyncIterator[RowChunk]:
        """Yield raw rows of one unit of work, one bounded chunk at a time."""
        pass

    async def close(self):
        """Release anything held between calls (nothing by default)."""
        return None

    async def test_connection(self) -> Dict[str, Any]:
        """Try a listing and report the outcome instead of raising."""
        try:
            files = await self.list_files()
        except SyncError as e:
            return {"success": False, "message": e.message, "error": type(e).__name__}
        finally:
            await self.close()
        return {"success": True, "message": "Connection successful", "files_found": len(files)}
