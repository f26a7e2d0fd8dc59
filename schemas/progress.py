"""
Progress and result documents produced by a sync run
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
import json

from models.base import RequestStatus, SyncPhase


# Keep the live error list bounded during runs with thousands of bad files
MAX_PROGRESS_ERRORS = 100


class RunError(BaseModel):
    """A non-fatal (or the fatal) error recorded on a run"""
    file: Optional[str] = None
    error_type: str
    message: str
    at: datetime = Field(default_factory=datetime.utcnow)


class SyncProgress(BaseModel):
    """
    Live progress document for one run.

    Serialized with camelCase keys because external status readers poll it
    as-is. Counters only ever grow during a run; see ingestion.progress.
    """
    integration_id: int = Field(..., alias="integrationId")
    status: RequestStatus = RequestStatus.PROCESSING
    phase: SyncPhase = SyncPhase.IDLE
    files_total: int = Field(0, alias="filesTotal")
    files_processed: int = Field(0, alias="filesProcessed")
    files_failed: int = Field(0, alias="filesFailed")
    records_processed: int = Field(0, alias="recordsProcessed")
    records_inserted: int = Field(0, alias="recordsInserted")
    records_updated: int = Field(0, alias="recordsUpdated")
    records_rejected: int = Field(0, alias="recordsRejected")
    records_failed: int = Field(0, alias="recordsFailed")
    records_indexed: int = Field(0, alias="recordsIndexed")
    index_errors: int = Field(0, alias="indexErrors")
    index_retries: int = Field(0, alias="indexRetries")
    current_file: Optional[str] = Field(None, alias="currentFile")
    message: Optional[str] = None
    errors: List[RunError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow, alias="startedAt")
    updated_at: datetime = Field(default_factory=datetime.utcnow, alias="updatedAt")

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return json.loads(self.json(by_alias=True))

    class Config:
        populate_by_name = True
        use_enum_values = True


class FileResult(BaseModel):
    """Outcome of one file (or API endpoint) within a run"""
    file_name: str
    status: str = "completed"
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_rejected: int = 0
    records_failed: int = 0
    records_indexed: int = 0
    index_errors: int = 0
    index_retries: int = 0
    error: Optional[str] = None


class SyncResult(BaseModel):
    """Final summary returned by SyncRunner.run and archived as history"""
    integration_id: int
    integration_name: str
    status: RequestStatus
    phase: SyncPhase
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    files_total: int = 0
    files_processed: int = 0
    files_failed: int = 0
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_rejected: int = 0
    records_failed: int = 0
    records_indexed: int = 0
    index_errors: int = 0
    index_retries: int = 0
    error_message: Optional[str] = None
    errors: List[RunError] = Field(default_factory=list)
    file_results: List[FileResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == RequestStatus.COMPLETED

    def to_document(self) -> Dict[str, Any]:
        return json.loads(self.json())

    class Config:
        use_enum_values = True
