"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, root_validator, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import RequestStatus, TriggerSource


# ============================================================================
# Health Check Schemas
# ============================================================================

class BreakerInfo(BaseModel):
    """Circuit breaker state for health check"""
    name: str
    state: str
    consecutive_failures: int = 0
    cooldown_seconds: float = 0.0
    retry_in: float = 0.0
    times_opened: int = 0
    rejected_calls: int = 0


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("unknown", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    search_index_connected: bool
    breakers: List[BreakerInfo] = Field(default_factory=list)
    memory: Dict[str, Any] = Field(default_factory=dict)
    worker_running: bool = False
    active_syncs: List[int] = Field(default_factory=list)

    @root_validator(skip_on_failure=True)
    def determine_status(cls, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            values["status"] = "unhealthy"
        elif not values.get("search_index_connected", False):
            values["status"] = "degraded"
        elif any(breaker.state == "open" for breaker in values.get("breakers", [])):
            values["status"] = "degraded"
        elif not values.get("memory", {}).get("safe", True):
            values["status"] = "degraded"
        else:
            values["status"] = "healthy"
        return values

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "search_index_connected": True,
                "breakers": [
                    {"name": "document-store", "state": "closed", "consecutive_failures": 0,
                     "cooldown_seconds": 30.0, "retry_in": 0.0, "times_opened": 0, "rejected_calls": 0}
                ],
                "memory": {"rss_mb": 412.3, "ceiling_mb": 2048, "safe": True},
                "worker_running": True,
                "active_syncs": [3]
            }
        }


# ============================================================================
# Sync Schemas
# ============================================================================

class SyncTriggerResponse(BaseModel):
    """Response to a sync trigger: the queued request"""
    request_id: int
    integration_id: int
    status: RequestStatus
    triggered_by: TriggerSource
    created_at: datetime

    class Config:
        use_enum_values = True


class SyncHistoryInfo(BaseModel):
    """Archived run summary"""
    run_id: str
    status: RequestStatus
    triggered_by: TriggerSource
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
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

    @validator("run_id", pre=True)
    def stringify_run_id(cls, v):
        return str(v)

    class Config:
        from_attributes = True
        use_enum_values = True


class SyncStatusResponse(BaseModel):
    """
    Status of an integration's sync.

    ``source`` says where ``progress`` came from: ``live`` (this process is
    running the sync), ``request`` (progress mirrored by the worker),
    ``history`` (no active run; last archived run only) or ``none``.
    """
    integration_id: int
    source: str
    progress: Optional[Dict[str, Any]] = None
    last_run: Optional[SyncHistoryInfo] = None


class SyncHistoryResponse(BaseModel):
    """Most recent archived runs of an integration"""
    integration_id: int
    runs: List[SyncHistoryInfo] = Field(default_factory=list)


class ConnectionTestResponse(BaseModel):
    """Outcome of a source connection check"""
    integration_id: int
    success: bool
    message: str
    error: Optional[str] = None
    files_found: Optional[int] = None
    sample_records: Optional[int] = None
