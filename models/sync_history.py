from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from models.base import Base, RequestStatus, TriggerSource


class SyncHistory(Base):
    """
    Archived record of one finished run.

    Purpose:
    - Audit trail of every sync
    - Final counts and duration per run
    - Failure diagnostics (cause and per-file errors)
    """
    __tablename__ = "sync_history"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    integration_id = Column(
        BigInteger,
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    integration_name = Column(String(200), nullable=True)
    request_id = Column(BigInteger, nullable=True)

    status = Column(Enum(RequestStatus), nullable=False)
    triggered_by = Column(Enum(TriggerSource), nullable=False, default=TriggerSource.ADMIN)
    phase = Column(String(20), nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    files_total = Column(Integer, default=0)
    files_processed = Column(Integer, default=0)
    files_failed = Column(Integer, default=0)
    records_processed = Column(Integer, default=0)
    records_inserted = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    records_rejected = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    records_indexed = Column(Integer, default=0)
    index_errors = Column(Integer, default=0)
    # 429 responses from the search index that were retried
    index_retries = Column(Integer, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)
    errors = Column(JSONB, nullable=True)
    file_results = Column(JSONB, nullable=True)

    __table_args__ = (
        Index("idx_sync_history_integration_started", "integration_id", "started_at"),
        Index("idx_sync_history_status", "status", "started_at"),
    )
