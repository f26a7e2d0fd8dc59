from sqlalchemy import Column, BigInteger, Enum, DateTime, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, RequestStatus, TriggerSource


class SyncRequest(Base):
    """
    A queued or running unit of work for the worker.

    Status flow: pending -> processing -> completed | failed.
    ``progress`` holds the live progress document while the run is active and
    is cleared once the retention window after completion has passed; from
    then on the matching sync_history row is authoritative.
    """
    __tablename__ = "sync_requests"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    integration_id = Column(
        BigInteger,
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status = Column(Enum(RequestStatus), nullable=False, default=RequestStatus.PENDING)
    triggered_by = Column(Enum(TriggerSource), nullable=False, default=TriggerSource.ADMIN)

    progress = Column(JSONB, nullable=True)
    result = Column(JSONB, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_sync_request_status_created", "status", "created_at"),
    )
