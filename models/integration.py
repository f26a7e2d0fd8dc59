from sqlalchemy import Column, BigInteger, String, Boolean, Integer, Enum, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, timedelta
from typing import Optional
from models.base import Base, IntegrationType, IntegrationStatus, SyncFrequency


# Minimum time between two scheduled syncs
SYNC_INTERVALS = {
    SyncFrequency.HOURLY: timedelta(hours=1),
    SyncFrequency.SIX_HOURS: timedelta(hours=6),
    SyncFrequency.TWELVE_HOURS: timedelta(hours=12),
    SyncFrequency.DAILY: timedelta(days=1),
    SyncFrequency.WEEKLY: timedelta(days=7),
    SyncFrequency.MONTHLY: timedelta(days=30),
}


class Integration(Base):
    """
    One configured external source plus its sync state.

    Connection settings live in JSONB documents (``ftp_config`` /
    ``api_config``) and are validated into schemas.integration models before
    a run. Run state (status, last_sync summary, cumulative counters) is only
    written at the start and end of a run, by the single active run.
    """
    __tablename__ = "integrations"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    type = Column(Enum(IntegrationType), nullable=False)
    status = Column(Enum(IntegrationStatus), nullable=False, default=IntegrationStatus.ACTIVE, index=True)
    enabled = Column(Boolean, nullable=False, default=True)

    # Source configuration
    ftp_config = Column(JSONB, nullable=True)
    api_config = Column(JSONB, nullable=True)
    column_mapping = Column(JSONB, nullable=False, default=dict)
    default_currency = Column(String(3), nullable=False, default="USD")

    # Scheduling
    sync_frequency = Column(Enum(SyncFrequency), nullable=False, default=SyncFrequency.MANUAL)

    # Last run summary
    last_sync_at = Column(DateTime, nullable=True)
    last_sync = Column(JSONB, nullable=True)

    # Cumulative statistics
    total_records = Column(Integer, nullable=False, default=0)
    last_sync_records = Column(Integer, nullable=False, default=0)
    total_syncs = Column(Integer, nullable=False, default=0)
    successful_syncs = Column(Integer, nullable=False, default=0)
    failed_syncs = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_integration_schedule", "enabled", "sync_frequency"),
    )

    def is_sync_due(self, now: Optional[datetime] = None) -> bool:
        """Return True when a scheduled sync should be enqueued."""
        if not self.enabled or self.sync_frequency in (None, SyncFrequency.MANUAL):
            return False
        if self.status == IntegrationStatus.SYNCING:
            return False
        if self.last_sync_at is None:
            return True

        now = now or datetime.utcnow()
        interval = SYNC_INTERVALS.get(self.sync_frequency, timedelta(days=1))
        return now - self.last_sync_at >= interval

    def __repr__(self):
        return f"<Integration(id={self.id}, name={self.name}, type={self.type})>"
