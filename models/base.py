from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class IntegrationType(str, enum.Enum):
    """Kind of remote source an integration pulls from"""
    FTP = "ftp"
    API = "api"


class IntegrationStatus(str, enum.Enum):
    """Integration lifecycle status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    SYNCING = "syncing"


class SyncFrequency(str, enum.Enum):
    """How often the worker enqueues a scheduled sync"""
    MANUAL = "manual"
    HOURLY = "hourly"
    SIX_HOURS = "6hours"
    TWELVE_HOURS = "12hours"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RequestStatus(str, enum.Enum):
    """Sync request / run status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerSource(str, enum.Enum):
    """Who asked for a sync"""
    SCHEDULE = "schedule"
    ADMIN = "admin"
    API = "api"


class SyncPhase(str, enum.Enum):
    """Orchestrator state machine phases"""
    IDLE = "idle"
    LISTING = "listing"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    IMPORTING = "importing"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"


class StockStatus(str, enum.Enum):
    """Stock status derived from quantity"""
    IN_STOCK = "in-stock"
    LOW_STOCK = "low-stock"
    OUT_OF_STOCK = "out-of-stock"
    ON_ORDER = "on-order"
    UNKNOWN = "unknown"
