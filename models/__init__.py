"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums
    part: Canonical part records (the document store)
    integration: External source configuration and sync state
    sync_request: Queued / running sync requests with live progress
    sync_history: Archived runs with final counts

Usage:
    from models import Part, Integration, SyncRequest, SyncHistory
    from models.base import RequestStatus, SyncPhase

Relationships:
    - Integration → Part (one-to-many, cascade on delete)
    - Integration → SyncRequest (one-to-many)
    - Integration → SyncHistory (one-to-many)
"""

from models.base import Base
from models.part import Part
from models.integration import Integration
from models.sync_request import SyncRequest
from models.sync_history import SyncHistory

__all__ = [
    "Base",
    "Part",
    "Integration",
    "SyncRequest",
    "SyncHistory",
]
