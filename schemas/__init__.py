"""
Pydantic schemas for data validation and serialization.

Schemas:
    part: PartRecord, the normalized unit written to both stores
    integration: Validated integration connection settings
    progress: Live progress and final result documents of a run
    api: Status API request/response schemas

Usage:
    from schemas import PartRecord, IntegrationConfig
    from schemas.api import HealthCheckResponse
"""

from schemas.part import PartRecord
from schemas.integration import IntegrationConfig
from schemas.progress import SyncProgress, SyncResult

__all__ = [
    "PartRecord",
    "IntegrationConfig",
    "SyncProgress",
    "SyncResult",
]
