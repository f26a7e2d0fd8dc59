"""
Sync trigger and status endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from api.dependencies import get_registry, get_repository, require_api_key
from core.exceptions import IntegrationNotFoundError, SyncInProgressError
from ingestion.registry import RunRegistry
from ingestion.repository import SyncRepository
from ingestion.runner import check_connection
from models.base import TriggerSource
from schemas.api import (
    ConnectionTestResponse,
    SyncHistoryInfo,
    SyncHistoryResponse,
    SyncStatusResponse,
    SyncTriggerResponse,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/integrations", tags=["Sync"])


@router.post(
    "/{integration_id}/sync",
    response_model=SyncTriggerResponse,
    status_code=202,
    dependencies=[Depends(require_api_key)],
)
async def trigger_sync(
    integration_id: int,
    repository: SyncRepository = Depends(get_repository),
):
    """
    Queue a sync for the worker.

    Returns 409 while a request for the integration is pending or running.
    """
    try:
        request = await repository.create_request(integration_id, TriggerSource.API)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=e.message)

    return SyncTriggerResponse(
        request_id=request.id,
        integration_id=request.integration_id,
        status=request.status,
        triggered_by=request.triggered_by,
        created_at=request.created_at,
    )


@router.get("/{integration_id}/sync", response_model=SyncStatusResponse)
async def get_sync_status(
    integration_id: int,
    repository: SyncRepository = Depends(get_repository),
    registry: RunRegistry = Depends(get_registry),
):
    """
    Current sync progress of an integration.

    Lookup order: live progress of a run in this process, progress mirrored
    on the active (or just finished) sync request, then the last archived run.
    """
    try:
        await repository.get_integration(integration_id)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    history = await repository.latest_history(integration_id)
    last_run = SyncHistoryInfo.from_orm(history) if history is not None else None

    live = registry.get_progress(integration_id)
    if live is not None:
        return SyncStatusResponse(
            integration_id=integration_id, source="live", progress=live.to_document(), last_run=last_run
        )

    request = await repository.latest_request(integration_id)
    if request is not None and request.progress:
        return SyncStatusResponse(
            integration_id=integration_id, source="request", progress=request.progress, last_run=last_run
        )

    return SyncStatusResponse(
        integration_id=integration_id,
        source="history" if last_run is not None else "none",
        last_run=last_run,
    )


@router.get("/{integration_id}/history", response_model=SyncHistoryResponse)
async def get_sync_history(
    integration_id: int,
    limit: int = Query(20, ge=1, le=100, description="Number of recent runs to return"),
    repository: SyncRepository = Depends(get_repository),
):
    """Most recent archived runs, newest first"""
    try:
        await repository.get_integration(integration_id)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    runs = await repository.list_history(integration_id, limit=limit)
    return SyncHistoryResponse(
        integration_id=integration_id,
        runs=[SyncHistoryInfo.from_orm(run) for run in runs],
    )


@router.post(
    "/{integration_id}/test-connection",
    response_model=ConnectionTestResponse,
    dependencies=[Depends(require_api_key)],
)
async def test_integration_connection(
    integration_id: int,
    repository: SyncRepository = Depends(get_repository),
):
    """
    Check the integration's source with its stored settings.

    Source and configuration problems are reported in the body with a 200;
    only an unknown integration is an HTTP error.
    """
    try:
        integration = await repository.get_integration(integration_id)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    outcome = await check_connection(integration)
    return ConnectionTestResponse(integration_id=integration_id, **outcome)
