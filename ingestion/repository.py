"""
Persistence of integrations, sync requests and run history.

Every method opens its own short session from the injected factory, so the
runner, the worker and the API can share one repository without sharing a
transaction.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func, null, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import DocumentStoreError, IntegrationNotFoundError, SyncInProgressError
from models.base import IntegrationStatus, RequestStatus, SyncPhase, TriggerSource
from models.integration import Integration
from models.part import Part
from models.sync_history import SyncHistory
from models.sync_request import SyncRequest
from schemas.progress import SyncResult

logger = logging.getLogger(__name__)

ACTIVE_REQUEST_STATUSES = (RequestStatus.PENDING, RequestStatus.PROCESSING)
TERMINAL_REQUEST_STATUSES = (RequestStatus.COMPLETED, RequestStatus.FAILED)


class SyncRepository:
    """Database access for the orchestrator"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # --------------------------------------------------
    # Integrations
    # --------------------------------------------------

    async def get_integration(self, integration_id: int) -> Integration:
        """
        Raises:
            IntegrationNotFoundError: No integration with this id
        """
        async with self.session_factory() as session:
            integration = await session.get(Integration, integration_id)
        if integration is None:
            raise IntegrationNotFoundError(
                f"Integration {integration_id} not found",
                context={"integration_id": integration_id}
            )
        return integration

    async def list_integrations(self) -> List[Integration]:
        async with self.session_factory() as session:
            result = await session.execute(select(Integration).order_by(Integration.id))
            return list(result.scalars().all())

    async def mark_syncing(self, integration_id: int, force: bool = False):
        """
        Claim the integration for a run, across processes.

        The status only flips when the integration is not already syncing, so
        a worker and a foreground run can never process it at the same time.

        Args:
            force: Take over an integration left in syncing by a process that
                died mid-run

        Raises:
            SyncInProgressError: Another process is syncing the integration
        """
        stmt = (
            update(Integration)
            .where(Integration.id == integration_id)
            .values(status=IntegrationStatus.SYNCING, updated_at=datetime.utcnow())
        )
        if not force:
            stmt = stmt.where(Integration.status != IntegrationStatus.SYNCING)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if not result.rowcount:
            raise SyncInProgressError(
                f"Sync already in progress for integration {integration_id} in another process",
                context={"integration_id": integration_id}
            )

    async def due_integrations(self, now: Optional[datetime] = None) -> List[Integration]:
        """Enabled, scheduled integrations whose interval has elapsed."""
        now = now or datetime.utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Integration).where(Integration.enabled.is_(True))
            )
            integrations = result.scalars().all()
        return [integration for integration in integrations if integration.is_sync_due(now)]

    async def record_run(
        self,
        result: SyncResult,
        request_id: Optional[int] = None,
        triggered_by: TriggerSource = TriggerSource.ADMIN,
    ) -> SyncHistory:
        """
        Archive a finished run and fold it into the integration's statistics.

        Both writes share one transaction: the history row and the
        integration summary never disagree.

        Raises:
            DocumentStoreError: The write failed
        """
        succeeded = result.succeeded
        document = result.to_document()
        history = SyncHistory(
            integration_id=result.integration_id,
            integration_name=result.integration_name,
            request_id=request_id,
            status=RequestStatus(result.status),
            triggered_by=TriggerSource(triggered_by),
            phase=SyncPhase(result.phase).value,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration_seconds=result.duration_seconds,
            files_total=result.files_total,
            files_processed=result.files_processed,
            files_failed=result.files_failed,
            records_processed=result.records_processed,
            records_inserted=result.records_inserted,
            records_updated=result.records_updated,
            records_rejected=result.records_rejected,
            records_failed=result.records_failed,
            records_indexed=result.records_indexed,
            index_errors=result.index_errors,
            index_retries=result.index_retries,
            error_message=result.error_message,
            errors=document["errors"],
            file_results=document["file_results"],
        )

        last_sync = {
            "status": result.status,
            "started_at": result.started_at.isoformat(),
            "completed_at": result.completed_at.isoformat(),
            "duration_seconds": result.duration_seconds,
            "files_processed": result.files_processed,
            "files_failed": result.files_failed,
            "records_inserted": result.records_inserted,
            "records_updated": result.records_updated,
            "records_rejected": result.records_rejected,
            "records_indexed": result.records_indexed,
            "index_errors": result.index_errors,
            "index_retries": result.index_retries,
            "error": result.error_message,
        }

        try:
            async with self.session_factory() as session:
                session.add(history)
                total_records = (await session.execute(
                    select(func.count()).select_from(Part).where(Part.integration_id == result.integration_id)
                )).scalar_one()

                values: Dict[str, Any] = {
                    "status": IntegrationStatus.ACTIVE if succeeded else IntegrationStatus.ERROR,
                    "last_sync_at": result.completed_at,
                    "last_sync": last_sync,
                    "total_records": total_records,
                    "last_sync_records": result.records_inserted + result.records_updated,
                    "total_syncs": Integration.total_syncs + 1,
                    "updated_at": datetime.utcnow(),
                }
                if succeeded:
                    values["successful_syncs"] = Integration.successful_syncs + 1
                else:
                    values["failed_syncs"] = Integration.failed_syncs + 1

                await session.execute(
                    update(Integration).where(Integration.id == result.integration_id).values(**values)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise DocumentStoreError(
                "Failed to record sync history",
                context={"integration_id": result.integration_id, "operation": "INSERT",
                         "table_name": SyncHistory.__tablename__},
                original_exception=e
            )

        logger.info(
            f"Recorded {result.status} run for integration {result.integration_id} "
            f"({result.records_inserted} inserted, {result.records_updated} updated)"
        )
        return history

    async def reset_integration_stats(self, integration_id: int):
        async with self.session_factory() as session:
            await session.execute(
                update(Integration)
                .where(Integration.id == integration_id)
                .values(total_records=0, last_sync_records=0, updated_at=datetime.utcnow())
            )
            await session.commit()

    async def latest_history(self, integration_id: int) -> Optional[SyncHistory]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncHistory)
                .where(SyncHistory.integration_id == integration_id)
                .order_by(SyncHistory.started_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def list_history(self, integration_id: int, limit: int = 20) -> List[SyncHistory]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncHistory)
                .where(SyncHistory.integration_id == integration_id)
                .order_by(SyncHistory.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # --------------------------------------------------
    # Sync requests
    # --------------------------------------------------

    async def active_request(self, integration_id: int) -> Optional[SyncRequest]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRequest)
                .where(
                    SyncRequest.integration_id == integration_id,
                    SyncRequest.status.in_(ACTIVE_REQUEST_STATUSES),
                )
                .order_by(SyncRequest.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def latest_request(self, integration_id: int) -> Optional[SyncRequest]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRequest)
                .where(SyncRequest.integration_id == integration_id)
                .order_by(SyncRequest.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def create_request(
        self,
        integration_id: int,
        triggered_by: TriggerSource = TriggerSource.ADMIN,
    ) -> SyncRequest:
        """
        Queue a sync for the worker.

        Raises:
            IntegrationNotFoundError: Unknown integration
            SyncInProgressError: A request for this integration is already
                pending or processing
        """
        async with self.session_factory() as session:
            integration = await session.get(Integration, integration_id)
            if integration is None:
                raise IntegrationNotFoundError(
                    f"Integration {integration_id} not found",
                    context={"integration_id": integration_id}
                )

            existing = (await session.execute(
                select(SyncRequest.id).where(
                    SyncRequest.integration_id == integration_id,
                    SyncRequest.status.in_(ACTIVE_REQUEST_STATUSES),
                ).limit(1)
            )).scalar_one_or_none()
            if existing is not None:
                raise SyncInProgressError(
                    f"Sync already queued or running for integration {integration_id}",
                    context={"integration_id": integration_id, "request_id": existing}
                )

            request = SyncRequest(
                integration_id=integration_id,
                status=RequestStatus.PENDING,
                triggered_by=triggered_by,
                created_at=datetime.utcnow(),
            )
            session.add(request)
            await session.commit()
            await session.refresh(request)

        logger.info(f"Queued sync request {request.id} for integration {integration_id} ({triggered_by})")
        return request

    async def claim_next_request(self) -> Optional[SyncRequest]:
        """Move the oldest pending request to processing and return it."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncRequest)
                .where(SyncRequest.status == RequestStatus.PENDING)
                .order_by(SyncRequest.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            request = result.scalars().first()
            if request is None:
                return None

            request.status = RequestStatus.PROCESSING
            request.started_at = datetime.utcnow()
            await session.commit()
            await session.refresh(request)
            return request

    async def update_request_progress(self, request_id: int, progress: Dict[str, Any]):
        async with self.session_factory() as session:
            await session.execute(
                update(SyncRequest).where(SyncRequest.id == request_id).values(progress=progress)
            )
            await session.commit()

    async def finish_request(
        self,
        request_id: int,
        status: RequestStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        async with self.session_factory() as session:
            await session.execute(
                update(SyncRequest)
                .where(SyncRequest.id == request_id)
                .values(
                    status=RequestStatus(status),
                    result=result,
                    error=error,
                    completed_at=datetime.utcnow(),
                )
            )
            await session.commit()

    async def fail_abandoned_requests(self) -> int:
        """
        Fail requests left in processing by a worker that died mid-run.

        Only integrations of those requests are released; a foreground run
        holds no request and keeps its claim.

        Only safe to call before this worker starts claiming requests.
        """
        abandoned_integrations = (
            select(SyncRequest.integration_id)
            .where(SyncRequest.status == RequestStatus.PROCESSING)
        )
        async with self.session_factory() as session:
            await session.execute(
                update(Integration)
                .where(
                    Integration.status == IntegrationStatus.SYNCING,
                    Integration.id.in_(abandoned_integrations),
                )
                .values(status=IntegrationStatus.ERROR)
            )
            result = await session.execute(
                update(SyncRequest)
                .where(SyncRequest.status == RequestStatus.PROCESSING)
                .values(
                    status=RequestStatus.FAILED,
                    error="Worker stopped before the sync finished",
                    completed_at=datetime.utcnow(),
                )
            )
            await session.commit()
        abandoned = result.rowcount or 0
        if abandoned:
            logger.warning(f"Marked {abandoned} abandoned sync requests as failed")
        return abandoned

    async def purge_stale_progress(self, retention_seconds: float) -> int:
        """Drop the live progress document of requests finished longer ago than the retention window."""
        cutoff = datetime.utcnow() - timedelta(seconds=retention_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncRequest)
                .where(
                    SyncRequest.status.in_(TERMINAL_REQUEST_STATUSES),
                    SyncRequest.completed_at < cutoff,
                    SyncRequest.progress.isnot(None),
                )
                .values(progress=null())
            )
            await session.commit()
        return result.rowcount or 0
