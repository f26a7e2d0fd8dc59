"""
Load part records into PostgreSQL with upsert logic (idempotency)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Dict, List, Tuple
import asyncio
import logging

from sqlalchemy import delete, func, literal_column, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import DatabaseConnectionError, DocumentStoreError, UpsertError
from models.part import Part
from schemas.part import PartRecord

logger = logging.getLogger(__name__)

KEY_COLUMNS = ("part_number", "integration_id", "file_name")

# Overwritten on every sync; created_at is only written on insert
MUTABLE_COLUMNS = (
    "description", "brand", "supplier", "origin", "category",
    "price", "currency", "quantity", "stock_status",
    "weight", "weight_unit", "delivery_days",
    "integration_name", "imported_at", "last_updated",
)


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


def _is_connection_failure(exc: Exception) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (OSError, asyncio.TimeoutError))


class PostgresPartStore:
    """
    Document store for part records.

    Ensures:
    - No duplicate rows on repeated runs (upsert on the part key)
    - Separate inserted / updated counts per call
    - One transaction per call, however many statement chunks it needs

    Every call opens its own session, so concurrently processed files never
    share a transaction.
    """

    def __init__(self, session_factory: async_sessionmaker, statement_size: int = None):
        self.session_factory = session_factory
        self.statement_size = statement_size or settings.STORE_STATEMENT_SIZE

    def build_upsert(self, rows: List[Dict]):
        """INSERT ... ON CONFLICT DO UPDATE ... RETURNING (xmax = 0)"""
        stmt = insert(Part).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(KEY_COLUMNS),
            set_={column: stmt.excluded[column] for column in MUTABLE_COLUMNS},
        )
        # xmax is 0 only for freshly inserted tuples
        return stmt.returning(literal_column("(xmax = 0)").label("inserted"))

    @staticmethod
    def _dedupe(records: List[PartRecord], now: datetime) -> Tuple[List[Dict], int]:
        """One row per key (last occurrence wins); returns rows and the number collapsed."""
        rows: Dict[tuple, Dict] = {}
        for record in records:
            rows[record.key] = record.to_row(now)
        return list(rows.values()), len(records) - len(rows)

    async def bulk_upsert(self, records: List[PartRecord]) -> UpsertResult:
        """
        Upsert records keyed by (part_number, integration_id, file_name).

        All statement chunks of one call share a single transaction, so a
        failed call leaves nothing behind and can be retried as a whole.

        Args:
            records: Validated part records

        Returns:
            UpsertResult with inserted and updated counts

        Raises:
            DatabaseConnectionError: Connection-level failure (retryable)
            UpsertError: The statement itself was rejected
        """
        result = UpsertResult()
        if not records:
            return result

        rows, collapsed = self._dedupe(records, datetime.utcnow())
        result.updated = collapsed
        try:
            async with self.session_factory() as session:
                for start in range(0, len(rows), self.statement_size):
                    statement = self.build_upsert(rows[start:start + self.statement_size])
                    flags = (await session.execute(statement)).scalars().all()

                    inserted = sum(1 for flag in flags if flag)
                    result.inserted += inserted
                    result.updated += len(flags) - inserted
                await session.commit()
        except Exception as e:
            context = {
                "operation": "UPSERT",
                "table_name": Part.__tablename__,
                "batch_size": len(records),
                "integration_id": records[0].integration_id,
                "file_name": records[0].file_name,
            }
            if _is_connection_failure(e):
                raise DatabaseConnectionError(
                    "Lost connection to document store during upsert",
                    context=context,
                    original_exception=e
                )
            if isinstance(e, SQLAlchemyError):
                raise UpsertError(
                    "Bulk upsert rejected by document store",
                    context=context,
                    original_exception=e
                )
            raise

        logger.debug(
            f"Upserted {len(records)} parts: {result.inserted} inserted, {result.updated} updated"
        )
        return result

    async def delete_by_integration(self, integration_id: int) -> int:
        """Remove every part owned by an integration. Returns rows deleted."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(Part).where(Part.integration_id == integration_id)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise DocumentStoreError(
                "Failed to delete parts for integration",
                context={"operation": "DELETE", "table_name": Part.__tablename__, "integration_id": integration_id},
                original_exception=e
            )
        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} parts for integration {integration_id}")
        return deleted

    async def iter_records(self, integration_id: int, page_size: int = None) -> AsyncIterator[List[PartRecord]]:
        """
        Stored parts of an integration, one page of PartRecords at a time.

        Pages are keyed on the primary key, so rows written while paging never
        shift the window. Each page uses its own short session.
        """
        page_size = page_size or self.statement_size
        last_id = 0
        while True:
            try:
                async with self.session_factory() as session:
                    result = await session.execute(
                        select(Part)
                        .where(Part.integration_id == integration_id, Part.id > last_id)
                        .order_by(Part.id)
                        .limit(page_size)
                    )
                    parts = result.scalars().all()
            except SQLAlchemyError as e:
                raise DocumentStoreError(
                    "Failed to read parts for integration",
                    context={"operation": "SELECT", "table_name": Part.__tablename__,
                             "integration_id": integration_id, "after_id": last_id},
                    original_exception=e
                )

            if not parts:
                return
            last_id = parts[-1].id
            yield [PartRecord.from_part(part) for part in parts]
            if len(parts) < page_size:
                return

    async def count_by_integration(self, integration_id: int) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Part).where(Part.integration_id == integration_id)
            )
            return result.scalar_one()
