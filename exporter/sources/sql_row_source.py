"""
Row source backed by the upstream application tables (SQLAlchemy Core)
"""

from typing import Any, List, Optional
from sqlalchemy import MetaData, Table, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.exceptions import StorageError
from exporter.registry import TableRegistry, build_select_fields
from exporter.sources.base import PartitionDate, RowSource, partition_key
from models.base import ReportStatus
from models.event_table import EVENT_TIME_COLUMN, PARTITION_COLUMN, event_table
from schemas.envelope import RawRecord
from schemas.table import TableSchema
import logging

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 500

# Rows left PROCESSING by an interrupted page are picked up again on resume
AWAITING_DELIVERY = (ReportStatus.PENDING, ReportStatus.PROCESSING)


class SqlRowSource(RowSource):
    """
    Read and update event rows with one short transaction per operation.

    Every table name is resolved through the registry first, so an unknown
    table raises UnknownTableError before any SQL is issued.
    """

    def __init__(self, session_factory: async_sessionmaker, registry: TableRegistry):
        self.session_factory = session_factory
        self.registry = registry
        self.metadata = MetaData()

    def _resolve(self, table_name: str):
        schema = self.registry.lookup(table_name)
        return schema, event_table(schema, self.metadata)

    async def count_pending(self, table_name: str) -> int:
        _, table = self._resolve(table_name)
        stmt = (
            select(func.count())
            .select_from(table)
            .where(table.c.report_status.in_([int(s) for s in AWAITING_DELIVERY]))
        )
        return await self._scalar(stmt, table_name)

    async def fetch_pending(self, table_name: str, after_id: int, limit: int) -> List[RawRecord]:
        schema, table = self._resolve(table_name)
        stmt = (
            self._select_records(schema, table)
            .where(
                table.c.id > after_id,
                table.c.report_status.in_([int(s) for s in AWAITING_DELIVERY]),
            )
            .order_by(table.c.id)
            .limit(limit)
        )
        records = await self._fetch(stmt, schema)
        logger.debug(f"Fetched {len(records)} records from table {table_name} (lastId={after_id})")
        return records

    async def count_by_date(self, table_name: str, dt: PartitionDate) -> int:
        _, table = self._resolve(table_name)
        stmt = (
            select(func.count())
            .select_from(table)
            .where(table.c[PARTITION_COLUMN] == partition_key(dt))
        )
        return await self._scalar(stmt, table_name)

    async def fetch_by_date(self, table_name: str, dt: PartitionDate, limit: int, offset: int) -> List[RawRecord]:
        schema, table = self._resolve(table_name)
        stmt = (
            self._select_records(schema, table)
            .where(table.c[PARTITION_COLUMN] == partition_key(dt))
            .order_by(table.c.id)
            .limit(limit)
            .offset(offset)
        )
        return await self._fetch(stmt, schema)

    async def fetch_failed(self, table_name: str, max_retry: int, limit: int) -> List[RawRecord]:
        schema, table = self._resolve(table_name)
        stmt = (
            self._select_records(schema, table)
            .where(
                table.c.report_status == int(ReportStatus.FAILED),
                table.c.retry_count < max_retry,
            )
            .order_by(table.c.id)
            .limit(limit)
        )
        return await self._fetch(stmt, schema)

    async def set_status(self, table_name: str, ids: List[int], status: ReportStatus) -> None:
        if not ids:
            return

        _, table = self._resolve(table_name)
        stmt = (
            update(table)
            .where(table.c.id.in_(ids))
            .values(report_status=int(status), updated_at=func.now())
        )
        updated = await self._write(stmt, table_name)
        logger.debug(f"Updated {updated} records in table {table_name} to status {status.name}")

    async def set_status_with_error(
        self, table_name: str, record_id: int, status: ReportStatus, message: Optional[str]
    ) -> None:
        _, table = self._resolve(table_name)
        stmt = (
            update(table)
            .where(table.c.id == record_id)
            .values(
                report_status=int(status),
                error_msg=_truncate(message, ERROR_MESSAGE_MAX_LENGTH),
                retry_count=table.c.retry_count + 1,
                updated_at=func.now(),
            )
        )
        await self._write(stmt, table_name)

    @staticmethod
    def _select_records(schema: TableSchema, table: Table):
        columns = [table.c[name] for name in build_select_fields(schema)]
        return select(*columns, table.c.retry_count)

    async def _fetch(self, stmt, schema: TableSchema) -> List[RawRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to fetch records from table {schema.table_name}",
                context={"operation": "SELECT", "table_name": schema.table_name},
                original_exception=e
            )
        return [_to_record(schema, row) for row in rows]

    async def _scalar(self, stmt, table_name: str) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return int(result.scalar() or 0)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to count records in table {table_name}",
                context={"operation": "SELECT", "table_name": table_name},
                original_exception=e
            )

    async def _write(self, stmt, table_name: str) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to update status in table {table_name}",
                context={"operation": "UPDATE", "table_name": table_name},
                original_exception=e
            )


def _to_record(schema: TableSchema, row: Any) -> RawRecord:
    return RawRecord(
        id=row["id"],
        user_unique_id=None if row["user_unique_id"] is None else str(row["user_unique_id"]),
        event_time=row[EVENT_TIME_COLUMN] if schema.has_event_time else None,
        retry_count=row["retry_count"] or 0,
        fields={name: row[name] for name in schema.param_fields},
    )


def _truncate(text: Optional[str], max_length: int) -> Optional[str]:
    if text is None:
        return None
    return text[:max_length]
