"""
Checkpoint store: durable per-table export progress
"""

from abc import ABC, abstractmethod
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.exceptions import CheckpointError
from models.base import CheckpointStatus
from models.checkpoint import ExportCheckpoint
from schemas.checkpoint import Checkpoint
import logging

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = (
    "status",
    "total_count",
    "processed_count",
    "success_count",
    "fail_count",
    "last_processed_id",
    "error_message",
    "ended_at",
)


class CheckpointStore(ABC):
    """Persistence of Checkpoint objects; at most one RUNNING per table"""

    @abstractmethod
    async def find_running(self, table_name: str) -> Optional[Checkpoint]:
        """Latest RUNNING checkpoint of the table"""

    @abstractmethod
    async def find_paused(self, table_name: str) -> Optional[Checkpoint]:
        """Latest PAUSED checkpoint of the table"""

    @abstractmethod
    async def create(self, checkpoint: Checkpoint) -> Checkpoint:
        """
        Persist a new checkpoint.

        If another RUNNING checkpoint for the same table already exists,
        that one is returned instead of creating a duplicate.
        """

    @abstractmethod
    async def update(self, checkpoint: Checkpoint) -> None:
        """Persist status, counters and cursor"""

    @abstractmethod
    async def find_by_run_id(self, run_id: str) -> Optional[Checkpoint]:
        """Checkpoint with the given run id"""

    @abstractmethod
    async def find_all_running(self) -> List[Checkpoint]:
        """Every RUNNING checkpoint"""


class SqlCheckpointStore(CheckpointStore):
    """Checkpoint store on the report_task_progress table"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def find_running(self, table_name: str) -> Optional[Checkpoint]:
        return await self._find_latest(table_name, CheckpointStatus.RUNNING)

    async def find_paused(self, table_name: str) -> Optional[Checkpoint]:
        return await self._find_latest(table_name, CheckpointStatus.PAUSED)

    async def create(self, checkpoint: Checkpoint) -> Checkpoint:
        row = ExportCheckpoint(**checkpoint.model_dump(exclude={"id"}))

        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
                created = Checkpoint.model_validate(row)
        except IntegrityError as e:
            # Lost the race against another invocation for the same table
            existing = await self.find_running(checkpoint.table_name)
            if existing is None:
                raise CheckpointError(
                    "Failed to create checkpoint",
                    context={"table_name": checkpoint.table_name, "run_id": checkpoint.run_id, "operation": "create"},
                    original_exception=e
                )
            logger.warning(
                f"Checkpoint {existing.run_id} is already running for table {checkpoint.table_name}, reusing it"
            )
            return existing
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to create checkpoint",
                context={"table_name": checkpoint.table_name, "run_id": checkpoint.run_id, "operation": "create"},
                original_exception=e
            )

        logger.info(f"Created task progress: {created.run_id}")
        return created

    async def update(self, checkpoint: Checkpoint) -> None:
        try:
            async with self.session_factory() as session:
                row = await session.get(ExportCheckpoint, checkpoint.id)
                if row is None:
                    raise CheckpointError(
                        "Checkpoint not found",
                        context={"table_name": checkpoint.table_name, "run_id": checkpoint.run_id, "operation": "update"}
                    )
                for name in _MUTABLE_FIELDS:
                    setattr(row, name, getattr(checkpoint, name))
                await session.commit()
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to update checkpoint",
                context={"table_name": checkpoint.table_name, "run_id": checkpoint.run_id, "operation": "update"},
                original_exception=e
            )

        logger.debug(f"Updated task progress: {checkpoint.run_id}")

    async def find_by_run_id(self, run_id: str) -> Optional[Checkpoint]:
        stmt = select(ExportCheckpoint).where(ExportCheckpoint.run_id == run_id)
        rows = await self._query(stmt, operation="find_by_run_id")
        return rows[0] if rows else None

    async def find_all_running(self) -> List[Checkpoint]:
        stmt = select(ExportCheckpoint).where(ExportCheckpoint.status == CheckpointStatus.RUNNING)
        return await self._query(stmt, operation="find_all_running")

    async def _find_latest(self, table_name: str, status: CheckpointStatus) -> Optional[Checkpoint]:
        stmt = (
            select(ExportCheckpoint)
            .where(
                ExportCheckpoint.table_name == table_name,
                ExportCheckpoint.status == status,
            )
            .order_by(ExportCheckpoint.created_at.desc(), ExportCheckpoint.id.desc())
            .limit(1)
        )
        rows = await self._query(stmt, operation=f"find_{status.value.lower()}", table_name=table_name)
        return rows[0] if rows else None

    async def _query(self, stmt, operation: str, table_name: Optional[str] = None) -> List[Checkpoint]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [Checkpoint.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to read checkpoints",
                context={"table_name": table_name, "operation": operation},
                original_exception=e
            )
