"""
Abstract row source consumed by the export runner
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Union
from models.base import ReportStatus
from schemas.envelope import RawRecord

PartitionDate = Union[date, str]


class RowSource(ABC):
    """
    Supplies rows of the registered source tables and accepts status writes.

    Responsibilities:
    - Cursor-based fetch of rows awaiting delivery
    - Partition (calendar date) fetch with offset pagination
    - Selection of failed rows still below the retry ceiling
    - Row status transitions requested by the runner
    """

    @abstractmethod
    async def count_pending(self, table_name: str) -> int:
        """Rows awaiting delivery"""

    @abstractmethod
    async def fetch_pending(self, table_name: str, after_id: int, limit: int) -> List[RawRecord]:
        """Rows awaiting delivery with id > after_id, ordered by id"""

    @abstractmethod
    async def count_by_date(self, table_name: str, dt: PartitionDate) -> int:
        """Rows in the given partition"""

    @abstractmethod
    async def fetch_by_date(self, table_name: str, dt: PartitionDate, limit: int, offset: int) -> List[RawRecord]:
        """One page of the given partition"""

    @abstractmethod
    async def fetch_failed(self, table_name: str, max_retry: int, limit: int) -> List[RawRecord]:
        """FAILED rows with retry_count < max_retry, ordered by id"""

    @abstractmethod
    async def set_status(self, table_name: str, ids: List[int], status: ReportStatus) -> None:
        """Move the given rows to ``status``"""

    @abstractmethod
    async def set_status_with_error(
        self, table_name: str, record_id: int, status: ReportStatus, message: Optional[str]
    ) -> None:
        """Move one row to ``status``, store the error and bump its retry count"""


def partition_key(dt: PartitionDate) -> str:
    """Partition value as stored in the ``dt`` column (YYYY-MM-DD)"""
    if isinstance(dt, date):
        return dt.isoformat()
    return date.fromisoformat(str(dt).strip()).isoformat()
