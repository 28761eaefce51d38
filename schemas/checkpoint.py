"""
Pydantic schema for per-table export progress
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime, timezone
from models.base import RunKind, CheckpointStatus
import time
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Checkpoint(BaseModel):
    """
    Progress of one table run.

    Mutated after every delivered page and finalized when the run ends.
    The cursor (last_processed_id) only ever moves forward.
    """

    model_config = ConfigDict(from_attributes=True, validate_assignment=True)

    id: Optional[int] = None
    run_id: str
    table_name: str
    run_kind: RunKind = RunKind.INCREMENTAL
    status: CheckpointStatus = CheckpointStatus.RUNNING

    total_count: int = 0
    processed_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    last_processed_id: int = 0

    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None

    @classmethod
    def start(cls, table_name: str, run_kind: RunKind = RunKind.INCREMENTAL, total_count: int = 0) -> "Checkpoint":
        """New RUNNING checkpoint with a unique run id"""
        run_id = f"{table_name}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        return cls(run_id=run_id, table_name=table_name, run_kind=run_kind, total_count=total_count)

    def record_page(self, processed: int, success: int, failed: int, max_id: Optional[int]) -> None:
        """Advance counters and cursor after a page has been delivered"""
        self.processed_count += processed
        self.success_count += success
        self.fail_count += failed
        if max_id is not None and max_id > self.last_processed_id:
            self.last_processed_id = max_id

    def complete(self) -> None:
        self.status = CheckpointStatus.COMPLETED
        self.ended_at = _utcnow()

    def fail(self, error_message: Optional[str] = None) -> None:
        self.status = CheckpointStatus.FAILED
        self.error_message = error_message
        self.ended_at = _utcnow()

    def pause(self) -> None:
        self.status = CheckpointStatus.PAUSED

    def resume(self) -> None:
        self.status = CheckpointStatus.RUNNING

