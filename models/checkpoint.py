from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Text, Index, text
from datetime import datetime, timezone
from models.base import Base, RunKind, CheckpointStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExportCheckpoint(Base):
    """
    Tracks export progress per (table, run).

    Purpose:
    - Resume a table's export from the last delivered row id
    - Keep processed/success/fail counters per run
    - Audit trail of finished runs

    Design:
    - One row per run; finished runs stay as history
    - At most one RUNNING row per table, enforced by a partial unique index
    - last_processed_id is the id cursor; it never decreases within a run
    """
    __tablename__ = "report_task_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(64), nullable=False, unique=True)

    table_name = Column(String(64), nullable=False, index=True)
    run_kind = Column(Enum(RunKind), nullable=False, default=RunKind.INCREMENTAL)
    status = Column(Enum(CheckpointStatus), nullable=False, default=CheckpointStatus.RUNNING, index=True)

    # Counters
    total_count = Column(BigInteger, nullable=False, default=0)
    processed_count = Column(BigInteger, nullable=False, default=0)
    success_count = Column(BigInteger, nullable=False, default=0)
    fail_count = Column(BigInteger, nullable=False, default=0)

    # Cursor
    last_processed_id = Column(BigInteger, nullable=False, default=0)

    error_message = Column(Text, nullable=True)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index(
            "uq_checkpoint_running_table",
            "table_name",
            unique=True,
            postgresql_where=text("status = 'RUNNING'"),
            sqlite_where=text("status = 'RUNNING'"),
        ),
    )
