"""
SQLAlchemy models for database tables.

This package defines the database schema:

Models:
    base: Base declarative class and shared enums (ReportStatus, RunKind, CheckpointStatus)
    checkpoint: Per-table export progress (report_task_progress)
    event_table: SQLAlchemy Core tables for the upstream event tables

Database Schema:
    The checkpoint table is owned by this service. Event tables belong to
    the upstream application; this service only reads them and updates
    their report_status / retry_count / error_msg columns.

Usage:
    from models.base import Base, ReportStatus, CheckpointStatus
    from models.checkpoint import ExportCheckpoint
    from models.event_table import event_table

Constraints:
    - At most one RUNNING checkpoint per table (partial unique index)
    - report_status codes: 0 pending, 1 processing, 2 success, 3 failed
"""

__all__ = [
    "Base",
    "ReportStatus",
    "RunKind",
    "CheckpointStatus",
    "ExportCheckpoint",
    "event_table",
]
