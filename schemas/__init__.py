"""
Pydantic schemas for data validation and serialization.

Schemas:
    table: TableSchema, the immutable per-table export descriptor
    envelope: RawRecord (row read from a source table) and Envelope
        (provider-shaped event ready for transmission)
    delivery: DeliveryOutcome, the result of one HTTP attempt
    checkpoint: Checkpoint, the per-table run progress

Usage:
    from schemas.table import TableSchema, ReportMode
    from schemas.envelope import RawRecord, Envelope
    from schemas.delivery import DeliveryOutcome
    from schemas.checkpoint import Checkpoint

Example:
    schema = TableSchema(
        table_name="pay",
        event_name="pay",
        param_fields=("pay_type", "pay_amount"),
        report_mode=ReportMode.SINGLE,
        has_event_time=True,
        needs_report_type=True,
    )
"""

__all__ = [
    "TableSchema",
    "ReportMode",
    "RawRecord",
    "Envelope",
    "ReportUser",
    "ReportEvent",
    "DeliveryOutcome",
    "Checkpoint",
]
