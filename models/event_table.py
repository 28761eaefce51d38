from sqlalchemy import Column, BigInteger, Integer, SmallInteger, String, Text, DateTime, MetaData, Table, Index
from schemas.table import TableSchema

EVENT_TIME_COLUMN = "et"
PARTITION_COLUMN = "dt"


def event_table(schema: TableSchema, metadata: MetaData) -> Table:
    """
    Core Table for a source event table.

    Source tables are owned by upstream applications; this definition
    lists the columns the exporter reads and writes:

    - id / user_unique_id / et: identity, user and optional event time
    - one column per parameter field
    - report_status / retry_count / error_msg: delivery bookkeeping
    - dt: calendar partition used by date-scoped runs
    """
    existing = metadata.tables.get(schema.table_name)
    if existing is not None:
        return existing

    columns = [
        Column("id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
        Column("user_unique_id", String(128), nullable=True),
    ]
    if schema.has_event_time:
        columns.append(Column(EVENT_TIME_COLUMN, BigInteger, nullable=True))
    columns.extend(Column(field, String(255), nullable=True) for field in schema.param_fields)
    columns.extend([
        Column("report_status", SmallInteger, nullable=False, default=0),
        Column("retry_count", Integer, nullable=False, default=0),
        Column("error_msg", Text, nullable=True),
        Column(PARTITION_COLUMN, String(10), nullable=True),
        Column("updated_at", DateTime, nullable=True),
    ])

    return Table(
        schema.table_name,
        metadata,
        *columns,
        Index(f"idx_{schema.table_name}_status_id", "report_status", "id"),
        Index(f"idx_{schema.table_name}_dt", PARTITION_COLUMN),
    )
