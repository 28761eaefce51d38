"""
Transform raw source rows into provider envelopes
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
from core.exceptions import TransformError
from exporter.registry import REPORT_TYPE_PARAM, REPORT_TYPE_VALUE, TableRegistry
from schemas.envelope import Envelope, RawRecord, ReportEvent, ReportUser
from schemas.table import TableSchema
import json
import logging
import time

logger = logging.getLogger(__name__)


def current_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class TransformFailure:
    record: RawRecord
    reason: str


@dataclass
class TransformResult:
    """Envelopes paired with their source rows, plus rows that failed"""
    items: List[Tuple[RawRecord, Envelope]] = field(default_factory=list)
    failures: List[TransformFailure] = field(default_factory=list)


class EnvelopeTransformer:
    """
    Map rows of a registered table to envelopes.

    Handles:
    - Event name from the table schema (not necessarily the table name)
    - Optional report_type injection
    - Null parameter skipping
    - Event time from ``et`` or ingestion time
    """

    def __init__(self, registry: TableRegistry, clock: Callable[[], int] = current_millis):
        self.registry = registry
        self.clock = clock

    def transform(self, table_name: str, record: RawRecord) -> Envelope:
        """
        Build the envelope for one row.

        Raises:
            UnknownTableError: table is not registered
            TransformError: row has no user identity or unserializable values
        """
        schema = self.registry.lookup(table_name)
        return self._build(schema, record)

    def transform_batch(self, table_name: str, records: List[RawRecord]) -> TransformResult:
        """
        Transform every row independently.

        Rows that fail are reported in ``failures`` and never abort the
        rest of the batch. An unknown table still raises UnknownTableError.
        """
        schema = self.registry.lookup(table_name)
        result = TransformResult()

        for record in records:
            try:
                result.items.append((record, self._build(schema, record)))
            except TransformError as e:
                logger.error(f"Failed to transform record {record.id} from table {table_name}: {e.message}")
                result.failures.append(TransformFailure(record=record, reason=e.message))

        return result

    def _build(self, schema: TableSchema, record: RawRecord) -> Envelope:
        user_id = record.user_unique_id
        if user_id is None or not str(user_id).strip():
            raise TransformError(
                "Record has no user_unique_id",
                context={"table_name": schema.table_name, "record_id": record.id}
            )

        event = ReportEvent(
            event=schema.event_name,
            params=self._build_params(schema, record),
            local_time_ms=self._event_time(schema, record),
        )

        return Envelope(
            user=ReportUser(user_unique_id=str(user_id)),
            header={},
            events=[event],
            record_id=record.id,
            table_name=schema.table_name,
        )

    def _build_params(self, schema: TableSchema, record: RawRecord) -> str:
        params: Dict[str, Any] = {}

        if schema.needs_report_type:
            params[REPORT_TYPE_PARAM] = REPORT_TYPE_VALUE

        for name in schema.param_fields:
            value = record.fields.get(name)
            if value is not None:
                params[name] = value

        try:
            return json.dumps(params, separators=(",", ":"), ensure_ascii=False, default=_json_default)
        except (TypeError, ValueError) as e:
            raise TransformError(
                "Parameters are not serializable",
                context={"table_name": schema.table_name, "record_id": record.id},
                original_exception=e
            )

    def _event_time(self, schema: TableSchema, record: RawRecord) -> int:
        if schema.has_event_time:
            millis = to_epoch_millis(record.event_time)
            if millis is not None:
                return millis
        return self.clock()


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_epoch_millis(value: Any) -> Optional[int]:
    """Convert an event-time value to epoch milliseconds, None when unusable"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp() * 1000)
    if isinstance(value, (int, float, Decimal)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            return int(text)
        try:
            return to_epoch_millis(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None
