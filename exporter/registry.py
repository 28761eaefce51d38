"""
Table schema registry: the closed set of exportable source tables.

Each table is a flat TableSchema entry keyed by table name. The registry is
built once at startup (report-mode overrides applied at that point) and
never mutated afterwards.
"""

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from core.exceptions import UnknownTableError
from models.event_table import EVENT_TIME_COLUMN
from schemas.table import ReportMode, TableSchema
import logging

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = ("id", "user_unique_id")

# Synthetic parameter injected for tables with needs_report_type
REPORT_TYPE_PARAM = "report_type"
REPORT_TYPE_VALUE = "poc_v1"

DEFAULT_TABLES: Tuple[TableSchema, ...] = (
    TableSchema(
        table_name="page_vidw",
        event_name="page_vidw",
        param_fields=("refer_page_id", "page_id"),
        report_mode=ReportMode.BATCH,
        has_event_time=True,
        needs_report_type=False,
    ),
    TableSchema(
        table_name="element_click",
        event_name="element_click",
        param_fields=("click_type", "click_position", "click_name", "click_area"),
        report_mode=ReportMode.BATCH,
        has_event_time=True,
        needs_report_type=False,
    ),
    # Payment events go one by one
    TableSchema(
        table_name="pay",
        event_name="pay",
        param_fields=("pay_type", "pay_amount", "package_type", "package_id", "package_name", "is_ai"),
        report_mode=ReportMode.SINGLE,
        has_event_time=True,
        needs_report_type=True,
    ),
    TableSchema(
        table_name="pay_result",
        event_name="pay_result",
        param_fields=(
            "pay_result", "pay_type", "pay_amount", "package_type", "package_id", "package_name",
            "is_ai", "source", "device", "device_type", "sale_channel", "sd_card",
            "device_first_time", "cloud_expire_time",
        ),
        report_mode=ReportMode.SINGLE,
        has_event_time=True,
        needs_report_type=True,
    ),
    # Profile updates use the provider's reserved event name
    TableSchema(
        table_name="user_info",
        event_name="__profile_set",
        param_fields=("reg_time", "ys_dev_cnt", "user_add_day"),
        report_mode=ReportMode.BATCH,
        has_event_time=False,
        needs_report_type=False,
    ),
)


def build_select_fields(schema: TableSchema) -> List[str]:
    """Identity fields, then ``et`` when the table has it, then parameters in declaration order"""
    fields = list(IDENTITY_FIELDS)
    if schema.has_event_time:
        fields.append(EVENT_TIME_COLUMN)
    fields.extend(schema.param_fields)
    return fields


class TableRegistry:
    """Lookup of TableSchema entries by table name, in declaration order"""

    def __init__(self, schemas: Iterable[TableSchema]):
        self._tables: Dict[str, TableSchema] = {}
        for schema in schemas:
            if schema.table_name in self._tables:
                raise ValueError(f"Duplicate table in registry: {schema.table_name}")
            self._tables[schema.table_name] = schema

    @classmethod
    def default(cls, mode_overrides: Optional[Mapping[str, str]] = None) -> "TableRegistry":
        registry = cls(DEFAULT_TABLES)
        if mode_overrides:
            registry = registry.with_mode_overrides(mode_overrides)
        return registry

    def with_mode_overrides(self, overrides: Mapping[str, str]) -> "TableRegistry":
        """New registry with report modes replaced; unknown tables are ignored"""
        schemas = []
        for schema in self._tables.values():
            override = overrides.get(schema.table_name)
            if override is not None:
                mode = ReportMode.parse(override)
                if mode != schema.report_mode:
                    logger.info(f"Report mode override: {schema.table_name} {schema.report_mode.value} -> {mode.value}")
                schema = schema.model_copy(update={"report_mode": mode})
            schemas.append(schema)

        for table_name in overrides:
            if table_name not in self._tables:
                logger.warning(f"Ignoring report mode override for unknown table {table_name}")

        return TableRegistry(schemas)

    def lookup(self, table_name: str) -> TableSchema:
        schema = self._tables.get(table_name)
        if schema is None:
            raise UnknownTableError(table_name)
        return schema

    def is_known(self, table_name: str) -> bool:
        return table_name in self._tables

    def all_table_ids(self) -> Tuple[str, ...]:
        return tuple(self._tables)

    def __contains__(self, table_name: object) -> bool:
        return table_name in self._tables

    def __iter__(self) -> Iterator[TableSchema]:
        return iter(self._tables.values())

    def __len__(self) -> int:
        return len(self._tables)
