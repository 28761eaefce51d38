"""
Pydantic schema describing one exportable source table
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Tuple
import enum


class ReportMode(str, enum.Enum):
    """Whether a table's rows are delivered one per request or grouped"""
    SINGLE = "single"
    BATCH = "batch"

    @classmethod
    def parse(cls, value: str) -> "ReportMode":
        """Parse a mode name case-insensitively ("SINGLE", "batch", ...)"""
        try:
            return cls(value.strip().lower())
        except (AttributeError, ValueError):
            raise ValueError(f"Unknown report mode: {value!r}") from None


class TableSchema(BaseModel):
    """
    Immutable descriptor of an exportable table.

    has_event_time and needs_report_type have no defaults: every table
    must state whether it carries its own ``et`` column and whether the
    synthetic ``report_type`` parameter is injected.
    """

    model_config = ConfigDict(frozen=True)

    table_name: str = Field(..., min_length=1, max_length=64)
    event_name: str = Field(..., min_length=1)
    param_fields: Tuple[str, ...] = ()
    report_mode: ReportMode
    has_event_time: bool
    needs_report_type: bool

    @field_validator("table_name")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not v.replace("_", "").isalnum():
            raise ValueError(f"Table name must be a plain identifier: {v}")
        return v

    @field_validator("param_fields")
    @classmethod
    def validate_param_fields(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if len(set(v)) != len(v):
            raise ValueError("Duplicate parameter field")
        return v
