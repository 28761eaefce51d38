"""
Pydantic schemas for rows read from source tables and the envelopes sent
to the analytics endpoint
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class RawRecord(BaseModel):
    """
    A row fetched from a source table.

    ``id`` is absent for partition-only sources. ``fields`` maps every
    parameter column to its value (strings, numbers or None).
    """

    id: Optional[int] = None
    user_unique_id: Optional[str] = None
    event_time: Any = None
    retry_count: int = 0
    fields: Dict[str, Any] = Field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        """Flat representation used for quarantine lines"""
        row = {"id": self.id, "user_unique_id": self.user_unique_id}
        if self.event_time is not None:
            row["et"] = self.event_time
        row.update(self.fields)
        return row


class ReportUser(BaseModel):
    """User identity block"""
    user_unique_id: Optional[str] = None
    device_id: Optional[str] = None
    web_id: Optional[str] = None


class ReportEvent(BaseModel):
    """One event; ``params`` is an already-serialized JSON object"""
    event: str
    params: str
    local_time_ms: int


class Envelope(BaseModel):
    """
    Outbound unit for the analytics endpoint.

    record_id and table_name are kept for status updates and are never
    serialized on the wire.
    """

    user: ReportUser
    header: Dict[str, Any] = Field(default_factory=dict)
    events: List[ReportEvent] = Field(default_factory=list)

    record_id: Optional[int] = Field(default=None, exclude=True)
    table_name: Optional[str] = Field(default=None, exclude=True)

    model_config = ConfigDict(frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict: {user:{...}, header:{}, events:[...]}"""
        body = self.model_dump(exclude_none=True)
        body.setdefault("header", {})
        return body
