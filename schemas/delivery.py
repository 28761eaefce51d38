"""
Result of one HTTP attempt against the analytics endpoint
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class DeliveryOutcome(BaseModel):
    """
    Immutable outcome of a single delivery attempt.

    The endpoint answers 200 with an optional body such as
    ``{"e": 0, "message": "success", "sc": 20, "ec": 0}``; the short keys
    are accepted as aliases.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    success: bool
    http_status: int = 0
    success_count: Optional[int] = Field(default=None, alias="sc")
    error_count: Optional[int] = Field(default=None, alias="ec")
    error_code: Optional[int] = Field(default=None, alias="e")
    message: Optional[str] = None
    raw_response: Optional[str] = None
    error_message: Optional[str] = None
    circuit_open: bool = False

    @property
    def is_partial(self) -> bool:
        """Transport succeeded but the provider rejected some events"""
        return self.success and bool(self.error_count)

    @classmethod
    def succeeded(cls, success_count: int = 0) -> "DeliveryOutcome":
        return cls(success=True, http_status=200, success_count=success_count, error_count=0)

    @classmethod
    def failed(cls, http_status: int, error_message: str, raw_response: Optional[str] = None) -> "DeliveryOutcome":
        return cls(
            success=False,
            http_status=http_status,
            error_message=error_message,
            raw_response=raw_response,
        )

    @classmethod
    def rejected(cls, reason: str) -> "DeliveryOutcome":
        """Call refused by the circuit breaker; no request was sent"""
        return cls(success=False, http_status=0, error_message=reason, circuit_open=True)

    def describe(self) -> str:
        if self.success:
            return f"HTTP {self.http_status} sc={self.success_count} ec={self.error_count}"
        return self.error_message or f"HTTP {self.http_status}"
