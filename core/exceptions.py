"""
Custom exceptions for the export pipeline with structured error context.

Each exception carries a context dictionary so failures can be logged
with enough detail to replay or diagnose them.

Exception Hierarchy:
    ExportException (base)
    ├── UnknownTableError
    ├── TransformError
    ├── DeliveryError
    │   └── CircuitOpenError
    └── StorageError
        └── CheckpointError
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ExportException(Exception):
    """
    Base exception for all export-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (table, record id, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


class UnknownTableError(ExportException):
    """
    Raised when a table identifier has no registry entry.

    Fatal for the call that raised it, never for the whole run. Callers
    must check before any query or transform is attempted.
    """

    def __init__(self, table_name: str):
        super().__init__(
            f"Unknown table name: {table_name}",
            context={"table_name": table_name}
        )
        self.table_name = table_name


class TransformError(ExportException):
    """
    Raised when a single record cannot be turned into an envelope.

    Context should include:
        - table_name: Source table
        - record_id: Row identifier (may be None for partition sources)
    """
    pass


class DeliveryError(ExportException):
    """Base exception for one failed delivery attempt."""
    pass


class CircuitOpenError(DeliveryError):
    """Raised when the circuit breaker rejects a call without touching the network."""

    def __init__(self, breaker_name: str = "default"):
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open",
            context={"breaker": breaker_name}
        )


class StorageError(ExportException):
    """
    Raised when the row source or checkpoint store fails.

    Context should include:
        - operation: SELECT, UPDATE, INSERT
        - table_name: Affected table
    """
    pass


class CheckpointError(StorageError):
    """
    Raised when checkpoint management fails.

    Context should include:
        - table_name: Table whose checkpoint failed
        - run_id: Checkpoint run identifier
        - operation: find, create, update
    """
    pass
